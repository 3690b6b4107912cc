import time
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

from .errors import InvalidFrame


@dataclass(frozen=True)
class Detection:
    """One labelled bounding box attached to a frame (pixel units)."""
    label: str
    confidence: float
    x: int = 0
    y: int = 0
    width: int = 0
    height: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Detection':
        if not isinstance(data, dict):
            raise InvalidFrame(f"Detection must be an object, got {type(data).__name__}")

        label = data.get('label')
        if not isinstance(label, str) or not label.strip():
            raise InvalidFrame("Detection label is required")

        try:
            confidence = float(data.get('confidence', 0.0))
            x, y = int(data.get('x', 0)), int(data.get('y', 0))
            width, height = int(data.get('width', 0)), int(data.get('height', 0))
        except (TypeError, ValueError) as e:
            raise InvalidFrame(f"Invalid detection values for '{label}': {e}") from e

        if not 0.0 <= confidence <= 1.0:
            raise InvalidFrame(f"Detection confidence {confidence} is outside [0, 1]")
        if min(x, y, width, height) < 0:
            raise InvalidFrame(f"Detection box for '{label}' has negative coordinates")

        return cls(label=label.strip(), confidence=confidence, x=x, y=y, width=width, height=height)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def parse_detections(raw: Optional[Any]) -> List[Detection]:
    """Accept ``None``, a list of dicts or a list of Detection objects."""
    if raw is None:
        return []
    if not isinstance(raw, (list, tuple)):
        raise InvalidFrame("Detections must be a list")
    return [d if isinstance(d, Detection) else Detection.from_dict(d) for d in raw]


@dataclass
class Frame:
    """A single still image from a camera, alive for one ingest cycle."""
    camera_id: str
    image: bytes
    detections: List[Detection] = field(default_factory=list)
    timestamp: float = field(default_factory=time.time)

    @property
    def labels(self) -> List[str]:
        return [d.label for d in self.detections]
