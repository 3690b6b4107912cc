import threading
import time
import logging
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Union

logger = logging.getLogger(__name__)


@dataclass
class CameraConfig:
    """Configuration for a single camera."""
    camera_id: str
    address: Optional[str] = None  # Source IP for UDP ingest


@dataclass
class CameraRecord:
    """What the registry knows about one camera."""
    camera_id: str
    last_frame_at: Optional[float] = None
    frame_count: int = 0


class CameraRegistry:
    """Tracks known cameras and the time of each camera's last relayed frame."""

    def __init__(self, camera_configs: Optional[List[CameraConfig]] = None):
        self.cameras: Dict[str, CameraRecord] = {}
        self.lock = threading.Lock()

        for config in camera_configs or []:
            self.cameras[config.camera_id] = CameraRecord(camera_id=config.camera_id)

    def record_frame(self, camera_id: str, timestamp: Optional[float] = None) -> CameraRecord:
        """Register a relayed frame; creates the camera on first sight."""
        if timestamp is None:
            timestamp = time.time()

        with self.lock:
            record = self.cameras.get(camera_id)
            if record is None:
                record = CameraRecord(camera_id=camera_id)
                self.cameras[camera_id] = record
                logger.info(f"Registered camera '{camera_id}' on first frame")

            record.last_frame_at = timestamp
            record.frame_count += 1
            return replace(record)

    def get(self, camera_id: str) -> Optional[CameraRecord]:
        with self.lock:
            record = self.cameras.get(camera_id)
            return replace(record) if record else None

    def last_frame_at(self, camera_id: str) -> Optional[float]:
        with self.lock:
            record = self.cameras.get(camera_id)
            return record.last_frame_at if record else None

    def camera_ids(self) -> List[str]:
        with self.lock:
            return list(self.cameras.keys())

    def snapshot(self) -> Dict[str, CameraRecord]:
        """Copies of all records, safe to read without the lock."""
        with self.lock:
            return {camera_id: replace(record) for camera_id, record in self.cameras.items()}

    def frame_counts(self) -> Dict[str, int]:
        with self.lock:
            return {camera_id: record.frame_count for camera_id, record in self.cameras.items()}


def create_camera_configs(config_data: dict) -> List[CameraConfig]:
    """Create camera config objects from configuration data.

    Entries are either plain camera ids or ``{"camera_id": ..., "address": ...}``.
    """
    camera_configs = []

    for camera_data in config_data.get('cameras', []):
        entry: Union[str, dict] = camera_data
        if isinstance(entry, str):
            camera_configs.append(CameraConfig(camera_id=entry))
        else:
            camera_configs.append(CameraConfig(
                camera_id=entry['camera_id'],
                address=entry.get('address'),
            ))

    return camera_configs
