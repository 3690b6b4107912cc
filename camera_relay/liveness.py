import threading
import time
import logging
from dataclasses import dataclass, asdict
from typing import Callable, Dict, List, Optional

from .camera_registry import CameraRegistry

logger = logging.getLogger(__name__)


@dataclass
class LivenessConfig:
    check_interval: float = 5.0
    stale_timeout: float = 10.0


@dataclass
class CameraStatus:
    camera_id: str
    active: bool = False
    last_seen_at: Optional[float] = None

    def to_dict(self) -> dict:
        return asdict(self)


StatusListener = Callable[[CameraStatus], None]


class LivenessMonitor:
    """
    Periodically derives an active/inactive status per camera from the registry.

    Listeners are only notified when a camera's status flips.
    """

    def __init__(self, registry: CameraRegistry, config: Optional[LivenessConfig] = None,
                 clock: Callable[[], float] = time.time):
        self.registry = registry
        self.config = config or LivenessConfig()
        self.clock = clock

        self.statuses: Dict[str, CameraStatus] = {}
        self.lock = threading.Lock()
        self.listeners: List[StatusListener] = []

        self.running = False
        self._stop_event = threading.Event()
        self.thread: Optional[threading.Thread] = None

    def add_listener(self, listener: StatusListener) -> None:
        self.listeners.append(listener)

    def start(self) -> None:
        if self.running:
            return
        self.running = True
        self._stop_event.clear()
        self.thread = threading.Thread(target=self._monitor_worker, daemon=True, name="LivenessMonitor")
        self.thread.start()
        logger.info(f"Liveness monitor started (every {self.config.check_interval}s, "
                    f"stale after {self.config.stale_timeout}s)")

    def stop(self, timeout: float = 2.0) -> None:
        self.running = False
        self._stop_event.set()
        if self.thread is not None:
            self.thread.join(timeout=timeout)
            self.thread = None

    def _monitor_worker(self):
        """Worker: evaluate camera liveness on a fixed period."""
        while self.running:
            try:
                self.evaluate()
            except Exception as e:
                logger.error(f"Error in liveness monitor: {e}", exc_info=True)
            self._stop_event.wait(self.config.check_interval)

    def evaluate(self, now: Optional[float] = None) -> List[CameraStatus]:
        """
        Run one evaluation tick.

        Returns:
            List[CameraStatus]: the statuses that flipped during this tick
        """
        if now is None:
            now = self.clock()

        changed = []
        with self.lock:
            for camera_id, record in self.registry.snapshot().items():
                last_seen = record.last_frame_at
                active = last_seen is not None and (now - last_seen) < self.config.stale_timeout

                previous = self.statuses.get(camera_id)
                status = CameraStatus(camera_id=camera_id, active=active, last_seen_at=last_seen)
                self.statuses[camera_id] = status

                was_active = previous.active if previous else False
                if active != was_active:
                    changed.append(status)

        for status in changed:
            logger.info(f"Camera '{status.camera_id}' is now {'active' if status.active else 'inactive'}")
            self._notify(status)
        return changed

    def _notify(self, status: CameraStatus) -> None:
        for listener in list(self.listeners):
            try:
                listener(status)
            except Exception as e:
                logger.error(f"Error in liveness listener: {e}", exc_info=True)

    def current_status(self, camera_id: str) -> CameraStatus:
        """Status as of the last evaluation tick; unknown cameras are inactive."""
        with self.lock:
            status = self.statuses.get(camera_id)
        if status is not None:
            return CameraStatus(status.camera_id, status.active, status.last_seen_at)
        return CameraStatus(camera_id=camera_id, active=False, last_seen_at=self.registry.last_frame_at(camera_id))

    def all_statuses(self) -> Dict[str, CameraStatus]:
        return {camera_id: self.current_status(camera_id) for camera_id in self.registry.camera_ids()}


def create_liveness_config(config_data: dict) -> LivenessConfig:
    liveness = config_data.get('liveness', {})
    return LivenessConfig(
        check_interval=float(liveness.get('check_interval', 5.0)),
        stale_timeout=float(liveness.get('stale_timeout', 10.0)),
    )
