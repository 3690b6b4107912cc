"""
Frame Intake - Validation of camera submissions and hand-off to the hub and archive.

The broadcast always happens first, on the caller's thread; archiving is queued
for a background writer so a slow disk never delays live viewers or the
camera's upload response.
"""

import threading
import time
import logging
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime
from queue import Queue, Empty, Full
from typing import Any, Callable, Deque, Dict, Optional

from .broadcast_hub import BroadcastHub
from .camera_registry import CameraRegistry
from .errors import ArchiveError, InvalidFrame
from .models import Frame, parse_detections
from .overlay import draw_detections
from .picture_archive import Picture, PictureArchive

logger = logging.getLogger(__name__)

ARCHIVE_POLICIES = ("detections", "all", "none")


@dataclass
class IntakeResult:
    """Outcome of an accepted submission."""
    camera_id: str
    sequence: int
    archived: bool


class ArchiveBudget:
    """Caps archived pictures per camera within a sliding time window."""

    def __init__(self, max_pictures: int = 10, window_seconds: float = 30.0):
        self.max_pictures = max_pictures
        self.window_seconds = window_seconds
        self.history: Dict[str, Deque[float]] = defaultdict(deque)
        self.lock = threading.Lock()

    def allow(self, camera_id: str, now: Optional[float] = None) -> bool:
        if self.max_pictures <= 0:
            return True
        if now is None:
            now = time.time()

        with self.lock:
            history = self.history[camera_id]
            while history and now - history[0] >= self.window_seconds:
                history.popleft()
            if len(history) >= self.max_pictures:
                return False
            history.append(now)
            return True


class ArchiveWriter:
    """Background worker that persists frames into the picture archive."""

    def __init__(self, archive: PictureArchive, queue_size: int = 100, draw_overlays: bool = True):
        self.archive = archive
        self.draw_overlays = draw_overlays
        self.queue: Queue = Queue(maxsize=queue_size)
        self.running = False
        self.thread: Optional[threading.Thread] = None

        # Statistics
        self.written = 0
        self.failed = 0
        self.dropped = 0

    def start(self) -> None:
        if self.running:
            return
        self.running = True
        self.thread = threading.Thread(target=self._writer_worker, daemon=True, name="ArchiveWriter")
        self.thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        self.running = False
        if self.thread is not None:
            self.thread.join(timeout=timeout)
            self.thread = None

    def enqueue(self, frame: Frame) -> bool:
        """Queue a frame for archiving. Never blocks; drops the frame when the queue is full."""
        try:
            self.queue.put_nowait(frame)
            return True
        except Full:
            self.dropped += 1
            logger.warning(f"Archive queue full - skipping picture from camera {frame.camera_id}")
            return False

    def drain(self, timeout: float = 5.0) -> bool:
        """Wait until every queued frame has been processed."""
        with self.queue.all_tasks_done:
            return self.queue.all_tasks_done.wait_for(lambda: self.queue.unfinished_tasks == 0, timeout=timeout)

    def write(self, frame: Frame) -> Optional[Picture]:
        """Persist one frame. Archive errors are logged, never raised."""
        image = frame.image
        if self.draw_overlays and frame.detections:
            image = draw_detections(image, frame.detections)

        try:
            picture = self.archive.save(
                frame.camera_id, image, frame.detections, datetime.fromtimestamp(frame.timestamp)
            )
        except (ArchiveError, InvalidFrame) as e:
            self.failed += 1
            logger.error(f"Failed to archive frame from camera {frame.camera_id}: {e}")
            return None

        self.written += 1
        return picture

    def _writer_worker(self):
        """Worker: persist queued frames one at a time."""
        while self.running:
            try:
                frame = self.queue.get(timeout=0.1)
            except Empty:
                continue

            try:
                self.write(frame)
            except Exception as e:
                self.failed += 1
                logger.error(f"Error in archive writer worker: {e}", exc_info=True)
            finally:
                self.queue.task_done()

    def stats(self) -> Dict[str, int]:
        return {
            'queued': self.queue.qsize(),
            'written': self.written,
            'failed': self.failed,
            'dropped': self.dropped,
        }


class FrameIntake:
    """Entry point for one frame submission from a camera."""

    def __init__(self, registry: CameraRegistry, hub: BroadcastHub,
                 archive_writer: Optional[ArchiveWriter] = None,
                 policy: str = "detections",
                 budget: Optional[ArchiveBudget] = None,
                 clock: Callable[[], float] = time.time):
        if policy not in ARCHIVE_POLICIES:
            raise ValueError(f"Unknown archive policy '{policy}', expected one of {ARCHIVE_POLICIES}")

        self.registry = registry
        self.hub = hub
        self.archive_writer = archive_writer
        self.policy = policy
        self.budget = budget or ArchiveBudget(max_pictures=0)
        self.clock = clock

        self.accepted = 0
        self.rejected = 0

    def submit(self, camera_id: Optional[str], image: Optional[bytes],
               detections: Optional[Any] = None, archive: Optional[bool] = None) -> IntakeResult:
        """
        Validate a frame, record it, broadcast it and optionally archive it.

        Args:
            camera_id: Camera identifier
            image: Raw image bytes
            detections: Optional list of detection dicts or Detection objects
            archive: Force (True) or suppress (False) archiving; None applies the policy

        Raises:
            InvalidFrame: empty image, blank camera id or malformed detections
        """
        try:
            frame = self._validate(camera_id, image, detections)
        except InvalidFrame as e:
            self.rejected += 1
            logger.warning(f"Rejected frame from camera {camera_id!r}: {e}")
            raise

        self.registry.record_frame(frame.camera_id, frame.timestamp)
        message = self.hub.publish(frame.camera_id, frame.image, frame.detections)
        self.accepted += 1

        archived = False
        if self._should_archive(frame, archive) and self.budget.allow(frame.camera_id, frame.timestamp):
            archived = self.archive_writer.enqueue(frame)

        return IntakeResult(camera_id=frame.camera_id, sequence=message.sequence, archived=archived)

    def _validate(self, camera_id: Optional[str], image: Optional[bytes], detections: Optional[Any]) -> Frame:
        if camera_id is None or not str(camera_id).strip():
            raise InvalidFrame("Camera id is required")
        if not image:
            raise InvalidFrame("Image is empty")
        return Frame(
            camera_id=str(camera_id).strip(),
            image=bytes(image),
            detections=parse_detections(detections),
            timestamp=self.clock(),
        )

    def _should_archive(self, frame: Frame, archive: Optional[bool]) -> bool:
        if self.archive_writer is None:
            return False
        if archive is not None:
            return archive
        if self.policy == "all":
            return True
        if self.policy == "detections":
            return bool(frame.detections)
        return False

    def stats(self) -> Dict[str, Any]:
        stats = {'accepted': self.accepted, 'rejected': self.rejected, 'policy': self.policy}
        if self.archive_writer is not None:
            stats['archive_writer'] = self.archive_writer.stats()
        return stats
