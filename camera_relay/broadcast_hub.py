"""
Broadcast Hub - Fan-out of live frames to every connected viewer.

Each viewer owns a bounded, latest-wins outbound queue, so a slow viewer only
ever loses its own oldest undelivered frames and never delays the publisher or
the other viewers.
"""

import base64
import itertools
import threading
import time
import logging
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, Iterable, Iterator, List, Optional, Set, Union

from .models import Detection

logger = logging.getLogger(__name__)

DEFAULT_VIEWER_QUEUE_SIZE = 8


@dataclass
class HubConfig:
    viewer_queue_size: int = DEFAULT_VIEWER_QUEUE_SIZE


@dataclass
class FrameMessage:
    """One published frame as delivered to viewers."""
    camera: str
    image: bytes
    detections: List[Detection]
    sequence: int
    timestamp: float = field(default_factory=time.time)
    envelope: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.envelope:
            self.envelope = build_envelope(self.camera, self.image, self.detections, self.sequence)


def build_envelope(camera: str, image: bytes, detections: List[Detection], sequence: int) -> Dict[str, Any]:
    """JSON envelope pushed to live viewers."""
    envelope = {
        'camera': camera,
        'image': base64.b64encode(image).decode('ascii'),
        'sequence': sequence,
    }
    if detections:
        envelope['detections'] = [d.to_dict() for d in detections]
    return envelope


class ViewerConnection:
    """
    Outbound channel to one subscriber.

    ``offer`` never blocks: when the queue is full the oldest undelivered
    message is discarded to make room. ``receive`` blocks until a message is
    available, the timeout expires or the connection is closed.
    """

    def __init__(self, viewer_id: str, max_queue: int = DEFAULT_VIEWER_QUEUE_SIZE,
                 cameras: Optional[Iterable[str]] = None):
        self.viewer_id = viewer_id
        self.max_queue = max(1, max_queue)
        self.cameras: Optional[Set[str]] = set(cameras) if cameras else None

        self._queue: Deque[FrameMessage] = deque(maxlen=self.max_queue)
        self._cond = threading.Condition()
        self._closed = False

        self.created_at = time.time()
        self.delivered = 0
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def wants(self, camera: str) -> bool:
        cameras = self.cameras
        return cameras is None or camera in cameras

    def set_cameras(self, cameras: Optional[Iterable[str]]) -> None:
        self.cameras = set(cameras) if cameras else None

    def offer(self, message: FrameMessage) -> bool:
        """Queue a message. Returns False if the connection is closed."""
        with self._cond:
            if self._closed:
                return False
            if len(self._queue) == self.max_queue:
                self.dropped += 1
            self._queue.append(message)  # deque(maxlen) evicts the oldest
            self._cond.notify()
            return True

    def receive(self, timeout: Optional[float] = None) -> Optional[FrameMessage]:
        """Next message, or None on timeout or once the connection is closed."""
        with self._cond:
            if not self._queue and not self._closed:
                self._cond.wait_for(lambda: self._queue or self._closed, timeout=timeout)
            if self._closed or not self._queue:
                return None
            self.delivered += 1
            return self._queue.popleft()

    def pending(self) -> int:
        with self._cond:
            return len(self._queue)

    def close(self) -> None:
        with self._cond:
            if self._closed:
                return
            self._closed = True
            self._queue.clear()
            self._cond.notify_all()

    def __iter__(self) -> Iterator[FrameMessage]:
        while not self._closed:
            message = self.receive(timeout=1.0)
            if message is not None:
                yield message

    def __repr__(self):
        return f"ViewerConnection(id={self.viewer_id}, pending={self.pending()}, closed={self._closed})"


class BroadcastHub:
    """
    Multi-producer, multi-consumer frame distribution.
    """

    def __init__(self, config: Optional[HubConfig] = None):
        self.config = config or HubConfig()

        # Subscriber registry
        self.viewers: Dict[str, ViewerConnection] = {}
        self.viewer_lock = threading.Lock()
        self._viewer_ids = itertools.count(1)

        # Sequence numbers and ordering per camera
        self.publish_lock = threading.Lock()
        self.sequences: Dict[str, int] = defaultdict(int)
        self.latest_messages: Dict[str, FrameMessage] = {}

        # Statistics
        self.published: Dict[str, int] = defaultdict(int)
        self.dropped_by_closed_viewers = 0

        logger.info(f"BroadcastHub initialized with per-viewer queue size {self.config.viewer_queue_size}")

    def subscribe(self, viewer_id: Optional[str] = None,
                  cameras: Optional[Iterable[str]] = None) -> ViewerConnection:
        """Add a viewer. Re-subscribing an existing id replaces (and closes) the old handle."""
        if viewer_id is None:
            viewer_id = f"viewer-{next(self._viewer_ids)}"

        connection = ViewerConnection(viewer_id, self.config.viewer_queue_size, cameras)
        with self.viewer_lock:
            previous = self.viewers.get(viewer_id)
            self.viewers[viewer_id] = connection
            total = len(self.viewers)

        if previous is not None:
            previous.close()
        logger.info(f"Viewer '{viewer_id}' subscribed. Total: {total}")
        return connection

    def unsubscribe(self, viewer: Union[str, ViewerConnection]) -> bool:
        """Remove a viewer. Safe to call repeatedly and concurrently with publish."""
        if isinstance(viewer, ViewerConnection):
            viewer_id, connection = viewer.viewer_id, viewer
        else:
            viewer_id, connection = viewer, None

        with self.viewer_lock:
            current = self.viewers.get(viewer_id)
            # Only remove the registered handle if it is the one asked for
            if current is not None and (connection is None or current is connection):
                del self.viewers[viewer_id]
                removed = current
                self.dropped_by_closed_viewers += current.dropped
            else:
                removed = None
            total = len(self.viewers)

        if connection is not None:
            connection.close()
        if removed is None:
            return False

        removed.close()
        logger.info(f"Viewer '{viewer_id}' unsubscribed. Total: {total}")
        return True

    def publish(self, camera_id: str, image: bytes,
                detections: Optional[List[Detection]] = None) -> FrameMessage:
        """
        Fan a frame out to all current viewers without blocking.

        Returns:
            FrameMessage: the message as delivered, carrying its sequence number
        """
        with self.publish_lock:
            self.sequences[camera_id] += 1
            message = FrameMessage(
                camera=camera_id,
                image=image,
                detections=list(detections or []),
                sequence=self.sequences[camera_id],
            )
            self.latest_messages[camera_id] = message
            self.published[camera_id] += 1

            # Offer under the publish lock so per-camera order is kept across producers
            for connection in self._snapshot():
                if not connection.wants(camera_id):
                    continue
                if not connection.offer(message):
                    self.unsubscribe(connection)

        return message

    def _snapshot(self) -> List[ViewerConnection]:
        with self.viewer_lock:
            return list(self.viewers.values())

    def get_viewer(self, viewer_id: str) -> Optional[ViewerConnection]:
        with self.viewer_lock:
            return self.viewers.get(viewer_id)

    def viewer_count(self) -> int:
        with self.viewer_lock:
            return len(self.viewers)

    def latest(self, camera_id: str) -> Optional[FrameMessage]:
        with self.publish_lock:
            return self.latest_messages.get(camera_id)

    def stats(self) -> Dict[str, Any]:
        """Hub statistics for the status endpoint."""
        viewers = self._snapshot()
        with self.publish_lock:
            published = dict(self.published)
        return {
            'viewers': len(viewers),
            'published': published,
            'dropped': {v.viewer_id: v.dropped for v in viewers},
            'pending': {v.viewer_id: v.pending() for v in viewers},
            'dropped_by_closed_viewers': self.dropped_by_closed_viewers,
        }

    def shutdown(self) -> None:
        """Close every viewer connection."""
        logger.info("Shutting down BroadcastHub")
        with self.viewer_lock:
            viewers = list(self.viewers.values())
            self.viewers.clear()
        for connection in viewers:
            connection.close()
