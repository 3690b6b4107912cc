"""
UDP camera ingest - rebuilds JPEG frames from datagrams and submits them.

Cameras stream each JPEG as a run of datagrams; a packet starting with the SOI
marker begins a new frame and a packet ending with the EOI marker completes it.
"""

import socket
import threading
import logging
from typing import Dict, Optional, Tuple

from .errors import InvalidFrame
from .frame_intake import FrameIntake

logger = logging.getLogger(__name__)

JPEG_HEADER = b'\xff\xd8'
JPEG_FOOTER = b'\xff\xd9'
MAX_DATAGRAM = 2048
MAX_FRAME_BYTES = 4 * 1024 * 1024


class JpegReassembler:
    """Per-source buffers that concatenate datagrams into complete JPEG frames."""

    def __init__(self, camera_addresses: Optional[Dict[str, str]] = None, max_frame_bytes: int = MAX_FRAME_BYTES):
        self.camera_addresses = dict(camera_addresses or {})
        self.max_frame_bytes = max_frame_bytes
        self.buffers: Dict[str, bytearray] = {}

    def camera_for(self, ip: str) -> str:
        return self.camera_addresses.get(ip, f"unknown_{ip}")

    def feed(self, ip: str, data: bytes) -> Optional[Tuple[str, bytes]]:
        """
        Add one datagram from ``ip``.

        Returns:
            (camera_id, jpeg bytes) when the datagram completes a frame, else None
        """
        camera_id = self.camera_for(ip)
        buffer = self.buffers.setdefault(camera_id, bytearray())

        if data.startswith(JPEG_HEADER):
            buffer.clear()
        elif not buffer:
            # Mid-frame packet with no start seen; wait for the next SOI
            return None

        buffer.extend(data)
        if len(buffer) > self.max_frame_bytes:
            logger.warning(f"Discarding oversized frame from camera {camera_id} ({len(buffer)} bytes)")
            buffer.clear()
            return None

        if data.endswith(JPEG_FOOTER):
            frame = bytes(buffer)
            buffer.clear()
            return camera_id, frame
        return None


class UdpIngest:
    """Listens for camera datagrams and feeds complete frames to the intake."""

    def __init__(self, intake: FrameIntake, port: int, camera_addresses: Optional[Dict[str, str]] = None,
                 host: str = "0.0.0.0"):
        self.intake = intake
        self.host = host
        self.port = port
        self.reassembler = JpegReassembler(camera_addresses)
        self.sock: Optional[socket.socket] = None
        self.running = False
        self.thread: Optional[threading.Thread] = None
        self.frames_received = 0

    def start(self) -> bool:
        try:
            self.sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            self.sock.bind((self.host, self.port))
            self.sock.settimeout(1.0)
        except OSError as e:
            logger.error(f"Failed to listen on UDP port {self.port}: {e}")
            self.sock = None
            return False

        self.running = True
        self.thread = threading.Thread(target=self._receive_loop, daemon=True, name="UdpIngest")
        self.thread.start()
        logger.info(f"UDP camera ingest started on port {self.port}")
        return True

    def stop(self, timeout: float = 2.0) -> None:
        self.running = False
        if self.thread is not None:
            self.thread.join(timeout=timeout)
            self.thread = None
        if self.sock is not None:
            self.sock.close()
            self.sock = None

    def _receive_loop(self):
        while self.running:
            try:
                data, (ip, _port) = self.sock.recvfrom(MAX_DATAGRAM)
            except socket.timeout:
                continue
            except OSError as e:
                if self.running:
                    logger.error(f"Error reading UDP packet: {e}")
                continue

            completed = self.reassembler.feed(ip, data)
            if completed is None:
                continue

            camera_id, frame = completed
            try:
                self.intake.submit(camera_id, frame)
                self.frames_received += 1
            except InvalidFrame:
                continue
            except Exception as e:
                logger.error(f"Error submitting UDP frame from {camera_id}: {e}", exc_info=True)
