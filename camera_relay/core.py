#### IMPORTS ###
import time
import logging
from typing import Any, Dict, Optional

from flask_socketio import SocketIO

from .broadcast_hub import BroadcastHub, HubConfig, ViewerConnection
from .camera_registry import CameraRegistry, create_camera_configs
from .frame_intake import ArchiveBudget, ArchiveWriter, FrameIntake
from .liveness import CameraStatus, LivenessMonitor, create_liveness_config
from .picture_archive import PictureArchive, create_archive_config
from .udp_ingest import UdpIngest

logger = logging.getLogger(__name__)


#### CONSTANTS ###
VIEWER_RECEIVE_TIMEOUT = 1.0


### CORE CLASSES ###
class RelaySystem:
    """Owns every relay component and their background workers."""

    def __init__(self, config_data: Dict[str, Any], socketio_instance: Optional[SocketIO] = None, flask_app=None):
        self.config = config_data
        self.socketio = socketio_instance
        self.flask_app = flask_app
        self.running = False

        # --- CAMERAS ---
        self.camera_configs = create_camera_configs(self.config)
        self.registry = CameraRegistry(self.camera_configs)

        # --- LIVE DISTRIBUTION ---
        hub_config = self.config.get('hub', {})
        self.hub = BroadcastHub(HubConfig(viewer_queue_size=int(hub_config.get('viewer_queue_size', 8))))

        # --- ARCHIVE ---
        self.archive_config = create_archive_config(self.config)
        self.archive = PictureArchive(
            directory=self.archive_config.directory,
            database=self.archive_config.database,
            max_size=self.archive_config.max_size_bytes,
        )
        self.archive_writer = ArchiveWriter(
            self.archive,
            queue_size=self.archive_config.queue_size,
            draw_overlays=self.archive_config.draw_overlays,
        )
        self.intake = FrameIntake(
            self.registry,
            self.hub,
            archive_writer=self.archive_writer,
            policy=self.archive_config.policy,
            budget=ArchiveBudget(self.archive_config.max_pictures_per_window, self.archive_config.window_seconds),
        )

        # --- LIVENESS ---
        self.liveness = LivenessMonitor(self.registry, create_liveness_config(self.config))
        self.liveness.add_listener(self._emit_camera_status)

        # --- UDP INGEST ---
        udp_config = self.config.get('udp', {})
        self.udp_ingest: Optional[UdpIngest] = None
        if udp_config.get('enabled'):
            addresses = {c.address: c.camera_id for c in self.camera_configs if c.address}
            self.udp_ingest = UdpIngest(self.intake, int(udp_config.get('port', 81)), addresses)

        self.started_at: Optional[float] = None

    def start(self) -> bool:
        self.running = True
        self.started_at = time.time()

        self.archive_writer.start()
        self.liveness.start()
        if self.udp_ingest is not None and not self.udp_ingest.start():
            logger.warning("UDP ingest disabled - continuing with HTTP ingest only")

        print("[STARTUP] RelaySystem started.")
        return True

    def stop(self):
        self.running = False

        if self.udp_ingest is not None:
            self.udp_ingest.stop()
        self.liveness.stop()
        self.hub.shutdown()
        self.archive_writer.drain(timeout=5.0)
        self.archive_writer.stop()
        self.archive.close()
        print("[OK] RelaySystem stopped.")

    # --- LIVE VIEWERS ---

    def attach_viewer(self, sid: str) -> ViewerConnection:
        """Subscribe a Socket.IO client and start its sender task."""
        connection = self.hub.subscribe(viewer_id=sid)
        if self.socketio is not None:
            self.socketio.start_background_task(self._viewer_sender, connection)
        return connection

    def detach_viewer(self, sid: str) -> None:
        self.hub.unsubscribe(sid)

    def _viewer_sender(self, connection: ViewerConnection) -> None:
        """Task: push one viewer's queued frames until its connection closes."""
        while not connection.closed:
            message = connection.receive(timeout=VIEWER_RECEIVE_TIMEOUT)
            if message is None:
                continue
            try:
                self.socketio.emit('frame', message.envelope, to=connection.viewer_id)
            except Exception as e:
                logger.warning(f"Error sending frame to viewer {connection.viewer_id}: {e}")
                self.hub.unsubscribe(connection)
                return

    def _emit_camera_status(self, status: CameraStatus) -> None:
        if self.socketio is None:
            return
        if self.flask_app:
            with self.flask_app.app_context():
                self.socketio.emit('camera_status', status.to_dict())
        else:
            self.socketio.emit('camera_status', status.to_dict())

    # --- STATUS ---

    def get_camera_status(self) -> Dict[str, Dict]:
        """Liveness plus frame counts for all cameras."""
        records = self.registry.snapshot()
        status = {}
        for camera_id, record in records.items():
            liveness = self.liveness.current_status(camera_id)
            status[camera_id] = {
                'active': liveness.active,
                'last_seen_at': record.last_frame_at,
                'frame_count': record.frame_count,
            }
        return status

    def get_status(self) -> Dict[str, Any]:
        return {
            'running': self.running,
            'uptime': time.time() - self.started_at if self.started_at else 0.0,
            'hub': self.hub.stats(),
            'intake': self.intake.stats(),
            'archive': self.archive.usage(),
            'udp': {'port': self.udp_ingest.port, 'frames_received': self.udp_ingest.frames_received}
                   if self.udp_ingest is not None else None,
        }
