import os

import cv2
import numpy as np
import pytest

from camera_relay.picture_archive import PictureArchive


@pytest.fixture
def jpeg_bytes():
    """A small real JPEG image."""
    frame = np.zeros((48, 64, 3), dtype=np.uint8)
    frame[10:30, 10:40] = (255, 255, 255)
    ok, buffer = cv2.imencode('.jpg', frame)
    assert ok
    return buffer.tobytes()


@pytest.fixture
def archive_factory(tmp_path):
    """Build archives rooted in the test's tmp directory; closed on teardown."""
    opened = []

    def factory(max_size=10_000, reindex=True):
        archive = PictureArchive(
            directory=str(tmp_path / "images"),
            database=str(tmp_path / "data" / "images.db"),
            max_size=max_size,
            reindex=reindex,
        )
        opened.append(archive)
        return archive

    yield factory
    for archive in opened:
        archive.close()


@pytest.fixture
def archive(archive_factory):
    return archive_factory()


@pytest.fixture
def relay_config(tmp_path):
    return {
        "cameras": ["balkon", "drzwi"],
        "hub": {"viewer_queue_size": 4},
        "liveness": {"check_interval": 60.0, "stale_timeout": 10.0},
        "archive": {
            "directory": os.path.join(str(tmp_path), "images"),
            "database": os.path.join(str(tmp_path), "data", "images.db"),
            "max_size_gb": 0.01,
            "policy": "detections",
            "max_pictures_per_window": 0,
            "window_seconds": 30.0,
            "queue_size": 16,
            "draw_overlays": False,
        },
        "udp": {"enabled": False},
    }
