import cv2
import numpy as np

from camera_relay.models import Detection
from camera_relay.overlay import draw_detections


def test_no_detections_returns_original(jpeg_bytes):
    assert draw_detections(jpeg_bytes, []) is jpeg_bytes


def test_boxes_are_drawn_and_image_stays_a_jpeg(jpeg_bytes):
    detection = Detection(label="person", confidence=0.87, x=5, y=20, width=30, height=20)

    result = draw_detections(jpeg_bytes, [detection])

    assert result != jpeg_bytes
    original = cv2.imdecode(np.frombuffer(jpeg_bytes, dtype=np.uint8), cv2.IMREAD_COLOR)
    decoded = cv2.imdecode(np.frombuffer(result, dtype=np.uint8), cv2.IMREAD_COLOR)
    assert decoded.shape == (48, 64, 3)
    # Box and label background are green
    assert decoded[:, :, 1].mean() > original[:, :, 1].mean() + 10


def test_undecodable_image_is_returned_unchanged():
    garbage = b"not a jpeg at all"
    detection = Detection(label="person", confidence=0.5, x=0, y=0, width=5, height=5)
    assert draw_detections(garbage, [detection]) == garbage


def test_box_outside_frame_is_skipped(jpeg_bytes):
    detection = Detection(label="bird", confidence=0.5, x=500, y=500, width=10, height=10)
    result = draw_detections(jpeg_bytes, [detection])
    decoded = cv2.imdecode(np.frombuffer(result, dtype=np.uint8), cv2.IMREAD_COLOR)
    assert decoded is not None
