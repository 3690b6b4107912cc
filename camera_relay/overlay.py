import logging
from typing import Sequence

import cv2
import numpy as np

from .models import Detection

logger = logging.getLogger(__name__)

BOX_COLOR = (0, 255, 0)
TEXT_COLOR = (0, 0, 0)
JPEG_QUALITY = 90


def draw_detections(image: bytes, detections: Sequence[Detection]) -> bytes:
    """Draw labelled boxes onto a JPEG and re-encode it.

    Returns the original bytes unchanged when there is nothing to draw or the
    image cannot be decoded, so archiving never depends on the overlay.
    """
    if not detections:
        return image

    try:
        frame = cv2.imdecode(np.frombuffer(image, dtype=np.uint8), cv2.IMREAD_COLOR)
    except cv2.error as e:
        logger.warning(f"Failed to decode image for overlay: {e}")
        return image
    if frame is None:
        logger.warning("Failed to decode image for overlay - archiving original")
        return image

    height, width = frame.shape[:2]
    for detection in detections:
        x, y = min(detection.x, width - 1), min(detection.y, height - 1)
        x2, y2 = min(x + detection.width, width - 1), min(y + detection.height, height - 1)
        if x2 <= x or y2 <= y:
            continue

        cv2.rectangle(frame, (x, y), (x2, y2), BOX_COLOR, 2)

        label = f"{detection.label} {detection.confidence:.0%}"
        (text_w, text_h), _ = cv2.getTextSize(label, cv2.FONT_HERSHEY_SIMPLEX, 0.5, 1)
        text_top = max(0, y - text_h - 6)
        cv2.rectangle(frame, (x, text_top), (x + text_w + 4, text_top + text_h + 6), BOX_COLOR, -1)
        cv2.putText(frame, label, (x + 2, text_top + text_h + 2), cv2.FONT_HERSHEY_SIMPLEX, 0.5, TEXT_COLOR, 1)

    ok, buffer = cv2.imencode('.jpg', frame, [cv2.IMWRITE_JPEG_QUALITY, JPEG_QUALITY])
    if not ok:
        logger.warning("Failed to encode overlay image - archiving original")
        return image
    return buffer.tobytes()
