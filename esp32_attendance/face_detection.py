from typing import List, Optional, Protocol, Tuple

import cv2
import numpy as np

from .config import FACE_EDGE_MARGIN_RATIO, FACE_MIN_SIZE_RATIO
from .logger import setup_logger

Box = Tuple[int, int, int, int]


class FaceDetector(Protocol):
    def has_usable_face(self, jpeg: bytes) -> bool:
        ...


def decode_jpeg(jpeg: bytes) -> Optional[np.ndarray]:
    if not jpeg:
        return None
    arr = np.frombuffer(jpeg, dtype=np.uint8)
    frame = cv2.imdecode(arr, cv2.IMREAD_COLOR)
    if frame is None or frame.size == 0:
        return None
    return frame


def is_good_quality_face(
    box: Box,
    image_width: int,
    image_height: int,
    min_size_ratio: float = FACE_MIN_SIZE_RATIO,
    edge_margin_ratio: float = FACE_EDGE_MARGIN_RATIO,
) -> bool:
    x, y, w, h = box
    min_face = image_width * min_size_ratio
    if w < min_face or h < min_face:
        return False

    margin = image_width * edge_margin_ratio
    if x < margin or y < margin:
        return False
    if x + w > image_width - margin or y + h > image_height - margin:
        return False
    return True


class HaarFaceDetector:
    """Accepts a frame when its first detected face passes the size and margin checks."""

    def __init__(self, cascade_path: Optional[str] = None, scale_factor: float = 1.1, min_neighbors: int = 5):
        path = cascade_path or (cv2.data.haarcascades + "haarcascade_frontalface_default.xml")
        self.classifier = cv2.CascadeClassifier(path)
        if self.classifier.empty():
            raise ValueError(f"Unable to load Haar cascade from {path}")
        self.scale_factor = scale_factor
        self.min_neighbors = min_neighbors
        self.logger = setup_logger(self.__class__.__name__)

    def detect(self, frame: np.ndarray) -> List[Box]:
        gray = cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)
        height, width = gray.shape[:2]
        min_side = max(16, int(min(width, height) * FACE_MIN_SIZE_RATIO))
        faces = self.classifier.detectMultiScale(
            gray,
            scaleFactor=self.scale_factor,
            minNeighbors=self.min_neighbors,
            minSize=(min_side, min_side),
        )
        boxes = [tuple(int(v) for v in face) for face in faces]
        # Largest face first
        boxes.sort(key=lambda b: b[2] * b[3], reverse=True)
        return boxes

    def has_usable_face(self, jpeg: bytes) -> bool:
        frame = decode_jpeg(jpeg)
        if frame is None:
            self.logger.debug("Failed to decode frame for face check")
            return False

        boxes = self.detect(frame)
        if not boxes:
            self.logger.debug("No face detected in frame")
            return False

        height, width = frame.shape[:2]
        if not is_good_quality_face(boxes[0], width, height):
            self.logger.debug("Face quality check failed for box %s", boxes[0])
            return False
        return True
