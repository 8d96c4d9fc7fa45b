import asyncio
import logging
from typing import Callable, Optional

import cv2
import numpy as np

logger = logging.getLogger(__name__)


class CameraUnavailableError(Exception):
    pass


class Camera:
    """Video-only capture device; blocking OpenCV calls run off the event loop"""

    def __init__(
        self,
        index: int = 0,
        width: int = 640,
        height: int = 480,
        capture_factory: Callable[[int], "cv2.VideoCapture"] = cv2.VideoCapture,
    ):
        self.index = index
        self.width = width
        self.height = height
        self._capture_factory = capture_factory
        self._capture = None
        self._lock = asyncio.Lock()

    @property
    def is_open(self) -> bool:
        return self._capture is not None

    def _open_blocking(self):
        capture = self._capture_factory(self.index)
        if not capture.isOpened():
            capture.release()
            raise CameraUnavailableError(f"Camera {self.index} could not be opened")
        capture.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        capture.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        return capture

    async def open(self):
        async with self._lock:
            if self._capture is None:
                self._capture = await asyncio.to_thread(self._open_blocking)
                logger.info(f"Camera {self.index} opened at {self.width}x{self.height}")

    async def read(self) -> Optional[np.ndarray]:
        """Latest BGR frame, or None if the device returned nothing"""
        async with self._lock:
            if self._capture is None:
                return None
            ok, frame = await asyncio.to_thread(self._capture.read)
        return frame if ok else None

    def release(self):
        if self._capture is not None:
            self._capture.release()
            self._capture = None
            logger.info(f"Camera {self.index} released")


class HaarFaceDetector:
    """Counts frontal faces in a frame with OpenCV's bundled Haar cascade"""

    def __init__(self, scale_factor: float = 1.1, min_neighbors: int = 5, min_size=(60, 60)):
        cascade_path = cv2.data.haarcascades + 'haarcascade_frontalface_default.xml'
        self.detector = cv2.CascadeClassifier(cascade_path)
        if self.detector.empty():
            raise RuntimeError("Failed to load Haar Cascade classifier")
        self.scale_factor = scale_factor
        self.min_neighbors = min_neighbors
        self.min_size = min_size

    def count_faces(self, frame: np.ndarray) -> int:
        gray = cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)
        detections = self.detector.detectMultiScale(
            gray, scaleFactor=self.scale_factor, minNeighbors=self.min_neighbors, minSize=self.min_size
        )
        return len(detections)
