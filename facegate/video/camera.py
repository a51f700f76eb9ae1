"""OpenCV camera frame source."""

import logging
import threading

import cv2
import numpy as np

from facegate.models import FrameSource

logger = logging.getLogger(__name__)


class OpenCVCameraSource(FrameSource):
    """Reads BGR frames from a local capture device via ``cv2.VideoCapture``.

    The requested resolution is a hint; drivers may deliver something else, so
    ``resolution`` reports what the device actually negotiated.
    """

    def __init__(self, index: int = 0, width: int = 640, height: int = 480) -> None:
        self._index = index
        self._requested = (width, height)
        self._capture: cv2.VideoCapture | None = None
        self._resolution: tuple[int, int] | None = None
        # Reads run on a worker thread; release() must not overlap one
        self._lock = threading.Lock()

    @property
    def is_open(self) -> bool:
        return self._capture is not None and self._capture.isOpened()

    @property
    def resolution(self) -> tuple[int, int] | None:
        return self._resolution

    def open(self) -> bool:
        """Open the device. Returns False if it could not be opened."""
        if self.is_open:
            return True

        capture = cv2.VideoCapture(self._index)
        if not capture.isOpened():
            logger.error("Could not open camera index %d", self._index)
            capture.release()
            return False

        width, height = self._requested
        capture.set(cv2.CAP_PROP_FRAME_WIDTH, width)
        capture.set(cv2.CAP_PROP_FRAME_HEIGHT, height)
        capture.set(cv2.CAP_PROP_BUFFERSIZE, 1)  # keep latency to one frame

        self._capture = capture
        self._resolution = (
            int(capture.get(cv2.CAP_PROP_FRAME_WIDTH)),
            int(capture.get(cv2.CAP_PROP_FRAME_HEIGHT)),
        )
        logger.info(
            "Camera %d opened at %dx%d (requested %dx%d)",
            self._index,
            *self._resolution,
            width,
            height,
        )
        return True

    def capture_frame(self) -> np.ndarray | None:
        with self._lock:
            if self._capture is None:
                return None
            ok, frame = self._capture.read()
        if not ok or frame is None:
            logger.debug("Camera %d returned no frame", self._index)
            return None
        return frame

    def close(self) -> None:
        """Release the device, waiting for an in-flight read to return."""
        with self._lock:
            if self._capture is None:
                return
            self._capture.release()
            self._capture = None
        logger.info("Camera %d released", self._index)
