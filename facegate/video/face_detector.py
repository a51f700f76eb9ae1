"""Face location using MediaPipe Face Detection.

The model call is blocking and CPU-bound, so ``estimate_faces`` runs it in a
worker thread and the event loop keeps serving other work while a frame is
being analysed.
"""

import asyncio
import logging
import threading

import cv2
import mediapipe as mp
import numpy as np

from facegate.models import FaceBox, FaceLocator

logger = logging.getLogger(__name__)

_NO_FACE_WARN_STREAK = 30  # warn after this many consecutive faceless frames


class BackendNotReady(Exception):
    """Raised when the face model is queried before it has been loaded."""


class MediaPipeFaceLocator(FaceLocator):
    """Returns absolute-pixel face boxes for a BGR frame.

    ``model_selection=0`` is the short-range model (faces within ~2m),
    which suits a user standing in front of a capture camera.

    Usage::

        locator = MediaPipeFaceLocator()
        locator.load()
        boxes = await locator.estimate_faces(frame)
        locator.close()
    """

    def __init__(
        self,
        model_selection: int = 0,
        min_detection_confidence: float = 0.5,
    ) -> None:
        self._model_selection = model_selection
        self._min_detection_confidence = min_detection_confidence
        self._detector = None
        # Guards the detector across a model call and close()
        self._lock = threading.Lock()
        self._no_face_streak: int = 0

    @property
    def ready(self) -> bool:
        return self._detector is not None

    def load(self) -> None:
        """Create the MediaPipe detector. Safe to call more than once."""
        with self._lock:
            if self._detector is not None:
                return
            self._detector = mp.solutions.face_detection.FaceDetection(
                model_selection=self._model_selection,
                min_detection_confidence=self._min_detection_confidence,
            )
        logger.info(
            "MediaPipe face detector loaded (model_selection=%d, confidence=%.2f)",
            self._model_selection,
            self._min_detection_confidence,
        )

    async def estimate_faces(self, frame: np.ndarray) -> list[FaceBox]:
        """Detect faces in a BGR frame.

        Raises:
            BackendNotReady: If ``load()`` has not been called.
        """
        if self._detector is None:
            raise BackendNotReady("MediaPipe face detector is not loaded")
        return await asyncio.to_thread(self._detect, frame)

    def _detect(self, frame: np.ndarray) -> list[FaceBox]:
        h, w = frame.shape[:2]
        rgb = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
        with self._lock:
            # close() may have run while this call waited for a worker thread
            if self._detector is None:
                raise BackendNotReady("MediaPipe face detector was closed")
            results = self._detector.process(rgb)

        if not results.detections:
            self._no_face_streak += 1
            if self._no_face_streak == _NO_FACE_WARN_STREAK:
                logger.warning(
                    "No face detected for %d consecutive frames",
                    self._no_face_streak,
                )
            return []

        self._no_face_streak = 0
        boxes = []
        for detection in results.detections:
            bbox = detection.location_data.relative_bounding_box
            # Relative bbox may spill past the frame edge; clip to the frame
            x1 = max(0.0, bbox.xmin * w)
            y1 = max(0.0, bbox.ymin * h)
            x2 = min(float(w), (bbox.xmin + bbox.width) * w)
            y2 = min(float(h), (bbox.ymin + bbox.height) * h)
            if x2 <= x1 or y2 <= y1:
                continue
            score = detection.score[0] if detection.score else None
            boxes.append(
                FaceBox(
                    x=x1,
                    y=y1,
                    width=x2 - x1,
                    height=y2 - y1,
                    confidence=float(score) if score is not None else None,
                )
            )
        return boxes

    def close(self) -> None:
        """Release MediaPipe resources.

        Blocks until an in-flight model call has returned.
        """
        with self._lock:
            if self._detector is not None:
                self._detector.close()
                self._detector = None
