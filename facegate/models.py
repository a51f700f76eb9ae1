import base64
import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime

import cv2
import numpy as np


class GateState(str, enum.Enum):
    IDLE = "idle"
    EVALUATING = "evaluating"
    CLEAR = "clear"
    UNCLEAR = "unclear"
    CAPTURED_COOLDOWN = "captured_cooldown"


@dataclass(frozen=True)
class SharpnessMetrics:
    """Blur metrics computed from one grayscale buffer. Both are >= 0."""

    laplacian_variance: float
    tenengrad_variance: float


@dataclass(frozen=True)
class FaceBox:
    """Axis-aligned face rectangle in absolute frame pixels."""

    x: float
    y: float
    width: float
    height: float
    confidence: float | None = None


@dataclass
class Evaluation:
    """Outcome of one finished evaluation cycle."""

    state: GateState
    metrics: SharpnessMetrics | None = None
    # Empty when the locator was skipped (blurry frame)
    boxes: list[FaceBox] = field(default_factory=list)
    evaluated_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class CapturedArtifact:
    """The frame accepted by the gate, handed to the caller at capture time."""

    frame: np.ndarray
    metrics: SharpnessMetrics
    boxes: list[FaceBox]
    captured_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def encode(self, ext: str = ".jpg") -> bytes:
        """Encode the captured frame with OpenCV (``.jpg`` or ``.png``)."""
        ok, buf = cv2.imencode(ext, self.frame)
        if not ok:
            raise ValueError(f"Failed to encode captured frame as {ext}")
        return buf.tobytes()

    def to_base64(self, ext: str = ".jpg") -> str:
        return base64.b64encode(self.encode(ext)).decode("ascii")

    def to_data_uri(self, ext: str = ".jpg") -> str:
        mime = "image/png" if ext == ".png" else "image/jpeg"
        return f"data:{mime};base64,{self.to_base64(ext)}"


@dataclass(frozen=True)
class CaptureRejected:
    """Returned, not raised, when a capture is requested while not clear."""

    reason: str
    state: GateState


class FrameSource(ABC):
    """Supplies successive still frames on demand."""

    @abstractmethod
    def capture_frame(self) -> np.ndarray | None:
        """Return the current frame, or None if no frame is available."""

    @property
    @abstractmethod
    def resolution(self) -> tuple[int, int] | None:
        """(width, height) the source delivers, or None if unknown."""

    def close(self) -> None:
        pass


class FaceLocator(ABC):
    """Finds candidate face regions in a frame."""

    @property
    @abstractmethod
    def ready(self) -> bool: ...

    @abstractmethod
    async def estimate_faces(self, frame: np.ndarray) -> list[FaceBox]: ...

    def close(self) -> None:
        pass
