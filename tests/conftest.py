"""
Shared pytest fixtures for the facegate test suite.

- override_settings: isolates Settings from the developer's environment
- sharp_frame / blank_frame: synthetic 640×480 BGR frames
- FakeFrameSource / FakeFaceLocator: in-memory collaborators for CaptureGate
"""

import os

import numpy as np
import pytest

from facegate.models import FaceBox, FaceLocator, FrameSource


# ---------------------------------------------------------------------------
# Settings isolation
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def override_settings(monkeypatch):
    """Strip FACEGATE_* env vars so every test starts from defaults."""
    for key in list(os.environ):
        if key.upper().startswith("FACEGATE_"):
            monkeypatch.delenv(key)
    # Clear lru_cache so each test gets fresh Settings from monkeypatched env
    from facegate.config import get_settings

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


# ---------------------------------------------------------------------------
# Synthetic frames
# ---------------------------------------------------------------------------


def make_blocks(h: int = 480, w: int = 640, block: int = 8) -> np.ndarray:
    """High-contrast block checkerboard — strong Laplacian and Sobel response."""
    rows = np.arange(h)[:, None] // block
    cols = np.arange(w)[None, :] // block
    mask = (rows + cols) % 2 == 0
    frame = np.zeros((h, w, 3), dtype=np.uint8)
    frame[mask] = 255
    return frame


def make_solid(h: int = 480, w: int = 640, value: int = 128) -> np.ndarray:
    """Uniform BGR frame — zero response on both sharpness metrics."""
    return np.full((h, w, 3), value, dtype=np.uint8)


@pytest.fixture
def sharp_frame() -> np.ndarray:
    return make_blocks()


@pytest.fixture
def blank_frame() -> np.ndarray:
    return make_solid()


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------


class FakeFrameSource(FrameSource):
    """Returns queued frames in order, then repeats the last one."""

    def __init__(self, frames, resolution: tuple[int, int] | None = (640, 480)):
        self.frames = list(frames)
        self._resolution = resolution
        self.calls = 0
        self.closed = False

    @property
    def resolution(self) -> tuple[int, int] | None:
        return self._resolution

    def capture_frame(self):
        self.calls += 1
        if not self.frames:
            return None
        if len(self.frames) > 1:
            return self.frames.pop(0)
        return self.frames[0]

    def push(self, *frames) -> None:
        self.frames.extend(frames)

    def close(self) -> None:
        self.closed = True


class FakeFaceLocator(FaceLocator):
    """Returns queued box lists per call (last one repeats); may raise."""

    def __init__(self, results=None, ready: bool = True):
        self.results = list(results or [])
        self.is_ready = ready
        self.calls: list[np.ndarray] = []

    @property
    def ready(self) -> bool:
        return self.is_ready

    async def estimate_faces(self, frame: np.ndarray) -> list[FaceBox]:
        self.calls.append(frame)
        if not self.results:
            return []
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


def face(size: float, x: float = 10.0, y: float = 10.0) -> FaceBox:
    return FaceBox(x=x, y=y, width=size, height=size, confidence=0.9)


@pytest.fixture
def make_source():
    return FakeFrameSource


@pytest.fixture
def make_locator():
    return FakeFaceLocator


@pytest.fixture
def make_face():
    return face


@pytest.fixture
def make_frame():
    """Factory: ``make_frame(sharp=True, h=480, w=640)``."""

    def _make(sharp: bool = True, h: int = 480, w: int = 640) -> np.ndarray:
        return make_blocks(h, w) if sharp else make_solid(h, w)

    return _make
