"""Capture gate — sharpness check → face lookup → capture state machine.

One ``CaptureGate`` owns a frame source and a face locator and drives a
cooperative tick loop on the running event loop.  Each tick performs at most
one evaluation cycle:

1. Poll collaborator readiness; skip the tick if either is not ready.
2. Grab a frame; skip the tick if none is available.
3. Score sharpness.  Blurry frames are ``UNCLEAR`` without a face lookup.
4. Await the face locator and apply the minimum box size rule.

States::

    IDLE ──► EVALUATING ──► CLEAR ──capture──► CAPTURED_COOLDOWN ──dwell──► IDLE
                  │  ▲          │
                  ▼  └──────────┘
               UNCLEAR ─────────┘ (re-evaluated every tick)

In ``manual`` mode a capture happens only through ``request_capture()``; in
``auto`` mode the tick after a ``CLEAR`` decision captures by itself.  The
captured artifact is always the frame that was evaluated as clear.
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable

import numpy as np

from facegate.config import Settings
from facegate.models import (
    CapturedArtifact,
    CaptureRejected,
    Evaluation,
    FaceBox,
    FaceLocator,
    FrameSource,
    GateState,
    SharpnessMetrics,
)
from facegate.video.face_boxes import is_acceptable, largest_box
from facegate.video.face_detector import BackendNotReady
from facegate.video.sharpness import SharpnessAnalyzer, to_grayscale

logger = logging.getLogger(__name__)

CaptureCallback = Callable[[CapturedArtifact], Awaitable[None] | None]
StateCallback = Callable[[GateState, GateState], None]
# Frame, metrics and boxes of the cycle that produced CLEAR
_Candidate = tuple[np.ndarray, SharpnessMetrics, list[FaceBox]]


class InvalidFrameDimensions(ValueError):
    """Raised when frames do not match the configured resolution."""


class CaptureGate:
    """Frame-quality gate for automatic or user-triggered photo capture.

    Usage::

        async with CaptureGate(settings, camera, locator, on_capture=save) as gate:
            ...
            result = await gate.request_capture()   # manual mode

    ``tick()`` may also be driven directly, without ``start()``, when the
    caller owns the scheduling.
    """

    def __init__(
        self,
        settings: Settings,
        frame_source: FrameSource,
        face_locator: FaceLocator,
        backend_ready: Callable[[], bool] | None = None,
        on_capture: CaptureCallback | None = None,
        on_state_change: StateCallback | None = None,
    ) -> None:
        self._settings = settings
        self._source = frame_source
        self._locator = face_locator
        self._backend_ready_fn = backend_ready or (lambda: True)
        self._on_capture = on_capture
        self._on_state_change = on_state_change

        self._analyzer = SharpnessAnalyzer(
            settings.laplacian_threshold, settings.tenengrad_threshold
        )
        self._min_box_size = settings.face_box_min_px

        self._state = GateState.IDLE
        self._locator_ready = False
        self._backend_ready = False
        self._dimensions_checked = False
        self._candidate: _Candidate | None = None
        self._last_evaluation: Evaluation | None = None
        self._last_capture: CapturedArtifact | None = None

        self._tick_lock = asyncio.Lock()
        self._run_task: asyncio.Task | None = None
        self._cooldown_task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Read-only view
    # ------------------------------------------------------------------

    @property
    def state(self) -> GateState:
        return self._state

    @property
    def is_clear(self) -> bool:
        return self._state is GateState.CLEAR

    @property
    def mode(self) -> str:
        return self._settings.mode

    @property
    def last_evaluation(self) -> Evaluation | None:
        return self._last_evaluation

    @property
    def last_capture(self) -> CapturedArtifact | None:
        return self._last_capture

    @property
    def locator_ready(self) -> bool:
        return self._locator_ready

    @property
    def backend_ready(self) -> bool:
        return self._backend_ready

    @property
    def running(self) -> bool:
        return self._run_task is not None and not self._run_task.done()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> "CaptureGate":
        await self.start()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    async def start(self) -> None:
        """Validate wiring and begin the tick loop.

        Raises:
            InvalidFrameDimensions: If the source reports a resolution other
                than the configured ``frame_width`` × ``frame_height``.
        """
        if self._run_task is not None:
            return

        resolution = self._source.resolution
        if resolution is not None:
            self._check_resolution(resolution)
            self._dimensions_checked = True

        self._poll_readiness()
        self._run_task = asyncio.create_task(self.run(), name="capture-gate")
        self._run_task.add_done_callback(_log_loop_exit)
        logger.info(
            "CaptureGate started (mode=%s, min_box=%dpx, cooldown=%dms)",
            self._settings.mode,
            self._min_box_size,
            self._settings.cooldown_duration_ms,
        )

    async def run(self) -> None:
        """Tick forever; each tick completes before the next is scheduled."""
        interval = self._settings.tick_interval_ms / 1000
        while True:
            await self.tick()
            await asyncio.sleep(interval)

    async def close(self) -> None:
        """Stop the loop and cancel a pending cooldown."""
        tasks = [t for t in (self._run_task, self._cooldown_task) if t is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._run_task = None
        self._cooldown_task = None
        self._candidate = None

        if self._state is not GateState.IDLE:
            self._transition(GateState.IDLE)
        logger.info("CaptureGate closed")

    # ------------------------------------------------------------------
    # Evaluation cycle
    # ------------------------------------------------------------------

    async def tick(self) -> GateState:
        """Run at most one evaluation cycle and return the resulting state."""
        async with self._tick_lock:
            if self._state is GateState.CAPTURED_COOLDOWN:
                return self._state

            if self._settings.mode == "auto" and self._state is GateState.CLEAR:
                artifact = self._capture()
                await self._notify_capture(artifact)
                return self._state

            self._poll_readiness()
            if not (self._locator_ready and self._backend_ready):
                logger.debug(
                    "Collaborators not ready (locator=%s, backend=%s) — skipping tick",
                    self._locator_ready,
                    self._backend_ready,
                )
                if self._state is GateState.CLEAR:
                    self._transition(GateState.UNCLEAR)
                return self._state

            # Device reads block for up to a frame period
            frame = await asyncio.to_thread(self._source.capture_frame)
            if frame is None:
                logger.debug("No frame available — skipping tick")
                return self._state

            if not self._dimensions_checked:
                h, w = frame.shape[:2]
                self._check_resolution((w, h))
                self._dimensions_checked = True

            await self._evaluate(frame)
            return self._state

    async def _evaluate(self, frame: np.ndarray) -> None:
        self._transition(GateState.EVALUATING)
        try:
            metrics = self._analyzer.measure(to_grayscale(frame))
            if self._analyzer.is_blurry_metrics(metrics):
                self._finish(Evaluation(GateState.UNCLEAR, metrics))
                return

            boxes = list(await self._locator.estimate_faces(frame))
            if is_acceptable(boxes, self._min_box_size):
                self._candidate = (frame, metrics, boxes)
                self._finish(Evaluation(GateState.CLEAR, metrics, boxes))
            else:
                largest = largest_box(boxes)
                logger.debug(
                    "No face box >= %dpx (largest=%s)",
                    self._min_box_size,
                    f"{largest.width:.0f}x{largest.height:.0f}" if largest else "none",
                )
                self._finish(Evaluation(GateState.UNCLEAR, metrics, boxes))
        except BackendNotReady as exc:
            logger.debug("Face locator not ready: %s", exc)
            self._locator_ready = False
            self._finish(Evaluation(GateState.UNCLEAR))
        except asyncio.CancelledError:
            self._finish(Evaluation(GateState.UNCLEAR))
            raise
        except Exception:
            logger.exception("Evaluation cycle failed")
            self._finish(Evaluation(GateState.UNCLEAR))

    def _finish(self, evaluation: Evaluation) -> None:
        self._last_evaluation = evaluation
        self._transition(evaluation.state)

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    async def request_capture(self) -> CapturedArtifact | CaptureRejected:
        """Capture the last clear frame, or report why not.

        Waits for an in-flight evaluation to finish so the decision is made
        on a committed state.  A rejection leaves the state untouched.
        """
        async with self._tick_lock:
            if self._state is not GateState.CLEAR:
                rejected = CaptureRejected(
                    reason="No clear face detected", state=self._state
                )
                logger.info(
                    "Capture rejected: %s (state=%s)",
                    rejected.reason,
                    self._state.value,
                )
                return rejected

            artifact = self._capture()
            await self._notify_capture(artifact)
            return artifact

    def _capture(self) -> CapturedArtifact:
        assert self._candidate is not None, "CLEAR state without a candidate frame"
        frame, metrics, boxes = self._candidate
        artifact = CapturedArtifact(frame=frame, metrics=metrics, boxes=list(boxes))

        self._transition(GateState.CAPTURED_COOLDOWN)
        self._last_capture = artifact
        self._cooldown_task = asyncio.create_task(
            self._cooldown(), name="capture-cooldown"
        )
        logger.info(
            "Frame captured (laplacian=%.1f, tenengrad=%.1f, faces=%d)",
            metrics.laplacian_variance,
            metrics.tenengrad_variance,
            len(boxes),
        )
        return artifact

    async def _cooldown(self) -> None:
        await asyncio.sleep(self._settings.cooldown_duration_ms / 1000)
        self._cooldown_task = None
        if self._state is GateState.CAPTURED_COOLDOWN:
            self._transition(GateState.IDLE)
            logger.debug("Cooldown elapsed — capture re-armed")

    async def _notify_capture(self, artifact: CapturedArtifact) -> None:
        if self._on_capture is None:
            return
        try:
            result = self._on_capture(artifact)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("on_capture callback failed")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _transition(self, new: GateState) -> None:
        old = self._state
        if old is new:
            return
        if new is GateState.CAPTURED_COOLDOWN and old is not GateState.CLEAR:
            raise RuntimeError(f"Cannot capture from state {old.value}")
        if new is not GateState.CLEAR:
            self._candidate = None

        self._state = new
        logger.debug("Gate state %s → %s", old.value, new.value)
        if self._on_state_change is not None:
            try:
                self._on_state_change(old, new)
            except Exception:
                logger.exception("on_state_change callback failed")

    def _poll_readiness(self) -> None:
        locator_ready = bool(self._locator.ready)
        backend_ready = bool(self._backend_ready_fn())
        if locator_ready and not self._locator_ready:
            logger.info("Face locator ready")
        if backend_ready and not self._backend_ready:
            logger.info("Image-processing backend ready")
        self._locator_ready = locator_ready
        self._backend_ready = backend_ready

    def _check_resolution(self, resolution: tuple[int, int]) -> None:
        if tuple(resolution) != self._settings.resolution:
            raise InvalidFrameDimensions(
                f"Frame source delivers {resolution[0]}x{resolution[1]}, "
                f"configured for {self._settings.frame_width}x"
                f"{self._settings.frame_height}"
            )


def _log_loop_exit(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Capture loop stopped: %s", exc)
