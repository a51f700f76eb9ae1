import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse

from facegate.config import get_settings
from facegate.gate import CaptureGate
from facegate.models import CapturedArtifact, CaptureRejected, Evaluation
from facegate.video.camera import OpenCVCameraSource
from facegate.video.face_detector import MediaPipeFaceLocator

logger = logging.getLogger(__name__)

# Module-level singletons — initialised in lifespan, None before startup.
_gate: CaptureGate | None = None
_locator: MediaPipeFaceLocator | None = None


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    global _gate, _locator

    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO)
    )

    camera = OpenCVCameraSource(
        settings.camera_index, settings.frame_width, settings.frame_height
    )
    camera.open()
    _locator = MediaPipeFaceLocator(
        model_selection=settings.detector_model_selection,
        min_detection_confidence=settings.detection_confidence,
    )
    _locator.load()

    _gate = CaptureGate(settings, camera, _locator)
    await _gate.start()
    logger.info("CaptureGate ready (mode=%s)", settings.mode)

    try:
        yield
    finally:
        await _gate.close()
        # A cancelled lookup or read may still be running on a worker thread;
        # both close() calls block until it returns.
        await asyncio.to_thread(_locator.close)
        await asyncio.to_thread(camera.close)
        _gate = None
        _locator = None


app = FastAPI(
    title="facegate",
    description=(
        "Gates photo capture from a live camera: a frame is accepted only when "
        "it is sharp and contains a sufficiently large face."
    ),
    version="0.1.0",
    lifespan=lifespan,
)


def _evaluation_view(evaluation: Evaluation | None) -> dict:
    if evaluation is None:
        return {"metrics": None, "boxes": []}
    metrics = evaluation.metrics
    return {
        "metrics": (
            {
                "laplacian_variance": metrics.laplacian_variance,
                "tenengrad_variance": metrics.tenengrad_variance,
            }
            if metrics is not None
            else None
        ),
        "boxes": [
            {
                "x": box.x,
                "y": box.y,
                "width": box.width,
                "height": box.height,
                "confidence": box.confidence,
            }
            for box in evaluation.boxes
        ],
    }


def _artifact_view(artifact: CapturedArtifact) -> dict:
    return {
        "captured_at": artifact.captured_at.isoformat(),
        "image": artifact.to_data_uri(".jpg"),
        "faces": len(artifact.boxes),
    }


def _require_gate() -> CaptureGate:
    if _gate is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    return _gate


@app.get("/state")
async def get_state() -> dict:
    gate = _require_gate()
    return {
        "state": gate.state.value,
        "clear": gate.is_clear,
        "mode": gate.mode,
        **_evaluation_view(gate.last_evaluation),
    }


@app.post("/capture")
async def capture() -> JSONResponse:
    """Capture the current frame if the gate reports it clear."""
    gate = _require_gate()
    result = await gate.request_capture()
    if isinstance(result, CaptureRejected):
        return JSONResponse(
            {"captured": False, "reason": result.reason, "state": result.state.value},
            status_code=409,
        )
    return JSONResponse({"captured": True, **_artifact_view(result)})


@app.get("/captures/latest")
async def latest_capture() -> dict:
    artifact = _require_gate().last_capture
    if artifact is None:
        raise HTTPException(status_code=404, detail="No capture yet")
    return _artifact_view(artifact)


@app.get("/health")
async def health() -> dict:
    # The loop stops for good on a fatal wiring error (e.g. frame size)
    running = _gate is not None and _gate.running
    return {
        "status": "ok" if running else "degraded",
        "version": app.version,
        "running": running,
        "state": _gate.state.value if _gate else None,
        "locator_ready": _gate.locator_ready if _gate else False,
    }
