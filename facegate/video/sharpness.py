"""Frame sharpness scoring via Laplacian and Tenengrad variance.

Two complementary blur signals are computed from the same grayscale buffer:

- Laplacian variance: spread of the second-derivative response.  Sharp
  edges produce strong, varied curvature; defocus flattens it.
- Tenengrad variance: spread of the Sobel gradient magnitude
  ``sqrt(gx² + gy²)``.  Tracks edge strength and is less easily inflated by
  pixel noise than the Laplacian.

A frame is blurry if it falls below *either* threshold.
"""

import logging

import cv2
import numpy as np

from facegate.models import SharpnessMetrics

logger = logging.getLogger(__name__)


def to_grayscale(frame: np.ndarray) -> np.ndarray:
    """Return a single-channel view of a BGR, BGRA or already-gray frame."""
    if frame.ndim == 2:
        return frame
    if frame.ndim == 3 and frame.shape[2] == 3:
        return cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)
    if frame.ndim == 3 and frame.shape[2] == 4:
        return cv2.cvtColor(frame, cv2.COLOR_BGRA2GRAY)
    raise ValueError(f"Unsupported frame shape {frame.shape}")


def compute_laplacian_variance(gray: np.ndarray) -> float:
    """Return the variance of the Laplacian response of a grayscale buffer."""
    return float(cv2.Laplacian(gray, cv2.CV_64F).var())


def compute_tenengrad_variance(gray: np.ndarray) -> float:
    """Return the variance of the Sobel gradient magnitude."""
    gx = cv2.Sobel(gray, cv2.CV_64F, 1, 0)
    gy = cv2.Sobel(gray, cv2.CV_64F, 0, 1)
    return float(cv2.magnitude(gx, gy).var())


def compute_metrics(gray: np.ndarray) -> SharpnessMetrics:
    metrics = SharpnessMetrics(
        laplacian_variance=compute_laplacian_variance(gray),
        tenengrad_variance=compute_tenengrad_variance(gray),
    )
    logger.debug(
        "Laplacian variance=%.1f Tenengrad variance=%.1f",
        metrics.laplacian_variance,
        metrics.tenengrad_variance,
    )
    return metrics


def is_blurry(
    gray: np.ndarray,
    laplacian_threshold: float,
    tenengrad_threshold: float,
) -> bool:
    """Return True if either metric falls below its threshold.

    A uniform frame scores zero on both metrics and is blurry for any
    non-negative thresholds.
    """
    return _below(compute_metrics(gray), laplacian_threshold, tenengrad_threshold)


def _below(
    metrics: SharpnessMetrics,
    laplacian_threshold: float,
    tenengrad_threshold: float,
) -> bool:
    if metrics.laplacian_variance < laplacian_threshold:
        logger.debug("Frame failed Laplacian check")
        return True
    if metrics.tenengrad_variance < tenengrad_threshold:
        logger.debug("Frame failed Tenengrad check")
        return True
    # Uniform frames stay blurry even at zero thresholds
    return metrics.laplacian_variance == 0.0 and metrics.tenengrad_variance == 0.0


class SharpnessAnalyzer:
    """Blur verdicts against a fixed pair of thresholds.

    Usage::

        analyzer = SharpnessAnalyzer(laplacian_threshold=100, tenengrad_threshold=1000)
        metrics = analyzer.measure(to_grayscale(frame))
        if analyzer.is_blurry_metrics(metrics):
            ...
    """

    def __init__(self, laplacian_threshold: float, tenengrad_threshold: float) -> None:
        if laplacian_threshold < 0 or tenengrad_threshold < 0:
            raise ValueError("Sharpness thresholds must be non-negative")
        self.laplacian_threshold = laplacian_threshold
        self.tenengrad_threshold = tenengrad_threshold

    def measure(self, gray: np.ndarray) -> SharpnessMetrics:
        return compute_metrics(gray)

    def is_blurry(self, gray: np.ndarray) -> bool:
        return self.is_blurry_metrics(self.measure(gray))

    def is_blurry_metrics(self, metrics: SharpnessMetrics) -> bool:
        return _below(metrics, self.laplacian_threshold, self.tenengrad_threshold)
