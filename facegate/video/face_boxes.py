"""Face box acceptance by minimum size."""

from collections.abc import Iterable

from facegate.models import FaceBox


def is_acceptable(boxes: Iterable[FaceBox], min_size: float) -> bool:
    """Return True if any box is at least ``min_size`` wide *and* tall.

    ``min_size`` is in the same pixel units as the frame the boxes came from.
    """
    return any(box.width >= min_size and box.height >= min_size for box in boxes)


def largest_box(boxes: Iterable[FaceBox]) -> FaceBox | None:
    return max(boxes, key=lambda box: box.width * box.height, default=None)
