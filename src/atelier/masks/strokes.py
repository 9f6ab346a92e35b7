"""Manual masks from brush strokes.

A stroke is a sequence of ``(x, y, radius)`` points. Consecutive points of a
stroke are joined by round-capped segments, so a stroke sampled at pointer
events rasterizes to a continuous brush path.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Sequence

import cv2
import numpy as np


@dataclass(frozen=True)
class StrokePoint:
    """One sampled brush position."""

    x: float
    y: float
    radius: float


def mask_from_strokes(
    shape: tuple[int, ...],
    strokes: Iterable[Sequence[StrokePoint]],
) -> np.ndarray:
    """Rasterize strokes into a boolean mask.

    Args:
        shape: Target raster shape; only (H, W) is used.
        strokes: Iterable of strokes, each a sequence of StrokePoint.

    Returns:
        Boolean mask of size (H, W).
    """
    h, w = int(shape[0]), int(shape[1])
    canvas = np.zeros((h, w), dtype=np.uint8)

    for stroke in strokes:
        points = list(stroke)
        if not points:
            continue
        for point in points:
            cv2.circle(
                canvas,
                (int(round(point.x)), int(round(point.y))),
                max(0, int(round(point.radius))),
                255,
                thickness=-1,
            )
        for start, end in zip(points, points[1:]):
            thickness = max(1, int(round(start.radius + end.radius)))
            cv2.line(
                canvas,
                (int(round(start.x)), int(round(start.y))),
                (int(round(end.x)), int(round(end.y))),
                255,
                thickness=thickness,
                lineType=cv2.LINE_8,
            )

    return canvas > 0
