"""Raster mask algebra used to scope every generative edit.

Primitives (dilate, subtract, intersect) operate on boolean masks aligned to
the source image. The composed formulas are fixed:

- M_cleanup   = background - dilate(person, margin)
- M_propFinal = prop AND dilate(hand, hand_radius)
- M_recolor   = garment_target - skin - M_propFinal - hair_face

Every backend edit is pasted back only inside its mask (see composite), so
the edited region never depends on prompt wording.
"""

from __future__ import annotations

import cv2
import numpy as np

from atelier.core.errors import MaskShapeError
from atelier.models.domain import SegmentationResult

# Formula constants
CLEANUP_MARGIN_MIN_PX = 5
CLEANUP_MARGIN_RATIO = 0.006  # of the shorter image edge
HAND_RADIUS_MIN_PX = 20
HAND_RADIUS_RATIO = 0.02  # of the shorter image edge

SOFT_MASK_THRESHOLD = 127


def as_mask(mask: np.ndarray) -> np.ndarray:
    """Binarize a uint8, float (soft alpha) or boolean raster to a bool mask."""
    array = np.asarray(mask)
    if array.ndim == 3:
        array = array[:, :, 0]
    if array.dtype == np.bool_:
        return array
    if array.dtype == np.uint8:
        return array > SOFT_MASK_THRESHOLD
    return array > 0.5


def empty_like(shape: tuple[int, ...]) -> np.ndarray:
    return np.zeros(shape[:2], dtype=bool)


def _check_same_shape(a: np.ndarray, b: np.ndarray) -> None:
    if a.shape[:2] != b.shape[:2]:
        raise MaskShapeError(f"Mask shapes differ: {a.shape[:2]} vs {b.shape[:2]}")


def dilate(mask: np.ndarray, radius_px: float) -> np.ndarray:
    """Dilate a mask by a Euclidean radius.

    A pixel is foreground iff it lies within ``radius_px`` of a foreground
    pixel of the input. Uses OpenCV's exact L2 distance transform, so the
    result is monotonic in the radius.

    Args:
        mask: Boolean (or binarizable) mask.
        radius_px: Dilation radius in pixels. ``<= 0`` returns the input.

    Returns:
        Dilated boolean mask (the input object itself when radius <= 0).
    """
    if radius_px <= 0:
        return mask

    binary = as_mask(mask)
    if not binary.any():
        return binary.copy()

    # distanceTransform measures distance to the nearest zero pixel, so
    # foreground pixels are encoded as zeros.
    inverted = np.where(binary, 0, 255).astype(np.uint8)
    distance = cv2.distanceTransform(inverted, cv2.DIST_L2, cv2.DIST_MASK_PRECISE)
    return distance <= float(radius_px)


def subtract(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Pixel-wise ``a AND NOT b``."""
    _check_same_shape(a, b)
    return np.logical_and(as_mask(a), np.logical_not(as_mask(b)))


def intersect(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Pixel-wise ``a AND b``."""
    _check_same_shape(a, b)
    return np.logical_and(as_mask(a), as_mask(b))


def union(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Pixel-wise ``a OR b``."""
    _check_same_shape(a, b)
    return np.logical_or(as_mask(a), as_mask(b))


def short_edge(shape: tuple[int, ...]) -> int:
    return int(min(shape[0], shape[1]))


def cleanup_margin_px(shape: tuple[int, ...]) -> int:
    """Person safety margin: max(5px, 0.6% of the shorter edge)."""
    return max(CLEANUP_MARGIN_MIN_PX, round(short_edge(shape) * CLEANUP_MARGIN_RATIO))


def hand_radius_px(shape: tuple[int, ...]) -> int:
    """Hand vicinity radius: max(20px, 2% of the shorter edge)."""
    return max(HAND_RADIUS_MIN_PX, round(short_edge(shape) * HAND_RADIUS_RATIO))


def compose_cleanup_mask(seg: SegmentationResult) -> np.ndarray:
    """M_cleanup = background - dilate(person, margin)."""
    margin = cleanup_margin_px(seg.shape)
    return subtract(seg.background, dilate(seg.person, margin))


def compose_manual_cleanup_mask(seg: SegmentationResult, drawn: np.ndarray) -> np.ndarray:
    """M_cleanup for a painted region = drawn - dilate(person, margin)."""
    margin = cleanup_margin_px(seg.shape)
    return subtract(drawn, dilate(seg.person, margin))


def compose_prop_mask(seg: SegmentationResult) -> np.ndarray:
    """M_propFinal = prop AND dilate(hand, hand_radius).

    Restricts prop removal to objects held in or touching the hands.
    """
    if not seg.prop.any():
        return empty_like(seg.shape)
    radius = hand_radius_px(seg.shape)
    return intersect(seg.prop, dilate(seg.hand, radius))


def compose_recolor_mask(
    seg: SegmentationResult,
    prop_final: np.ndarray | None,
    target_category: str = "all",
) -> np.ndarray:
    """M_recolor = garment_target - skin - M_propFinal - hair_face.

    Args:
        seg: Segmentation of the image being recolored.
        prop_final: Result of compose_prop_mask (None or empty to skip).
        target_category: Garment category to recolor.

    Returns:
        Boolean mask that never overlaps skin or hair/face.
    """
    current = seg.garment_target(target_category)
    current = subtract(current, seg.skin)
    if prop_final is not None and prop_final.any():
        current = subtract(current, prop_final)
    current = subtract(current, seg.hair_face)
    return current


def protected_skin_mask(seg: SegmentationResult) -> np.ndarray:
    """Skin plus hair/face: the regions no garment edit may touch."""
    return union(seg.skin, seg.hair_face)


def composite(base: np.ndarray, edited: np.ndarray, mask: np.ndarray) -> np.ndarray:
    """Paste ``edited`` onto ``base`` only where ``mask`` is set.

    The edited image is resized to the base raster first (backends may return
    a different resolution).

    Args:
        base: BGR image (H, W, 3).
        edited: BGR image of any size.
        mask: Boolean mask (H, W) aligned to ``base``.

    Returns:
        New BGR image equal to ``base`` outside the mask.
    """
    binary = as_mask(mask)
    if binary.shape != base.shape[:2]:
        raise MaskShapeError(
            f"Mask shape {binary.shape} does not match image shape {base.shape[:2]}"
        )
    h, w = base.shape[:2]
    if edited.shape[:2] != (h, w):
        edited = cv2.resize(edited, (w, h), interpolation=cv2.INTER_LINEAR)
    if edited.ndim == 2:
        edited = cv2.cvtColor(edited, cv2.COLOR_GRAY2BGR)

    result = base.copy()
    result[binary] = edited[binary]
    return result


def mask_to_uint8(mask: np.ndarray) -> np.ndarray:
    """Boolean mask -> 0/255 uint8 raster."""
    return np.where(as_mask(mask), 255, 0).astype(np.uint8)


def encode_mask_png(mask: np.ndarray) -> bytes:
    """Encode a mask as a single-channel PNG."""
    ok, buffer = cv2.imencode(".png", mask_to_uint8(mask))
    if not ok:
        raise RuntimeError("Failed to encode mask as PNG")
    return buffer.tobytes()
