"""Edit quality metrics using opencv/numpy.

Compares the image entering the recolor stage with the final image:
- background_shift: % of background pixels whose value changed visibly
- skin_delta_e: mean CIE76 color difference over skin pixels
- garment_ssim: mean structural similarity of luminance over the recolor mask

Note: cv2/numpy are used for deterministic array transforms (color space
conversion, gaussian filtering). Image IO stays in adapter/media/.
"""

from __future__ import annotations

from dataclasses import dataclass

import cv2
import numpy as np

from atelier.masks.algebra import as_mask

# Thresholds for metric computation
PIXEL_CHANGE_EPSILON = 10  # Max channel difference that still counts as unchanged
SSIM_WINDOW_SIGMA = 1.5
SSIM_C1 = (0.01 * 255) ** 2
SSIM_C2 = (0.03 * 255) ** 2


@dataclass
class EditMetrics:
    """Validation metrics of one edit.

    Attributes:
        background_shift: Percent [0, 100] of changed background pixels.
        skin_delta_e: Mean CIE76 delta E over skin (0 when no skin).
        garment_ssim: Mean luminance SSIM over the edit mask (1.0 when empty).
    """

    background_shift: float
    skin_delta_e: float
    garment_ssim: float


def _align(before: np.ndarray, after: np.ndarray) -> np.ndarray:
    h, w = before.shape[:2]
    if after.shape[:2] != (h, w):
        after = cv2.resize(after, (w, h), interpolation=cv2.INTER_LINEAR)
    return after


def background_shift_percent(before: np.ndarray, after: np.ndarray, background: np.ndarray) -> float:
    """Percent of background pixels with any channel changed by more than epsilon."""
    region = as_mask(background)
    total = int(region.sum())
    if total == 0:
        return 0.0
    after = _align(before, after)
    diff = cv2.absdiff(before, after)
    if diff.ndim == 3:
        diff = diff.max(axis=2)
    changed = int(np.logical_and(diff > PIXEL_CHANGE_EPSILON, region).sum())
    return 100.0 * changed / total


def mean_delta_e(before: np.ndarray, after: np.ndarray, region: np.ndarray) -> float:
    """Mean CIE76 delta E between two BGR images inside ``region``."""
    mask = as_mask(region)
    if not mask.any():
        return 0.0
    after = _align(before, after)
    lab_before = cv2.cvtColor(before.astype(np.float32) / 255.0, cv2.COLOR_BGR2Lab)
    lab_after = cv2.cvtColor(after.astype(np.float32) / 255.0, cv2.COLOR_BGR2Lab)
    delta = np.sqrt(((lab_before - lab_after) ** 2).sum(axis=2))
    return float(delta[mask].mean())


def ssim_map(before: np.ndarray, after: np.ndarray) -> np.ndarray:
    """Per-pixel SSIM of luminance with an 11x11 gaussian window."""
    after = _align(before, after)
    x = cv2.cvtColor(before, cv2.COLOR_BGR2GRAY).astype(np.float64)
    y = cv2.cvtColor(after, cv2.COLOR_BGR2GRAY).astype(np.float64)

    def blur(img: np.ndarray) -> np.ndarray:
        return cv2.GaussianBlur(img, (11, 11), SSIM_WINDOW_SIGMA)

    mu_x, mu_y = blur(x), blur(y)
    sigma_x = blur(x * x) - mu_x * mu_x
    sigma_y = blur(y * y) - mu_y * mu_y
    sigma_xy = blur(x * y) - mu_x * mu_y

    numerator = (2 * mu_x * mu_y + SSIM_C1) * (2 * sigma_xy + SSIM_C2)
    denominator = (mu_x**2 + mu_y**2 + SSIM_C1) * (sigma_x + sigma_y + SSIM_C2)
    return numerator / denominator


def mean_ssim(before: np.ndarray, after: np.ndarray, region: np.ndarray) -> float:
    """Mean SSIM inside ``region`` (1.0 when the region is empty)."""
    mask = as_mask(region)
    if not mask.any():
        return 1.0
    return float(ssim_map(before, after)[mask].mean())


def compute_edit_metrics(
    before: np.ndarray,
    after: np.ndarray,
    background: np.ndarray,
    skin: np.ndarray,
    edit_region: np.ndarray,
) -> EditMetrics:
    """Compute all validation metrics for one edit.

    Args:
        before: BGR image entering the edit.
        after: BGR image after compositing.
        background: Background mask of ``before``.
        skin: Skin mask of ``before``.
        edit_region: Mask the edit was composited into.

    Returns:
        EditMetrics.
    """
    return EditMetrics(
        background_shift=background_shift_percent(before, after, background),
        skin_delta_e=mean_delta_e(before, after, skin),
        garment_ssim=mean_ssim(before, after, edit_region),
    )
