"""Mask algebra for scoping generative edits.

- masks/algebra.py - primitives and composed edit-region formulas
- masks/strokes.py - manual masks from brush strokes
"""

from atelier.masks.algebra import (
    as_mask,
    compose_cleanup_mask,
    compose_manual_cleanup_mask,
    compose_prop_mask,
    compose_recolor_mask,
    composite,
    dilate,
    intersect,
    subtract,
    union,
)
from atelier.masks.strokes import StrokePoint, mask_from_strokes

__all__ = [
    "StrokePoint",
    "as_mask",
    "compose_cleanup_mask",
    "compose_manual_cleanup_mask",
    "compose_prop_mask",
    "compose_recolor_mask",
    "composite",
    "dilate",
    "intersect",
    "mask_from_strokes",
    "subtract",
    "union",
]
