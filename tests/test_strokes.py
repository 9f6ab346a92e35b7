"""Tests for stroke rasterization."""

import numpy as np

from atelier.masks.strokes import StrokePoint, mask_from_strokes


class TestMaskFromStrokes:
    """Test brush stroke masks."""

    def test_single_point_is_disc(self):
        mask = mask_from_strokes((50, 50), [[StrokePoint(25, 25, 5)]])
        assert mask.shape == (50, 50)
        assert mask[25, 25] and mask[25, 30]
        assert not mask[25, 32]

    def test_segments_are_continuous(self):
        stroke = [StrokePoint(5, 10, 2), StrokePoint(45, 10, 2)]
        mask = mask_from_strokes((20, 50), [stroke])
        assert np.all(mask[10, 5:46])

    def test_empty_strokes_ignored(self):
        mask = mask_from_strokes((10, 10), [[], []])
        assert mask.dtype == bool
        assert not mask.any()

    def test_uses_only_height_and_width(self):
        mask = mask_from_strokes((10, 12, 3), [[StrokePoint(1, 1, 1)]])
        assert mask.shape == (10, 12)
