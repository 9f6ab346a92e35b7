"""Tests for mask primitives and composed edit regions."""

import numpy as np
import pytest

from atelier.core.errors import MaskShapeError
from atelier.masks.algebra import (
    cleanup_margin_px,
    compose_cleanup_mask,
    compose_prop_mask,
    compose_recolor_mask,
    composite,
    dilate,
    hand_radius_px,
    intersect,
    protected_skin_mask,
    subtract,
    union,
)
from atelier.models.domain import SegmentationResult


def _dot(shape=(41, 41), at=(20, 20)) -> np.ndarray:
    mask = np.zeros(shape, dtype=bool)
    mask[at] = True
    return mask


class TestDilate:
    """Test Euclidean dilation."""

    def test_zero_radius_is_identity(self):
        mask = _dot()
        assert dilate(mask, 0) is mask

    def test_radius_is_euclidean(self):
        grown = dilate(_dot(), 5)
        assert grown[20, 25]
        assert grown[25, 20]
        assert not grown[20, 26]
        # corner of the 5x5 box lies ~7.07 px away
        assert not grown[25, 25]

    def test_monotonic_in_radius(self):
        mask = _dot()
        for small, large in [(1, 2), (2, 5), (5, 9)]:
            assert not np.any(dilate(mask, small) & ~dilate(mask, large))

    def test_contains_input(self):
        mask = _dot()
        assert np.all(dilate(mask, 3)[mask])

    def test_empty_mask_stays_empty(self):
        assert not dilate(np.zeros((10, 10), dtype=bool), 4).any()


class TestSetOperations:
    """Test subtract / intersect / union laws."""

    @pytest.fixture
    def masks(self):
        rng = np.random.default_rng(3)
        return rng.random((32, 32)) > 0.5, rng.random((32, 32)) > 0.5

    def test_subtract_disjoint_from_subtrahend(self, masks):
        a, b = masks
        assert not np.any(subtract(a, b) & b)

    def test_subtract_within_minuend(self, masks):
        a, b = masks
        assert not np.any(subtract(a, b) & ~a)

    def test_intersect_commutes(self, masks):
        a, b = masks
        assert np.array_equal(intersect(a, b), intersect(b, a))

    def test_union_covers_both(self, masks):
        a, b = masks
        combined = union(a, b)
        assert np.all(combined[a]) and np.all(combined[b])

    def test_uint8_inputs_are_binarized(self):
        a = np.array([[0, 255], [128, 100]], dtype=np.uint8)
        b = np.zeros((2, 2), dtype=bool)
        assert union(a, b).tolist() == [[False, True], [True, False]]

    def test_shape_mismatch_raises(self):
        with pytest.raises(MaskShapeError):
            subtract(np.zeros((4, 4), bool), np.zeros((4, 5), bool))


class TestComposedMasks:
    """Test the fixed edit-region formulas."""

    def test_recolor_never_touches_skin_or_face(self, segmentation: SegmentationResult):
        mask = compose_recolor_mask(segmentation, None, "all")
        assert mask.any()
        assert not np.any(mask & segmentation.skin)
        assert not np.any(mask & segmentation.hair_face)

    def test_recolor_scoped_to_category(self, segmentation: SegmentationResult):
        top = compose_recolor_mask(segmentation, None, "top")
        assert not np.any(top & segmentation.garments_by_category["bottom"])

    def test_unknown_category_falls_back_to_garment(self, segmentation: SegmentationResult):
        outer = compose_recolor_mask(segmentation, None, "outer")
        assert np.array_equal(outer, compose_recolor_mask(segmentation, None, "all"))

    def test_recolor_excludes_prop(self, segmentation: SegmentationResult):
        prop = np.zeros(segmentation.shape, dtype=bool)
        prop[50:70, 44:60] = True
        mask = compose_recolor_mask(segmentation, prop, "all")
        assert not np.any(mask & prop)

    def test_cleanup_keeps_margin_around_person(self, segmentation: SegmentationResult):
        mask = compose_cleanup_mask(segmentation)
        margin = cleanup_margin_px(segmentation.shape)
        assert not np.any(mask & dilate(segmentation.person, margin))
        assert not np.any(mask & segmentation.person)
        assert mask[0, 0]

    def test_prop_mask_empty_without_props(self, segmentation: SegmentationResult):
        assert not compose_prop_mask(segmentation).any()

    def test_prop_mask_limited_to_hand_vicinity(self, segmentation: SegmentationResult):
        prop = np.zeros(segmentation.shape, dtype=bool)
        prop[62:70, 30:40] = True  # next to the hand
        prop[2:6, 2:6] = True  # far away
        seg = SegmentationResult(
            person=segmentation.person,
            garment=segmentation.garment,
            skin=segmentation.skin,
            hand=segmentation.hand,
            hair_face=segmentation.hair_face,
            prop=prop,
            background=segmentation.background,
        )
        mask = compose_prop_mask(seg)
        assert mask[65, 35]
        assert not mask[3, 3]
        assert not np.any(mask & ~prop)

    def test_radii_have_floors(self):
        assert cleanup_margin_px((100, 100)) == 5
        assert hand_radius_px((100, 100)) == 20
        assert hand_radius_px((2000, 3000)) == 40

    def test_protected_skin_is_union(self, segmentation: SegmentationResult):
        protected = protected_skin_mask(segmentation)
        assert np.all(protected[segmentation.skin])
        assert np.all(protected[segmentation.hair_face])


class TestComposite:
    """Test mask-scoped compositing."""

    def test_outside_mask_unchanged(self):
        base = np.zeros((8, 8, 3), dtype=np.uint8)
        edited = np.full((8, 8, 3), 200, dtype=np.uint8)
        mask = np.zeros((8, 8), dtype=bool)
        mask[2:4, 2:4] = True
        out = composite(base, edited, mask)
        assert np.all(out[mask] == 200)
        assert np.all(out[~mask] == 0)

    def test_resizes_edited_image(self):
        base = np.zeros((8, 8, 3), dtype=np.uint8)
        edited = np.full((16, 16, 3), 90, dtype=np.uint8)
        mask = np.ones((8, 8), dtype=bool)
        assert np.all(composite(base, edited, mask) == 90)

    def test_mask_size_mismatch_raises(self):
        with pytest.raises(MaskShapeError):
            composite(np.zeros((8, 8, 3), np.uint8), np.zeros((8, 8, 3), np.uint8), np.ones((4, 4), bool))
