"""Tests for the staged transform pipeline."""

import asyncio

import cv2
import numpy as np
import pytest
from pydantic import ValidationError

from atelier.adapter.media.image_codec import encode_image
from atelier.adapter.vision.segmentation import PrecomputedSegmenter, Segmenter
from atelier.core.cancellation import CancelToken
from atelier.core.errors import OperationCancelledError, SegmentationError
from atelier.db import repo
from atelier.db.session import session_scope
from atelier.masks.algebra import compose_recolor_mask
from atelier.models.domain import SegmentationResult
from atelier.pipeline.runner import (
    CLEANUP_FALLBACK_WARNING,
    POSE_FALLBACK_WARNING,
    TransformPipeline,
)
from atelier.providers.adapter import GenerationAdapter
from atelier.providers.errors import BackendError
from tests.conftest import ScriptedBackend, make_request, make_source_image


def _run(pipeline, request, **kwargs):
    return asyncio.run(pipeline.run(request, **kwargs))


def _fail_on(marker: str, message: str = "400 INVALID_ARGUMENT"):
    def fail_when(request):
        return BackendError(message) if request.instruction.startswith(marker) else None

    return fail_when


def _payload():
    return encode_image(make_source_image(), "png")


class FailingSegmenter(Segmenter):
    async def segment(self, image, cancel=None):
        raise SegmentationError("service down")


class TestRecolorEndToEnd:
    """Test a plain recolor run over the mock backend."""

    def test_success_with_debug_masks(self, pipeline):
        request = make_request(
            output_options={"return_debug_masks": True, "return_stage_outputs": True}
        )

        result = _run(pipeline, request)

        assert result.status == "success"
        assert result.error is None
        data = result.data
        assert data.final_image_url.startswith("/artifacts/")
        assert data.debug_masks.mask_final_recolor is not None
        assert data.debug_masks.mask_skin_protected is not None
        assert data.stage_outputs.preview_segmentation is not None
        assert data.stage_outputs.preview_recolor is not None
        assert data.metrics.background_shift == 0.0
        assert data.metrics.skin_delta_e == pytest.approx(0.0)
        key, seed = pipeline.identify(request)
        assert data.idempotency_key == key
        assert data.seed == seed

    def test_edit_confined_to_recolor_mask(self, pipeline, source_image, segmentation, store):
        result = _run(pipeline, make_request())

        path = store.root / result.data.final_image_url.removeprefix("/artifacts/")
        final = cv2.imread(str(path))
        mask = compose_recolor_mask(segmentation, None, "top")
        assert np.array_equal(final[~mask], source_image[~mask])
        assert not np.array_equal(final[mask], source_image[mask])

    def test_debug_masks_omitted_by_default(self, pipeline):
        result = _run(pipeline, make_request())
        assert result.data.debug_masks is None
        assert result.data.stage_outputs is None

    def test_reference_image_appended_for_image_color_source(self, pipeline, backend, source_payload):
        pipeline.resolver.resolve = lambda reference: source_payload
        config = {
            "validation_mode": "relaxed",
            "recolor": {
                "target_category": "all",
                "color_source": {"type": "image", "value": "swatch.png"},
            },
        }

        result = _run(pipeline, make_request(pipeline_config=config))

        assert result.status == "success"
        recolor_call = backend.calls[-1]
        assert len(recolor_call.images) == 3
        assert "reference image" in recolor_call.instruction


class TestOptionalStages:
    """Test rollback of cleanup and pose."""

    def test_pose_failure_rolls_back(self, segmentation, store):
        backend = ScriptedBackend(fail_when=_fail_on("POSE CHANGE"))
        pipeline = TransformPipeline(
            GenerationAdapter(backend, backoff_s=0), PrecomputedSegmenter(segmentation), store
        )
        request = make_request(
            pipeline_config={
                "validation_mode": "relaxed",
                "pose_change": {"enabled": True, "preset": "micro_walk"},
                "recolor": {"target_category": "top", "color_source": {"type": "hex", "value": "#AA2233"}},
            }
        )

        result = asyncio.run(pipeline.run(request, source=_payload()))

        assert result.status == "partial_success"
        assert POSE_FALLBACK_WARNING in result.data.warnings
        assert result.data.final_image_url

    def test_cleanup_failure_rolls_back(self, segmentation, store):
        backend = ScriptedBackend(fail_when=_fail_on("INPAINT TASK"))
        pipeline = TransformPipeline(
            GenerationAdapter(backend, backoff_s=0), PrecomputedSegmenter(segmentation), store
        )
        request = make_request(
            pipeline_config={
                "validation_mode": "relaxed",
                "cleanup": {"enabled": True, "targets": ["clutter"]},
                "recolor": {"target_category": "top", "color_source": {"type": "hex", "value": "#AA2233"}},
            }
        )

        result = asyncio.run(pipeline.run(request, source=_payload()))

        assert result.status == "partial_success"
        assert CLEANUP_FALLBACK_WARNING in result.data.warnings

    def test_manual_cleanup_uses_painted_strokes(self, pipeline, backend, store):
        strokes = [
            [{"x": 6, "y": 10, "radius": 3}, {"x": 18, "y": 10, "radius": 3}],
            [{"x": 10, "y": 50, "radius": 2}, {"x": 118, "y": 50, "radius": 2}],
        ]
        request = make_request(
            pipeline_config={
                "validation_mode": "relaxed",
                "cleanup": {"enabled": True, "mode": "manual", "strokes": strokes},
                "recolor": {"target_category": "top", "color_source": {"type": "hex", "value": "#AA2233"}},
            },
            output_options={"return_debug_masks": True},
        )

        result = _run(pipeline, request)

        assert result.status == "success"
        assert backend.calls[0].instruction.startswith("INPAINT TASK")
        path = store.root / result.data.debug_masks.mask_cleanup.removeprefix("/artifacts/")
        mask = cv2.imread(str(path), cv2.IMREAD_GRAYSCALE) > 0
        assert mask[10, 12]
        assert mask[50, 20] and mask[50, 110]
        assert not mask[50, 60]  # subject stays protected
        assert not mask[80, 120]  # unpainted background is left alone

    def test_manual_cleanup_requires_strokes(self):
        with pytest.raises(ValidationError):
            make_request(
                pipeline_config={
                    "cleanup": {"enabled": True, "mode": "manual"},
                    "recolor": {"target_category": "top", "color_source": {"type": "hex", "value": "#AA2233"}},
                }
            )

    def test_pose_success_resegments(self, segmentation, store):
        segmenter = PrecomputedSegmenter(segmentation)
        pipeline = TransformPipeline(GenerationAdapter(ScriptedBackend(), backoff_s=0), segmenter, store)
        request = make_request(
            pipeline_config={
                "validation_mode": "relaxed",
                "pose_change": {"enabled": True},
                "recolor": {"target_category": "top", "color_source": {"type": "hex", "value": "#AA2233"}},
            }
        )

        result = asyncio.run(pipeline.run(request, source=_payload()))

        assert result.status == "success"
        assert segmenter.calls == 2


class TestFatalStages:
    """Test mandatory stage failures."""

    def test_recolor_failure_fails_but_keeps_key_and_seed(self, segmentation, store):
        backend = ScriptedBackend(fail_when=_fail_on("RECOLOR"))
        pipeline = TransformPipeline(
            GenerationAdapter(backend, backoff_s=0), PrecomputedSegmenter(segmentation), store
        )
        request = make_request()

        result = asyncio.run(pipeline.run(request, source=_payload()))

        key, seed = pipeline.identify(request)
        assert result.status == "fail"
        assert result.error
        assert "FATAL_ERROR" in result.data.warnings
        assert result.data.final_image_url == ""
        assert result.data.idempotency_key == key
        assert result.data.seed == seed

    def test_segmentation_failure_fails(self, store):
        backend = ScriptedBackend()
        pipeline = TransformPipeline(GenerationAdapter(backend, backoff_s=0), FailingSegmenter(), store)

        result = asyncio.run(pipeline.run(make_request(), source=_payload()))

        assert result.status == "fail"
        assert "service down" in result.error
        assert backend.calls == []

    def test_empty_recolor_mask_fails_without_backend_call(self, segmentation, store):
        empty = np.zeros(segmentation.shape, dtype=bool)
        seg = SegmentationResult(
            person=segmentation.person,
            garment=empty,
            skin=segmentation.skin,
            hand=segmentation.hand,
            hair_face=segmentation.hair_face,
            prop=segmentation.prop,
            background=segmentation.background,
        )
        backend = ScriptedBackend()
        pipeline = TransformPipeline(GenerationAdapter(backend, backoff_s=0), PrecomputedSegmenter(seg), store)

        result = asyncio.run(pipeline.run(make_request(), source=_payload()))

        assert result.status == "fail"
        assert "empty" in result.error
        assert backend.calls == []

    def test_cancellation_propagates(self, pipeline):
        async def scenario():
            token = CancelToken()
            token.cancel()
            await pipeline.run(make_request(), cancel=token)

        with pytest.raises(OperationCancelledError):
            asyncio.run(scenario())


class TestResultCache:
    """Test idempotent replay via the result store."""

    def test_second_run_served_from_cache(self, pipeline, backend, session_factory):
        request = make_request()
        first = _run(pipeline, request)
        calls_after_first = len(backend.calls)

        second = _run(pipeline, request)

        assert second == first
        assert len(backend.calls) == calls_after_first
        with session_scope(session_factory) as session:
            stored = repo.get_run(session, first.data.idempotency_key)
            stage_calls = repo.get_stage_calls(session, first.data.idempotency_key)
        assert stored.status == "success"
        assert [c.stage for c in stage_calls] == ["recolor"]

    def test_different_output_options_are_rendered_again(self, pipeline, backend):
        first = _run(pipeline, make_request())
        calls_after_first = len(backend.calls)

        second = _run(
            pipeline,
            make_request(output_options={"return_debug_masks": True, "format": "webp"}),
        )

        assert len(backend.calls) > calls_after_first
        assert second.data.idempotency_key == first.data.idempotency_key
        assert second.data.seed == first.data.seed
        assert second.data.final_image_url.endswith(".webp")
        assert second.data.debug_masks is not None
        assert second.data.debug_masks.mask_final_recolor

        third = _run(
            pipeline,
            make_request(output_options={"return_debug_masks": True, "format": "webp"}),
        )
        assert third == second

    def test_failures_are_not_served(self, segmentation, store, session_factory):
        backend = ScriptedBackend(fail_when=_fail_on("RECOLOR"))
        pipeline = TransformPipeline(
            GenerationAdapter(backend, backoff_s=0),
            PrecomputedSegmenter(segmentation),
            store,
            session_factory=session_factory,
        )
        request = make_request()

        asyncio.run(pipeline.run(request, source=_payload()))
        calls_after_first = len(backend.calls)
        asyncio.run(pipeline.run(request, source=_payload()))

        assert len(backend.calls) > calls_after_first
