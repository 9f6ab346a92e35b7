"""Staged transform pipeline.

Architecture:
- TransformPipeline: thin layer that derives key/seed, serves the result
  cache, converts fatal errors into a ``fail`` result and persists the run
- StageRunner: pure orchestration of the stages of a single run
- RunContext: per-run state carried through the stages

Stages run strictly in order with one current image carried forward:
segment -> cleanup/prop -> pose -> recolor -> validate. Segment and recolor
are mandatory (failure fails the run); cleanup/prop and pose roll back to the
previous image on failure and downgrade the run to partial_success.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

import cv2
import numpy as np
from sqlalchemy.orm import sessionmaker

from atelier import __version__
from atelier.adapter.media.image_codec import (
    RESOLUTION_LONG_EDGE,
    decode_image,
    encode_image,
    fit_long_edge,
)
from atelier.adapter.media.storage import ArtifactStore, ImageResolver
from atelier.adapter.vision.segmentation import Segmenter
from atelier.core.cancellation import CancelToken
from atelier.core.errors import OperationCancelledError, SegmentationError, StageError
from atelier.core.identity import derive_idempotency_key, derive_seed
from atelier.db import repo
from atelier.db.session import session_scope
from atelier.masks.algebra import (
    compose_cleanup_mask,
    compose_manual_cleanup_mask,
    compose_prop_mask,
    compose_recolor_mask,
    composite,
    encode_mask_png,
    protected_skin_mask,
    union,
)
from atelier.masks.strokes import StrokePoint, mask_from_strokes
from atelier.metrics.edit_quality import compute_edit_metrics
from atelier.metrics.status import (
    FATAL_ERROR_WARNING,
    ValidationResult,
    resolve_pipeline_status,
    validate_metrics,
)
from atelier.models.domain import ImagePayload, PipelineRunEntity, SegmentationResult, StageCallEntity
from atelier.models.types import (
    CleanupConfig,
    DebugMasks,
    OutputOptions,
    PipelineMetrics,
    PipelineResult,
    PipelineResultData,
    StageOutputs,
    TransformRequest,
)
from atelier.pipeline import instructions
from atelier.providers.adapter import AdapterResponse, GenerationAdapter
from atelier.providers.base import TaskType
from atelier.providers.errors import classify_error

logger = logging.getLogger(__name__)

DEFAULT_MODEL_VERSION = "gemini-2.5-flash-image"

CLEANUP_FALLBACK_WARNING = "CLEANUP_FALLBACK_TO_PREVIOUS"
POSE_FALLBACK_WARNING = "POSE_CHANGE_FALLBACK_TO_ORIGINAL"

# Segmentation preview overlay colors (BGR) and blend weight
_OVERLAY_GARMENT = (0, 200, 0)
_OVERLAY_SKIN = (0, 0, 220)
_OVERLAY_ALPHA = 0.45


@dataclass
class RunContext:
    """Per-run state carried through the stages."""

    request: TransformRequest
    idempotency_key: str
    seed: int
    cancel: CancelToken | None
    warnings: list[str] = field(default_factory=list)
    rolled_back: bool = False
    stage_outputs: dict[str, str] = field(default_factory=dict)
    debug_masks: dict[str, str] = field(default_factory=dict)
    calls: list[StageCallEntity] = field(default_factory=list)

    @property
    def want_stage_outputs(self) -> bool:
        return self.request.output_options.return_stage_outputs

    @property
    def want_debug_masks(self) -> bool:
        return self.request.output_options.return_debug_masks


def _segmentation_preview(image: np.ndarray, seg: SegmentationResult) -> np.ndarray:
    overlay = image.copy()
    overlay[seg.garment] = _OVERLAY_GARMENT
    overlay[seg.skin] = _OVERLAY_SKIN
    blended = image.astype(np.float32) * (1 - _OVERLAY_ALPHA) + overlay.astype(np.float32) * _OVERLAY_ALPHA
    return blended.astype(np.uint8)


class StageRunner:
    """Runs the stages of one request.

    Pure orchestration; raises on fatal errors and leaves status wrapping and
    persistence to TransformPipeline.
    """

    def __init__(
        self,
        adapter: GenerationAdapter,
        segmenter: Segmenter,
        store: ArtifactStore,
        resolver: ImageResolver,
        context: RunContext,
    ):
        self.adapter = adapter
        self.segmenter = segmenter
        self.store = store
        self.resolver = resolver
        self.ctx = context

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _save_image(self, image: np.ndarray, name: str) -> str:
        return self.store.save(encode_image(image, "png"), self.ctx.idempotency_key, name)

    def _save_mask(self, mask: np.ndarray, name: str) -> None:
        if self.ctx.want_debug_masks:
            payload = ImagePayload(data=encode_mask_png(mask), mime_type="image/png")
            self.ctx.debug_masks[name] = self.store.save(payload, self.ctx.idempotency_key, name)

    def _save_preview(self, image: np.ndarray, name: str) -> None:
        if self.ctx.want_stage_outputs:
            self.ctx.stage_outputs[name] = self._save_image(image, name)

    async def _edit(self, stage: str, instruction: str, parts: list[ImagePayload]) -> AdapterResponse:
        """Backend EDIT call, recorded as a stage call."""
        started = time.monotonic()
        try:
            response = await self.adapter.call(
                instruction,
                parts,
                task_type=TaskType.EDIT,
                seed=self.ctx.seed,
                cancel=self.ctx.cancel,
            )
        except OperationCancelledError:
            raise
        except Exception as e:
            self.ctx.calls.append(
                StageCallEntity(
                    idempotency_key=self.ctx.idempotency_key,
                    stage=stage,
                    status="failed",
                    error_kind=classify_error(e).value,
                    latency_ms=int((time.monotonic() - started) * 1000),
                )
            )
            raise
        self.ctx.calls.append(
            StageCallEntity(
                idempotency_key=self.ctx.idempotency_key,
                stage=stage,
                status="completed",
                model_used=response.model_used,
                latency_ms=int((time.monotonic() - started) * 1000),
            )
        )
        return response

    async def _segment(self, image: np.ndarray) -> SegmentationResult:
        if self.ctx.cancel is not None:
            self.ctx.cancel.raise_if_cancelled()
        seg = await self.segmenter.segment(image, self.ctx.cancel)
        seg.check_shape(image.shape[:2])
        return seg

    # ------------------------------------------------------------------
    # stages
    # ------------------------------------------------------------------

    async def execute(self, source: ImagePayload) -> tuple[np.ndarray, PipelineMetrics, ValidationResult]:
        """Run every stage.

        Returns:
            Tuple of (final image, metrics, validation).

        Raises:
            StageError: If a mandatory stage failed.
        """
        image = decode_image(source)

        try:
            seg = await self._segment(image)
        except SegmentationError as e:
            raise StageError("segment", f"Segmentation failed: {e}") from e
        self._save_preview(_segmentation_preview(image, seg), "preview_segmentation")

        config = self.ctx.request.pipeline_config
        prop_final = compose_prop_mask(seg) if config.prop_remove.enabled else None

        image = await self._cleanup_stage(image, seg, prop_final)
        if config.pose_change.enabled:
            image, seg, prop_final = await self._pose_stage(image, seg, prop_final)

        final, recolor_mask = await self._recolor_stage(image, seg, prop_final)
        metrics, validation = self._validate_stage(image, final, seg, recolor_mask)
        return final, metrics, validation

    @staticmethod
    def _cleanup_mask(seg: SegmentationResult, cleanup: CleanupConfig) -> np.ndarray:
        if cleanup.mode == "manual":
            strokes = [[StrokePoint(p.x, p.y, p.radius) for p in stroke] for stroke in cleanup.strokes]
            return compose_manual_cleanup_mask(seg, mask_from_strokes(seg.shape, strokes))
        return compose_cleanup_mask(seg)

    async def _cleanup_stage(
        self, image: np.ndarray, seg: SegmentationResult, prop_final: np.ndarray | None
    ) -> np.ndarray:
        config = self.ctx.request.pipeline_config
        if not (config.cleanup.enabled or config.prop_remove.enabled):
            return image

        region = np.zeros(seg.shape, dtype=bool)
        if config.cleanup.enabled:
            cleanup_mask = self._cleanup_mask(seg, config.cleanup)
            self._save_mask(cleanup_mask, "mask_cleanup")
            region = union(region, cleanup_mask)
        if prop_final is not None:
            self._save_mask(prop_final, "mask_prop_final")
            region = union(region, prop_final)

        if not region.any():
            logger.info("Cleanup mask is empty, skipping backend call")
            return image

        instruction = instructions.cleanup_instruction(
            config.cleanup if config.cleanup.enabled else None,
            config.prop_remove if config.prop_remove.enabled else None,
        )
        parts = [
            encode_image(image, "png"),
            ImagePayload(data=encode_mask_png(region), mime_type="image/png"),
        ]
        try:
            response = await self._edit("cleanup", instruction, parts)
            if response.image is None:
                raise StageError("cleanup", "Cleanup returned no image")
            cleaned = composite(image, decode_image(response.image), region)
        except OperationCancelledError:
            raise
        except Exception as e:
            logger.warning(f"Cleanup failed, keeping previous image: {e}")
            self.ctx.warnings.append(CLEANUP_FALLBACK_WARNING)
            self.ctx.rolled_back = True
            return image

        self._save_preview(cleaned, "preview_cleanup")
        return cleaned

    async def _pose_stage(
        self, image: np.ndarray, seg: SegmentationResult, prop_final: np.ndarray | None
    ) -> tuple[np.ndarray, SegmentationResult, np.ndarray | None]:
        config = self.ctx.request.pipeline_config
        instruction = instructions.pose_instruction(config.pose_change, self.ctx.seed)
        try:
            response = await self._edit("pose", instruction, [encode_image(image, "png")])
            if response.image is None:
                raise StageError("pose", "Pose change returned no image")
            posed = decode_image(response.image)
            if posed.shape[:2] != image.shape[:2]:
                posed = fit_to(posed, image.shape[:2])
            # Masks must follow the posed pixels
            posed_seg = await self._segment(posed)
        except OperationCancelledError:
            raise
        except Exception as e:
            logger.warning(f"Pose change failed, rolling back: {e}")
            self.ctx.warnings.append(POSE_FALLBACK_WARNING)
            self.ctx.rolled_back = True
            return image, seg, prop_final

        self._save_preview(posed, "preview_pose")
        posed_prop = compose_prop_mask(posed_seg) if prop_final is not None else None
        return posed, posed_seg, posed_prop

    async def _recolor_stage(
        self, image: np.ndarray, seg: SegmentationResult, prop_final: np.ndarray | None
    ) -> tuple[np.ndarray, np.ndarray]:
        recolor = self.ctx.request.pipeline_config.recolor
        mask = compose_recolor_mask(seg, prop_final, recolor.target_category)
        self._save_mask(mask, "mask_final_recolor")
        self._save_mask(protected_skin_mask(seg), "mask_skin_protected")
        if not mask.any():
            raise StageError("recolor", f"Recolor mask is empty for target '{recolor.target_category}'")

        parts = [
            encode_image(image, "png"),
            ImagePayload(data=encode_mask_png(mask), mime_type="image/png"),
        ]
        has_reference = recolor.color_source.type == "image"
        if has_reference:
            parts.append(self.resolver.resolve(recolor.color_source.value))

        instruction = instructions.recolor_instruction(recolor, self.ctx.seed, has_reference)
        response = await self._edit("recolor", instruction, parts)
        if response.image is None:
            raise StageError("recolor", "Recolor returned no image")

        final = composite(image, decode_image(response.image), mask)
        self._save_preview(final, "preview_recolor")
        return final, mask

    def _validate_stage(
        self, before: np.ndarray, after: np.ndarray, seg: SegmentationResult, recolor_mask: np.ndarray
    ) -> tuple[PipelineMetrics, ValidationResult]:
        metrics = compute_edit_metrics(before, after, seg.background, seg.skin, recolor_mask)
        validation = validate_metrics(metrics, self.ctx.request.pipeline_config.validation_mode)
        for reason in validation.reasons:
            logger.warning(f"Validation: {reason}")
        self.ctx.warnings.extend(validation.warnings)
        pipeline_metrics = PipelineMetrics(
            background_shift=round(metrics.background_shift, 4),
            skin_delta_e=round(metrics.skin_delta_e, 4),
            garment_ssim=round(metrics.garment_ssim, 4),
        )
        return pipeline_metrics, validation


class TransformPipeline:
    """Run transform requests end to end.

    Thin layer that:
    - Derives the idempotency key and seed
    - Serves stored success/partial_success results for a known key
    - Delegates the stages to StageRunner
    - Converts fatal errors into a ``fail`` result and records the run
    """

    def __init__(
        self,
        adapter: GenerationAdapter,
        segmenter: Segmenter,
        store: ArtifactStore,
        resolver: ImageResolver | None = None,
        model_version: str = DEFAULT_MODEL_VERSION,
        app_version: str = __version__,
        session_factory: sessionmaker | None = None,
    ):
        """Initialize pipeline.

        Args:
            adapter: Generation adapter for every backend call.
            segmenter: Segmentation collaborator.
            store: Output store for final image, previews and masks.
            resolver: Resolves source and reference image references.
            model_version: Part of the idempotency key.
            app_version: Part of the idempotency key.
            session_factory: Result cache; None disables caching.
        """
        self.adapter = adapter
        self.segmenter = segmenter
        self.store = store
        self.resolver = resolver or ImageResolver()
        self.model_version = model_version
        self.app_version = app_version
        self.session_factory = session_factory

    def identify(self, request: TransformRequest) -> tuple[str, int]:
        """Idempotency key and seed of a request."""
        key = derive_idempotency_key(request, self.model_version, self.app_version)
        return key, derive_seed(key)

    def _load_cached(self, key: str, options: OutputOptions) -> PipelineResult | None:
        if self.session_factory is None:
            return None
        with session_scope(self.session_factory) as session:
            cached = repo.get_cached_run(session, key, options.model_dump_json())
        if cached is None or cached.result_json is None:
            return None
        logger.info(f"Serving cached result for {key}")
        return PipelineResult.model_validate_json(cached.result_json)

    def _record(self, result: PipelineResult, request: TransformRequest, ctx: RunContext) -> None:
        if self.session_factory is None:
            return
        entity = PipelineRunEntity(
            idempotency_key=ctx.idempotency_key,
            source_image_id=request.source_image_id,
            model_version=self.model_version,
            app_version=self.app_version,
            seed=ctx.seed,
            status=result.status,
            final_image_url=result.data.final_image_url or None,
            output_options_json=request.output_options.model_dump_json(),
            result_json=result.model_dump_json(),
            error_detail=result.error,
        )
        with session_scope(self.session_factory) as session:
            repo.save_run(session, entity)
            repo.create_stage_calls(session, ctx.calls)

    async def run(
        self,
        request: TransformRequest,
        cancel: CancelToken | None = None,
        source: ImagePayload | None = None,
    ) -> PipelineResult:
        """Execute a transform request.

        Args:
            request: The request (immutable).
            cancel: Shared cancel token (batch runs).
            source: Pre-resolved source image; resolved from the request
                when omitted.

        Returns:
            PipelineResult; ``fail`` results still carry key and seed.

        Raises:
            OperationCancelledError: If ``cancel`` fired.
        """
        key, seed = self.identify(request)
        cached = self._load_cached(key, request.output_options)
        if cached is not None:
            return cached

        ctx = RunContext(request=request, idempotency_key=key, seed=seed, cancel=cancel)
        runner = StageRunner(self.adapter, self.segmenter, self.store, self.resolver, ctx)
        logger.info(f"Pipeline run {key} (seed={seed}) for {request.source_image_id}")

        try:
            if source is None:
                source = self.resolver.resolve_source(request.source_image_id, request.source_image_data)
            final, metrics, validation = await runner.execute(source)

            options = request.output_options
            output = fit_long_edge(final, RESOLUTION_LONG_EDGE[options.resolution])
            final_url = self.store.save(encode_image(output, options.format), key, "final")
            status = resolve_pipeline_status(False, ctx.rolled_back, validation)
            result = PipelineResult(
                status=status,
                data=self._result_data(ctx, final_url, metrics),
            )
        except OperationCancelledError:
            raise
        except Exception as e:
            stage = e.stage if isinstance(e, StageError) else type(e).__name__
            logger.error(f"Pipeline run {key} failed in {stage}: {e}")
            ctx.warnings.append(FATAL_ERROR_WARNING)
            result = PipelineResult(
                status="fail",
                data=self._result_data(ctx, "", None),
                error=str(e),
            )

        logger.info(f"Pipeline run {key} finished: {result.status} warnings={ctx.warnings}")
        self._record(result, request, ctx)
        return result

    @staticmethod
    def _result_data(ctx: RunContext, final_url: str, metrics: PipelineMetrics | None) -> PipelineResultData:
        return PipelineResultData(
            final_image_url=final_url,
            stage_outputs=StageOutputs(**ctx.stage_outputs) if ctx.want_stage_outputs else None,
            debug_masks=DebugMasks(**ctx.debug_masks) if ctx.want_debug_masks else None,
            metrics=metrics,
            warnings=list(ctx.warnings),
            idempotency_key=ctx.idempotency_key,
            seed=ctx.seed,
        )


def fit_to(image: np.ndarray, shape: tuple[int, int]) -> np.ndarray:
    """Resize an image to exactly ``shape`` (h, w)."""
    h, w = shape
    return cv2.resize(image, (w, h), interpolation=cv2.INTER_LINEAR)
