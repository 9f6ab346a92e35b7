"""Variant renderers used by the batch orchestrator.

- PoseVariantRenderer: one backend call per viewpoint (pose + color at once)
- ColorVariantRunner: one full TransformPipeline run per color reference
"""

from __future__ import annotations

import logging

from atelier.adapter.media.image_codec import RESOLUTION_LONG_EDGE, decode_image, encode_image, fit_long_edge
from atelier.adapter.media.storage import ArtifactStore
from atelier.batch.navigation import VIEWPOINTS, calculate_relative_yaw
from atelier.core.cancellation import CancelToken
from atelier.core.errors import StageError
from atelier.core.identity import derive_seed
from atelier.models.domain import ImagePayload, TaskOutcome
from atelier.models.types import (
    BatchRequest,
    ColorReference,
    ColorSource,
    OutputOptions,
    TransformRequest,
)
from atelier.pipeline.instructions import viewpoint_instruction
from atelier.pipeline.runner import TransformPipeline
from atelier.providers.adapter import GenerationAdapter
from atelier.providers.base import TaskType

logger = logging.getLogger(__name__)

THUMBNAIL_LONG_EDGE = 384


def mirror_outcome(outcome: TaskOutcome) -> TaskOutcome:
    """Derive the right-side result from a left render."""
    yaw = outcome.estimated_yaw_deg
    return TaskOutcome(
        result_url=outcome.result_url,
        thumbnail_url=outcome.thumbnail_url,
        estimated_yaw_deg=-yaw if yaw is not None else None,
        is_clamped=outcome.is_clamped,
        is_mirrored=True,
    )


class PoseVariantRenderer:
    """Render a viewpoint of the source in a single backend call."""

    def __init__(self, adapter: GenerationAdapter, store: ArtifactStore, clamp_deg: float = 65.0):
        self.adapter = adapter
        self.store = store
        self.clamp_deg = clamp_deg

    async def render(
        self,
        namespace: str,
        source: ImagePayload,
        viewpoint_name: str,
        reference: ColorReference | None,
        reference_image: ImagePayload | None,
        base_yaw: float,
        options: OutputOptions,
        seed_key: str,
        cancel: CancelToken | None = None,
    ) -> TaskOutcome:
        """Render one viewpoint.

        Args:
            namespace: Artifact namespace (job id).
            source: Source image.
            viewpoint_name: Key of VIEWPOINTS.
            reference: Color reference, None for the original color.
            reference_image: Decoded-ready reference image (texture transfer).
            base_yaw: Estimated yaw of the source subject.
            options: Output resolution and format.
            seed_key: Stable string the call seed is derived from.
            cancel: Shared batch cancel token.

        Returns:
            TaskOutcome of the render.
        """
        viewpoint = VIEWPOINTS[viewpoint_name]
        yaw = calculate_relative_yaw(base_yaw, viewpoint.yaw_deg, self.clamp_deg)
        instruction = viewpoint_instruction(viewpoint.prompt, yaw.relative_yaw, reference)

        parts = [source]
        if reference_image is not None:
            parts.append(reference_image)

        seed = derive_seed(seed_key)
        response = await self.adapter.call(
            instruction,
            parts,
            task_type=TaskType.CREATION,
            seed=seed,
            cancel=cancel,
        )
        if response.image is None:
            raise StageError("pose_variant", f"No image generated for {viewpoint_name}")

        image = decode_image(response.image)
        output = fit_long_edge(image, RESOLUTION_LONG_EDGE[options.resolution])
        name = f"{viewpoint_name}-{seed:08x}"
        result_url = self.store.save(encode_image(output, options.format), namespace, name)
        thumbnail = fit_long_edge(image, THUMBNAIL_LONG_EDGE)
        thumbnail_url = self.store.save(encode_image(thumbnail, "webp"), namespace, f"{name}-thumb")

        logger.info(
            f"Rendered {viewpoint_name} via {response.model_used} "
            f"(relative yaw {yaw.relative_yaw:+.0f}, clamped={yaw.is_clamped})"
        )
        return TaskOutcome(
            result_url=result_url,
            thumbnail_url=thumbnail_url,
            estimated_yaw_deg=base_yaw + yaw.relative_yaw,
            is_clamped=yaw.is_clamped,
        )


def color_source_for(reference: ColorReference) -> ColorSource:
    """Recolor color source of a color reference (hex wins over image)."""
    if reference.hex_override:
        return ColorSource(type="hex", value=reference.hex_override)
    return ColorSource(type="image", value=reference.image_data)


class ColorVariantRunner:
    """Run the full pipeline once per color reference."""

    def __init__(self, pipeline: TransformPipeline):
        self.pipeline = pipeline

    def build_request(self, batch: BatchRequest, reference: ColorReference) -> TransformRequest:
        """Batch pipeline config with the recolor color source replaced."""
        config = batch.pipeline_config
        recolor = config.recolor.model_copy(update={"color_source": color_source_for(reference)})
        return TransformRequest(
            source_image_id=batch.source_image_id,
            source_image_data=batch.source_image_data,
            pipeline_config=config.model_copy(update={"recolor": recolor}),
            output_options=batch.output_options,
        )

    async def render(
        self,
        batch: BatchRequest,
        reference: ColorReference,
        source: ImagePayload,
        cancel: CancelToken | None = None,
    ) -> TaskOutcome:
        """Run one color variant.

        Raises:
            StageError: If the pipeline run failed.
        """
        result = await self.pipeline.run(self.build_request(batch, reference), cancel=cancel, source=source)
        if result.status == "fail":
            raise StageError("color_variant", result.error or "Pipeline failed")
        return TaskOutcome(
            result_url=result.data.final_image_url,
            thumbnail_url=result.data.final_image_url,
        )
