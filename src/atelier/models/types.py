"""Pydantic models for the Atelier API.

Request models are frozen: a request is immutable once submitted, which is
what makes its idempotency key meaningful.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

ValidationMode = Literal["strict", "relaxed"]
CleanupTarget = Literal[
    "text", "clutter", "outlet", "shadow_artifact", "watermark", "stain", "dust"
]
PropRemoveTarget = Literal["cup", "phone", "bag", "cigarette", "earbuds", "keys"]
PosePreset = Literal["neutral", "micro_walk", "hands_pocket", "arms_crossed_relaxed"]
RecolorTargetCategory = Literal["top", "bottom", "outer", "onepiece", "all"]
PipelineStatus = Literal["success", "partial_success", "fail"]
Resolution = Literal["1k", "2k", "4k"]
OutputFormat = Literal["png", "webp"]

CameraAngle = Literal[
    "front", "left-30", "left-40", "left-side", "right-30", "right-40", "right-side"
]
BatchMode = Literal["pose", "color"]
ColorMode = Literal["solid_paint", "texture_transfer"]
BatchStage = Literal["NORMALIZATION", "YAW_CALIBRATION", "POSE_GENERATION", "RECOLOR"]
JobStatus = Literal["running", "success", "partial_success", "cancelled"]

_FROZEN = ConfigDict(frozen=True)


def _validate_hex(value: str) -> str:
    text = value.strip()
    if len(text) != 7 or not text.startswith("#"):
        raise ValueError(f"expected #RRGGBB hex color, got {value!r}")
    int(text[1:], 16)
    return text.upper()


# ============================================================================
# Pipeline configuration
# ============================================================================


class BrushPoint(BaseModel):
    """One sampled point of a manual cleanup stroke, in source pixels."""

    model_config = _FROZEN

    x: float
    y: float
    radius: float = Field(gt=0)


class CleanupConfig(BaseModel):
    """Background cleanup stage settings.

    ``auto`` cleans the segmented background; ``manual`` cleans the region
    painted by ``strokes``. The subject is protected in both modes.
    """

    model_config = _FROZEN

    enabled: bool = False
    mode: Literal["auto", "manual"] = "auto"
    targets: list[CleanupTarget] = Field(default_factory=list)
    strokes: list[list[BrushPoint]] = Field(default_factory=list)

    @model_validator(mode="after")
    def _manual_needs_strokes(self) -> "CleanupConfig":
        if self.enabled and self.mode == "manual" and not any(self.strokes):
            raise ValueError("manual cleanup requires at least one stroke")
        return self


class PropRemoveConfig(BaseModel):
    """Hand-held prop removal stage settings."""

    model_config = _FROZEN

    enabled: bool = False
    targets: list[PropRemoveTarget] = Field(default_factory=list)
    hand_restore: bool = True


class PoseChangeConfig(BaseModel):
    """Optional pose change stage settings."""

    model_config = _FROZEN

    enabled: bool = False
    preset: PosePreset = "neutral"
    strict_safety: bool = True


class ColorSource(BaseModel):
    """Where the recolor target color comes from.

    ``value`` is a ``#RRGGBB`` code for ``hex`` and an image reference
    (data URI or path) for ``image``.
    """

    model_config = _FROZEN

    type: Literal["hex", "image"]
    value: str

    @model_validator(mode="after")
    def _check_value(self) -> "ColorSource":
        if self.type == "hex":
            _validate_hex(self.value)
        elif not self.value:
            raise ValueError("image color source requires a reference")
        return self


class RecolorConfig(BaseModel):
    """Recolor stage settings (always runs)."""

    model_config = _FROZEN

    target_category: RecolorTargetCategory
    color_source: ColorSource
    texture_lock_strength: float = Field(default=0.8, ge=0.0, le=1.0)


class PipelineConfig(BaseModel):
    """Stage toggles and parameters for one pipeline run."""

    model_config = _FROZEN

    validation_mode: ValidationMode = "strict"
    cleanup: CleanupConfig = Field(default_factory=CleanupConfig)
    prop_remove: PropRemoveConfig = Field(default_factory=PropRemoveConfig)
    pose_change: PoseChangeConfig = Field(default_factory=PoseChangeConfig)
    recolor: RecolorConfig


class OutputOptions(BaseModel):
    """Output encoding and debug options."""

    model_config = _FROZEN

    resolution: Resolution = "2k"
    format: OutputFormat = "png"
    return_stage_outputs: bool = False
    return_debug_masks: bool = False


class TransformRequest(BaseModel):
    """A single-image transform request."""

    model_config = _FROZEN

    source_image_id: str
    source_image_data: str | None = None
    pipeline_config: PipelineConfig
    output_options: OutputOptions = Field(default_factory=OutputOptions)
    seed_offset: int = 0

    @field_validator("source_image_id")
    @classmethod
    def _require_source(cls, value: str) -> str:
        if not value:
            raise ValueError("source_image_id must not be empty")
        return value


# ============================================================================
# Pipeline response
# ============================================================================


class StageOutputs(BaseModel):
    """Intermediate stage previews (image URLs)."""

    preview_segmentation: str | None = None
    preview_cleanup: str | None = None
    preview_pose: str | None = None
    preview_recolor: str | None = None


class DebugMasks(BaseModel):
    """Debug snapshots of the composed masks (image URLs)."""

    mask_cleanup: str | None = None
    mask_prop_final: str | None = None
    mask_final_recolor: str | None = None
    mask_skin_protected: str | None = None


class PipelineMetrics(BaseModel):
    """Validation metrics of the recolor edit."""

    background_shift: float
    skin_delta_e: float
    garment_ssim: float | None = None


class PipelineResultData(BaseModel):
    """Payload of a pipeline response."""

    final_image_url: str
    stage_outputs: StageOutputs | None = None
    debug_masks: DebugMasks | None = None
    metrics: PipelineMetrics | None = None
    warnings: list[str] = Field(default_factory=list)
    idempotency_key: str
    seed: int


class PipelineResult(BaseModel):
    """Pipeline response. Key and seed are always present, also on fail."""

    status: PipelineStatus
    data: PipelineResultData
    error: str | None = None


# ============================================================================
# Batch
# ============================================================================


class ColorReference(BaseModel):
    """One color variant of a batch."""

    model_config = _FROZEN

    label: str
    hex_override: str | None = None
    image_data: str | None = None
    mode: ColorMode = "solid_paint"

    @field_validator("hex_override")
    @classmethod
    def _check_hex(cls, value: str | None) -> str | None:
        return _validate_hex(value) if value is not None else None

    @model_validator(mode="after")
    def _check_source(self) -> "ColorReference":
        if self.mode == "texture_transfer" and not self.image_data:
            raise ValueError("texture_transfer requires image_data")
        return self


class BatchRequest(BaseModel):
    """Fan one edit out over camera angles or color references."""

    model_config = _FROZEN

    source_image_id: str
    source_image_data: str | None = None
    mode: BatchMode = "pose"
    angles: list[CameraAngle] = Field(default_factory=list)
    color_references: list[ColorReference] = Field(default_factory=list, max_length=4)
    pipeline_config: PipelineConfig | None = None
    output_options: OutputOptions = Field(default_factory=OutputOptions)

    @model_validator(mode="after")
    def _check_variants(self) -> "BatchRequest":
        if self.mode == "pose" and not self.angles:
            raise ValueError("pose batch requires at least one angle")
        if self.mode == "color":
            if not self.color_references:
                raise ValueError("color batch requires at least one color reference")
            if self.pipeline_config is None:
                raise ValueError("color batch requires a pipeline_config")
            for reference in self.color_references:
                if not (reference.hex_override or reference.image_data):
                    raise ValueError(f"color reference '{reference.label}' needs hex_override or image_data")
        return self


class BatchSubmitted(BaseModel):
    """Response of batch submission."""

    job_id: str
    stream_url: str


class JobProgressEvent(BaseModel):
    """JOB_PROGRESS stream event."""

    job_id: str
    status: JobStatus
    total: int
    completed: int
    remaining: int
    progress_percent: int
    stage: BatchStage
    message: str


class ItemMetadata(BaseModel):
    """Metadata attached to a completed batch item."""

    is_mirrored: bool = False
    is_clamped: bool = False


class ItemCompletedEvent(BaseModel):
    """ITEM_COMPLETED stream event."""

    task_id: str
    group: str
    variant_param: str
    estimated_yaw_deg: float | None
    thumbnail_url: str
    original_url: str
    status: Literal["success"] = "success"
    metadata: ItemMetadata = Field(default_factory=ItemMetadata)


class ItemFailedEvent(BaseModel):
    """ITEM_FAILED stream event."""

    task_id: str
    group: str
    variant_param: str
    status: Literal["failed"] = "failed"
    error_code: str
    message: str
    retryable: bool


class JobFinishedEvent(BaseModel):
    """JOB_FINISHED stream event."""

    job_id: str
    status: JobStatus
    total: int
    completed: int


class BatchTaskDetail(BaseModel):
    """Task snapshot for the batch detail endpoint."""

    task_id: str
    group: str
    variant_param: str
    status: Literal["pending", "loading", "success", "error", "cancelled"]
    error_kind: str | None
    error_message: str | None
    result_url: str | None
    estimated_yaw_deg: float | None
    is_mirrored: bool
    is_clamped: bool


class BatchJobDetail(BaseModel):
    """Job snapshot for the batch detail endpoint."""

    job_id: str
    status: JobStatus
    concurrency_limit: int
    concurrency_label: str
    total: int
    completed: int
    progress_percent: int
    tasks: list[BatchTaskDetail]
