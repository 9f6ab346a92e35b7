"""Domain models for Atelier.

Pure Python dataclasses representing domain entities.
These models are independent of pydantic and SQLAlchemy and are used
throughout the pipeline and batch layers.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from typing import Literal

import numpy as np

from atelier.core.cancellation import CancelToken
from atelier.core.errors import MaskShapeError, SegmentationError

# ============================================================================
# Image Domain
# ============================================================================


@dataclass(frozen=True)
class ImagePayload:
    """Opaque encoded image: raw bytes plus mime type."""

    data: bytes
    mime_type: str = "image/png"

    def to_data_uri(self) -> str:
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"

    @classmethod
    def from_data_uri(cls, uri: str) -> "ImagePayload":
        """Parse ``data:<mime>;base64,<payload>`` or bare base64."""
        if uri.startswith("data:"):
            header, _, payload = uri.partition(",")
            mime_type = header[5:].split(";")[0] or "image/png"
        else:
            payload = uri
            mime_type = "image/png"
        return cls(data=base64.b64decode(payload), mime_type=mime_type)


# ============================================================================
# Segmentation Domain
# ============================================================================

MASK_NAMES = ("person", "garment", "skin", "hand", "hair_face", "prop", "background")


@dataclass(frozen=True)
class SegmentationResult:
    """Named binary masks of one image, all sharing the image's raster size.

    Masks are converted to read-only boolean arrays on construction.
    ``garments_by_category`` optionally holds per-category garment masks
    (top, bottom, outer, onepiece); ``garment`` is the union of all garments.
    """

    person: np.ndarray
    garment: np.ndarray
    skin: np.ndarray
    hand: np.ndarray
    hair_face: np.ndarray
    prop: np.ndarray
    background: np.ndarray
    garments_by_category: dict[str, np.ndarray] = field(default_factory=dict)

    def __post_init__(self) -> None:
        shape = np.asarray(self.person).shape[:2]
        for name in MASK_NAMES:
            object.__setattr__(self, name, _freeze_mask(name, getattr(self, name), shape))
        frozen = {
            category: _freeze_mask(f"garment[{category}]", mask, shape)
            for category, mask in self.garments_by_category.items()
        }
        object.__setattr__(self, "garments_by_category", frozen)

    @property
    def shape(self) -> tuple[int, int]:
        return self.person.shape

    def garment_target(self, category: str) -> np.ndarray:
        """Garment mask for a recolor target category.

        Falls back to the combined garment mask when the segmenter did not
        provide a mask for ``category`` (and always for ``all``).
        """
        if category != "all" and category in self.garments_by_category:
            return self.garments_by_category[category]
        return self.garment

    def check_shape(self, shape: tuple[int, int]) -> None:
        """Raise SegmentationError if masks do not match an image size."""
        if tuple(shape) != tuple(self.shape):
            raise SegmentationError(
                f"Segmentation size {self.shape} does not match image size {tuple(shape)}"
            )


def _freeze_mask(name: str, mask: np.ndarray, shape: tuple[int, int]) -> np.ndarray:
    array = np.asarray(mask)
    if array.ndim == 3:
        array = array[:, :, 0]
    if array.shape != tuple(shape):
        raise MaskShapeError(f"Mask '{name}' has shape {array.shape}, expected {tuple(shape)}")
    if array.dtype != np.bool_:
        array = array > 127 if array.dtype == np.uint8 else array > 0.5
    array = np.array(array, dtype=bool, copy=True)
    array.setflags(write=False)
    return array


# ============================================================================
# Persistence Domain
# ============================================================================


@dataclass
class PipelineRunEntity:
    """Domain model for a stored pipeline run."""

    idempotency_key: str
    source_image_id: str
    model_version: str
    app_version: str
    seed: int
    status: str
    final_image_url: str | None = None
    output_options_json: str | None = None
    result_json: str | None = None
    error_detail: str | None = None


@dataclass
class StageCallEntity:
    """Domain model for one recorded backend call of a stage."""

    idempotency_key: str
    stage: str
    status: str
    model_used: str | None = None
    error_kind: str | None = None
    latency_ms: int | None = None


# ============================================================================
# Batch Domain
# ============================================================================

TaskStatus = Literal["pending", "loading", "success", "error", "cancelled"]
JobStatus = Literal["running", "success", "partial_success", "cancelled"]


@dataclass
class TaskOutcome:
    """What a renderer produced for one task."""

    result_url: str
    thumbnail_url: str | None = None
    estimated_yaw_deg: float | None = None
    is_clamped: bool = False
    is_mirrored: bool = False


@dataclass
class BatchTask:
    """Domain model for one variant of a batch.

    Owned by the orchestrator; mutated only through its settlement path.
    ``viewpoint`` is set for pose variants, ``color_index`` for color groups
    (None means the original color).
    """

    task_id: str
    group: str
    variant_param: str
    viewpoint: str | None = None
    color_index: int | None = None
    status: TaskStatus = "pending"
    error_kind: str | None = None
    error_message: str | None = None
    result_url: str | None = None
    thumbnail_url: str | None = None
    estimated_yaw_deg: float | None = None
    is_mirrored: bool = False
    is_clamped: bool = False
    attempts: int = 0


@dataclass(frozen=True)
class ConcurrencyPolicy:
    """Concurrency limit chosen once at batch submission."""

    limit: int
    label: str


@dataclass
class BatchJob:
    """Domain model for a batch job.

    Lifecycle: created at submission, mutated as tasks settle, discarded once
    the caller consumed the final summary.
    """

    job_id: str
    tasks: list[BatchTask]
    concurrency: ConcurrencyPolicy
    cancel_token: CancelToken = field(default_factory=CancelToken)
    completed_count: int = 0
    status: JobStatus = "running"
    status_text: str = ""
    base_yaw_deg: float = 0.0

    @property
    def total(self) -> int:
        return len(self.tasks)

    @property
    def remaining(self) -> int:
        return self.total - self.completed_count

    @property
    def progress_percent(self) -> int:
        if self.total == 0:
            return 100
        return int(self.completed_count * 100 // self.total)

    def get_task(self, task_id: str) -> BatchTask | None:
        for task in self.tasks:
            if task.task_id == task_id:
                return task
        return None
