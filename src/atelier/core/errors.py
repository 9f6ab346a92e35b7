"""Exception hierarchy shared across the pipeline, adapter and batch layers."""

from __future__ import annotations


class AtelierError(Exception):
    """Base class for all Atelier errors."""


class OperationCancelledError(AtelierError):
    """Raised when a shared cancel token fired before or during a call."""


class MaskShapeError(AtelierError, ValueError):
    """Raised when masks or images that must be aligned differ in size."""


class ImageDecodeError(AtelierError, ValueError):
    """Raised when an image payload cannot be decoded."""


class SegmentationError(AtelierError):
    """Raised when the segmentation collaborator fails or returns bad masks."""


class StageError(AtelierError):
    """Raised by a pipeline stage that could not produce its output.

    Attributes:
        stage: Name of the failing stage.
    """

    def __init__(self, stage: str, message: str):
        super().__init__(message)
        self.stage = stage
