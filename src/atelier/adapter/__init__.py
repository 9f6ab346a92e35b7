"""Adapter module for external services and IO boundaries.

Adapters wrap external dependencies behind domain-focused interfaces.
Business logic should use adapters rather than calling external tools directly.

Structure:
- adapter/media/   - image decode/encode, image resolution, artifact output
- adapter/vision/  - segmentation service, yaw estimation
"""

# Re-export commonly used items for convenience
from atelier.adapter.media import (
    ArtifactStore,
    ImageResolver,
    decode_image,
    encode_image,
    fit_long_edge,
)
from atelier.adapter.vision import (
    HttpSegmenter,
    PrecomputedSegmenter,
    Segmenter,
    YawEstimator,
)

__all__ = [
    # Media
    "ArtifactStore",
    "ImageResolver",
    "decode_image",
    "encode_image",
    "fit_long_edge",
    # Vision
    "HttpSegmenter",
    "PrecomputedSegmenter",
    "Segmenter",
    "YawEstimator",
]
