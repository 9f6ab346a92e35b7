"""Media adapters for image bytes and artifact files.

Adapters for IO/system boundary operations:
- image_codec: OpenCV decode/encode of ImagePayload bytes
- storage: request image resolution and result artifact output
"""

from atelier.adapter.media.image_codec import (
    RESOLUTION_LONG_EDGE,
    decode_image,
    encode_image,
    fit_long_edge,
)
from atelier.adapter.media.storage import ArtifactStore, ImageResolver

__all__ = [
    "RESOLUTION_LONG_EDGE",
    "ArtifactStore",
    "ImageResolver",
    "decode_image",
    "encode_image",
    "fit_long_edge",
]
