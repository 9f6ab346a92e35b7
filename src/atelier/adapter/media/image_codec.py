"""Image decoding and encoding via OpenCV.

Adapter between opaque ImagePayload bytes and BGR numpy rasters. Handles:
- Decoding any format OpenCV reads (alpha is dropped)
- Encoding to PNG / WebP / JPEG
- Downscaling to a resolution preset's long edge
"""

from __future__ import annotations

import cv2
import numpy as np

from atelier.core.errors import ImageDecodeError
from atelier.models.domain import ImagePayload

RESOLUTION_LONG_EDGE = {
    "1k": 1024,
    "2k": 2048,
    "4k": 4096,
}

_MIME_BY_FORMAT = {
    "png": "image/png",
    "webp": "image/webp",
    "jpeg": "image/jpeg",
}


def decode_image(payload: ImagePayload) -> np.ndarray:
    """Decode an image payload to a BGR uint8 array.

    Raises:
        ImageDecodeError: If the bytes are not a decodable image.
    """
    buffer = np.frombuffer(payload.data, dtype=np.uint8)
    image = cv2.imdecode(buffer, cv2.IMREAD_COLOR) if buffer.size else None
    if image is None:
        raise ImageDecodeError(f"Could not decode image ({payload.mime_type}, {len(payload.data)} bytes)")
    return image


def encode_image(image: np.ndarray, fmt: str = "png") -> ImagePayload:
    """Encode a BGR (or single-channel) array.

    Args:
        image: uint8 image array.
        fmt: One of png, webp, jpeg.

    Returns:
        ImagePayload with matching mime type.
    """
    if fmt not in _MIME_BY_FORMAT:
        raise ValueError(f"Unsupported image format: {fmt}")
    ext = ".jpg" if fmt == "jpeg" else f".{fmt}"
    ok, buffer = cv2.imencode(ext, image)
    if not ok:
        raise RuntimeError(f"Failed to encode image as {fmt}")
    return ImagePayload(data=buffer.tobytes(), mime_type=_MIME_BY_FORMAT[fmt])


def fit_long_edge(image: np.ndarray, max_long_edge: int) -> np.ndarray:
    """Downscale so the long edge is at most ``max_long_edge``; never upscale."""
    h, w = image.shape[:2]
    long_edge = max(h, w)
    if long_edge <= max_long_edge:
        return image
    scale = max_long_edge / long_edge
    size = (max(1, int(round(w * scale))), max(1, int(round(h * scale))))
    return cv2.resize(image, size, interpolation=cv2.INTER_AREA)


def hex_to_bgr(hex_color: str) -> tuple[int, int, int]:
    """``#RRGGBB`` -> (b, g, r)."""
    text = hex_color.lstrip("#")
    r, g, b = int(text[0:2], 16), int(text[2:4], 16), int(text[4:6], 16)
    return b, g, r
