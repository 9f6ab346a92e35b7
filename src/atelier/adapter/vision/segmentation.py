"""Person/garment segmentation collaborators.

Segmentation is an external service; adapters here turn its output into a
SegmentationResult aligned to the image raster:
- PrecomputedSegmenter: masks supplied up front (tests, demos, client masks)
- HttpSegmenter: JSON-over-HTTP segmentation service returning PNG masks
"""

from __future__ import annotations

import base64
import logging
from abc import ABC, abstractmethod

import cv2
import httpx
import numpy as np

from atelier.adapter.media.image_codec import encode_image
from atelier.core.cancellation import CancelToken
from atelier.core.errors import MaskShapeError, SegmentationError
from atelier.models.domain import MASK_NAMES, SegmentationResult

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 60.0


class Segmenter(ABC):
    """Produce named masks for an image."""

    @abstractmethod
    async def segment(self, image: np.ndarray, cancel: CancelToken | None = None) -> SegmentationResult:
        """Segment a BGR image.

        Raises:
            SegmentationError: If masks cannot be produced for ``image``.
        """
        pass


def resize_segmentation(seg: SegmentationResult, shape: tuple[int, int]) -> SegmentationResult:
    """Nearest-neighbour resize of every mask to ``shape`` (h, w)."""
    if tuple(seg.shape) == tuple(shape):
        return seg
    h, w = shape

    def _resize(mask: np.ndarray) -> np.ndarray:
        raster = mask.astype(np.uint8) * 255
        return cv2.resize(raster, (w, h), interpolation=cv2.INTER_NEAREST)

    return SegmentationResult(
        **{name: _resize(getattr(seg, name)) for name in MASK_NAMES},
        garments_by_category={k: _resize(v) for k, v in seg.garments_by_category.items()},
    )


class PrecomputedSegmenter(Segmenter):
    """Serve masks computed elsewhere.

    The masks are rescaled to whatever image they are asked for, so the same
    segmentation can follow an image through stages that keep its framing.
    """

    def __init__(self, result: SegmentationResult):
        self.result = result
        self.calls = 0

    async def segment(self, image: np.ndarray, cancel: CancelToken | None = None) -> SegmentationResult:
        if cancel is not None:
            cancel.raise_if_cancelled()
        self.calls += 1
        return resize_segmentation(self.result, image.shape[:2])


def _decode_mask(encoded: str, name: str) -> np.ndarray:
    if encoded.startswith("data:"):
        encoded = encoded.partition(",")[2]
    buffer = np.frombuffer(base64.b64decode(encoded), dtype=np.uint8)
    mask = cv2.imdecode(buffer, cv2.IMREAD_GRAYSCALE) if buffer.size else None
    if mask is None:
        raise SegmentationError(f"Segmentation mask '{name}' is not a decodable image")
    return mask


def parse_segmentation_payload(payload: dict, shape: tuple[int, int]) -> SegmentationResult:
    """Build a SegmentationResult from a service reply.

    Expected shape::

        {"masks": {"person": "<b64 png>", ..., "background": "<b64 png>"},
         "garments": {"top": "<b64 png>", ...}}

    A missing ``background`` is derived as the complement of ``person``;
    other missing masks are empty.
    """
    masks_in = payload.get("masks")
    if not isinstance(masks_in, dict) or "person" not in masks_in:
        raise SegmentationError("Segmentation reply has no 'masks.person'")

    h, w = shape
    masks: dict[str, np.ndarray] = {}
    for name in MASK_NAMES:
        if name in masks_in:
            masks[name] = _decode_mask(masks_in[name], name)
        else:
            masks[name] = np.zeros((h, w), dtype=np.uint8)
    if "background" not in masks_in:
        masks["background"] = np.where(masks["person"] > 127, 0, 255).astype(np.uint8)

    garments = {
        category: _decode_mask(encoded, f"garment[{category}]")
        for category, encoded in (payload.get("garments") or {}).items()
    }
    try:
        result = SegmentationResult(**masks, garments_by_category=garments)
    except MaskShapeError as e:
        raise SegmentationError(str(e)) from e
    result.check_shape(shape)
    return result


class HttpSegmenter(Segmenter):
    """Call an HTTP segmentation service.

    POSTs ``{"image": "<data uri>"}`` to ``url`` and parses the reply with
    parse_segmentation_payload.
    """

    def __init__(self, url: str, timeout_s: float = DEFAULT_TIMEOUT_S, client: httpx.AsyncClient | None = None):
        self.url = url
        self.timeout_s = timeout_s
        self._client = client

    async def segment(self, image: np.ndarray, cancel: CancelToken | None = None) -> SegmentationResult:
        if cancel is not None:
            cancel.raise_if_cancelled()
        body = {"image": encode_image(image, "png").to_data_uri()}

        try:
            if self._client is not None:
                response = await self._client.post(self.url, json=body, timeout=self.timeout_s)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_s) as client:
                    response = await client.post(self.url, json=body)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as e:
            logger.error(f"Segmentation service call failed: {e}")
            raise SegmentationError(f"Segmentation service call failed: {e}") from e
        except ValueError as e:
            raise SegmentationError(f"Segmentation reply is not JSON: {e}") from e

        return parse_segmentation_payload(payload, image.shape[:2])
