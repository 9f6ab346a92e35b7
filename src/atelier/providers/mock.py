"""Mock backend for demo/testing.

Returns deterministic images without calling a real generation API, so the
pipeline and batch layers can run offline.
"""

from __future__ import annotations

import asyncio
import json

import cv2
import numpy as np

from atelier.adapter.media.image_codec import decode_image, encode_image
from atelier.providers.base import BackendRequest, BackendResponse, GenerationBackend, TaskType

DEFAULT_TEXT_RESPONSE = json.dumps({"angle": 0.0, "confidence": 0.85})


class MockBackend(GenerationBackend):
    """Mock backend that tints the first input image.

    For demo purposes, this backend:
    1. Blends the first input image toward a seed-derived color (edits)
    2. Generates a flat seed-colored image when no image is given (creation)
    3. Answers text calls with a fixed JSON reply (yaw estimation)

    Every request is recorded in ``calls``.
    """

    name = "mock"

    def __init__(
        self,
        tint_strength: float = 0.35,
        text_response: str = DEFAULT_TEXT_RESPONSE,
        latency_s: float = 0.0,
        canvas_size: tuple[int, int] = (512, 384),
    ):
        """Initialize mock backend.

        Args:
            tint_strength: Blend weight of the tint color in [0, 1].
            text_response: Reply for TEXT calls.
            latency_s: Artificial delay per call.
            canvas_size: (height, width) of synthetic creation images.
        """
        self.tint_strength = tint_strength
        self.text_response = text_response
        self.latency_s = latency_s
        self.canvas_size = canvas_size
        self.calls: list[BackendRequest] = []

    @staticmethod
    def _seed_color(seed: int | None) -> tuple[int, int, int]:
        """Use seed to vary the color (BGR)."""
        seed = seed or 0
        return (seed * 97) % 256, (seed * 59) % 256, (seed * 37) % 256

    async def generate(self, request: BackendRequest) -> BackendResponse:
        self.calls.append(request)
        if self.latency_s > 0:
            await asyncio.sleep(self.latency_s)

        if request.task_type == TaskType.TEXT:
            return BackendResponse(text=self.text_response)

        color = np.array(self._seed_color(request.seed), dtype=np.float32)
        if request.images:
            image = decode_image(request.images[0]).astype(np.float32)
        else:
            h, w = self.canvas_size
            image = np.zeros((h, w, 3), dtype=np.float32)
            image[:] = color

        tinted = image * (1.0 - self.tint_strength) + color * self.tint_strength
        result = cv2.convertScaleAbs(tinted)
        return BackendResponse(image=encode_image(result, "png"))
