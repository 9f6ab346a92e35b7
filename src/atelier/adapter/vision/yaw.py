"""Subject yaw estimation via a TEXT backend call.

The estimator asks a text model for the subject's body yaw as JSON:
``{"angle": <deg, negative = turned to camera-left>, "confidence": <0..1>}``.
Any failure or unparseable reply falls back to 0 degrees with confidence 0;
only cancellation propagates.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass

from atelier.core.cancellation import CancelToken
from atelier.core.errors import OperationCancelledError
from atelier.models.domain import ImagePayload
from atelier.providers.adapter import GenerationAdapter
from atelier.providers.base import TaskType
from atelier.providers.errors import BackendError

logger = logging.getLogger(__name__)

MAX_ABS_YAW_DEG = 180.0

YAW_INSTRUCTION = (
    "Estimate the body yaw of the person in this photo relative to the camera. "
    "0 means facing the camera, negative values mean turned toward camera-left, "
    "positive values toward camera-right, in degrees between -180 and 180. "
    'Reply with JSON only: {"angle": <number>, "confidence": <number between 0 and 1>}'
)

_JSON_OBJECT = re.compile(r"\{.*?\}", re.DOTALL)


@dataclass(frozen=True)
class YawEstimate:
    """Estimated subject yaw."""

    angle_deg: float
    confidence: float


FALLBACK_ESTIMATE = YawEstimate(angle_deg=0.0, confidence=0.0)


def parse_yaw_reply(text: str) -> YawEstimate:
    """Parse a model reply, tolerating code fences and surrounding prose.

    Raises:
        ValueError: If no usable JSON object with an ``angle`` is found.
    """
    match = _JSON_OBJECT.search(text or "")
    if match is None:
        raise ValueError(f"No JSON object in yaw reply: {text!r}")
    payload = json.loads(match.group(0))
    angle = float(payload["angle"])
    if not -MAX_ABS_YAW_DEG <= angle <= MAX_ABS_YAW_DEG:
        raise ValueError(f"Yaw angle out of range: {angle}")
    confidence = float(payload.get("confidence", 0.0))
    return YawEstimate(angle_deg=angle, confidence=min(max(confidence, 0.0), 1.0))


class YawEstimator:
    """Estimate the yaw of the subject in an image."""

    def __init__(self, adapter: GenerationAdapter):
        self.adapter = adapter

    async def estimate(self, image: ImagePayload, cancel: CancelToken | None = None) -> YawEstimate:
        try:
            response = await self.adapter.call(
                YAW_INSTRUCTION,
                [image],
                task_type=TaskType.TEXT,
                cancel=cancel,
            )
            estimate = parse_yaw_reply(response.text or "")
        except OperationCancelledError:
            raise
        except (BackendError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Yaw estimation failed, assuming 0 deg: {e}")
            return FALLBACK_ESTIMATE

        logger.info(f"Estimated base yaw {estimate.angle_deg:.1f} deg (confidence {estimate.confidence:.2f})")
        return estimate
