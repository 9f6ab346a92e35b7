"""Gemini backend over the google-genai SDK.

Turns a BackendRequest into one ``generate_content`` call and extracts the
first image (or the text) from the response. Blocked and empty responses
raise BackendBlockedError with a stable marker the error taxonomy
classifies:

- PROMPT_BLOCKED: <reason>
- NO_CANDIDATE_RETURNED
- BLOCKED_BY_SAFETY
- MODEL_STOPPED: <finish reason>
- EMPTY_PARTS_WITH_STOP
"""

from __future__ import annotations

import logging
from typing import Any

from google import genai
from google.genai import types

from atelier.models.domain import ImagePayload
from atelier.providers.base import BackendRequest, BackendResponse, GenerationBackend, TaskType
from atelier.providers.errors import BackendBlockedError

logger = logging.getLogger(__name__)

INT32_MAX = 2**31 - 1


def _enum_name(value: Any) -> str:
    """Name of an SDK enum member (or the plain string)."""
    if value is None:
        return ""
    name = getattr(value, "name", None)
    return str(name if name is not None else value)


def build_contents(request: BackendRequest) -> list[types.Part]:
    """Instruction text first, then the images in order."""
    parts = [types.Part.from_text(text=request.instruction)]
    for image in request.images:
        parts.append(types.Part.from_bytes(data=image.data, mime_type=image.mime_type))
    return parts


def build_config(request: BackendRequest) -> types.GenerateContentConfig:
    """Attach the request policy: safety thresholds and tool calling mode."""
    policy = request.policy
    safety_settings = [
        types.SafetySetting(category=category, threshold=policy.safety_threshold)
        for category in policy.safety_categories
    ]
    config = types.GenerateContentConfig(
        safety_settings=safety_settings,
        tool_config=types.ToolConfig(
            function_calling_config=types.FunctionCallingConfig(mode=policy.function_calling_mode)
        ),
    )
    if request.seed is not None:
        config.seed = min(request.seed, INT32_MAX)
    if request.task_type != TaskType.TEXT:
        config.response_modalities = ["IMAGE", "TEXT"]
    return config


def extract_response(response: Any) -> BackendResponse:
    """Pull the first image (preferred) or the joined text from a response.

    Raises:
        BackendBlockedError: For blocked, stopped or empty responses.
    """
    feedback = getattr(response, "prompt_feedback", None)
    block_reason = getattr(feedback, "block_reason", None) if feedback else None
    if block_reason:
        raise BackendBlockedError(f"PROMPT_BLOCKED: {_enum_name(block_reason)}")

    candidates = getattr(response, "candidates", None) or []
    if not candidates:
        raise BackendBlockedError("NO_CANDIDATE_RETURNED")
    candidate = candidates[0]

    finish_reason = _enum_name(getattr(candidate, "finish_reason", None))
    if finish_reason and finish_reason not in ("STOP", "FINISH_REASON_UNSPECIFIED"):
        if finish_reason == "SAFETY":
            raise BackendBlockedError("BLOCKED_BY_SAFETY")
        raise BackendBlockedError(f"MODEL_STOPPED: {finish_reason}")

    content = getattr(candidate, "content", None)
    parts = (getattr(content, "parts", None) or []) if content else []

    for part in parts:
        inline = getattr(part, "inline_data", None)
        if inline is not None and inline.data:
            return BackendResponse(
                image=ImagePayload(data=inline.data, mime_type=inline.mime_type or "image/png")
            )

    texts = [part.text for part in parts if getattr(part, "text", None)]
    if texts:
        return BackendResponse(text="".join(texts))

    raise BackendBlockedError("EMPTY_PARTS_WITH_STOP")


class GeminiBackend(GenerationBackend):
    """Backend calling Gemini models through ``client.aio``."""

    name = "gemini"

    def __init__(self, api_key: str | None = None, client: Any | None = None):
        """Initialize backend.

        Args:
            api_key: Gemini API key (ignored when ``client`` is given).
            client: Pre-built ``genai.Client`` or a compatible fake.
        """
        if client is None:
            if not api_key:
                raise ValueError("Gemini API key is not configured. Set ATELIER_GEMINI_API_KEY.")
            client = genai.Client(api_key=api_key)
        self.client = client

    async def generate(self, request: BackendRequest) -> BackendResponse:
        logger.info(f"Gemini {request.task_type.value} call: model={request.model}")
        response = await self.client.aio.models.generate_content(
            model=request.model,
            contents=build_contents(request),
            config=build_config(request),
        )
        return extract_response(response)
