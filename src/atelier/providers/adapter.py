"""Generation adapter: model fallback, error classification and backoff.

A single entry point for every generative call. For each task type it walks
an ordered list of candidate models:

- success (image or text) returns immediately, tagged with the model used
- a transient failure waits a fixed backoff, then tries the next candidate
- any other failure moves on immediately
- when every candidate failed, AllModelsFailedError carries the last error
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from atelier.core.cancellation import CancelToken
from atelier.core.errors import OperationCancelledError
from atelier.models.domain import ImagePayload
from atelier.providers.base import (
    DEFAULT_POLICY,
    BackendRequest,
    GenerationBackend,
    TaskType,
)
from atelier.providers.errors import (
    AllModelsFailedError,
    BackendBlockedError,
    classify_error,
    is_transient,
)

logger = logging.getLogger(__name__)

DEFAULT_CANDIDATES: dict[TaskType, tuple[str, ...]] = {
    TaskType.EDIT: (
        "models/nano-banana-pro-preview",
        "models/gemini-2.5-flash-image",
        "models/gemini-2.0-flash-exp-image-generation",
    ),
    TaskType.CREATION: (
        "models/nano-banana-pro-preview",
        "models/gemini-2.5-flash-image",
    ),
    TaskType.TEXT: (
        "gemini-1.5-pro",
        "gemini-1.5-flash",
    ),
}

TRANSIENT_BACKOFF_S = 1.0


@dataclass
class AdapterResponse:
    """Successful adapter call."""

    model_used: str
    image: ImagePayload | None = None
    text: str | None = None


class GenerationAdapter:
    """Call a backend with per-task-type model fallback."""

    def __init__(
        self,
        backend: GenerationBackend,
        candidates: dict[TaskType, tuple[str, ...]] | None = None,
        backoff_s: float = TRANSIENT_BACKOFF_S,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ):
        """Initialize adapter.

        Args:
            backend: Backend that performs single-model calls.
            candidates: Candidate models per task type (defaults above).
            backoff_s: Delay after a transient failure.
            sleep: Awaitable delay used when no cancel token is given.
        """
        self.backend = backend
        self.candidates = dict(candidates or DEFAULT_CANDIDATES)
        self.backoff_s = backoff_s
        self._sleep = sleep or asyncio.sleep

    def candidate_models(self, task_type: TaskType, model_override: str | None = None) -> list[str]:
        """Ordered, de-duplicated candidates; an override goes first."""
        ordered = list(self.candidates.get(task_type, ()))
        if model_override:
            ordered.insert(0, model_override)
        return list(dict.fromkeys(ordered))

    async def _backoff(self, cancel: CancelToken | None) -> None:
        if cancel is not None:
            await cancel.sleep(self.backoff_s)
        else:
            await self._sleep(self.backoff_s)

    async def call(
        self,
        instruction: str,
        images: list[ImagePayload] | None = None,
        task_type: TaskType = TaskType.EDIT,
        model_override: str | None = None,
        seed: int | None = None,
        cancel: CancelToken | None = None,
    ) -> AdapterResponse:
        """Run one generative call with fallback.

        Args:
            instruction: Prompt text.
            images: Images, in order.
            task_type: Selects the candidate list.
            model_override: Model tried before the defaults.
            seed: Forwarded to the backend.
            cancel: Observed before each attempt and during backoff.

        Returns:
            AdapterResponse from the first candidate that produced output.

        Raises:
            AllModelsFailedError: If every candidate failed.
            OperationCancelledError: If ``cancel`` fired.
        """
        models = self.candidate_models(task_type, model_override)
        attempted: list[str] = []
        last_error: BaseException | None = None

        for index, model in enumerate(models):
            if cancel is not None:
                cancel.raise_if_cancelled()
            attempted.append(model)

            request = BackendRequest(
                model=model,
                instruction=instruction,
                images=list(images or []),
                task_type=task_type,
                policy=DEFAULT_POLICY,
                seed=seed,
            )
            try:
                response = await self.backend.generate(request)
                if response.empty:
                    raise BackendBlockedError("EMPTY_RESPONSE")
            except (OperationCancelledError, asyncio.CancelledError):
                raise
            except Exception as e:
                last_error = e
                kind = classify_error(e)
                transient = is_transient(e)
                logger.warning(
                    f"Model {model} failed ({kind.value}, transient={transient}): {e}"
                )
                if transient and index < len(models) - 1:
                    await self._backoff(cancel)
                continue

            logger.debug(f"{task_type.value} call served by {model}")
            return AdapterResponse(model_used=model, image=response.image, text=response.text)

        raise AllModelsFailedError(last_error, attempted)
