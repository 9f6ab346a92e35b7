"""Base generation backend interface.

Backends implement a narrow interface: ``generate(request) -> response``.
They must NOT:
- choose models or retry (the adapter does)
- touch masks, metrics or persistence
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum

from atelier.models.domain import ImagePayload


class TaskType(str, Enum):
    """Kind of backend call; selects the candidate model list."""

    CREATION = "creation"
    EDIT = "edit"
    TEXT = "text"


SAFETY_CATEGORIES = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
)


@dataclass(frozen=True)
class RequestPolicy:
    """Fixed settings attached to every backend call.

    Garment edits of people are routinely over-blocked at default
    thresholds; regions are constrained by masks instead.
    """

    safety_categories: tuple[str, ...] = SAFETY_CATEGORIES
    safety_threshold: str = "BLOCK_NONE"
    function_calling_mode: str = "NONE"


DEFAULT_POLICY = RequestPolicy()


@dataclass
class BackendRequest:
    """One call to one model."""

    model: str
    instruction: str
    images: list[ImagePayload] = field(default_factory=list)
    task_type: TaskType = TaskType.EDIT
    policy: RequestPolicy = DEFAULT_POLICY
    seed: int | None = None


@dataclass
class BackendResponse:
    """Image and/or text returned by a backend.

    At least one is set on success; an image takes priority over text.
    """

    image: ImagePayload | None = None
    text: str | None = None

    @property
    def empty(self) -> bool:
        return self.image is None and not self.text


class GenerationBackend(ABC):
    """Abstract base class for generative image/text backends."""

    name: str = "backend"

    @abstractmethod
    async def generate(self, request: BackendRequest) -> BackendResponse:
        """Run one generation call.

        Args:
            request: Model, instruction, images, policy and seed.

        Returns:
            BackendResponse with an image or text.

        Raises:
            BackendError: On blocked or empty responses. Transport errors of
                the underlying client propagate unchanged.
        """
        pass
