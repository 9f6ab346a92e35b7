"""Backend error taxonomy.

Every raw backend failure is classified into one of five kinds. Each kind
carries a fixed user-facing message and a retryability hint:

- safety: content-policy block, the input must change
- quota: rate limit / resource exhaustion, retry later
- auth: invalid or expired credential, re-credential first
- invalid: malformed request, the input must change
- unknown: everything else (including overload), retry later

Transient failures (quota and overload/network markers) get a backoff before
the adapter moves on to the next candidate model.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from atelier.core.errors import AtelierError


class ErrorKind(str, Enum):
    SAFETY = "safety"
    QUOTA = "quota"
    AUTH = "auth"
    INVALID = "invalid"
    UNKNOWN = "unknown"


ERROR_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.AUTH: "The API key is invalid or expired. Please select a valid key.",
    ErrorKind.SAFETY: "The image was blocked by the safety policy. Please change the input or prompt.",
    ErrorKind.QUOTA: "The API quota was exceeded. Please try again shortly.",
    ErrorKind.INVALID: "The request was invalid. Please check the inputs and images.",
    ErrorKind.UNKNOWN: "The generation service failed unexpectedly. Please try again.",
}

RETRYABLE_KINDS = frozenset({ErrorKind.QUOTA, ErrorKind.UNKNOWN})

# Markers of transient infrastructure trouble (checked on the lowercased text)
TRANSIENT_MARKERS = (
    "503",
    "overloaded",
    "unavailable",
    "timeout",
    "timed out",
    "connection",
    "internal error",
)


class BackendError(AtelierError):
    """Raised by backends for failed or unusable responses.

    Attributes:
        status_code: HTTP-like status code when the backend reported one.
    """

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class BackendBlockedError(BackendError):
    """Raised when a response was blocked or came back empty."""


class AllModelsFailedError(BackendError):
    """Raised when every candidate model failed.

    Attributes:
        last_error: The underlying exception of the final attempt.
        kind: Classification of ``last_error``.
        attempted: Models tried, in order.
    """

    def __init__(self, last_error: BaseException | None, attempted: list[str]):
        last_message = str(last_error) if last_error is not None else "Unknown"
        super().__init__(f"All models failed. Last error: {last_message}")
        self.last_error = last_error
        self.kind = classify_error(last_error) if last_error is not None else ErrorKind.UNKNOWN
        self.attempted = attempted


@dataclass(frozen=True)
class ErrorInfo:
    """User-facing description of a classified failure."""

    kind: ErrorKind
    message: str
    retryable: bool
    detail: str


def _error_text(error: BaseException | str) -> str:
    if isinstance(error, str):
        return error
    parts = [str(error)]
    code = getattr(error, "status_code", None) or getattr(error, "code", None)
    if isinstance(code, int):
        parts.append(str(code))
    return " ".join(parts)


def classify_error(error: BaseException | str) -> ErrorKind:
    """Classify a raw backend failure.

    Args:
        error: Exception (its message and any status code are inspected)
            or a bare message.

    Returns:
        ErrorKind, ``UNKNOWN`` when nothing matches.
    """
    if isinstance(error, AllModelsFailedError):
        return error.kind

    text = _error_text(error)
    lowered = text.lower()

    if (
        "requested entity was not found" in lowered
        or "api key" in lowered
        or "api_key" in lowered
        or "401" in text
        or "403" in text
        or "permission denied" in lowered
        or "unauthenticated" in lowered
    ):
        return ErrorKind.AUTH
    if "SAFETY" in text.upper() or "BLOCKED" in text.upper():
        return ErrorKind.SAFETY
    if "429" in text or "quota" in lowered or "resource exhausted" in lowered or "resource_exhausted" in lowered:
        return ErrorKind.QUOTA
    if "400" in text or "invalid" in lowered:
        return ErrorKind.INVALID
    return ErrorKind.UNKNOWN


def is_transient(error: BaseException | str) -> bool:
    """Whether a failure warrants the backoff before the next candidate."""
    if classify_error(error) == ErrorKind.QUOTA:
        return True
    lowered = _error_text(error).lower()
    return any(marker in lowered for marker in TRANSIENT_MARKERS)


def describe_error(error: BaseException | str) -> ErrorInfo:
    """Classify and attach the fixed message and retryability hint."""
    kind = classify_error(error)
    return ErrorInfo(
        kind=kind,
        message=ERROR_MESSAGES[kind],
        retryable=kind in RETRYABLE_KINDS,
        detail=_error_text(error) if not isinstance(error, str) else error,
    )
