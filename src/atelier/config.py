"""Runtime settings read from the environment.

All variables are optional:

- ATELIER_ARTIFACTS_DIR: directory served under /artifacts (default: artifacts)
- ATELIER_DB_PATH: SQLite result cache (default: data/atelier.db)
- ATELIER_MODEL_VERSION: model version folded into idempotency keys
- ATELIER_GEMINI_API_KEY / GEMINI_API_KEY: Gemini credentials
- ATELIER_SEGMENTATION_URL: HTTP segmentation service
- ATELIER_BACKEND: ``gemini`` or ``mock`` (default: gemini)
- ATELIER_TRANSIENT_BACKOFF_S: pause before the next candidate model
- ATELIER_LOG_LEVEL: root log level (default: INFO)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from atelier.db.session import DEFAULT_DB_PATH
from atelier.pipeline.runner import DEFAULT_MODEL_VERSION
from atelier.providers.adapter import TRANSIENT_BACKOFF_S

BACKENDS = ("gemini", "mock")


@dataclass(frozen=True)
class Settings:
    """Service settings."""

    artifacts_dir: Path = Path("artifacts")
    db_path: Path = DEFAULT_DB_PATH
    model_version: str = DEFAULT_MODEL_VERSION
    gemini_api_key: str | None = None
    segmentation_url: str | None = None
    backend: str = "gemini"
    transient_backoff_s: float = TRANSIENT_BACKOFF_S
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        """Build settings from environment variables.

        Raises:
            ValueError: If ATELIER_BACKEND, ATELIER_LOG_LEVEL or
                ATELIER_TRANSIENT_BACKOFF_S hold an unusable value.
        """
        env = os.environ if environ is None else environ

        backend = env.get("ATELIER_BACKEND", "gemini").lower()
        if backend not in BACKENDS:
            raise ValueError(f"ATELIER_BACKEND must be one of {BACKENDS}, got {backend!r}")

        log_level = env.get("ATELIER_LOG_LEVEL", "INFO").upper()
        if not isinstance(logging.getLevelName(log_level), int):
            raise ValueError(f"Unknown ATELIER_LOG_LEVEL {log_level!r}")

        backoff = float(env.get("ATELIER_TRANSIENT_BACKOFF_S", TRANSIENT_BACKOFF_S))
        if backoff < 0:
            raise ValueError("ATELIER_TRANSIENT_BACKOFF_S must not be negative")

        return cls(
            artifacts_dir=Path(env.get("ATELIER_ARTIFACTS_DIR", "artifacts")),
            db_path=Path(env.get("ATELIER_DB_PATH", str(DEFAULT_DB_PATH))),
            model_version=env.get("ATELIER_MODEL_VERSION", DEFAULT_MODEL_VERSION),
            gemini_api_key=env.get("ATELIER_GEMINI_API_KEY") or env.get("GEMINI_API_KEY") or None,
            segmentation_url=env.get("ATELIER_SEGMENTATION_URL") or None,
            backend=backend,
            transient_backoff_s=backoff,
            log_level=log_level,
        )
