"""Database schema for Atelier.

Tables back the idempotent result cache. Unique constraints enforce the
invariant that one idempotency key maps to one stored run.
"""

from datetime import datetime, timezone

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PipelineRun(Base):
    """One pipeline execution, keyed by its idempotency key.

    Invariant: idempotency_key is the primary key, so a request and its
    replay share one row.
    """

    __tablename__ = "pipeline_runs"

    idempotency_key: Mapped[str] = mapped_column(String(16), primary_key=True)
    source_image_id: Mapped[str] = mapped_column(String(512), nullable=False)
    model_version: Mapped[str] = mapped_column(String(64), nullable=False)
    app_version: Mapped[str] = mapped_column(String(32), nullable=False)
    seed: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    final_image_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    output_options_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    result_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=_utcnow, onupdate=_utcnow
    )


class StageCall(Base):
    """Record of one backend call made by a pipeline stage."""

    __tablename__ = "stage_calls"

    stage_call_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    idempotency_key: Mapped[str] = mapped_column(
        String(16), ForeignKey("pipeline_runs.idempotency_key"), nullable=False
    )
    stage: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    model_used: Mapped[str | None] = mapped_column(String(128), nullable=True)
    error_kind: Mapped[str | None] = mapped_column(String(16), nullable=True)
    latency_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=_utcnow)
