"""Repository pattern for database operations.

Encapsulates all SQLAlchemy queries, keeping domain logic pure.
Returns domain models (not SQLAlchemy entities) to external callers.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy.orm import Session

from atelier.db.schema import PipelineRun, StageCall
from atelier.models.domain import PipelineRunEntity, StageCallEntity

if TYPE_CHECKING:
    from sqlalchemy.orm import Session as DbSession
else:
    DbSession = Session

# Re-export for external use
__all__ = ["DbSession"]

# Only these statuses are served from cache
CACHEABLE_STATUSES = ("success", "partial_success")


# ============================================================================
# Converters: SQLAlchemy -> Domain
# ============================================================================


def _run_to_entity(run: PipelineRun) -> PipelineRunEntity:
    """Convert SQLAlchemy PipelineRun to domain entity."""
    return PipelineRunEntity(
        idempotency_key=run.idempotency_key,
        source_image_id=run.source_image_id,
        model_version=run.model_version,
        app_version=run.app_version,
        seed=run.seed,
        status=run.status,
        final_image_url=run.final_image_url,
        output_options_json=run.output_options_json,
        result_json=run.result_json,
        error_detail=run.error_detail,
    )


def _call_to_entity(call: StageCall) -> StageCallEntity:
    """Convert SQLAlchemy StageCall to domain entity."""
    return StageCallEntity(
        idempotency_key=call.idempotency_key,
        stage=call.stage,
        status=call.status,
        model_used=call.model_used,
        error_kind=call.error_kind,
        latency_ms=call.latency_ms,
    )


# ============================================================================
# Pipeline runs
# ============================================================================


def get_run(session: DbSession, idempotency_key: str) -> PipelineRunEntity | None:
    """Get a stored run by idempotency key."""
    run = session.get(PipelineRun, idempotency_key)
    return _run_to_entity(run) if run else None


def get_cached_run(
    session: DbSession,
    idempotency_key: str,
    output_options_json: str | None = None,
) -> PipelineRunEntity | None:
    """Get a stored run that may be served instead of re-running.

    The idempotency key does not cover output options, so a stored run only
    matches when it was rendered with the same options. Passing None skips
    that check.
    """
    query = session.query(PipelineRun).filter(
        PipelineRun.idempotency_key == idempotency_key,
        PipelineRun.status.in_(CACHEABLE_STATUSES),
    )
    if output_options_json is not None:
        query = query.filter(PipelineRun.output_options_json == output_options_json)
    run = query.first()
    return _run_to_entity(run) if run else None


def save_run(session: DbSession, entity: PipelineRunEntity) -> PipelineRunEntity:
    """Insert or overwrite the run stored under the entity's key.

    A failed run may later be replaced by a successful replay of the same
    request; the key stays the same.
    """
    run = session.get(PipelineRun, entity.idempotency_key)
    if run is None:
        run = PipelineRun(idempotency_key=entity.idempotency_key)
        session.add(run)
    run.source_image_id = entity.source_image_id
    run.model_version = entity.model_version
    run.app_version = entity.app_version
    run.seed = entity.seed
    run.status = entity.status
    run.final_image_url = entity.final_image_url
    run.output_options_json = entity.output_options_json
    run.result_json = entity.result_json
    run.error_detail = entity.error_detail
    session.flush()
    return entity


# ============================================================================
# Stage calls
# ============================================================================


def create_stage_calls(session: DbSession, entities: list[StageCallEntity]) -> None:
    """Record the backend calls of one run."""
    for entity in entities:
        session.add(
            StageCall(
                idempotency_key=entity.idempotency_key,
                stage=entity.stage,
                status=entity.status,
                model_used=entity.model_used,
                error_kind=entity.error_kind,
                latency_ms=entity.latency_ms,
            )
        )
    session.flush()


def get_stage_calls(session: DbSession, idempotency_key: str) -> list[StageCallEntity]:
    """Get recorded backend calls of a run in call order."""
    calls = (
        session.query(StageCall)
        .filter(StageCall.idempotency_key == idempotency_key)
        .order_by(StageCall.stage_call_id)
        .all()
    )
    return [_call_to_entity(c) for c in calls]
