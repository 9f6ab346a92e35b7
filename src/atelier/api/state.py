"""Service wiring shared by the API routes."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import HTTPException, Request

from atelier.adapter.media.storage import ArtifactStore, ImageResolver
from atelier.adapter.vision.segmentation import HttpSegmenter
from atelier.adapter.vision.yaw import YawEstimator
from atelier.batch.orchestrator import BatchOrchestrator
from atelier.batch.renderers import ColorVariantRunner, PoseVariantRenderer
from atelier.config import Settings
from atelier.db.session import init_db
from atelier.pipeline.runner import TransformPipeline
from atelier.providers.adapter import GenerationAdapter
from atelier.providers.base import GenerationBackend
from atelier.providers.gemini import GeminiBackend
from atelier.providers.mock import MockBackend

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Long-lived collaborators of one application instance.

    ``pipeline`` is None when no segmentation service is configured; pose
    batches still work without it.
    """

    settings: Settings
    store: ArtifactStore
    resolver: ImageResolver
    orchestrator: BatchOrchestrator
    pipeline: TransformPipeline | None = None

    def require_pipeline(self) -> TransformPipeline:
        """Return the pipeline or fail the request with 503."""
        if self.pipeline is None:
            raise HTTPException(status_code=503, detail="Segmentation service not configured")
        return self.pipeline


def build_backend(settings: Settings) -> GenerationBackend:
    if settings.backend == "mock":
        return MockBackend()
    return GeminiBackend(api_key=settings.gemini_api_key)


def build_services(settings: Settings, backend: GenerationBackend | None = None) -> Services:
    """Wire backend, adapter, pipeline and orchestrator from settings."""
    adapter = GenerationAdapter(
        backend or build_backend(settings),
        backoff_s=settings.transient_backoff_s,
    )
    store = ArtifactStore(settings.artifacts_dir)
    resolver = ImageResolver()

    pipeline = None
    if settings.segmentation_url:
        pipeline = TransformPipeline(
            adapter,
            HttpSegmenter(settings.segmentation_url),
            store,
            resolver=resolver,
            model_version=settings.model_version,
            session_factory=init_db(settings.db_path),
        )
    else:
        logger.warning("ATELIER_SEGMENTATION_URL not set; pipeline and color batches are disabled")

    orchestrator = BatchOrchestrator(
        PoseVariantRenderer(adapter, store),
        ColorVariantRunner(pipeline) if pipeline else None,
        yaw_estimator=YawEstimator(adapter),
        resolver=resolver,
    )
    return Services(
        settings=settings,
        store=store,
        resolver=resolver,
        orchestrator=orchestrator,
        pipeline=pipeline,
    )


def get_services(request: Request) -> Services:
    """Dependency returning the services of the running app."""
    return request.app.state.services
