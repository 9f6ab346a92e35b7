"""Shared pytest fixtures for atelier tests."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import numpy as np
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from atelier.adapter.media.image_codec import encode_image
from atelier.adapter.media.storage import ArtifactStore
from atelier.adapter.vision.segmentation import PrecomputedSegmenter
from atelier.db.schema import Base
from atelier.models.domain import ImagePayload, SegmentationResult
from atelier.models.types import TransformRequest
from atelier.pipeline.runner import TransformPipeline
from atelier.providers.adapter import GenerationAdapter
from atelier.providers.base import BackendRequest, BackendResponse, GenerationBackend
from atelier.providers.mock import MockBackend

IMAGE_SHAPE = (96, 128)


def _box(top: int, bottom: int, left: int, right: int) -> np.ndarray:
    mask = np.zeros(IMAGE_SHAPE, dtype=bool)
    mask[top:bottom, left:right] = True
    return mask


def make_source_image() -> np.ndarray:
    """Gray noisy backdrop, skin-toned head and neck, striped blue garment."""
    rng = np.random.default_rng(7)
    image = np.full((*IMAGE_SHAPE, 3), 150, dtype=np.uint8)
    image += rng.integers(0, 20, size=image.shape, dtype=np.uint8)
    image[_box(8, 40, 48, 80)] = (120, 160, 210)
    garment = _box(36, 88, 44, 84)
    image[garment] = (170, 60, 30)
    image[::4][garment[::4]] = (200, 90, 50)
    return image


def make_segmentation() -> SegmentationResult:
    person = _box(8, 92, 40, 88)
    return SegmentationResult(
        person=person,
        garment=_box(36, 88, 44, 84),
        skin=_box(30, 40, 48, 80) | _box(60, 75, 40, 46),
        hand=_box(60, 75, 40, 46),
        hair_face=_box(8, 30, 52, 76),
        prop=np.zeros(IMAGE_SHAPE, dtype=bool),
        background=~person,
        garments_by_category={"top": _box(36, 62, 44, 84), "bottom": _box(62, 88, 44, 84)},
    )


def make_request(**overrides) -> TransformRequest:
    """Transform request with a hex recolor, overridable via dict merge."""
    data = {
        "source_image_id": "img-001",
        "pipeline_config": {
            "validation_mode": "relaxed",
            "recolor": {
                "target_category": "top",
                "color_source": {"type": "hex", "value": "#AA2233"},
            },
        },
    }
    data.update(overrides)
    return TransformRequest.model_validate(data)


class ScriptedBackend(GenerationBackend):
    """Mock backend whose calls can be made to fail selectively.

    ``fail_when`` receives each request and returns an exception to raise,
    or None to let the mock answer.
    """

    def __init__(self, fail_when: Callable[[BackendRequest], Exception | None] | None = None, **kwargs):
        self.inner = MockBackend(**kwargs)
        self.fail_when = fail_when
        self.calls: list[BackendRequest] = []

    async def generate(self, request: BackendRequest) -> BackendResponse:
        self.calls.append(request)
        error = self.fail_when(request) if self.fail_when else None
        if error is not None:
            raise error
        return await self.inner.generate(request)


@pytest.fixture
def source_image() -> np.ndarray:
    return make_source_image()


@pytest.fixture
def source_payload(source_image: np.ndarray) -> ImagePayload:
    return encode_image(source_image, "png")


@pytest.fixture
def segmentation() -> SegmentationResult:
    return make_segmentation()


@pytest.fixture
def engine():
    """Create an in-memory SQLite engine for testing."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def session_factory(engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def session(session_factory):
    """Create a database session for testing."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def store(tmp_path: Path) -> ArtifactStore:
    return ArtifactStore(tmp_path / "artifacts")


@pytest.fixture
def backend() -> ScriptedBackend:
    return ScriptedBackend()


@pytest.fixture
def adapter(backend: ScriptedBackend) -> GenerationAdapter:
    return GenerationAdapter(backend, backoff_s=0)


@pytest.fixture
def pipeline(adapter, segmentation, store, session_factory, source_payload) -> TransformPipeline:
    """Pipeline over the mock backend; source ids resolve to the synthetic image."""
    pipeline = TransformPipeline(
        adapter,
        PrecomputedSegmenter(segmentation),
        store,
        session_factory=session_factory,
    )
    pipeline.resolver.resolve_source = lambda source_id, data: source_payload
    return pipeline
