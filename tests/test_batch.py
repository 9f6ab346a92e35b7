"""Tests for batch orchestration."""

import asyncio
from datetime import datetime

import pytest

from atelier.adapter.media.image_codec import encode_image
from atelier.adapter.vision.segmentation import PrecomputedSegmenter
from atelier.adapter.vision.yaw import YawEstimator
from atelier.batch.events import ITEM_COMPLETED, ITEM_FAILED, JOB_FINISHED, JOB_PROGRESS
from atelier.batch.orchestrator import BatchOrchestrator, select_concurrency
from atelier.batch.renderers import ColorVariantRunner, PoseVariantRenderer
from atelier.models.types import BatchRequest
from atelier.pipeline.runner import TransformPipeline
from atelier.providers.adapter import GenerationAdapter
from atelier.providers.base import TaskType
from atelier.providers.errors import BackendError
from tests.conftest import ScriptedBackend, make_segmentation, make_source_image

BOOSTED_HOUR = 12
CONGESTED_HOUR = 2


class TrackingBackend(ScriptedBackend):
    """Mock backend that records how many image calls overlap."""

    def __init__(self, delay_s: float = 0.01, **kwargs):
        super().__init__(**kwargs)
        self.delay_s = delay_s
        self.started = 0
        self.active = 0
        self.peak = 0

    @property
    def image_calls(self):
        return [c for c in self.calls if c.task_type != TaskType.TEXT]

    async def generate(self, request):
        if request.task_type == TaskType.TEXT:
            return await super().generate(request)
        self.started += 1
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(self.delay_s)
            return await super().generate(request)
        finally:
            self.active -= 1


def _source_uri() -> str:
    return encode_image(make_source_image(), "png").to_data_uri()


def _pose_request(*angles, **extra) -> BatchRequest:
    return BatchRequest(
        source_image_id="img-001",
        source_image_data=_source_uri(),
        mode="pose",
        angles=list(angles),
        **extra,
    )


def _orchestrator(backend, store, hour: int = BOOSTED_HOUR) -> BatchOrchestrator:
    adapter = GenerationAdapter(backend, backoff_s=0)
    pipeline = TransformPipeline(adapter, PrecomputedSegmenter(make_segmentation()), store)
    return BatchOrchestrator(
        PoseVariantRenderer(adapter, store),
        ColorVariantRunner(pipeline),
        yaw_estimator=YawEstimator(adapter),
        clock=lambda: datetime(2026, 1, 1, hour),
    )


def _run_batch(orchestrator, request):
    async def scenario():
        job = orchestrator.create_job(request)
        await orchestrator.run(job)
        return job

    return asyncio.run(scenario())


class TestSelectConcurrency:
    """Test the time-of-day concurrency policy."""

    @pytest.mark.parametrize("hour", [23, 0, 3, 8])
    def test_congested_hours(self, hour):
        policy = select_concurrency(datetime(2026, 1, 1, hour))
        assert (policy.limit, policy.label) == (1, "congested")

    @pytest.mark.parametrize("hour", [9, 12, 22])
    def test_boosted_hours(self, hour):
        policy = select_concurrency(datetime(2026, 1, 1, hour))
        assert (policy.limit, policy.label) == (3, "boosted")


class TestCreateJob:
    """Test task fan-out."""

    def test_pose_tasks_per_group_and_angle(self, store):
        orchestrator = _orchestrator(TrackingBackend(), store)
        request = _pose_request(
            "front", "left-30", "front", color_references=[{"label": "Red", "hex_override": "#cc0000"}]
        )

        job = orchestrator.create_job(request)

        assert job.total == 4
        assert [(t.group, t.variant_param) for t in job.tasks] == [
            ("original", "front"),
            ("original", "left-30"),
            ("Red", "front"),
            ("Red", "left-30"),
        ]
        assert all(t.status == "pending" for t in job.tasks)
        assert job.concurrency.limit == 3

    def test_missing_source_raises(self, store):
        orchestrator = _orchestrator(TrackingBackend(), store)
        request = BatchRequest(source_image_id="/nonexistent/img.png", mode="pose", angles=["front"])
        with pytest.raises(FileNotFoundError):
            orchestrator.create_job(request)


class TestPoseBatch:
    """Test pose batches end to end."""

    def test_mirroring_saves_backend_calls(self, store):
        backend = TrackingBackend()
        orchestrator = _orchestrator(backend, store)

        job = _run_batch(orchestrator, _pose_request("front", "left-30", "right-30"))

        assert job.status == "success"
        assert len(backend.image_calls) == 2
        by_angle = {t.variant_param: t for t in job.tasks}
        assert by_angle["right-30"].is_mirrored
        assert not by_angle["left-30"].is_mirrored
        assert by_angle["left-30"].estimated_yaw_deg == -30.0
        assert by_angle["right-30"].estimated_yaw_deg == 30.0
        assert by_angle["right-30"].result_url == by_angle["left-30"].result_url

    def test_event_stream_shape(self, store):
        orchestrator = _orchestrator(TrackingBackend(), store)

        job = _run_batch(orchestrator, _pose_request("front", "left-side"))

        events = orchestrator.events(job.job_id)
        assert events.closed
        assert events.events[-1].type == JOB_FINISHED
        progress = events.of_type(JOB_PROGRESS)
        assert [p.stage for p in progress[:2]] == ["NORMALIZATION", "YAW_CALIBRATION"]
        assert progress[-1].completed == 2
        assert progress[-1].progress_percent == 100
        completed = [p.completed for p in progress]
        assert completed == sorted(completed)
        items = events.of_type(ITEM_COMPLETED)
        assert len(items) == 2
        assert all(item.thumbnail_url and item.original_url for item in items)
        finished = events.of_type(JOB_FINISHED)[0]
        assert (finished.status, finished.total, finished.completed) == ("success", 2, 2)

    def test_clamped_viewpoint_flagged(self, store):
        backend = TrackingBackend(text_response='{"angle": 40, "confidence": 0.9}')
        orchestrator = _orchestrator(backend, store)

        job = _run_batch(orchestrator, _pose_request("left-side"))

        (task,) = job.tasks
        assert job.base_yaw_deg == 40.0
        assert task.is_clamped
        assert task.estimated_yaw_deg == 40.0 - 65.0

    def test_texture_transfer_sends_reference(self, store):
        backend = TrackingBackend()
        orchestrator = _orchestrator(backend, store)
        reference = {"label": "Check", "mode": "texture_transfer", "image_data": _source_uri()}

        _run_batch(orchestrator, _pose_request("front", color_references=[reference]))

        image_counts = sorted(len(c.images) for c in backend.image_calls)
        assert image_counts == [1, 2]


class TestConcurrency:
    """Test the in-flight bound."""

    ANGLES = ("front", "left-30", "left-40", "left-side")
    REFERENCES = [{"label": "Red", "hex_override": "#CC0000"}, {"label": "Navy", "hex_override": "#000080"}]

    def test_boosted_limit_is_respected(self, store):
        backend = TrackingBackend(delay_s=0.02)
        orchestrator = _orchestrator(backend, store, hour=BOOSTED_HOUR)

        _run_batch(orchestrator, _pose_request(*self.ANGLES, color_references=self.REFERENCES))

        assert len(backend.image_calls) == 12
        assert 1 < backend.peak <= 3

    def test_congested_runs_one_at_a_time(self, store):
        backend = TrackingBackend(delay_s=0.01)
        orchestrator = _orchestrator(backend, store, hour=CONGESTED_HOUR)

        job = _run_batch(orchestrator, _pose_request(*self.ANGLES))

        assert backend.peak == 1
        assert job.status == "success"


class TestFailures:
    """Test per-task failure isolation and retry."""

    @staticmethod
    def _fail_left_30(request):
        if "LOOKING LEFT (30" in request.instruction:
            return BackendError("400 INVALID_ARGUMENT")
        return None

    @staticmethod
    def _fail_front(request):
        if "FRONT FACING" in request.instruction:
            return BackendError("400 INVALID_ARGUMENT")
        return None

    @staticmethod
    def _fail_left_views(request):
        if "LOOKING LEFT" in request.instruction:
            return BackendError("400 INVALID_ARGUMENT")
        return None

    def test_failure_is_isolated(self, store):
        backend = TrackingBackend(fail_when=self._fail_left_30)
        orchestrator = _orchestrator(backend, store)

        job = _run_batch(orchestrator, _pose_request("front", "left-30", "right-30"))

        assert job.status == "partial_success"
        assert job.completed_count == 3
        statuses = {t.variant_param: t.status for t in job.tasks}
        assert statuses == {"front": "success", "left-30": "error", "right-30": "error"}
        failed = orchestrator.events(job.job_id).of_type(ITEM_FAILED)
        assert len(failed) == 2
        assert failed[0].error_code == "invalid"
        assert failed[0].retryable is False

    def test_retry_reruns_only_that_task(self, store):
        backend = TrackingBackend(fail_when=self._fail_left_30)
        orchestrator = _orchestrator(backend, store)

        async def scenario():
            job = orchestrator.create_job(_pose_request("front", "left-30", "right-30"))
            await orchestrator.run(job)
            backend.fail_when = None
            right = next(t for t in job.tasks if t.variant_param == "right-30")
            await orchestrator.retry_task(job, right.task_id)
            return job

        job = asyncio.run(scenario())

        statuses = {t.variant_param: t.status for t in job.tasks}
        assert statuses == {"front": "success", "left-30": "error", "right-30": "success"}
        right = next(t for t in job.tasks if t.variant_param == "right-30")
        assert right.is_mirrored
        assert right.attempts == 1
        assert job.completed_count == 3
        assert job.status == "partial_success"
        assert len(orchestrator.events(job.job_id).of_type(JOB_FINISHED)) == 2

    def test_retry_during_run_waits_for_a_slot(self, store):
        backend = TrackingBackend(delay_s=0.02, fail_when=self._fail_front)
        orchestrator = _orchestrator(backend, store, hour=CONGESTED_HOUR)

        async def scenario():
            job = orchestrator.create_job(_pose_request("front", "left-30", "left-40", "left-side"))
            runner = asyncio.create_task(orchestrator.run(job))
            front = job.tasks[0]
            while front.status != "error":
                await asyncio.sleep(0.005)
            backend.fail_when = None
            await orchestrator.retry_task(job, front.task_id)
            await runner
            return job

        job = asyncio.run(scenario())

        assert backend.peak == 1
        assert job.status == "success"
        assert job.completed_count == 4
        assert len(orchestrator.events(job.job_id).of_type(JOB_FINISHED)) == 1

    def test_concurrent_retries_finish_once(self, store):
        backend = TrackingBackend(fail_when=self._fail_left_views)
        orchestrator = _orchestrator(backend, store)

        async def scenario():
            job = orchestrator.create_job(_pose_request("front", "left-30", "left-40"))
            await orchestrator.run(job)
            backend.fail_when = None
            await asyncio.gather(
                orchestrator.retry_task(job, job.tasks[1].task_id),
                orchestrator.retry_task(job, job.tasks[2].task_id),
            )
            return job

        job = asyncio.run(scenario())

        events = orchestrator.events(job.job_id)
        assert job.status == "success"
        assert [t.status for t in job.tasks] == ["success", "success", "success"]
        finished = events.of_type(JOB_FINISHED)
        assert [f.status for f in finished] == ["partial_success", "success"]
        assert events.events[-1].type == JOB_FINISHED
        assert len(events.of_type(ITEM_COMPLETED)) == 3
        assert events.closed

    def test_retry_unknown_task(self, store):
        orchestrator = _orchestrator(TrackingBackend(), store)

        async def scenario():
            job = orchestrator.create_job(_pose_request("front"))
            await orchestrator.run(job)
            await orchestrator.retry_task(job, "nope")

        with pytest.raises(KeyError):
            asyncio.run(scenario())


class TestCancellation:
    """Test cooperative cancellation."""

    def test_cancel_stops_pending_and_in_flight(self, store):
        backend = TrackingBackend(delay_s=0.5)
        orchestrator = _orchestrator(backend, store, hour=CONGESTED_HOUR)

        async def scenario():
            job = orchestrator.create_job(_pose_request("front", "left-30", "left-40", "left-side"))
            runner = asyncio.create_task(orchestrator.run(job))
            while backend.active == 0:
                await asyncio.sleep(0.005)
            await orchestrator.cancel(job)
            await runner
            return job

        job = asyncio.run(scenario())

        assert job.status == "cancelled"
        assert all(t.status == "cancelled" for t in job.tasks)
        assert backend.started == 1
        events = orchestrator.events(job.job_id)
        assert events.of_type(ITEM_COMPLETED) == []
        assert events.of_type(JOB_FINISHED)[0].status == "cancelled"

    def test_settled_tasks_keep_results(self, store):
        backend = TrackingBackend(delay_s=0.05)
        orchestrator = _orchestrator(backend, store, hour=CONGESTED_HOUR)

        async def scenario():
            job = orchestrator.create_job(_pose_request("front", "left-30", "left-40"))
            runner = asyncio.create_task(orchestrator.run(job))
            while job.completed_count == 0:
                await asyncio.sleep(0.005)
            await orchestrator.cancel(job)
            await runner
            return job

        job = asyncio.run(scenario())

        assert job.status == "cancelled"
        assert job.tasks[0].status == "success"
        assert [t.status for t in job.tasks[1:]] == ["cancelled", "cancelled"]


class TestColorBatch:
    """Test color batches over the full pipeline."""

    def test_one_pipeline_run_per_reference(self, store):
        backend = TrackingBackend()
        orchestrator = _orchestrator(backend, store)
        request = BatchRequest(
            source_image_id="img-001",
            source_image_data=_source_uri(),
            mode="color",
            color_references=[
                {"label": "Red", "hex_override": "#CC0000"},
                {"label": "Navy", "hex_override": "#000080"},
            ],
            pipeline_config={
                "validation_mode": "relaxed",
                "recolor": {"target_category": "top", "color_source": {"type": "hex", "value": "#FFFFFF"}},
            },
        )

        job = _run_batch(orchestrator, request)

        assert job.status == "success"
        assert [t.variant_param for t in job.tasks] == ["#CC0000", "#000080"]
        assert len(backend.image_calls) == 2
        assert "#CC0000" in backend.image_calls[0].instruction or "#CC0000" in backend.image_calls[1].instruction
        assert all(t.result_url for t in job.tasks)

    def test_build_request_replaces_color_source(self, store):
        orchestrator = _orchestrator(TrackingBackend(), store)
        request = BatchRequest(
            source_image_id="img-001",
            mode="color",
            color_references=[{"label": "Red", "hex_override": "#CC0000"}],
            pipeline_config={
                "recolor": {"target_category": "all", "color_source": {"type": "hex", "value": "#FFFFFF"}},
            },
        )

        transform = orchestrator.color_runner.build_request(request, request.color_references[0])

        assert transform.pipeline_config.recolor.color_source.value == "#CC0000"
        assert transform.pipeline_config.recolor.target_category == "all"
