"""Batch orchestrator: bounded fan-out of one edit over variants.

Architecture:
- BatchOrchestrator: creates jobs, runs their render units on a bounded
  worker pool, owns the single settlement path for task state and counters
- JobRuntime: per-job request, source image, event log and workers
- Renderers (batch/renderers.py): produce one TaskOutcome per render

Invariants:
- at most ``concurrency.limit`` tasks are loading at once per job, retries
  included
- JOB_FINISHED is emitted once per run, after the last worker or retry
- a task is counted in ``completed_count`` at most once, on its first
  settlement (success or error); cancelled tasks are never counted
- results resolving after cancellation are discarded
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from atelier.adapter.media.storage import ImageResolver
from atelier.adapter.vision.yaw import YawEstimator
from atelier.batch.events import (
    ITEM_COMPLETED,
    ITEM_FAILED,
    JOB_FINISHED,
    JOB_PROGRESS,
    EventLog,
    StreamEvent,
)
from atelier.batch.navigation import RenderUnit, plan_pose_units, unit_for_task
from atelier.batch.renderers import ColorVariantRunner, PoseVariantRenderer, mirror_outcome
from atelier.core.cancellation import CancelToken
from atelier.core.errors import OperationCancelledError, StageError
from atelier.models.domain import BatchJob, BatchTask, ConcurrencyPolicy, ImagePayload, TaskOutcome
from atelier.models.types import (
    BatchJobDetail,
    BatchRequest,
    BatchStage,
    BatchTaskDetail,
    ItemCompletedEvent,
    ItemFailedEvent,
    ItemMetadata,
    JobFinishedEvent,
    JobProgressEvent,
)
from atelier.providers.errors import describe_error

logger = logging.getLogger(__name__)

# Hours (local clock) during which the backend is assumed congested
CONGESTED_HOURS_START = 23
CONGESTED_HOURS_END = 9
CONGESTED_LIMIT = 1
BOOSTED_LIMIT = 3

ORIGINAL_GROUP = "original"


def select_concurrency(now: datetime | None = None) -> ConcurrencyPolicy:
    """Concurrency limit by time of day.

    Hours in [23, 24) and [0, 9) are congested (limit 1); otherwise
    boosted (limit 3).
    """
    hour = (now or datetime.now()).hour
    if hour >= CONGESTED_HOURS_START or hour < CONGESTED_HOURS_END:
        return ConcurrencyPolicy(limit=CONGESTED_LIMIT, label="congested")
    return ConcurrencyPolicy(limit=BOOSTED_LIMIT, label="boosted")


@dataclass
class JobRuntime:
    """Everything the orchestrator keeps for one job besides BatchJob."""

    job: BatchJob
    request: BatchRequest
    source: ImagePayload
    reference_images: dict[int, ImagePayload] = field(default_factory=dict)
    events: EventLog = field(default_factory=EventLog)
    counted: set[str] = field(default_factory=set)
    workers: list[asyncio.Task] = field(default_factory=list)
    retries: set[asyncio.Task] = field(default_factory=set)
    semaphore: asyncio.Semaphore | None = None
    running: bool = False
    finished: bool = False


class BatchOrchestrator:
    """Run batch jobs over pose viewpoints or color references."""

    def __init__(
        self,
        pose_renderer: PoseVariantRenderer,
        color_runner: ColorVariantRunner | None,
        yaw_estimator: YawEstimator | None = None,
        resolver: ImageResolver | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """Initialize orchestrator.

        Args:
            pose_renderer: Renders pose-mode viewpoints.
            color_runner: Runs color-mode pipeline variants; None when no
                segmentation service is configured.
            yaw_estimator: Estimates base yaw once per pose batch; None
                assumes 0 degrees.
            resolver: Resolves the source image reference.
            clock: Time source for the concurrency policy.
        """
        self.pose_renderer = pose_renderer
        self.color_runner = color_runner
        self.yaw_estimator = yaw_estimator
        self.resolver = resolver or ImageResolver()
        self.clock = clock
        self._runtimes: dict[str, JobRuntime] = {}

    # ------------------------------------------------------------------
    # job lifecycle
    # ------------------------------------------------------------------

    def create_job(self, request: BatchRequest, job_id: str | None = None) -> BatchJob:
        """Register a job and its tasks; nothing runs yet.

        Raises:
            FileNotFoundError: If the source image reference cannot be resolved.
        """
        source = self.resolver.resolve_source(request.source_image_id, request.source_image_data)
        job_id = job_id or uuid.uuid4().hex[:12]
        tasks = self._build_tasks(request)
        job = BatchJob(job_id=job_id, tasks=tasks, concurrency=select_concurrency(self.clock()))

        reference_images = {
            index: self.resolver.resolve(ref.image_data)
            for index, ref in enumerate(request.color_references)
            if ref.mode == "texture_transfer" and ref.image_data
        }
        self._runtimes[job_id] = JobRuntime(
            job=job, request=request, source=source, reference_images=reference_images
        )
        logger.info(
            f"Created batch {job_id}: {len(tasks)} tasks, mode={request.mode}, "
            f"concurrency={job.concurrency.limit} ({job.concurrency.label})"
        )
        return job

    def _build_tasks(self, request: BatchRequest) -> list[BatchTask]:
        tasks: list[BatchTask] = []
        if request.mode == "pose":
            groups: list[tuple[str, int | None]] = [(ORIGINAL_GROUP, None)]
            groups += [(ref.label, index) for index, ref in enumerate(request.color_references)]
            for group, color_index in groups:
                for angle in dict.fromkeys(request.angles):
                    tasks.append(
                        BatchTask(
                            task_id=f"t{len(tasks):03d}",
                            group=group,
                            variant_param=angle,
                            viewpoint=angle,
                            color_index=color_index,
                        )
                    )
        else:
            for index, ref in enumerate(request.color_references):
                tasks.append(
                    BatchTask(
                        task_id=f"t{len(tasks):03d}",
                        group=ref.label,
                        variant_param=ref.hex_override or ref.mode,
                        color_index=index,
                    )
                )
        return tasks

    def get_job(self, job_id: str) -> BatchJob | None:
        runtime = self._runtimes.get(job_id)
        return runtime.job if runtime else None

    def events(self, job_id: str) -> EventLog:
        return self._runtimes[job_id].events

    def discard(self, job_id: str) -> None:
        """Forget a finished job."""
        self._runtimes.pop(job_id, None)

    async def run(self, job: BatchJob) -> BatchJob:
        """Run every task of a job and emit its events.

        Returns:
            The job, settled (status success, partial_success or cancelled).
        """
        runtime = self._runtimes[job.job_id]
        runtime.running = True
        runtime.semaphore = asyncio.Semaphore(job.concurrency.limit)
        stage = self._work_stage(runtime)

        await self._progress(runtime, "NORMALIZATION", "Preparing source image")
        if runtime.request.mode == "pose":
            await self._progress(runtime, "YAW_CALIBRATION", "Estimating subject yaw")
            try:
                job.base_yaw_deg = await self._estimate_base_yaw(runtime)
            except OperationCancelledError:
                runtime.running = False
                return await self._finish(runtime)

        units = self._plan(runtime)

        await self._progress(runtime, stage, f"Rendering {job.total} variants")
        runtime.workers = [asyncio.create_task(self._pooled(runtime, unit)) for unit in units]
        results = await asyncio.gather(*runtime.workers, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error(f"Batch {job.job_id} worker crashed: {result!r}")
        runtime.workers = []
        while runtime.retries:
            await asyncio.wait(set(runtime.retries))
        runtime.running = False
        return await self._finish(runtime)

    async def cancel(self, job: BatchJob, reason: str = "cancelled by caller") -> None:
        """Cancel a running job.

        In-flight and pending tasks end ``cancelled``; settled tasks keep
        their results.
        """
        runtime = self._runtimes[job.job_id]
        if runtime.finished:
            return
        logger.info(f"Cancelling batch {job.job_id}: {reason}")
        job.cancel_token.cancel(reason)
        for worker in [*runtime.workers, *runtime.retries]:
            worker.cancel()
        self._mark_unsettled_cancelled(job)

    async def retry_task(self, job: BatchJob, task_id: str) -> BatchTask:
        """Re-run a single failed or cancelled task; siblings are untouched.

        The retry waits for a slot in the job's worker pool. On a finished
        job the event log reopens, and JOB_FINISHED is emitted again once the
        last concurrent retry settles.

        Raises:
            KeyError: If the task does not exist.
            ValueError: If the task is still pending or loading.
        """
        runtime = self._runtimes[job.job_id]
        task = job.get_task(task_id)
        if task is None:
            raise KeyError(task_id)
        if task.status in ("pending", "loading") and not runtime.finished:
            raise ValueError(f"Task {task_id} is still {task.status}")

        if runtime.request.mode == "pose":
            unit = unit_for_task(task)
        else:
            unit = RenderUnit(render_viewpoint="", group=task.group, primary=task)

        if runtime.finished:
            if job.cancel_token.cancelled:
                job.cancel_token = CancelToken()
            job.status = "running"
            runtime.finished = False
            runtime.semaphore = asyncio.Semaphore(job.concurrency.limit)
            await runtime.events.reopen()

        for queued in unit.tasks:
            queued.status = "pending"
        retry = asyncio.create_task(self._retry(runtime, unit))
        runtime.retries.add(retry)
        await asyncio.wait({retry})
        return task

    async def _retry(self, runtime: JobRuntime, unit: RenderUnit) -> None:
        """Run a retried unit; the last retry outside a run finishes the job."""
        try:
            await self._pooled(runtime, unit)
        except asyncio.CancelledError:
            logger.info(f"Retry in batch {runtime.job.job_id} cancelled")
        finally:
            runtime.retries.discard(asyncio.current_task())
        if not runtime.running and not runtime.retries and not runtime.finished:
            await self._finish(runtime)

    # ------------------------------------------------------------------
    # scheduling
    # ------------------------------------------------------------------

    def _work_stage(self, runtime: JobRuntime) -> BatchStage:
        return "POSE_GENERATION" if runtime.request.mode == "pose" else "RECOLOR"

    def _plan(self, runtime: JobRuntime) -> list[RenderUnit]:
        tasks = runtime.job.tasks
        if runtime.request.mode == "pose":
            return plan_pose_units(tasks)
        return [RenderUnit(render_viewpoint="", group=t.group, primary=t) for t in tasks]

    async def _estimate_base_yaw(self, runtime: JobRuntime) -> float:
        if self.yaw_estimator is None:
            return 0.0
        estimate = await self.yaw_estimator.estimate(runtime.source, runtime.job.cancel_token)
        return estimate.angle_deg

    async def _render(self, runtime: JobRuntime, unit: RenderUnit, carrier: BatchTask) -> TaskOutcome:
        job = runtime.job
        request = runtime.request
        reference = (
            request.color_references[carrier.color_index] if carrier.color_index is not None else None
        )
        if request.mode == "color":
            if self.color_runner is None:
                raise StageError("color_variant", "Segmentation service not configured")
            return await self.color_runner.render(request, reference, runtime.source, job.cancel_token)

        return await self.pose_renderer.render(
            namespace=job.job_id,
            source=runtime.source,
            viewpoint_name=unit.render_viewpoint,
            reference=reference,
            reference_image=runtime.reference_images.get(carrier.color_index),
            base_yaw=job.base_yaw_deg,
            options=request.output_options,
            seed_key=f"{request.source_image_id}|{unit.group}|{unit.render_viewpoint}",
            cancel=job.cancel_token,
        )

    async def _pooled(self, runtime: JobRuntime, unit: RenderUnit) -> None:
        """Run a unit once a slot of the job's pool is free."""
        async with runtime.semaphore:
            if runtime.job.cancel_token.cancelled:
                self._mark_unsettled_cancelled(runtime.job, unit.tasks)
                return
            await self._run_unit(runtime, unit)

    async def _run_unit(self, runtime: JobRuntime, unit: RenderUnit) -> None:
        """Render once, settle the primary, then derive mirrored tasks."""
        job = runtime.job
        carrier = unit.primary or unit.mirrored[0]
        carrier.status = "loading"
        carrier.attempts += 1

        try:
            outcome = await self._render(runtime, unit, carrier)
        except OperationCancelledError:
            self._mark_unsettled_cancelled(job, unit.tasks)
            return
        except asyncio.CancelledError:
            self._mark_unsettled_cancelled(job, unit.tasks)
            raise
        except Exception as e:
            logger.warning(f"Batch {job.job_id} {unit.group}/{carrier.variant_param} failed: {e}")
            for task in unit.tasks:
                await self._settle_error(runtime, task, e)
            return

        if job.cancel_token.cancelled:
            # Resolved after cancellation: discard
            self._mark_unsettled_cancelled(job, unit.tasks)
            return

        if unit.primary is not None:
            await self._settle_success(runtime, unit.primary, outcome)
        for task in unit.mirrored:
            task.status = "loading"
            await self._settle_success(runtime, task, mirror_outcome(outcome))

    def _mark_unsettled_cancelled(self, job: BatchJob, tasks: list[BatchTask] | None = None) -> None:
        for task in tasks if tasks is not None else job.tasks:
            if task.status in ("pending", "loading"):
                task.status = "cancelled"

    # ------------------------------------------------------------------
    # settlement (only place that mutates task results and counters)
    # ------------------------------------------------------------------

    def _count(self, runtime: JobRuntime, task: BatchTask) -> None:
        if task.task_id not in runtime.counted:
            runtime.counted.add(task.task_id)
            runtime.job.completed_count += 1
        job = runtime.job
        job.status_text = f"{job.completed_count}/{job.total} completed"

    async def _settle_success(self, runtime: JobRuntime, task: BatchTask, outcome: TaskOutcome) -> None:
        task.status = "success"
        task.error_kind = None
        task.error_message = None
        task.result_url = outcome.result_url
        task.thumbnail_url = outcome.thumbnail_url or outcome.result_url
        task.estimated_yaw_deg = outcome.estimated_yaw_deg
        task.is_mirrored = outcome.is_mirrored
        task.is_clamped = outcome.is_clamped
        self._count(runtime, task)

        await runtime.events.append(
            StreamEvent(
                ITEM_COMPLETED,
                ItemCompletedEvent(
                    task_id=task.task_id,
                    group=task.group,
                    variant_param=task.variant_param,
                    estimated_yaw_deg=task.estimated_yaw_deg,
                    thumbnail_url=task.thumbnail_url,
                    original_url=task.result_url,
                    metadata=ItemMetadata(is_mirrored=task.is_mirrored, is_clamped=task.is_clamped),
                ),
            )
        )
        await self._progress(runtime, self._work_stage(runtime), runtime.job.status_text)

    async def _settle_error(self, runtime: JobRuntime, task: BatchTask, error: Exception) -> None:
        info = describe_error(error)
        task.status = "error"
        task.error_kind = info.kind.value
        task.error_message = info.detail
        self._count(runtime, task)

        await runtime.events.append(
            StreamEvent(
                ITEM_FAILED,
                ItemFailedEvent(
                    task_id=task.task_id,
                    group=task.group,
                    variant_param=task.variant_param,
                    error_code=info.kind.value,
                    message=info.message,
                    retryable=info.retryable,
                ),
            )
        )
        await self._progress(runtime, self._work_stage(runtime), runtime.job.status_text)

    async def _progress(self, runtime: JobRuntime, stage: BatchStage, message: str) -> None:
        job = runtime.job
        await runtime.events.append(
            StreamEvent(
                JOB_PROGRESS,
                JobProgressEvent(
                    job_id=job.job_id,
                    status=job.status,
                    total=job.total,
                    completed=job.completed_count,
                    remaining=job.remaining,
                    progress_percent=job.progress_percent,
                    stage=stage,
                    message=message,
                ),
            )
        )

    async def _finish(self, runtime: JobRuntime) -> BatchJob:
        job = runtime.job
        if job.cancel_token.cancelled:
            self._mark_unsettled_cancelled(job)
            job.status = "cancelled"
        elif all(task.status == "success" for task in job.tasks):
            job.status = "success"
        else:
            job.status = "partial_success"

        runtime.finished = True
        logger.info(f"Batch {job.job_id} finished: {job.status} ({job.completed_count}/{job.total})")
        await runtime.events.append(
            StreamEvent(
                JOB_FINISHED,
                JobFinishedEvent(
                    job_id=job.job_id,
                    status=job.status,
                    total=job.total,
                    completed=job.completed_count,
                ),
            )
        )
        if runtime.finished:
            # A retry may have reopened the log meanwhile
            await runtime.events.close()
        return job

    # ------------------------------------------------------------------
    # snapshots
    # ------------------------------------------------------------------

    def snapshot(self, job: BatchJob) -> BatchJobDetail:
        """Serializable view of a job and its tasks."""
        return BatchJobDetail(
            job_id=job.job_id,
            status=job.status,
            concurrency_limit=job.concurrency.limit,
            concurrency_label=job.concurrency.label,
            total=job.total,
            completed=job.completed_count,
            progress_percent=job.progress_percent,
            tasks=[
                BatchTaskDetail(
                    task_id=t.task_id,
                    group=t.group,
                    variant_param=t.variant_param,
                    status=t.status,
                    error_kind=t.error_kind,
                    error_message=t.error_message,
                    result_url=t.result_url,
                    estimated_yaw_deg=t.estimated_yaw_deg,
                    is_mirrored=t.is_mirrored,
                    is_clamped=t.is_clamped,
                )
                for t in job.tasks
            ],
        )
