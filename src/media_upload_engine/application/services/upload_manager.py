"""Upload orchestrator: admission loop, retries, cancellation and status."""

from __future__ import annotations

import asyncio
import copy
import logging
import random
import time
from collections.abc import Awaitable, Callable, Sequence
from contextlib import suppress
from dataclasses import dataclass
from datetime import datetime

from media_upload_engine.application.services.failure_classifier import classify_failure
from media_upload_engine.application.services.job_registry import JobRegistry
from media_upload_engine.application.services.job_snapshots import (
    job_to_response,
    outcome_from_job,
)
from media_upload_engine.application.services.status_broadcaster import (
    StatusBroadcaster,
    StatusObserver,
)
from media_upload_engine.domain.entities import TransferControl, TransferJob, utc_now
from media_upload_engine.domain.errors import (
    UploadJobConflictError,
    UploadJobNotFoundError,
    UploadJobValidationError,
)
from media_upload_engine.domain.monitoring_models import (
    UploadJobResponse,
    UploadLinksResponse,
    UploadManagerStatus,
    UploadOutcome,
)
from media_upload_engine.domain.ports import (
    UploadHistorySink,
    UploadJobRepository,
    UploadTransfer,
)
from media_upload_engine.domain.retry_policy import RetryPolicy
from media_upload_engine.domain.schedule import ThrottleSchedule, UploadSchedule
from media_upload_engine.domain.transfer_types import JobCollection, JobStatus
from media_upload_engine.infrastructure.transfers.runtime import BandwidthThrottle

_DEFAULT_MAX_CONCURRENT = 4
_DEFAULT_SCHEDULE_POLL_SECONDS = 60.0
_DEFAULT_CHECKPOINT_INTERVAL_SECONDS = 1.0

logger = logging.getLogger(__name__)


def _local_now() -> datetime:
    return datetime.now().astimezone()


@dataclass(slots=True, frozen=True)
class _PersistenceOp:
    """Checkpoint write (or delete) plus an optional history outcome."""

    job: TransferJob
    delete: bool = False
    outcome: UploadOutcome | None = None


class UploadManager:
    """Owns every upload job and decides which may run.

    All registry mutation happens under one ``asyncio.Lock``; transfers run as
    independent tasks and only touch the registry through the completion,
    failure and progress handlers below. Checkpoint writes and history
    deliveries go through a single ordered background worker, so neither the
    admission loop nor the transfers wait on storage or observers.
    """

    def __init__(
        self,
        transfer: UploadTransfer,
        *,
        max_concurrent: int = _DEFAULT_MAX_CONCURRENT,
        retry_policy: RetryPolicy | None = None,
        schedule: UploadSchedule | None = None,
        bandwidth_throttle: BandwidthThrottle | None = None,
        job_repository: UploadJobRepository | None = None,
        history_sinks: Sequence[UploadHistorySink] = (),
        status_broadcaster: StatusBroadcaster | None = None,
        schedule_poll_seconds: float = _DEFAULT_SCHEDULE_POLL_SECONDS,
        checkpoint_interval_seconds: float = _DEFAULT_CHECKPOINT_INTERVAL_SECONDS,
        clock: Callable[[], datetime] = _local_now,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1.")
        self._transfer = transfer
        self._max_concurrent = max_concurrent
        self._retry_policy = retry_policy or RetryPolicy()
        self._schedule = schedule or UploadSchedule()
        self._bandwidth_throttle = bandwidth_throttle
        self._job_repository = job_repository
        self._history_sinks = tuple(history_sinks)
        self._status_broadcaster = status_broadcaster or StatusBroadcaster()
        self._schedule_poll_seconds = max(schedule_poll_seconds, 0.01)
        self._checkpoint_interval_seconds = max(checkpoint_interval_seconds, 0.0)
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()

        self._lock = asyncio.Lock()
        self._registry = JobRegistry()
        self._running = False
        self._paused = False
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._controls: dict[str, TransferControl] = {}
        self._retry_timers: dict[str, asyncio.Task[None]] = {}
        self._idle = asyncio.Event()
        self._idle.set()
        self._persistence_queue: asyncio.Queue[_PersistenceOp] = asyncio.Queue()
        self._persistence_task: asyncio.Task[None] | None = None
        self._history_tasks: set[asyncio.Task[None]] = set()
        self._schedule_task: asyncio.Task[None] | None = None
        self._schedule_wake = asyncio.Event()
        self._checkpointed_at: dict[str, float] = {}
        self._restored = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    @property
    def schedule(self) -> UploadSchedule:
        return self._schedule

    def subscribe(self, observer: StatusObserver, *, name: str | None = None) -> Callable[[], None]:
        """Register a status observer; returns an unsubscribe callable."""

        return self._status_broadcaster.subscribe(observer, name=name)

    async def startup(self, *, auto_start: bool = True) -> None:
        """Restore checkpointed jobs, start background workers and optionally admission."""

        await self.restore_jobs()
        self._ensure_background_workers()
        if auto_start:
            await self.start()

    async def shutdown(self) -> None:
        """Stop admission and interrupt running attempts without aborting their sessions.

        Interrupted jobs keep their multipart session and completed parts in the
        checkpoint store, so the next ``startup`` resumes them.
        """

        async with self._lock:
            self._running = False
            tasks = list(self._tasks.values())
            timers = list(self._retry_timers.values())
            self._retry_timers.clear()
            active_jobs = self._registry.jobs(JobCollection.ACTIVE)

        for task in [*timers, *tasks]:
            task.cancel()
        for task in [*timers, *tasks]:
            with suppress(asyncio.CancelledError):
                await task

        async with self._lock:
            for job in active_jobs:
                self._persist_unlocked(job)
            self._tasks.clear()
            self._controls.clear()

        await self._stop_schedule_watch()
        await self.drain()
        task = self._persistence_task
        self._persistence_task = None
        if task is not None:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        await self._status_broadcaster.close()

    async def restore_jobs(self) -> int:
        """Load unfinished jobs from the checkpoint store (once per manager)."""

        repository = self._job_repository
        if repository is None or self._restored:
            return 0
        self._restored = True
        jobs = await repository.list_jobs()
        restored = 0
        async with self._lock:
            for job in jobs:
                if job.job_id in self._registry or job.status is JobStatus.COMPLETED:
                    continue
                if job.status in (JobStatus.FAILED, JobStatus.CANCELLED):
                    self._registry.place(job, JobCollection.FAILED)
                else:
                    job.status = JobStatus.PENDING
                    self._registry.add_pending(job)
                restored += 1
            self._publish_status_unlocked()
        if restored:
            logger.info("Restored %s upload job(s) from checkpoints.", restored)
        return restored

    async def enqueue(self, job: TransferJob) -> UploadJobResponse:
        if job.total_bytes < 0:
            raise UploadJobValidationError("total_bytes cannot be negative.")
        async with self._lock:
            self._registry.add_pending(job)
            job.status = JobStatus.PENDING
            self._persist_unlocked(job)
            self._publish_status_unlocked()
            response = job_to_response(job, JobCollection.PENDING)
        logger.info(
            "Queued upload job %s: %s -> %s (priority %s).",
            job.job_id,
            job.display_name,
            job.s3_uri,
            job.priority,
        )
        await self._process_queue()
        return response

    async def start(self) -> UploadManagerStatus:
        async with self._lock:
            self._running = True
            self._paused = False
            self._admit_unlocked()
            self._publish_status_unlocked()
            status = self._build_status_unlocked()
        self._ensure_background_workers()
        return status

    async def pause(self) -> UploadManagerStatus:
        """Stop admitting new jobs; running attempts continue."""

        async with self._lock:
            self._paused = True
            self._publish_status_unlocked()
            return self._build_status_unlocked()

    async def resume(self) -> UploadManagerStatus:
        async with self._lock:
            self._paused = False
            self._admit_unlocked()
            self._publish_status_unlocked()
            return self._build_status_unlocked()

    async def cancel_job(self, job_id: str) -> UploadJobResponse:
        """Cancel a pending, retry-scheduled or running job.

        A pending job is dropped from the queue. A running job is asked to stop
        at its next checkpoint: an S3 request already in flight finishes and is
        recorded first, so the abort that follows always sees the open session.
        The job ends in the failed collection with a cancelled cause once that
        cleanup has finished.
        """

        task: asyncio.Task[None] | None = None
        async with self._lock:
            location = self._registry.locate(job_id)
            if location is None:
                raise UploadJobNotFoundError(f"No upload job found for id '{job_id}'.")
            if location in (JobCollection.COMPLETED, JobCollection.FAILED):
                raise UploadJobConflictError(
                    f"Upload job '{job_id}' has already finished ({location.value})."
                )

            job = self._registry.get(job_id)
            if location is JobCollection.ACTIVE:
                control = self._controls[job_id]
                if control.cancel_requested:
                    raise UploadJobConflictError(f"Upload job '{job_id}' is already cancelling.")
                control.request_cancel()
                task = self._tasks.get(job_id)
            else:
                timer = self._retry_timers.pop(job_id, None)
                if timer is not None:
                    timer.cancel()
                self._registry.remove(job_id)
                job.mark_cancelled(utc_now())
                final_location: JobCollection | None = None
                if location is JobCollection.RETRY_SCHEDULED:
                    self._registry.place(job, JobCollection.FAILED)
                    final_location = JobCollection.FAILED
                self._persist_unlocked(
                    job,
                    delete=final_location is None,
                    outcome=outcome_from_job(job),
                )
                self._publish_status_unlocked()
                logger.info("Cancelled %s upload job %s.", location.value, job_id)
                return job_to_response(job, final_location)

        logger.info("Cancelling running upload job %s.", job_id)
        if task is not None:
            with suppress(asyncio.CancelledError):
                await task
        try:
            await self._transfer.abort(job)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Abort of upload job %s failed: %s", job_id, exc)

        async with self._lock:
            self._tasks.pop(job_id, None)
            self._controls.pop(job_id, None)
            job.mark_cancelled(utc_now())
            self._registry.move(job_id, JobCollection.FAILED)
            self._persist_unlocked(job, outcome=outcome_from_job(job))
            self._publish_status_unlocked()
            response = job_to_response(job, JobCollection.FAILED)
        logger.info("Cancelled running upload job %s.", job_id)
        await self._process_queue()
        return response

    async def retry_job(self, job_id: str) -> UploadJobResponse:
        """Re-queue a failed job, resuming its multipart session."""

        async with self._lock:
            job = self._take_failed_unlocked(job_id)
            job.reset_for_retry()
            self._requeue_unlocked(job)
            response = job_to_response(job, JobCollection.PENDING)
        logger.info("Retrying upload job %s (resume).", job_id)
        await self._process_queue()
        return response

    async def retry_job_fresh(self, job_id: str) -> UploadJobResponse:
        """Re-queue a failed job from scratch, discarding its session and history."""

        async with self._lock:
            job = self._registry.get(job_id)
            if self._registry.locate(job_id) is not JobCollection.FAILED:
                raise UploadJobConflictError(f"Upload job '{job_id}' is not in the failed list.")

        try:
            await self._transfer.abort(job)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Abort before fresh retry of upload job %s failed: %s", job_id, exc)

        async with self._lock:
            job = self._take_failed_unlocked(job_id)
            job.reset_fresh()
            self._requeue_unlocked(job)
            response = job_to_response(job, JobCollection.PENDING)
        logger.info("Retrying upload job %s from scratch.", job_id)
        await self._process_queue()
        return response

    async def retry_all_failed(self) -> int:
        async with self._lock:
            jobs = self._registry.jobs(JobCollection.FAILED)
            for job in jobs:
                self._registry.remove(job.job_id)
                job.reset_for_retry()
                self._requeue_unlocked(job)
        if jobs:
            logger.info("Retrying %s failed upload job(s).", len(jobs))
        await self._process_queue()
        return len(jobs)

    async def get_status(self) -> UploadManagerStatus:
        async with self._lock:
            return self._build_status_unlocked()

    async def get_job(self, job_id: str) -> UploadJobResponse:
        async with self._lock:
            job = self._registry.get(job_id)
            return job_to_response(job, self._registry.locate(job_id))

    async def list_jobs(self, collection: JobCollection | None = None) -> list[UploadJobResponse]:
        async with self._lock:
            if collection is not None:
                return [
                    job_to_response(job, collection) for job in self._registry.jobs(collection)
                ]
            return [
                job_to_response(job, location) for location, job in self._registry.all_jobs()
            ]

    async def get_links(self, job_id: str) -> UploadLinksResponse:
        """Canonical URI, console URL and, for completed jobs, a fresh presigned URL."""

        async with self._lock:
            job = self._registry.get(job_id)
            completed = job.status is JobStatus.COMPLETED

        presigned_url = job.presigned_url
        if completed:
            fresh_url = await self._transfer.presigned_url(job)
            if fresh_url is not None:
                presigned_url = fresh_url
                job.presigned_url = fresh_url
        return UploadLinksResponse(
            s3_uri=job.s3_uri,
            console_url=job.console_url,
            presigned_url=presigned_url,
        )

    async def update_schedule(self, schedule: UploadSchedule) -> UploadManagerStatus:
        async with self._lock:
            self._schedule = schedule
            self._admit_unlocked()
            self._publish_status_unlocked()
            status = self._build_status_unlocked()
        self._schedule_wake.set()
        return status

    async def set_max_concurrent(self, max_concurrent: int) -> UploadManagerStatus:
        if max_concurrent < 1:
            raise UploadJobValidationError("max_concurrent must be >= 1.")
        async with self._lock:
            self._max_concurrent = max_concurrent
            self._admit_unlocked()
            self._publish_status_unlocked()
            return self._build_status_unlocked()

    async def configure_throttle(
        self,
        bytes_per_second: int,
        schedule: ThrottleSchedule | None = None,
    ) -> UploadManagerStatus:
        if self._bandwidth_throttle is None:
            raise UploadJobConflictError("Bandwidth throttling is not configured.")
        self._bandwidth_throttle.configure(bytes_per_second, schedule, now=self._clock())
        async with self._lock:
            self._publish_status_unlocked()
            return self._build_status_unlocked()

    async def wait_until_idle(self) -> None:
        """Wait until no job is pending, running or waiting out a retry delay."""

        await self._idle.wait()

    async def drain(self) -> None:
        """Wait for queued checkpoint writes, history deliveries and observers."""

        if self._persistence_task is not None and not self._persistence_task.done():
            await self._persistence_queue.join()
        while self._history_tasks:
            await asyncio.gather(*list(self._history_tasks), return_exceptions=True)
        await self._status_broadcaster.wait_idle()

    async def _process_queue(self) -> None:
        async with self._lock:
            self._admit_unlocked()

    def _admit_unlocked(self) -> int:
        if not self._running or self._paused:
            return 0
        if not self._schedule.is_upload_allowed(self._clock()):
            return 0

        admitted = 0
        while self._registry.count(JobCollection.ACTIVE) < self._max_concurrent:
            job = self._registry.pop_next_pending()
            if job is None:
                break
            job.begin_attempt(utc_now())
            self._registry.place(job, JobCollection.ACTIVE)
            control = TransferControl()
            self._controls[job.job_id] = control
            self._tasks[job.job_id] = asyncio.create_task(
                self._run_job(job, control),
                name=f"upload-{job.job_id}",
            )
            self._persist_unlocked(job)
            logger.info(
                "Started upload job %s (%s), attempt %s.",
                job.job_id,
                job.display_name,
                job.attempt_count,
            )
            admitted += 1
        if admitted:
            self._publish_status_unlocked()
        return admitted

    async def _run_job(self, job: TransferJob, control: TransferControl) -> None:
        try:
            await self._transfer.upload(job, control, self._on_progress)
        except Exception as exc:
            await self._handle_failed_attempt(job, control, exc)
        else:
            await self._handle_successful_attempt(job, control)
        await self._process_queue()

    async def _on_progress(self, job: TransferJob) -> None:
        async with self._lock:
            if self._registry.locate(job.job_id) is not JobCollection.ACTIVE:
                return
            if self._checkpoint_due_unlocked(job.job_id):
                self._persist_unlocked(job)
            self._publish_status_unlocked()

    async def _handle_successful_attempt(self, job: TransferJob, control: TransferControl) -> None:
        async with self._lock:
            if control.cancel_requested:
                return
            self._tasks.pop(job.job_id, None)
            self._controls.pop(job.job_id, None)
            job.mark_completed(utc_now())
            self._registry.move(job.job_id, JobCollection.COMPLETED)
            self._persist_unlocked(job, delete=True, outcome=outcome_from_job(job))
            self._publish_status_unlocked()
        logger.info("Upload job %s completed: %s", job.job_id, job.s3_uri)

    async def _handle_failed_attempt(
        self,
        job: TransferJob,
        control: TransferControl,
        exc: Exception,
    ) -> None:
        """Classify the failure, then schedule a retry or fail the job for good."""

        failure = classify_failure(exc)
        delay: float | None = None
        async with self._lock:
            if control.cancel_requested:
                return
            self._tasks.pop(job.job_id, None)
            self._controls.pop(job.job_id, None)
            job.record_failure(failure)
            if failure.retryable and self._retry_policy.should_retry(job.attempt_count):
                delay = self._retry_policy.delay_for(job.attempt_count, self._rng)
                job.mark_retry_scheduled()
                self._registry.move(job.job_id, JobCollection.RETRY_SCHEDULED)
                self._retry_timers[job.job_id] = asyncio.create_task(
                    self._requeue_after(job, delay),
                    name=f"upload-retry-{job.job_id}",
                )
                self._persist_unlocked(job)
            else:
                job.mark_failed(utc_now())
                self._registry.move(job.job_id, JobCollection.FAILED)
                self._persist_unlocked(job, outcome=outcome_from_job(job))
            self._publish_status_unlocked()

        if delay is not None:
            logger.warning(
                "Upload job %s attempt %s/%s failed (%s); retrying in %.1fs.",
                job.job_id,
                job.attempt_count,
                self._retry_policy.max_attempts,
                failure.summary,
                delay,
            )
        else:
            logger.warning(
                "Upload job %s failed after %s attempt(s): %s",
                job.job_id,
                job.attempt_count,
                failure.summary,
            )

    async def _requeue_after(self, job: TransferJob, delay: float) -> None:
        await self._sleep(delay)
        async with self._lock:
            if self._retry_timers.pop(job.job_id, None) is None:
                return
            if self._registry.locate(job.job_id) is not JobCollection.RETRY_SCHEDULED:
                return
            self._registry.remove(job.job_id)
            self._registry.add_pending(job)
            self._publish_status_unlocked()
            self._admit_unlocked()

    def _take_failed_unlocked(self, job_id: str) -> TransferJob:
        location = self._registry.locate(job_id)
        if location is None:
            raise UploadJobNotFoundError(f"No upload job found for id '{job_id}'.")
        if location is not JobCollection.FAILED:
            raise UploadJobConflictError(
                f"Upload job '{job_id}' is {location.value}; only failed jobs can be retried."
            )
        return self._registry.remove(job_id)

    def _requeue_unlocked(self, job: TransferJob) -> None:
        self._registry.add_pending(job)
        self._persist_unlocked(job)
        self._publish_status_unlocked()

    def _persist_unlocked(
        self,
        job: TransferJob,
        *,
        delete: bool = False,
        outcome: UploadOutcome | None = None,
    ) -> None:
        if self._job_repository is None and (outcome is None or not self._history_sinks):
            return
        self._ensure_background_workers()
        self._persistence_queue.put_nowait(
            _PersistenceOp(job=copy.deepcopy(job), delete=delete, outcome=outcome)
        )
        if delete or outcome is not None:
            self._checkpointed_at.pop(job.job_id, None)
        else:
            self._checkpointed_at[job.job_id] = time.monotonic()

    def _checkpoint_due_unlocked(self, job_id: str) -> bool:
        last = self._checkpointed_at.get(job_id)
        return last is None or time.monotonic() - last >= self._checkpoint_interval_seconds

    async def _run_persistence_worker(self) -> None:
        """Apply checkpoint writes in order and fan outcomes out to history sinks."""

        while True:
            op = await self._persistence_queue.get()
            try:
                repository = self._job_repository
                if repository is not None:
                    if op.delete:
                        await repository.delete_job(op.job.job_id)
                    else:
                        await repository.save_job(op.job)
                if op.outcome is not None:
                    for sink in self._history_sinks:
                        task = asyncio.create_task(self._deliver_history(sink, op.outcome))
                        self._history_tasks.add(task)
                        task.add_done_callback(self._history_tasks.discard)
            except Exception:
                logger.exception("Failed to checkpoint upload job %s.", op.job.job_id)
            finally:
                self._persistence_queue.task_done()

    async def _deliver_history(self, sink: UploadHistorySink, outcome: UploadOutcome) -> None:
        try:
            await sink.record(outcome)
        except Exception:
            logger.exception(
                "History sink %s failed for upload job %s.",
                type(sink).__name__,
                outcome.job_id,
            )

    def _ensure_background_workers(self) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return
        if self._persistence_task is None or self._persistence_task.done():
            self._persistence_task = asyncio.create_task(
                self._run_persistence_worker(),
                name="upload-persistence-worker",
            )
        if self._running and (self._schedule_task is None or self._schedule_task.done()):
            self._schedule_wake.clear()
            self._schedule_task = asyncio.create_task(
                self._run_schedule_watch(),
                name="upload-schedule-watch",
            )

    async def _run_schedule_watch(self) -> None:
        """Re-check the schedule gate and throttle schedule periodically."""

        while True:
            try:
                await asyncio.wait_for(
                    self._schedule_wake.wait(),
                    timeout=self._schedule_poll_seconds,
                )
            except TimeoutError:
                pass
            self._schedule_wake.clear()
            try:
                if self._bandwidth_throttle is not None:
                    self._bandwidth_throttle.refresh(self._clock())
                async with self._lock:
                    self._admit_unlocked()
                    self._publish_status_unlocked()
            except Exception:
                logger.exception("Upload schedule check failed.")

    async def _stop_schedule_watch(self) -> None:
        task = self._schedule_task
        if task is None:
            return
        self._schedule_task = None
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

    def _publish_status_unlocked(self) -> None:
        status = self._build_status_unlocked()
        if status.pending_count or status.active_count or status.retry_scheduled_count:
            self._idle.clear()
        else:
            self._idle.set()
        self._status_broadcaster.publish(status)

    def _build_status_unlocked(self) -> UploadManagerStatus:
        now = self._clock()
        active_jobs = self._registry.jobs(JobCollection.ACTIVE)
        total_bytes = sum(job.total_bytes for job in active_jobs)
        transferred_bytes = sum(job.progress.bytes_transferred for job in active_jobs)
        overall = 0.0
        if total_bytes > 0:
            overall = max(0.0, min(100.0, round(transferred_bytes / total_bytes * 100, 2)))
        throttle = self._bandwidth_throttle
        return UploadManagerStatus(
            running=self._running,
            paused=self._paused,
            upload_allowed=self._schedule.is_upload_allowed(now),
            next_allowed_at=self._schedule.next_allowed_time(now),
            pending_count=self._registry.count(JobCollection.PENDING),
            active_count=len(active_jobs),
            completed_count=self._registry.count(JobCollection.COMPLETED),
            failed_count=self._registry.count(JobCollection.FAILED),
            retry_scheduled_count=self._registry.count(JobCollection.RETRY_SCHEDULED),
            max_concurrent=self._max_concurrent,
            total_bytes=total_bytes,
            transferred_bytes=transferred_bytes,
            overall_percentage=overall,
            throttle_limit_bps=throttle.limit_bytes_per_second if throttle is not None else 0,
            throttled_bytes=throttle.throttled_bytes if throttle is not None else 0,
            throttle_delay_seconds=throttle.delay_seconds if throttle is not None else 0.0,
            active_jobs=[job_to_response(job, JobCollection.ACTIVE) for job in active_jobs],
        )


__all__ = ["UploadManager"]
