from __future__ import annotations

import asyncio
import random
from datetime import datetime
from pathlib import Path

import pytest

from media_upload_engine.application.services import UploadManager
from media_upload_engine.domain.entities import (
    CompletedPart,
    ObjectDestination,
    TransferControl,
    TransferJob,
)
from media_upload_engine.domain.errors import (
    NetworkTransferError,
    UploadJobConflictError,
    UploadJobNotFoundError,
    ValidationTransferError,
)
from media_upload_engine.domain.monitoring_models import UploadManagerStatus
from media_upload_engine.domain.ports import ProgressCallback
from media_upload_engine.domain.retry_policy import RetryPolicy
from media_upload_engine.domain.schedule import ScheduleRule, UploadSchedule
from media_upload_engine.domain.transfer_types import (
    FailureCategory,
    JobCollection,
    JobStatus,
    ScheduleMode,
)
from media_upload_engine.infrastructure.repositories import InMemoryUploadRepository


class FakeTransfer:
    """Scriptable transfer double.

    ``failures`` maps a job id to exceptions raised by successive attempts.
    When ``gate`` is set, every attempt blocks until the gate opens or the
    job is asked to cancel.
    """

    def __init__(
        self,
        failures: dict[str, list[Exception]] | None = None,
        gate: asyncio.Event | None = None,
    ) -> None:
        self.failures = failures or {}
        self.gate = gate
        self.calls: list[str] = []
        self.aborted: list[str] = []
        self.running = 0
        self.max_running = 0
        self.started = asyncio.Event()

    async def upload(
        self,
        job: TransferJob,
        control: TransferControl,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        self.calls.append(job.job_id)
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        self.started.set()
        try:
            if job.upload_id is None:
                job.upload_id = f"session-{job.job_id}"
                job.part_size = job.total_bytes
            if self.gate is not None:
                opened = asyncio.ensure_future(self.gate.wait())
                cancelled = asyncio.ensure_future(control.cancel_event.wait())
                try:
                    await asyncio.wait({opened, cancelled}, return_when=asyncio.FIRST_COMPLETED)
                finally:
                    opened.cancel()
                    cancelled.cancel()
            pending = self.failures.get(job.job_id)
            if pending:
                raise pending.pop(0)
            control.raise_if_cancelled()
            job.progress.bytes_transferred = job.total_bytes
            if on_progress is not None:
                await on_progress(job)
            job.presigned_url = f"https://signed.example/{job.destination.key}"
        finally:
            self.running -= 1

    async def abort(self, job: TransferJob) -> None:
        self.aborted.append(job.job_id)
        job.upload_id = None
        job.part_size = None
        job.completed_parts.clear()

    async def presigned_url(self, job: TransferJob) -> str | None:
        return f"https://signed.example/{job.destination.key}?fresh=1"


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


def _job(name: str, priority: int = 0, size: int = 64) -> TransferJob:
    return TransferJob(
        source_path=Path(f"/media/{name}"),
        destination=ObjectDestination(bucket="bucket-a", key=f"incoming/{name}"),
        total_bytes=size,
        priority=priority,
        job_id=f"job-{name}",
    )


def _manager(transfer: FakeTransfer, **kwargs: object) -> UploadManager:
    kwargs.setdefault("rng", random.Random(7))
    kwargs.setdefault("sleep", RecordingSleep())
    return UploadManager(transfer, **kwargs)  # type: ignore[arg-type]


def test_enqueued_job_completes_and_is_recorded_in_history() -> None:
    async def scenario() -> None:
        repository = InMemoryUploadRepository()
        manager = _manager(FakeTransfer(), job_repository=repository, history_sinks=[repository])
        await manager.startup()

        response = await manager.enqueue(_job("a.mov"))
        await manager.wait_until_idle()
        await manager.drain()

        assert response.status is JobStatus.PENDING
        job = await manager.get_job("job-a.mov")
        assert job.status is JobStatus.COMPLETED
        assert job.collection is JobCollection.COMPLETED
        assert job.attempt_count == 1
        history = await repository.list_recent(10)
        assert [item.job_id for item in history] == ["job-a.mov"]
        assert history[0].status is JobStatus.COMPLETED
        assert history[0].presigned_url == "https://signed.example/incoming/a.mov"
        assert await repository.list_jobs() == []
        await manager.shutdown()

    asyncio.run(scenario())


def test_network_failures_exhaust_attempts_with_bounded_backoff() -> None:
    async def scenario() -> None:
        sleep = RecordingSleep()
        transfer = FakeTransfer(
            failures={"job-a.mov": [NetworkTransferError(f"timeout {n}") for n in range(3)]}
        )
        manager = _manager(
            transfer,
            retry_policy=RetryPolicy(max_attempts=3, base_delay_seconds=5.0, jitter_fraction=0.1),
            sleep=sleep,
        )
        await manager.start()
        await manager.enqueue(_job("a.mov"))
        await manager.wait_until_idle()

        job = await manager.get_job("job-a.mov")
        assert job.status is JobStatus.FAILED
        assert job.collection is JobCollection.FAILED
        assert job.attempt_count == 3
        assert len(job.retry_errors) == 3
        assert all(error.startswith("[NETWORK]") for error in job.retry_errors)
        assert job.error is not None
        assert job.error.category is FailureCategory.NETWORK
        assert len(sleep.delays) == 2
        assert 4.5 <= sleep.delays[0] <= 5.5
        assert 9.0 <= sleep.delays[1] <= 11.0
        assert transfer.calls == ["job-a.mov"] * 3
        await manager.shutdown()

    asyncio.run(scenario())


def test_non_retryable_failure_fails_immediately() -> None:
    async def scenario() -> None:
        sleep = RecordingSleep()
        transfer = FakeTransfer(failures={"job-a.mov": [ValidationTransferError("bad digest")]})
        manager = _manager(transfer, sleep=sleep)
        await manager.start()
        await manager.enqueue(_job("a.mov"))
        await manager.wait_until_idle()

        job = await manager.get_job("job-a.mov")
        assert job.status is JobStatus.FAILED
        assert job.attempt_count == 1
        assert job.error is not None
        assert job.error.category is FailureCategory.VALIDATION
        assert sleep.delays == []
        await manager.shutdown()

    asyncio.run(scenario())


def test_active_jobs_never_exceed_max_concurrent() -> None:
    async def scenario() -> None:
        gate = asyncio.Event()
        transfer = FakeTransfer(gate=gate)
        manager = _manager(transfer, max_concurrent=2)
        await manager.start()
        for index in range(5):
            await manager.enqueue(_job(f"clip{index}.mov"))

        status = await manager.get_status()
        assert status.active_count == 2
        assert status.pending_count == 3
        listed = await manager.list_jobs()
        assert len({job.job_id for job in listed}) == 5

        gate.set()
        await manager.wait_until_idle()
        status = await manager.get_status()
        assert status.completed_count == 5
        assert transfer.max_running == 2
        await manager.shutdown()

    asyncio.run(scenario())


def test_admission_follows_priority_then_fifo() -> None:
    async def scenario() -> None:
        transfer = FakeTransfer()
        manager = _manager(transfer, max_concurrent=1)
        await manager.enqueue(_job("low.mov", priority=1))
        await manager.enqueue(_job("high.mov", priority=5))
        await manager.enqueue(_job("mid-first.mov", priority=3))
        await manager.enqueue(_job("mid-second.mov", priority=3))

        await manager.start()
        await manager.wait_until_idle()

        assert transfer.calls == [
            "job-high.mov",
            "job-mid-first.mov",
            "job-mid-second.mov",
            "job-low.mov",
        ]
        await manager.shutdown()

    asyncio.run(scenario())


def test_pause_holds_pending_jobs_until_resume() -> None:
    async def scenario() -> None:
        transfer = FakeTransfer()
        manager = _manager(transfer)
        await manager.start()
        paused = await manager.pause()
        await manager.enqueue(_job("a.mov"))
        await asyncio.sleep(0)

        assert paused.paused is True
        assert transfer.calls == []
        assert (await manager.get_status()).pending_count == 1

        resumed = await manager.resume()
        await manager.wait_until_idle()

        assert resumed.paused is False
        assert transfer.calls == ["job-a.mov"]
        await manager.shutdown()

    asyncio.run(scenario())


def test_cancel_active_job_aborts_session_and_moves_to_failed() -> None:
    async def scenario() -> None:
        repository = InMemoryUploadRepository()
        transfer = FakeTransfer(gate=asyncio.Event())
        manager = _manager(transfer, history_sinks=[repository])
        await manager.start()
        await manager.enqueue(_job("a.mov"))
        await transfer.started.wait()

        response = await manager.cancel_job("job-a.mov")
        await manager.drain()

        assert response.status is JobStatus.CANCELLED
        assert response.collection is JobCollection.FAILED
        assert response.error is not None
        assert response.error.category is FailureCategory.CANCELLED
        assert response.upload_id is None
        assert transfer.aborted == ["job-a.mov"]
        status = await manager.get_status()
        assert status.active_count == 0
        assert status.completed_count == 0
        assert status.failed_count == 1
        history = await repository.list_recent(10)
        assert history[0].status is JobStatus.CANCELLED

        with pytest.raises(UploadJobConflictError):
            await manager.cancel_job("job-a.mov")
        await manager.shutdown()

    asyncio.run(scenario())


def test_reenqueue_of_running_job_is_rejected_without_touching_its_status() -> None:
    async def scenario() -> None:
        gate = asyncio.Event()
        transfer = FakeTransfer(gate=gate)
        manager = _manager(transfer)
        await manager.start()
        job = _job("a.mov")
        await manager.enqueue(job)
        await transfer.started.wait()

        with pytest.raises(UploadJobConflictError):
            await manager.enqueue(job)

        assert job.status is JobStatus.UPLOADING
        assert (await manager.get_job("job-a.mov")).collection is JobCollection.ACTIVE
        gate.set()
        await manager.wait_until_idle()
        assert job.status is JobStatus.COMPLETED
        await manager.shutdown()

    asyncio.run(scenario())


def test_cancel_pending_job_removes_it() -> None:
    async def scenario() -> None:
        repository = InMemoryUploadRepository()
        manager = _manager(FakeTransfer(), job_repository=repository)
        await manager.enqueue(_job("a.mov"))

        response = await manager.cancel_job("job-a.mov")
        await manager.drain()

        assert response.status is JobStatus.CANCELLED
        assert response.collection is None
        assert await repository.list_jobs() == []
        with pytest.raises(UploadJobNotFoundError):
            await manager.get_job("job-a.mov")
        with pytest.raises(UploadJobNotFoundError):
            await manager.cancel_job("job-a.mov")
        await manager.shutdown()

    asyncio.run(scenario())


def test_cancel_retry_scheduled_job_moves_it_to_failed() -> None:
    async def scenario() -> None:
        async def never(_: float) -> None:
            await asyncio.Event().wait()

        transfer = FakeTransfer(failures={"job-a.mov": [NetworkTransferError("reset")]})
        manager = _manager(transfer, sleep=never)
        await manager.start()
        await manager.enqueue(_job("a.mov"))
        for _ in range(20):
            if (await manager.get_status()).retry_scheduled_count:
                break
            await asyncio.sleep(0)

        assert (await manager.list_jobs(JobCollection.RETRY_SCHEDULED))[0].job_id == "job-a.mov"
        response = await manager.cancel_job("job-a.mov")

        assert response.status is JobStatus.CANCELLED
        assert response.collection is JobCollection.FAILED
        status = await manager.get_status()
        assert status.retry_scheduled_count == 0
        assert status.failed_count == 1
        await manager.shutdown()

    asyncio.run(scenario())


def test_retry_resumes_session_and_retry_fresh_discards_it() -> None:
    async def scenario() -> None:
        transfer = FakeTransfer(
            failures={
                "job-a.mov": [ValidationTransferError("denied"), ValidationTransferError("denied")]
            }
        )
        manager = _manager(transfer)
        await manager.start()
        await manager.enqueue(_job("a.mov"))
        await manager.wait_until_idle()

        failed = await manager.get_job("job-a.mov")
        assert failed.upload_id == "session-job-a.mov"

        await manager.retry_job("job-a.mov")
        await manager.wait_until_idle()
        retried = await manager.get_job("job-a.mov")
        assert retried.status is JobStatus.FAILED
        assert retried.attempt_count == 2
        assert len(retried.retry_errors) == 2
        assert transfer.aborted == []

        await manager.retry_job_fresh("job-a.mov")
        await manager.wait_until_idle()
        fresh = await manager.get_job("job-a.mov")
        assert fresh.status is JobStatus.COMPLETED
        assert fresh.attempt_count == 1
        assert fresh.retry_errors == []
        assert transfer.aborted == ["job-a.mov"]

        with pytest.raises(UploadJobConflictError):
            await manager.retry_job("job-a.mov")
        with pytest.raises(UploadJobNotFoundError):
            await manager.retry_job("job-missing")
        await manager.shutdown()

    asyncio.run(scenario())


def test_retry_all_failed_requeues_every_failed_job() -> None:
    async def scenario() -> None:
        transfer = FakeTransfer(
            failures={
                "job-a.mov": [ValidationTransferError("denied")],
                "job-b.mov": [ValidationTransferError("denied")],
            }
        )
        manager = _manager(transfer)
        await manager.start()
        await manager.enqueue(_job("a.mov"))
        await manager.enqueue(_job("b.mov"))
        await manager.enqueue(_job("c.mov"))
        await manager.wait_until_idle()

        requeued = await manager.retry_all_failed()
        await manager.wait_until_idle()

        assert requeued == 2
        assert (await manager.get_status()).completed_count == 3
        await manager.shutdown()

    asyncio.run(scenario())


def test_startup_restores_checkpointed_jobs() -> None:
    async def scenario() -> None:
        repository = InMemoryUploadRepository()
        interrupted = _job("big.mov", size=32)
        interrupted.status = JobStatus.UPLOADING
        interrupted.upload_id = "session-restored"
        interrupted.part_size = 8
        interrupted.completed_parts = [CompletedPart(part_number=1, etag='"e1"', size=8)]
        failed = _job("broken.mov")
        failed.status = JobStatus.FAILED
        await repository.save_job(interrupted)
        await repository.save_job(failed)

        manager = _manager(FakeTransfer(), job_repository=repository)
        await manager.startup(auto_start=False)

        pending = await manager.list_jobs(JobCollection.PENDING)
        assert [job.job_id for job in pending] == ["job-big.mov"]
        assert pending[0].upload_id == "session-restored"
        assert pending[0].completed_part_count == 1
        assert pending[0].progress.bytes_transferred == 8
        assert [job.job_id for job in await manager.list_jobs(JobCollection.FAILED)] == [
            "job-broken.mov"
        ]
        assert await manager.restore_jobs() == 0
        await manager.shutdown()

    asyncio.run(scenario())


def test_shutdown_keeps_session_for_resume() -> None:
    async def scenario() -> None:
        repository = InMemoryUploadRepository()
        transfer = FakeTransfer(gate=asyncio.Event())
        manager = _manager(transfer, job_repository=repository)
        await manager.start()
        await manager.enqueue(_job("a.mov"))
        await transfer.started.wait()

        await manager.shutdown()

        stored = await repository.list_jobs()
        assert [job.job_id for job in stored] == ["job-a.mov"]
        assert stored[0].upload_id == "session-job-a.mov"
        assert transfer.aborted == []

    asyncio.run(scenario())


def test_schedule_gate_blocks_admission() -> None:
    async def scenario() -> None:
        transfer = FakeTransfer()
        tuesday_noon = datetime(2024, 1, 2, 12, 0)
        night_only = UploadSchedule(
            enabled=True,
            mode=ScheduleMode.ALLOW_DURING,
            rules=(ScheduleRule(start_minute=22 * 60, end_minute=6 * 60),),
        )
        manager = _manager(transfer, schedule=night_only, clock=lambda: tuesday_noon)
        await manager.start()
        await manager.enqueue(_job("a.mov"))

        status = await manager.get_status()
        assert transfer.calls == []
        assert status.upload_allowed is False
        assert status.next_allowed_at == datetime(2024, 1, 2, 22, 0)

        await manager.update_schedule(UploadSchedule())
        await manager.wait_until_idle()
        assert transfer.calls == ["job-a.mov"]
        await manager.shutdown()

    asyncio.run(scenario())


def test_observers_receive_status_updates_and_links_are_fresh() -> None:
    async def scenario() -> None:
        seen: list[UploadManagerStatus] = []

        async def observer(status: UploadManagerStatus) -> None:
            seen.append(status)

        manager = _manager(FakeTransfer())
        manager.subscribe(observer, name="test")
        await manager.start()
        await manager.enqueue(_job("a.mov"))
        await manager.wait_until_idle()
        await manager.drain()

        assert seen[-1].completed_count == 1
        links = await manager.get_links("job-a.mov")
        assert links.s3_uri == "s3://bucket-a/incoming/a.mov"
        assert links.presigned_url == "https://signed.example/incoming/a.mov?fresh=1"
        assert links.console_url.startswith("https://us-east-1.console.aws.amazon.com/s3/buckets/")

        updated = await manager.set_max_concurrent(3)
        assert updated.max_concurrent == 3
        with pytest.raises(UploadJobConflictError):
            await manager.configure_throttle(1024)
        await manager.shutdown()

    asyncio.run(scenario())
