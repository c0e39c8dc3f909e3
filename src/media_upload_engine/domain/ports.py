"""Ports for transfer, credentials, checkpoints, history and status observers."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Protocol, runtime_checkable

from media_upload_engine.domain.entities import Credentials, TransferControl, TransferJob
from media_upload_engine.domain.monitoring_models import UploadManagerStatus, UploadOutcome

ProgressCallback = Callable[[TransferJob], Awaitable[None]]


class CredentialProvider(Protocol):
    """Source of credentials; ``None`` means no usable credentials right now."""

    def current_credentials(self) -> Credentials | None:
        """Return the credentials to sign the next request with."""


class UploadTransfer(Protocol):
    """Bytes-on-the-wire work for one job attempt."""

    async def upload(
        self,
        job: TransferJob,
        control: TransferControl,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        """Upload the job, resuming any multipart session recorded on it."""

    async def abort(self, job: TransferJob) -> None:
        """Best-effort abort of the job's open multipart session(s)."""

    async def presigned_url(self, job: TransferJob) -> str | None:
        """Return a time-limited retrieval URL, or ``None`` if unavailable."""


@runtime_checkable
class UploadJobRepository(Protocol):
    """Durable checkpoints of unfinished jobs."""

    async def save_job(self, job: TransferJob) -> None:
        """Create or replace the checkpoint for a job."""

    async def delete_job(self, job_id: str) -> None:
        """Drop the checkpoint for a job."""

    async def list_jobs(self) -> list[TransferJob]:
        """Return every checkpointed job."""


class UploadHistorySink(Protocol):
    """Receiver of terminal job outcomes."""

    async def record(self, outcome: UploadOutcome) -> None:
        """Record one terminal outcome."""


@runtime_checkable
class UploadHistoryStore(UploadHistorySink, Protocol):
    """History sink that can also be queried."""

    async def list_recent(self, limit: int = 100) -> list[UploadOutcome]:
        """Return recorded outcomes, newest first."""


class UploadStatusPublisher(Protocol):
    """Observer receiving aggregate status snapshots."""

    async def publish_status(self, status: UploadManagerStatus) -> None:
        """Publish one status snapshot."""


__all__ = [
    "CredentialProvider",
    "ProgressCallback",
    "UploadHistorySink",
    "UploadHistoryStore",
    "UploadJobRepository",
    "UploadStatusPublisher",
    "UploadTransfer",
]
