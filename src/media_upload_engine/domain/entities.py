"""Domain entities."""

from __future__ import annotations

import asyncio
import posixpath
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from urllib.parse import quote
from uuid import uuid4

from media_upload_engine.domain.errors import TransferCancelledError
from media_upload_engine.domain.transfer_types import (
    RETRYABLE_CATEGORIES,
    FailureCategory,
    JobStatus,
)


def utc_now() -> datetime:
    return datetime.now(UTC)


def _new_job_id() -> str:
    return str(uuid4())


@dataclass(slots=True, frozen=True)
class Credentials:
    """Opaque credentials handed to the transfer by a credential provider."""

    access_key_id: str
    secret_access_key: str = field(repr=False)
    session_token: str | None = field(default=None, repr=False)


@dataclass(slots=True, frozen=True)
class ObjectDestination:
    """Target object location in the storage backend."""

    bucket: str
    key: str
    region: str = "us-east-1"

    @property
    def s3_uri(self) -> str:
        return f"s3://{self.bucket}/{self.key}"

    @property
    def console_url(self) -> str:
        """AWS console link that opens the bucket filtered to the object key."""

        return (
            f"https://{self.region}.console.aws.amazon.com/s3/buckets/"
            f"{quote(self.bucket, safe='')}?prefix={quote(self.key, safe='/')}"
        )


@dataclass(slots=True, frozen=True, order=True)
class CompletedPart:
    """One acknowledged part of a multipart session."""

    part_number: int
    etag: str = field(compare=False)
    size: int = field(compare=False)


@dataclass(slots=True)
class TransferProgress:
    """Live progress of the current attempt."""

    bytes_transferred: int = 0
    total_bytes: int = 0
    current_part: int = 0
    total_parts: int = 0
    throughput_bps: float = 0.0
    eta_seconds: float | None = None

    @property
    def percent_complete(self) -> float:
        if self.total_bytes <= 0:
            return 0.0
        ratio = (self.bytes_transferred / self.total_bytes) * 100
        return max(0.0, min(100.0, round(ratio, 2)))


@dataclass(slots=True, frozen=True)
class JobFailure:
    """Classified failure attached to a job."""

    category: FailureCategory
    message: str

    @property
    def retryable(self) -> bool:
        return self.category in RETRYABLE_CATEGORIES

    @property
    def summary(self) -> str:
        return f"[{self.category.value}] {self.message}"


@dataclass(slots=True)
class TransferControl:
    """Cooperative cancellation token shared by the orchestrator and one attempt."""

    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def cancel_requested(self) -> bool:
        return self.cancel_event.is_set()

    def request_cancel(self) -> None:
        self.cancel_event.set()

    def raise_if_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise TransferCancelledError("Upload cancelled.")


@dataclass(slots=True)
class TransferJob:
    """One file, or one frame sequence, queued for upload.

    Multipart state (``upload_id``, ``part_size``, ``completed_parts``) survives a
    manual retry so the next attempt resumes the open session; ``reset_fresh``
    discards it.
    """

    source_path: Path
    destination: ObjectDestination
    total_bytes: int
    priority: int = 0
    job_id: str = field(default_factory=_new_job_id)
    status: JobStatus = JobStatus.PENDING
    progress: TransferProgress = field(default_factory=TransferProgress)
    upload_id: str | None = None
    part_size: int | None = None
    completed_parts: list[CompletedPart] = field(default_factory=list)
    attempt_count: int = 0
    last_attempt_at: datetime | None = None
    retry_errors: list[str] = field(default_factory=list)
    error: JobFailure | None = None
    created_at: datetime = field(default_factory=utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    presigned_url: str | None = None
    sequence: SequenceJob | None = None
    companion_of: str | None = None

    def __post_init__(self) -> None:
        self.source_path = Path(self.source_path)
        self.progress.total_bytes = self.total_bytes

    @classmethod
    def from_sequence(cls, sequence: SequenceJob, *, priority: int = 0) -> TransferJob:
        """Wrap a frame sequence into one logical job targeting the members' prefix."""

        if not sequence.members:
            raise ValueError("A sequence job needs at least one member.")
        first = sequence.members[0]
        prefix = posixpath.dirname(first.destination.key)
        return cls(
            source_path=first.source_path.parent,
            destination=ObjectDestination(
                bucket=first.destination.bucket,
                key=f"{prefix}/" if prefix else "",
                region=first.destination.region,
            ),
            total_bytes=sequence.total_bytes,
            priority=priority,
            sequence=sequence,
        )

    @property
    def display_name(self) -> str:
        if self.sequence is not None:
            return self.sequence.label
        return self.source_path.name

    @property
    def s3_uri(self) -> str:
        return self.destination.s3_uri

    @property
    def console_url(self) -> str:
        return self.destination.console_url

    @property
    def completed_bytes(self) -> int:
        """Bytes already durable in the backend for this job."""

        if self.sequence is not None:
            return self.sequence.completed_bytes
        if self.status is JobStatus.COMPLETED:
            return self.total_bytes
        return sum(part.size for part in self.completed_parts)

    def begin_attempt(self, now: datetime) -> None:
        self.attempt_count += 1
        self.last_attempt_at = now
        self.started_at = now
        self.completed_at = None
        self.status = JobStatus.UPLOADING
        self.error = None
        self.progress.bytes_transferred = self.completed_bytes
        self.progress.throughput_bps = 0.0
        self.progress.eta_seconds = None

    def record_failure(self, failure: JobFailure) -> None:
        self.error = failure
        self.retry_errors.append(failure.summary)

    def mark_retry_scheduled(self) -> None:
        self.status = JobStatus.PENDING
        self.progress.throughput_bps = 0.0
        self.progress.eta_seconds = None

    def mark_completed(self, now: datetime) -> None:
        self.status = JobStatus.COMPLETED
        self.completed_at = now
        self.error = None
        self.progress.bytes_transferred = self.total_bytes
        self.progress.eta_seconds = 0.0

    def mark_failed(self, now: datetime) -> None:
        self.status = JobStatus.FAILED
        self.completed_at = now
        self.progress.throughput_bps = 0.0
        self.progress.eta_seconds = None

    def mark_cancelled(self, now: datetime) -> None:
        self.status = JobStatus.CANCELLED
        self.completed_at = now
        self.error = JobFailure(FailureCategory.CANCELLED, "Upload cancelled by user.")
        self.progress.throughput_bps = 0.0
        self.progress.eta_seconds = None

    def reset_for_retry(self) -> None:
        """Back to pending, keeping attempts, error history and completed parts."""

        self.status = JobStatus.PENDING
        self.error = None
        self.completed_at = None
        self.presigned_url = None
        self.progress.bytes_transferred = self.completed_bytes
        self.progress.current_part = 0
        self.progress.throughput_bps = 0.0
        self.progress.eta_seconds = None
        if self.sequence is not None:
            for member in self.sequence.members:
                if member.status is not JobStatus.COMPLETED:
                    member.reset_for_retry()

    def reset_fresh(self) -> None:
        """Back to pending with no multipart session and no attempt history."""

        self.upload_id = None
        self.part_size = None
        self.completed_parts.clear()
        self.attempt_count = 0
        self.last_attempt_at = None
        self.retry_errors.clear()
        if self.sequence is not None:
            for member in self.sequence.members:
                member.status = JobStatus.PENDING
                member.reset_fresh()
        self.reset_for_retry()
        self.progress.bytes_transferred = 0


@dataclass(slots=True)
class SequenceJob:
    """Ordered frame files uploaded and reported as one unit."""

    base_name: str
    first_frame: int
    last_frame: int
    padding: int
    members: list[TransferJob] = field(default_factory=list)

    @property
    def label(self) -> str:
        first = str(self.first_frame).zfill(self.padding)
        last = str(self.last_frame).zfill(self.padding)
        return f"{self.base_name}.[{first}-{last}]"

    @property
    def total_bytes(self) -> int:
        return sum(member.total_bytes for member in self.members)

    @property
    def completed_bytes(self) -> int:
        return sum(member.completed_bytes for member in self.members)

    @property
    def transferred_bytes(self) -> int:
        total = 0
        for member in self.members:
            if member.status is JobStatus.COMPLETED:
                total += member.total_bytes
            else:
                total += member.progress.bytes_transferred
        return total

    @property
    def completed_members(self) -> int:
        return sum(1 for member in self.members if member.status is JobStatus.COMPLETED)


__all__ = [
    "CompletedPart",
    "Credentials",
    "JobFailure",
    "ObjectDestination",
    "SequenceJob",
    "TransferControl",
    "TransferJob",
    "TransferProgress",
    "utc_now",
]
