"""Status, history and request models shared by the API and status observers."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from media_upload_engine.domain.transfer_types import (
    FailureCategory,
    JobCollection,
    JobStatus,
    ScheduleMode,
)


class MonitoringModel(BaseModel):
    """Base model for engine payloads."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class SnapshotModel(MonitoringModel):
    """Immutable point-in-time payload."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True, frozen=True)


class JobErrorResponse(SnapshotModel):
    category: FailureCategory
    message: str
    retryable: bool


class UploadJobProgressResponse(SnapshotModel):
    bytes_transferred: int = Field(default=0, alias="bytesTransferred")
    total_bytes: int = Field(default=0, alias="totalBytes")
    percent_complete: float = Field(default=0.0, alias="percentComplete")
    current_part: int = Field(default=0, alias="currentPart")
    total_parts: int = Field(default=0, alias="totalParts")
    throughput_bps: float = Field(default=0.0, alias="throughputBps")
    eta_seconds: float | None = Field(default=None, alias="etaSeconds")


class SequenceSummaryResponse(SnapshotModel):
    base_name: str = Field(alias="baseName")
    first_frame: int = Field(alias="firstFrame")
    last_frame: int = Field(alias="lastFrame")
    padding: int
    member_count: int = Field(alias="memberCount")
    completed_members: int = Field(alias="completedMembers")


class UploadJobResponse(SnapshotModel):
    """Single job payload."""

    job_id: str = Field(alias="jobId")
    display_name: str = Field(alias="displayName")
    source_path: str = Field(alias="sourcePath")
    bucket: str
    key: str
    region: str
    s3_uri: str = Field(alias="s3Uri")
    console_url: str = Field(alias="consoleUrl")
    presigned_url: str | None = Field(default=None, alias="presignedUrl")
    status: JobStatus
    collection: JobCollection | None = None
    priority: int = 0
    attempt_count: int = Field(default=0, alias="attemptCount")
    last_attempt_at: datetime | None = Field(default=None, alias="lastAttemptAt")
    retry_errors: list[str] = Field(default_factory=list, alias="retryErrors")
    error: JobErrorResponse | None = None
    upload_id: str | None = Field(default=None, alias="uploadId")
    completed_part_count: int = Field(default=0, alias="completedPartCount")
    created_at: datetime = Field(alias="createdAt")
    started_at: datetime | None = Field(default=None, alias="startedAt")
    completed_at: datetime | None = Field(default=None, alias="completedAt")
    progress: UploadJobProgressResponse
    sequence: SequenceSummaryResponse | None = None
    companion_of: str | None = Field(default=None, alias="companionOf")


class UploadJobListResponse(MonitoringModel):
    jobs: list[UploadJobResponse] = Field(default_factory=list)


class UploadManagerStatus(SnapshotModel):
    """Aggregate orchestrator status pushed to observers on every change."""

    running: bool = False
    paused: bool = False
    upload_allowed: bool = Field(default=True, alias="uploadAllowed")
    next_allowed_at: datetime | None = Field(default=None, alias="nextAllowedAt")
    pending_count: int = Field(default=0, alias="pendingCount")
    active_count: int = Field(default=0, alias="activeCount")
    completed_count: int = Field(default=0, alias="completedCount")
    failed_count: int = Field(default=0, alias="failedCount")
    retry_scheduled_count: int = Field(default=0, alias="retryScheduledCount")
    max_concurrent: int = Field(default=1, alias="maxConcurrent")
    total_bytes: int = Field(default=0, alias="totalBytes")
    transferred_bytes: int = Field(default=0, alias="transferredBytes")
    overall_percentage: float = Field(default=0.0, alias="overallPercentage")
    throttle_limit_bps: int = Field(default=0, alias="throttleLimitBps")
    throttled_bytes: int = Field(default=0, alias="throttledBytes")
    throttle_delay_seconds: float = Field(default=0.0, alias="throttleDelaySeconds")
    active_jobs: list[UploadJobResponse] = Field(default_factory=list, alias="activeJobs")


class UploadOutcome(SnapshotModel):
    """History record emitted once per job that reaches a terminal state."""

    job_id: str = Field(alias="jobId")
    file_name: str = Field(alias="fileName")
    source_path: str = Field(alias="sourcePath")
    bucket: str
    key: str
    region: str
    s3_uri: str = Field(alias="s3Uri")
    total_bytes: int = Field(alias="totalBytes")
    status: JobStatus
    attempt_count: int = Field(alias="attemptCount")
    started_at: datetime | None = Field(default=None, alias="startedAt")
    completed_at: datetime | None = Field(default=None, alias="completedAt")
    presigned_url: str | None = Field(default=None, alias="presignedUrl")
    error_message: str | None = Field(default=None, alias="errorMessage")

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at is None or self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()


class UploadHistoryResponse(MonitoringModel):
    items: list[UploadOutcome] = Field(default_factory=list)


class UploadLinksResponse(MonitoringModel):
    s3_uri: str = Field(alias="s3Uri")
    console_url: str = Field(alias="consoleUrl")
    presigned_url: str | None = Field(default=None, alias="presignedUrl")


class EnqueueUploadRequest(MonitoringModel):
    """Request body for enqueuing one file."""

    source_path: str = Field(alias="sourcePath", min_length=1)
    bucket: str = Field(min_length=1)
    key: str = Field(min_length=1)
    region: str | None = None
    priority: int = 0
    companion_of: str | None = Field(default=None, alias="companionOf")


class EnqueueSequenceRequest(MonitoringModel):
    """Request body for enqueuing an ordered frame sequence."""

    base_name: str = Field(alias="baseName", min_length=1)
    first_frame: int = Field(alias="firstFrame", ge=0)
    last_frame: int = Field(alias="lastFrame", ge=0)
    padding: int = Field(default=4, ge=1)
    files: list[str] = Field(min_length=1)
    bucket: str = Field(min_length=1)
    key_prefix: str = Field(default="", alias="keyPrefix")
    region: str | None = None
    priority: int = 0


class RetryAllResponse(MonitoringModel):
    requeued: int


class ScheduleUpdateRequest(MonitoringModel):
    """Replace the upload schedule, either from a named preset or explicit rules.

    Rules use the same JSON shape as the schedule environment settings
    (``start``/``end`` as ``HH:MM``, optional ``days``, ``enabled`` and ``name``).
    """

    enabled: bool = True
    mode: ScheduleMode = ScheduleMode.ALLOW_DURING
    preset: str | None = None
    rules: list[dict[str, Any]] = Field(default_factory=list)


class ConcurrencyUpdateRequest(MonitoringModel):
    max_concurrent: int = Field(alias="maxConcurrent", ge=1)


class ThrottleUpdateRequest(MonitoringModel):
    """Flat limit in MB/s (0 is unlimited) plus optional time-of-day rules."""

    max_upload_speed_mbps: float = Field(alias="maxUploadSpeedMbps", ge=0)
    rules: list[dict[str, Any]] = Field(default_factory=list)


__all__ = [
    "ConcurrencyUpdateRequest",
    "EnqueueSequenceRequest",
    "EnqueueUploadRequest",
    "JobErrorResponse",
    "MonitoringModel",
    "RetryAllResponse",
    "ScheduleUpdateRequest",
    "SequenceSummaryResponse",
    "SnapshotModel",
    "ThrottleUpdateRequest",
    "UploadHistoryResponse",
    "UploadJobListResponse",
    "UploadJobProgressResponse",
    "UploadJobResponse",
    "UploadLinksResponse",
    "UploadManagerStatus",
    "UploadOutcome",
]
