"""Upload job state and classification enums."""

from enum import StrEnum


class JobStatus(StrEnum):
    """Lifecycle status of one upload job."""

    PENDING = "PENDING"
    UPLOADING = "UPLOADING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class JobCollection(StrEnum):
    """Registry collection a job currently lives in."""

    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRY_SCHEDULED = "retry_scheduled"


class FailureCategory(StrEnum):
    """Classified cause of a failed upload attempt."""

    NETWORK = "NETWORK"
    PROTOCOL = "PROTOCOL"
    AUTHENTICATION = "AUTHENTICATION"
    DESTINATION = "DESTINATION"
    VALIDATION = "VALIDATION"
    CANCELLED = "CANCELLED"


class ScheduleMode(StrEnum):
    """How schedule rules gate uploads."""

    ALLOW_DURING = "allow_during"
    BLOCK_DURING = "block_during"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
RETRYABLE_CATEGORIES = frozenset({FailureCategory.NETWORK, FailureCategory.PROTOCOL})

__all__ = [
    "FailureCategory",
    "JobCollection",
    "JobStatus",
    "RETRYABLE_CATEGORIES",
    "ScheduleMode",
    "TERMINAL_STATUSES",
]
