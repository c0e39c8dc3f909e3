"""Domain public API."""

from media_upload_engine.domain.entities import (
    CompletedPart,
    Credentials,
    JobFailure,
    ObjectDestination,
    SequenceJob,
    TransferControl,
    TransferJob,
    TransferProgress,
)
from media_upload_engine.domain.errors import (
    TransferError,
    UploadJobConflictError,
    UploadJobError,
    UploadJobNotFoundError,
    UploadJobValidationError,
)
from media_upload_engine.domain.monitoring_models import (
    UploadJobResponse,
    UploadManagerStatus,
    UploadOutcome,
)
from media_upload_engine.domain.ports import (
    CredentialProvider,
    UploadHistorySink,
    UploadHistoryStore,
    UploadJobRepository,
    UploadStatusPublisher,
    UploadTransfer,
)
from media_upload_engine.domain.retry_policy import RetryPolicy
from media_upload_engine.domain.schedule import ScheduleRule, ThrottleSchedule, UploadSchedule
from media_upload_engine.domain.transfer_types import (
    FailureCategory,
    JobCollection,
    JobStatus,
    ScheduleMode,
)

__all__ = [
    "CompletedPart",
    "CredentialProvider",
    "Credentials",
    "FailureCategory",
    "JobCollection",
    "JobFailure",
    "JobStatus",
    "ObjectDestination",
    "RetryPolicy",
    "ScheduleMode",
    "ScheduleRule",
    "SequenceJob",
    "ThrottleSchedule",
    "TransferControl",
    "TransferError",
    "TransferJob",
    "TransferProgress",
    "UploadHistorySink",
    "UploadHistoryStore",
    "UploadJobConflictError",
    "UploadJobError",
    "UploadJobNotFoundError",
    "UploadJobRepository",
    "UploadJobResponse",
    "UploadJobValidationError",
    "UploadManagerStatus",
    "UploadOutcome",
    "UploadSchedule",
    "UploadStatusPublisher",
    "UploadTransfer",
]
