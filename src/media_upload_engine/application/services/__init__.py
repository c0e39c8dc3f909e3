"""Application services public API."""

from media_upload_engine.application.services.failure_classifier import classify_failure
from media_upload_engine.application.services.job_registry import JobRegistry
from media_upload_engine.application.services.status_broadcaster import (
    StatusBroadcaster,
    StatusObserver,
)
from media_upload_engine.application.services.upload_manager import UploadManager

__all__ = [
    "JobRegistry",
    "StatusBroadcaster",
    "StatusObserver",
    "UploadManager",
    "classify_failure",
]
