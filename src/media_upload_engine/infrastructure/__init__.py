"""Infrastructure layer public API."""

from media_upload_engine.infrastructure.callbacks import WebhookHistoryNotifier
from media_upload_engine.infrastructure.credentials import (
    Boto3SessionCredentialProvider,
    StaticCredentialProvider,
)
from media_upload_engine.infrastructure.events import MqttUploadEventPublisher
from media_upload_engine.infrastructure.repositories import (
    InMemoryUploadRepository,
    PostgresUploadRepository,
)
from media_upload_engine.infrastructure.transfers import S3UploadTransfer

__all__ = [
    "Boto3SessionCredentialProvider",
    "InMemoryUploadRepository",
    "MqttUploadEventPublisher",
    "PostgresUploadRepository",
    "S3UploadTransfer",
    "StaticCredentialProvider",
    "WebhookHistoryNotifier",
]
