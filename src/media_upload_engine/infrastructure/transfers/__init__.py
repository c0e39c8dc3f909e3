"""Transfer adapters."""

from media_upload_engine.infrastructure.transfers.s3_upload_transfer import (
    S3ClientFactory,
    S3UploadTransfer,
)

__all__ = ["S3ClientFactory", "S3UploadTransfer"]
