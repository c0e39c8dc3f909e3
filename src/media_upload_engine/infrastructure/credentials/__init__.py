"""Credential provider adapters."""

from media_upload_engine.infrastructure.credentials.providers import (
    Boto3SessionCredentialProvider,
    StaticCredentialProvider,
)

__all__ = ["Boto3SessionCredentialProvider", "StaticCredentialProvider"]
