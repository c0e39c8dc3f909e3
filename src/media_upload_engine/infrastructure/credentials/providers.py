"""Credential providers consumed by the S3 transfer."""

from __future__ import annotations

import logging

import boto3
from botocore.exceptions import BotoCoreError

from media_upload_engine.domain.entities import Credentials
from media_upload_engine.domain.ports import CredentialProvider

logger = logging.getLogger(__name__)


class StaticCredentialProvider(CredentialProvider):
    """Fixed credentials, or none at all."""

    def __init__(self, credentials: Credentials | None) -> None:
        self._credentials = credentials

    def current_credentials(self) -> Credentials | None:
        return self._credentials

    def replace(self, credentials: Credentials | None) -> None:
        self._credentials = credentials


class Boto3SessionCredentialProvider(CredentialProvider):
    """Resolve credentials through the botocore chain (env, profile, SSO cache, role)."""

    def __init__(self, profile_name: str | None = None) -> None:
        self._profile_name = profile_name

    def current_credentials(self) -> Credentials | None:
        try:
            session = boto3.Session(profile_name=self._profile_name)
            resolved = session.get_credentials()
            if resolved is None:
                return None
            frozen = resolved.get_frozen_credentials()
        except BotoCoreError as exc:
            logger.warning("Could not resolve AWS credentials: %s", exc)
            return None
        if not frozen.access_key or not frozen.secret_key:
            return None
        return Credentials(
            access_key_id=frozen.access_key,
            secret_access_key=frozen.secret_key,
            session_token=frozen.token,
        )


__all__ = ["Boto3SessionCredentialProvider", "StaticCredentialProvider"]
