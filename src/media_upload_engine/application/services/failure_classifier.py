"""Single place where raw upload failures become classified job failures."""

from __future__ import annotations

import socket

from botocore.exceptions import (
    ClientError,
    ConnectionError as BotoConnectionError,
    CredentialRetrievalError,
    NoCredentialsError,
    ParamValidationError,
    PartialCredentialsError,
)

from media_upload_engine.domain.entities import JobFailure
from media_upload_engine.domain.errors import TransferError
from media_upload_engine.domain.transfer_types import FailureCategory

_AUTH_CODES = frozenset(
    {
        "AccessDenied",
        "AccountProblem",
        "AllAccessDisabled",
        "ExpiredToken",
        "InvalidAccessKeyId",
        "InvalidToken",
        "SignatureDoesNotMatch",
        "TokenRefreshRequired",
        "UnrecognizedClientException",
    }
)
_DESTINATION_CODES = frozenset(
    {
        "IllegalLocationConstraintException",
        "InvalidBucketName",
        "NoSuchBucket",
        "PermanentRedirect",
    }
)
_VALIDATION_CODES = frozenset(
    {
        "BadDigest",
        "EntityTooLarge",
        "EntityTooSmall",
        "InvalidDigest",
        "InvalidPart",
        "InvalidPartOrder",
        "KeyTooLongError",
        "MetadataTooLarge",
    }
)
_NETWORK_CODES = frozenset(
    {
        "InternalError",
        "RequestTimeout",
        "RequestTimeoutException",
        "ServiceUnavailable",
        "SlowDown",
        "Throttling",
        "ThrottlingException",
    }
)

_NETWORK_HINTS = (
    "network",
    "connection",
    "timeout",
    "timed out",
    "internet",
    "offline",
    "socket",
    "dns",
    "throttl",
    "rate limit",
    "slow down",
    "service unavailable",
    "internal server error",
    "bad gateway",
    "gateway timeout",
)
_AUTH_HINTS = ("auth", "credential", "forbidden", "access denied", "401", "403")
_DESTINATION_HINTS = ("no such bucket", "bucket does not exist", "404")
_VALIDATION_HINTS = ("too large", "key too long", "checksum", "digest")


def _message(exc: BaseException) -> str:
    text = str(exc).strip()
    return text or type(exc).__name__


def _classify_client_error(exc: ClientError) -> FailureCategory:
    error = exc.response.get("Error", {})
    code = str(error.get("Code", ""))
    status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")

    if code in _AUTH_CODES:
        return FailureCategory.AUTHENTICATION
    if code in _DESTINATION_CODES:
        return FailureCategory.DESTINATION
    if code in _VALIDATION_CODES:
        return FailureCategory.VALIDATION
    if code in _NETWORK_CODES:
        return FailureCategory.NETWORK

    if isinstance(status, int):
        if status in (401, 403):
            return FailureCategory.AUTHENTICATION
        if status == 404 and code != "NoSuchUpload":
            return FailureCategory.DESTINATION
        if status in (408, 429) or status >= 500:
            return FailureCategory.NETWORK
    return FailureCategory.PROTOCOL


def _classify_message(message: str) -> FailureCategory:
    lowered = message.lower()
    for hints, category in (
        (_NETWORK_HINTS, FailureCategory.NETWORK),
        (_AUTH_HINTS, FailureCategory.AUTHENTICATION),
        (_DESTINATION_HINTS, FailureCategory.DESTINATION),
        (_VALIDATION_HINTS, FailureCategory.VALIDATION),
    ):
        if any(hint in lowered for hint in hints):
            return category
    return FailureCategory.PROTOCOL


def classify_failure(exc: BaseException) -> JobFailure:
    """Map any exception raised by an upload attempt to a classified failure."""

    message = _message(exc)
    if isinstance(exc, TransferError):
        return JobFailure(exc.category, message)
    if isinstance(exc, ClientError):
        return JobFailure(_classify_client_error(exc), message)
    if isinstance(exc, (NoCredentialsError, PartialCredentialsError, CredentialRetrievalError)):
        return JobFailure(FailureCategory.AUTHENTICATION, message)
    if isinstance(exc, ParamValidationError):
        return JobFailure(FailureCategory.VALIDATION, message)
    if isinstance(exc, BotoConnectionError):
        return JobFailure(FailureCategory.NETWORK, message)
    if isinstance(exc, (FileNotFoundError, PermissionError, IsADirectoryError)):
        return JobFailure(FailureCategory.VALIDATION, f"Cannot read source file: {message}")
    if isinstance(exc, (ConnectionError, TimeoutError, socket.gaierror)):
        return JobFailure(FailureCategory.NETWORK, message)
    return JobFailure(_classify_message(message), message)


__all__ = ["classify_failure"]
