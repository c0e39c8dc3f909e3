"""Domain exceptions for upload jobs and transfers."""

from __future__ import annotations

from media_upload_engine.domain.transfer_types import FailureCategory


class UploadJobError(Exception):
    """Base class for upload job errors."""


class UploadJobNotFoundError(UploadJobError):
    """Raised when a job id is unknown to the registry."""


class UploadJobConflictError(UploadJobError):
    """Raised when an operation conflicts with the job's current collection."""


class UploadJobValidationError(UploadJobError):
    """Raised when a job request is invalid."""


class TransferError(Exception):
    """Failure detected by the transfer itself, carrying its category."""

    category: FailureCategory = FailureCategory.PROTOCOL

    def __init__(self, message: str, *, category: FailureCategory | None = None) -> None:
        super().__init__(message)
        if category is not None:
            self.category = category


class NetworkTransferError(TransferError):
    category = FailureCategory.NETWORK


class ProtocolTransferError(TransferError):
    category = FailureCategory.PROTOCOL


class AuthenticationTransferError(TransferError):
    category = FailureCategory.AUTHENTICATION


class DestinationTransferError(TransferError):
    category = FailureCategory.DESTINATION


class ValidationTransferError(TransferError):
    category = FailureCategory.VALIDATION


class TransferCancelledError(TransferError):
    category = FailureCategory.CANCELLED


__all__ = [
    "AuthenticationTransferError",
    "DestinationTransferError",
    "NetworkTransferError",
    "ProtocolTransferError",
    "TransferCancelledError",
    "TransferError",
    "UploadJobConflictError",
    "UploadJobError",
    "UploadJobNotFoundError",
    "UploadJobValidationError",
    "ValidationTransferError",
]
