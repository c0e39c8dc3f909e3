"""Mapping of engine errors onto HTTP responses."""

from __future__ import annotations

from typing import NoReturn

from fastapi import HTTPException

from media_upload_engine.domain.errors import (
    UploadJobConflictError,
    UploadJobNotFoundError,
    UploadJobValidationError,
)


def raise_http_exception(exc: Exception) -> NoReturn:
    if isinstance(exc, UploadJobNotFoundError):
        raise HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, UploadJobValidationError):
        raise HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, UploadJobConflictError):
        raise HTTPException(status_code=409, detail=str(exc))
    raise HTTPException(status_code=500, detail="Unexpected upload engine error")


__all__ = ["raise_http_exception"]
