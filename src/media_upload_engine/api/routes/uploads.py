"""Upload job routes: enqueue, inspect, cancel and retry."""

from __future__ import annotations

from pathlib import Path as FilePath

from fastapi import APIRouter, Depends, Path, Query

from media_upload_engine.api.dependencies import get_settings, get_upload_manager
from media_upload_engine.api.routes.errors import raise_http_exception
from media_upload_engine.application.services import UploadManager
from media_upload_engine.config import Settings
from media_upload_engine.domain.entities import ObjectDestination, SequenceJob, TransferJob
from media_upload_engine.domain.errors import UploadJobValidationError
from media_upload_engine.domain.monitoring_models import (
    EnqueueSequenceRequest,
    EnqueueUploadRequest,
    RetryAllResponse,
    UploadJobListResponse,
    UploadJobResponse,
    UploadLinksResponse,
)
from media_upload_engine.domain.transfer_types import JobCollection

router = APIRouter(prefix="/uploads", tags=["uploads"])


def _file_job(
    source_path: str,
    *,
    bucket: str,
    key: str,
    region: str,
    priority: int = 0,
    companion_of: str | None = None,
) -> TransferJob:
    path = FilePath(source_path).expanduser()
    if not path.is_file():
        raise UploadJobValidationError(f"Source file '{source_path}' does not exist.")
    return TransferJob(
        source_path=path,
        destination=ObjectDestination(bucket=bucket, key=key, region=region),
        total_bytes=path.stat().st_size,
        priority=priority,
        companion_of=companion_of,
    )


def _sequence_job(request: EnqueueSequenceRequest, region: str) -> TransferJob:
    if request.last_frame < request.first_frame:
        raise UploadJobValidationError("lastFrame must be >= firstFrame.")
    prefix = request.key_prefix
    if prefix and not prefix.endswith("/"):
        prefix = f"{prefix}/"
    members = [
        _file_job(
            source_path,
            bucket=request.bucket,
            key=f"{prefix}{FilePath(source_path).name}",
            region=region,
        )
        for source_path in request.files
    ]
    sequence = SequenceJob(
        base_name=request.base_name,
        first_frame=request.first_frame,
        last_frame=request.last_frame,
        padding=request.padding,
        members=members,
    )
    return TransferJob.from_sequence(sequence, priority=request.priority)


@router.post("", response_model=UploadJobResponse, status_code=201)
async def enqueue_upload(
    request: EnqueueUploadRequest,
    manager: UploadManager = Depends(get_upload_manager),
    settings: Settings = Depends(get_settings),
) -> UploadJobResponse:
    """Queue one local file for upload."""

    try:
        job = _file_job(
            request.source_path,
            bucket=request.bucket,
            key=request.key,
            region=request.region or settings.aws_region,
            priority=request.priority,
            companion_of=request.companion_of,
        )
        return await manager.enqueue(job)
    except Exception as exc:  # noqa: BLE001
        raise_http_exception(exc)


@router.post("/sequences", response_model=UploadJobResponse, status_code=201)
async def enqueue_sequence(
    request: EnqueueSequenceRequest,
    manager: UploadManager = Depends(get_upload_manager),
    settings: Settings = Depends(get_settings),
) -> UploadJobResponse:
    """Queue an ordered frame sequence as one job."""

    try:
        return await manager.enqueue(_sequence_job(request, request.region or settings.aws_region))
    except Exception as exc:  # noqa: BLE001
        raise_http_exception(exc)


@router.get("", response_model=UploadJobListResponse, status_code=200)
async def list_uploads(
    collection: JobCollection | None = Query(default=None),
    manager: UploadManager = Depends(get_upload_manager),
) -> UploadJobListResponse:
    try:
        return UploadJobListResponse(jobs=await manager.list_jobs(collection))
    except Exception as exc:  # noqa: BLE001
        raise_http_exception(exc)


@router.post("/retry-failed", response_model=RetryAllResponse, status_code=200)
async def retry_failed_uploads(
    manager: UploadManager = Depends(get_upload_manager),
) -> RetryAllResponse:
    """Move every failed job back to the queue, resuming their sessions."""

    try:
        return RetryAllResponse(requeued=await manager.retry_all_failed())
    except Exception as exc:  # noqa: BLE001
        raise_http_exception(exc)


@router.get("/{id}", response_model=UploadJobResponse, status_code=200)
async def get_upload(
    id: str = Path(...),
    manager: UploadManager = Depends(get_upload_manager),
) -> UploadJobResponse:
    try:
        return await manager.get_job(id)
    except Exception as exc:  # noqa: BLE001
        raise_http_exception(exc)


@router.post("/{id}/cancel", response_model=UploadJobResponse, status_code=200)
async def cancel_upload(
    id: str = Path(...),
    manager: UploadManager = Depends(get_upload_manager),
) -> UploadJobResponse:
    try:
        return await manager.cancel_job(id)
    except Exception as exc:  # noqa: BLE001
        raise_http_exception(exc)


@router.post("/{id}/retry", response_model=UploadJobResponse, status_code=200)
async def retry_upload(
    id: str = Path(...),
    manager: UploadManager = Depends(get_upload_manager),
) -> UploadJobResponse:
    try:
        return await manager.retry_job(id)
    except Exception as exc:  # noqa: BLE001
        raise_http_exception(exc)


@router.post("/{id}/retry-fresh", response_model=UploadJobResponse, status_code=200)
async def retry_upload_fresh(
    id: str = Path(...),
    manager: UploadManager = Depends(get_upload_manager),
) -> UploadJobResponse:
    """Retry from scratch, discarding any open multipart session."""

    try:
        return await manager.retry_job_fresh(id)
    except Exception as exc:  # noqa: BLE001
        raise_http_exception(exc)


@router.get("/{id}/links", response_model=UploadLinksResponse, status_code=200)
async def get_upload_links(
    id: str = Path(...),
    manager: UploadManager = Depends(get_upload_manager),
) -> UploadLinksResponse:
    try:
        return await manager.get_links(id)
    except Exception as exc:  # noqa: BLE001
        raise_http_exception(exc)


__all__ = ["router"]
