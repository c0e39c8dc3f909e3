"""JSON-compatible checkpoint records for upload jobs."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any

from media_upload_engine.domain.entities import (
    CompletedPart,
    JobFailure,
    ObjectDestination,
    SequenceJob,
    TransferJob,
)
from media_upload_engine.domain.transfer_types import FailureCategory, JobStatus

RECORD_VERSION = 1


def _dump_datetime(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _load_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def job_to_record(job: TransferJob) -> dict[str, Any]:
    """Serialize everything needed to resume a job in another process."""

    record: dict[str, Any] = {
        "version": RECORD_VERSION,
        "jobId": job.job_id,
        "sourcePath": str(job.source_path),
        "bucket": job.destination.bucket,
        "key": job.destination.key,
        "region": job.destination.region,
        "totalBytes": job.total_bytes,
        "priority": job.priority,
        "status": job.status.value,
        "uploadId": job.upload_id,
        "partSize": job.part_size,
        "completedParts": [
            {"partNumber": part.part_number, "etag": part.etag, "size": part.size}
            for part in job.completed_parts
        ],
        "attemptCount": job.attempt_count,
        "lastAttemptAt": _dump_datetime(job.last_attempt_at),
        "retryErrors": list(job.retry_errors),
        "error": (
            {"category": job.error.category.value, "message": job.error.message}
            if job.error is not None
            else None
        ),
        "createdAt": _dump_datetime(job.created_at),
        "startedAt": _dump_datetime(job.started_at),
        "completedAt": _dump_datetime(job.completed_at),
        "presignedUrl": job.presigned_url,
        "companionOf": job.companion_of,
        "sequence": None,
    }
    if job.sequence is not None:
        record["sequence"] = {
            "baseName": job.sequence.base_name,
            "firstFrame": job.sequence.first_frame,
            "lastFrame": job.sequence.last_frame,
            "padding": job.sequence.padding,
            "members": [job_to_record(member) for member in job.sequence.members],
        }
    return record


def job_from_record(record: dict[str, Any]) -> TransferJob:
    """Rebuild a job from ``job_to_record`` output."""

    version = int(record.get("version", RECORD_VERSION))
    if version != RECORD_VERSION:
        raise ValueError(f"Unsupported job record version {version}.")

    raw_error = record.get("error")
    error = (
        JobFailure(FailureCategory(raw_error["category"]), str(raw_error["message"]))
        if isinstance(raw_error, dict)
        else None
    )
    sequence: SequenceJob | None = None
    raw_sequence = record.get("sequence")
    if isinstance(raw_sequence, dict):
        sequence = SequenceJob(
            base_name=str(raw_sequence["baseName"]),
            first_frame=int(raw_sequence["firstFrame"]),
            last_frame=int(raw_sequence["lastFrame"]),
            padding=int(raw_sequence["padding"]),
            members=[job_from_record(member) for member in raw_sequence.get("members", [])],
        )

    job = TransferJob(
        job_id=str(record["jobId"]),
        source_path=Path(record["sourcePath"]),
        destination=ObjectDestination(
            bucket=str(record["bucket"]),
            key=str(record["key"]),
            region=str(record["region"]),
        ),
        total_bytes=int(record["totalBytes"]),
        priority=int(record.get("priority", 0)),
        status=JobStatus(record.get("status", JobStatus.PENDING.value)),
        upload_id=record.get("uploadId"),
        part_size=record.get("partSize"),
        completed_parts=[
            CompletedPart(
                part_number=int(item["partNumber"]),
                etag=str(item["etag"]),
                size=int(item["size"]),
            )
            for item in record.get("completedParts", [])
        ],
        attempt_count=int(record.get("attemptCount", 0)),
        last_attempt_at=_load_datetime(record.get("lastAttemptAt")),
        retry_errors=[str(item) for item in record.get("retryErrors", [])],
        error=error,
        started_at=_load_datetime(record.get("startedAt")),
        completed_at=_load_datetime(record.get("completedAt")),
        presigned_url=record.get("presignedUrl"),
        sequence=sequence,
        companion_of=record.get("companionOf"),
    )
    created_at = _load_datetime(record.get("createdAt"))
    if created_at is not None:
        job.created_at = created_at
    job.progress.bytes_transferred = job.completed_bytes
    return job


__all__ = ["RECORD_VERSION", "job_from_record", "job_to_record"]
