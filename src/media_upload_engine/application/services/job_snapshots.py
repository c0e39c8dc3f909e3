"""Immutable API/observer views of mutable upload jobs."""

from __future__ import annotations

from media_upload_engine.domain.entities import TransferJob
from media_upload_engine.domain.monitoring_models import (
    JobErrorResponse,
    SequenceSummaryResponse,
    UploadJobProgressResponse,
    UploadJobResponse,
    UploadOutcome,
)
from media_upload_engine.domain.transfer_types import JobCollection


def job_to_response(job: TransferJob, collection: JobCollection | None = None) -> UploadJobResponse:
    progress = job.progress
    sequence = job.sequence
    return UploadJobResponse(
        job_id=job.job_id,
        display_name=job.display_name,
        source_path=str(job.source_path),
        bucket=job.destination.bucket,
        key=job.destination.key,
        region=job.destination.region,
        s3_uri=job.s3_uri,
        console_url=job.console_url,
        presigned_url=job.presigned_url,
        status=job.status,
        collection=collection,
        priority=job.priority,
        attempt_count=job.attempt_count,
        last_attempt_at=job.last_attempt_at,
        retry_errors=list(job.retry_errors),
        error=(
            JobErrorResponse(
                category=job.error.category,
                message=job.error.message,
                retryable=job.error.retryable,
            )
            if job.error is not None
            else None
        ),
        upload_id=job.upload_id,
        completed_part_count=len(job.completed_parts),
        created_at=job.created_at,
        started_at=job.started_at,
        completed_at=job.completed_at,
        progress=UploadJobProgressResponse(
            bytes_transferred=progress.bytes_transferred,
            total_bytes=progress.total_bytes,
            percent_complete=progress.percent_complete,
            current_part=progress.current_part,
            total_parts=progress.total_parts,
            throughput_bps=progress.throughput_bps,
            eta_seconds=progress.eta_seconds,
        ),
        sequence=(
            SequenceSummaryResponse(
                base_name=sequence.base_name,
                first_frame=sequence.first_frame,
                last_frame=sequence.last_frame,
                padding=sequence.padding,
                member_count=len(sequence.members),
                completed_members=sequence.completed_members,
            )
            if sequence is not None
            else None
        ),
        companion_of=job.companion_of,
    )


def outcome_from_job(job: TransferJob) -> UploadOutcome:
    """History record for a job that just reached a terminal state."""

    return UploadOutcome(
        job_id=job.job_id,
        file_name=job.display_name,
        source_path=str(job.source_path),
        bucket=job.destination.bucket,
        key=job.destination.key,
        region=job.destination.region,
        s3_uri=job.s3_uri,
        total_bytes=job.total_bytes,
        status=job.status,
        attempt_count=job.attempt_count,
        started_at=job.started_at,
        completed_at=job.completed_at,
        presigned_url=job.presigned_url,
        error_message=job.error.summary if job.error is not None else None,
    )


__all__ = ["job_to_response", "outcome_from_job"]
