"""Canonical in-process collections of upload jobs."""

from __future__ import annotations

import bisect
import itertools

from media_upload_engine.domain.entities import TransferJob
from media_upload_engine.domain.errors import UploadJobConflictError, UploadJobNotFoundError
from media_upload_engine.domain.transfer_types import JobCollection


class JobRegistry:
    """Pending, active, completed, failed and retry-scheduled jobs.

    Not thread-safe and not locked: the owning orchestrator serializes every
    call. Each job id lives in exactly one collection; pending jobs are kept
    sorted by descending priority, then by enqueue order.
    """

    def __init__(self) -> None:
        self._pending: list[tuple[int, int, TransferJob]] = []
        self._active: dict[str, TransferJob] = {}
        self._completed: dict[str, TransferJob] = {}
        self._failed: dict[str, TransferJob] = {}
        self._retry_scheduled: dict[str, TransferJob] = {}
        self._locations: dict[str, JobCollection] = {}
        self._sequence = itertools.count()

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._locations

    def locate(self, job_id: str) -> JobCollection | None:
        return self._locations.get(job_id)

    def get(self, job_id: str) -> TransferJob:
        location = self._locations.get(job_id)
        if location is None:
            raise UploadJobNotFoundError(f"No upload job found for id '{job_id}'.")
        if location is JobCollection.PENDING:
            return next(job for _, _, job in self._pending if job.job_id == job_id)
        return self._collection(location)[job_id]

    def count(self, location: JobCollection) -> int:
        if location is JobCollection.PENDING:
            return len(self._pending)
        return len(self._collection(location))

    def jobs(self, location: JobCollection) -> list[TransferJob]:
        if location is JobCollection.PENDING:
            return [job for _, _, job in self._pending]
        return list(self._collection(location).values())

    def all_jobs(self) -> list[tuple[JobCollection, TransferJob]]:
        return [(location, job) for location in JobCollection for job in self.jobs(location)]

    def add_pending(self, job: TransferJob) -> None:
        self._ensure_absent(job.job_id)
        bisect.insort(self._pending, (-job.priority, next(self._sequence), job))
        self._locations[job.job_id] = JobCollection.PENDING

    def pop_next_pending(self) -> TransferJob | None:
        if not self._pending:
            return None
        _, _, job = self._pending.pop(0)
        del self._locations[job.job_id]
        return job

    def remove(self, job_id: str) -> TransferJob:
        """Detach a job from whichever collection holds it."""

        location = self._locations.get(job_id)
        if location is None:
            raise UploadJobNotFoundError(f"No upload job found for id '{job_id}'.")
        if location is JobCollection.PENDING:
            index = next(
                position
                for position, (_, _, job) in enumerate(self._pending)
                if job.job_id == job_id
            )
            _, _, job = self._pending.pop(index)
        else:
            job = self._collection(location).pop(job_id)
        del self._locations[job_id]
        return job

    def place(self, job: TransferJob, location: JobCollection) -> None:
        """Put a detached job into a non-pending collection."""

        if location is JobCollection.PENDING:
            self.add_pending(job)
            return
        self._ensure_absent(job.job_id)
        self._collection(location)[job.job_id] = job
        self._locations[job.job_id] = location

    def move(self, job_id: str, location: JobCollection) -> TransferJob:
        job = self.remove(job_id)
        self.place(job, location)
        return job

    def _ensure_absent(self, job_id: str) -> None:
        existing = self._locations.get(job_id)
        if existing is not None:
            raise UploadJobConflictError(
                f"Upload job '{job_id}' is already tracked in the {existing.value} collection."
            )

    def _collection(self, location: JobCollection) -> dict[str, TransferJob]:
        if location is JobCollection.ACTIVE:
            return self._active
        if location is JobCollection.COMPLETED:
            return self._completed
        if location is JobCollection.FAILED:
            return self._failed
        if location is JobCollection.RETRY_SCHEDULED:
            return self._retry_scheduled
        raise ValueError(f"Pending jobs are not kept in a keyed collection: {location}")


__all__ = ["JobRegistry"]
