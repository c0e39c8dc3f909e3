"""In-memory checkpoint and history store."""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Any

from media_upload_engine.domain.entities import TransferJob
from media_upload_engine.domain.job_records import job_from_record, job_to_record
from media_upload_engine.domain.monitoring_models import UploadOutcome
from media_upload_engine.domain.ports import UploadHistoryStore, UploadJobRepository

_DEFAULT_MAX_HISTORY_ITEMS = 1000


class InMemoryUploadRepository(UploadJobRepository, UploadHistoryStore):
    """Simple repository for local development and tests.

    Jobs are stored as serialized records, so a restored job never shares
    state with the instance that was saved.
    """

    def __init__(self, max_history_items: int = _DEFAULT_MAX_HISTORY_ITEMS) -> None:
        self._lock = asyncio.Lock()
        self._records: dict[str, dict[str, Any]] = {}
        self._history: deque[UploadOutcome] = deque(maxlen=max(max_history_items, 1))

    async def save_job(self, job: TransferJob) -> None:
        record = job_to_record(job)
        async with self._lock:
            self._records[job.job_id] = record

    async def delete_job(self, job_id: str) -> None:
        async with self._lock:
            self._records.pop(job_id, None)

    async def list_jobs(self) -> list[TransferJob]:
        async with self._lock:
            records = list(self._records.values())
        return [job_from_record(record) for record in records]

    async def record(self, outcome: UploadOutcome) -> None:
        async with self._lock:
            self._history.appendleft(outcome)

    async def list_recent(self, limit: int = 100) -> list[UploadOutcome]:
        async with self._lock:
            return list(self._history)[: max(limit, 0)]


__all__ = ["InMemoryUploadRepository"]
