from __future__ import annotations

from pathlib import Path

import pytest

from media_upload_engine.application.services import JobRegistry
from media_upload_engine.domain.entities import ObjectDestination, TransferJob
from media_upload_engine.domain.errors import UploadJobConflictError, UploadJobNotFoundError
from media_upload_engine.domain.transfer_types import JobCollection


def _job(job_id: str, priority: int = 0) -> TransferJob:
    return TransferJob(
        source_path=Path(f"/media/{job_id}.mov"),
        destination=ObjectDestination(bucket="bucket-a", key=f"{job_id}.mov"),
        total_bytes=10,
        priority=priority,
        job_id=job_id,
    )


def test_pending_order_is_priority_then_fifo() -> None:
    registry = JobRegistry()
    for job_id, priority in (("a", 0), ("b", 2), ("c", 0), ("d", 2), ("e", 1)):
        registry.add_pending(_job(job_id, priority))

    order = []
    while (job := registry.pop_next_pending()) is not None:
        order.append(job.job_id)

    assert order == ["b", "d", "e", "a", "c"]
    assert registry.count(JobCollection.PENDING) == 0


def test_each_job_lives_in_exactly_one_collection() -> None:
    registry = JobRegistry()
    registry.add_pending(_job("a"))
    registry.add_pending(_job("b"))

    job = registry.pop_next_pending()
    assert job is not None
    registry.place(job, JobCollection.ACTIVE)
    registry.move("a", JobCollection.FAILED)

    assert registry.locate("a") is JobCollection.FAILED
    assert registry.locate("b") is JobCollection.PENDING
    assert "a" in registry
    assert [(location, item.job_id) for location, item in registry.all_jobs()] == [
        (JobCollection.PENDING, "b"),
        (JobCollection.FAILED, "a"),
    ]
    with pytest.raises(UploadJobConflictError):
        registry.add_pending(_job("a"))


def test_remove_pending_and_unknown_ids() -> None:
    registry = JobRegistry()
    registry.add_pending(_job("a"))
    registry.add_pending(_job("b", priority=3))

    removed = registry.remove("a")

    assert removed.job_id == "a"
    assert registry.get("b").job_id == "b"
    assert registry.jobs(JobCollection.PENDING) == [registry.get("b")]
    with pytest.raises(UploadJobNotFoundError):
        registry.get("a")
    with pytest.raises(UploadJobNotFoundError):
        registry.remove("missing")
