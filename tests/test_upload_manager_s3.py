from __future__ import annotations

import asyncio
import random
import threading
from collections import Counter
from pathlib import Path
from typing import Any

from media_upload_engine.application.services import UploadManager
from media_upload_engine.domain.entities import (
    Credentials,
    ObjectDestination,
    SequenceJob,
    TransferJob,
)
from media_upload_engine.domain.transfer_types import JobCollection, JobStatus
from media_upload_engine.infrastructure.credentials import StaticCredentialProvider
from media_upload_engine.infrastructure.repositories import InMemoryUploadRepository
from media_upload_engine.infrastructure.transfers import S3UploadTransfer


class GatedS3Client:
    """Fake S3 client that parks one chosen call until ``release`` is set."""

    def __init__(self, blocked_operation: str | None = None, blocked_call: int = 1) -> None:
        self._lock = threading.Lock()
        self._blocked_operation = blocked_operation
        self._blocked_call = blocked_call
        self._calls: Counter[str] = Counter()
        self.entered = threading.Event()
        self.release = threading.Event()
        self.put_keys: list[str] = []
        self.create_calls = 0
        self.uploaded_part_numbers: list[int] = []
        self.completed_upload_ids: list[str] = []
        self.aborted_upload_ids: list[str] = []

    def _pass_gate(self, operation: str) -> None:
        with self._lock:
            self._calls[operation] += 1
            blocked = (
                operation == self._blocked_operation
                and self._calls[operation] == self._blocked_call
            )
        if blocked:
            self.entered.set()
            if not self.release.wait(10):
                raise TimeoutError(f"{operation} was never released")

    def put_object(self, *, Bucket: str, Key: str, Body: bytes, **kwargs: Any) -> dict[str, Any]:
        self._pass_gate("put_object")
        with self._lock:
            self.put_keys.append(Key)
        return {"ETag": '"etag-single"'}

    def create_multipart_upload(self, *, Bucket: str, Key: str) -> dict[str, Any]:
        self._pass_gate("create_multipart_upload")
        with self._lock:
            self.create_calls += 1
            upload_id = f"upload-{self.create_calls}"
        return {"UploadId": upload_id}

    def upload_part(
        self,
        *,
        Bucket: str,
        Key: str,
        UploadId: str,
        PartNumber: int,
        Body: bytes,
        **kwargs: Any,
    ) -> dict[str, Any]:
        self._pass_gate("upload_part")
        with self._lock:
            self.uploaded_part_numbers.append(PartNumber)
        return {"ETag": f'"etag-{UploadId}-{PartNumber}"'}

    def list_parts(self, *, Bucket: str, Key: str, UploadId: str, **kwargs: Any) -> dict[str, Any]:
        return {"Parts": [], "IsTruncated": False}

    def complete_multipart_upload(
        self,
        *,
        Bucket: str,
        Key: str,
        UploadId: str,
        MultipartUpload: dict[str, Any],
    ) -> dict[str, Any]:
        with self._lock:
            self.completed_upload_ids.append(UploadId)
        return {"ETag": '"etag-complete"'}

    def abort_multipart_upload(self, *, Bucket: str, Key: str, UploadId: str) -> dict[str, Any]:
        with self._lock:
            self.aborted_upload_ids.append(UploadId)
        return {}

    def generate_presigned_url(
        self,
        ClientMethod: str,
        Params: dict[str, Any],
        ExpiresIn: int,
    ) -> str:
        return f"https://signed.example/{Params['Bucket']}/{Params['Key']}"


class CountingRepository(InMemoryUploadRepository):
    def __init__(self) -> None:
        super().__init__()
        self.saves = 0

    async def save_job(self, job: TransferJob) -> None:
        self.saves += 1
        await super().save_job(job)


def _manager(client: GatedS3Client, **kwargs: Any) -> UploadManager:
    transfer = S3UploadTransfer(
        StaticCredentialProvider(
            Credentials(access_key_id="AKIA-TEST", secret_access_key="s3cr3t")
        ),
        s3_client_factory=lambda region, credentials: client,
        multipart_threshold_bytes=16,
        multipart_part_size_bytes=8,
    )
    kwargs.setdefault("rng", random.Random(7))
    return UploadManager(transfer, **kwargs)


def _plate(tmp_path: Path, size: int = 40) -> TransferJob:
    path = tmp_path / "plate.mov"
    path.write_bytes(bytes(index % 251 for index in range(size)))
    return TransferJob(
        source_path=path,
        destination=ObjectDestination(bucket="bucket-a", key="renders/plate.mov"),
        total_bytes=size,
        job_id="job-plate",
    )


def _frames(tmp_path: Path, count: int) -> TransferJob:
    members = []
    for frame in range(1, count + 1):
        path = tmp_path / f"shot.{frame:04d}.exr"
        path.write_bytes(b"x")
        members.append(
            TransferJob(
                source_path=path,
                destination=ObjectDestination(bucket="bucket-a", key=f"seq/{path.name}"),
                total_bytes=1,
            )
        )
    return TransferJob.from_sequence(
        SequenceJob(base_name="shot", first_frame=1, last_frame=count, padding=4, members=members)
    )


async def _let_cancel_request_land() -> None:
    for _ in range(3):
        await asyncio.sleep(0)


def test_cancel_while_session_opens_aborts_the_new_session(tmp_path: Path) -> None:
    async def scenario() -> None:
        client = GatedS3Client("create_multipart_upload")
        manager = _manager(client)
        await manager.start()
        await manager.enqueue(_plate(tmp_path))
        assert await asyncio.to_thread(client.entered.wait, 5)

        cancelling = asyncio.create_task(manager.cancel_job("job-plate"))
        await _let_cancel_request_land()
        client.release.set()
        response = await asyncio.wait_for(cancelling, timeout=5)

        assert response.status is JobStatus.CANCELLED
        assert response.collection is JobCollection.FAILED
        assert response.upload_id is None
        assert client.create_calls == 1
        assert client.aborted_upload_ids == ["upload-1"]
        assert client.uploaded_part_numbers == []
        assert client.completed_upload_ids == []
        await manager.shutdown()

    asyncio.run(scenario())


def test_cancel_while_part_is_in_flight_aborts_after_the_part_lands(tmp_path: Path) -> None:
    async def scenario() -> None:
        client = GatedS3Client("upload_part", blocked_call=2)
        manager = _manager(client)
        await manager.start()
        await manager.enqueue(_plate(tmp_path))
        assert await asyncio.to_thread(client.entered.wait, 5)

        cancelling = asyncio.create_task(manager.cancel_job("job-plate"))
        await _let_cancel_request_land()
        client.release.set()
        response = await asyncio.wait_for(cancelling, timeout=5)

        assert response.status is JobStatus.CANCELLED
        assert client.uploaded_part_numbers == [1, 2]
        assert client.aborted_upload_ids == ["upload-1"]
        assert client.completed_upload_ids == []
        status = await manager.get_status()
        assert status.active_count == 0
        assert status.failed_count == 1
        await manager.shutdown()

    asyncio.run(scenario())


def test_shutdown_while_session_opens_checkpoints_the_session(tmp_path: Path) -> None:
    async def scenario() -> None:
        client = GatedS3Client("create_multipart_upload")
        repository = InMemoryUploadRepository()
        manager = _manager(client, job_repository=repository)
        await manager.start()
        await manager.enqueue(_plate(tmp_path))
        assert await asyncio.to_thread(client.entered.wait, 5)

        stopping = asyncio.create_task(manager.shutdown())
        while manager.running:
            await asyncio.sleep(0)
        await _let_cancel_request_land()
        client.release.set()
        await asyncio.wait_for(stopping, timeout=5)

        stored = await repository.list_jobs()
        assert [job.job_id for job in stored] == ["job-plate"]
        assert stored[0].upload_id == "upload-1"
        assert stored[0].part_size == 8
        assert client.aborted_upload_ids == []

    asyncio.run(scenario())


def test_long_sequence_progress_is_checkpointed_at_the_configured_interval(
    tmp_path: Path,
) -> None:
    async def run(interval: float, folder: Path) -> tuple[int, GatedS3Client]:
        folder.mkdir()
        client = GatedS3Client()
        repository = CountingRepository()
        manager = _manager(
            client,
            job_repository=repository,
            checkpoint_interval_seconds=interval,
        )
        await manager.start()
        job = _frames(folder, 120)
        await manager.enqueue(job)
        await manager.wait_until_idle()
        await manager.drain()

        assert job.status is JobStatus.COMPLETED
        assert await repository.list_jobs() == []
        await manager.shutdown()
        return repository.saves, client

    async def scenario() -> None:
        coalesced, client = await run(60.0, tmp_path / "coalesced")
        assert len(client.put_keys) == 120
        assert client.put_keys[0] == "seq/shot.0001.exr"
        assert coalesced <= 3

        every_event, _ = await run(0.0, tmp_path / "every-event")
        assert every_event >= 120

    asyncio.run(scenario())
