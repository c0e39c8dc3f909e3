"""Async S3 upload transfer with resumable multipart sessions."""

from __future__ import annotations

import asyncio
import base64
import hashlib
import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Any, Protocol, cast

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

from media_upload_engine.domain.entities import (
    CompletedPart,
    Credentials,
    TransferControl,
    TransferJob,
    utc_now,
)
from media_upload_engine.domain.errors import (
    AuthenticationTransferError,
    ProtocolTransferError,
    ValidationTransferError,
)
from media_upload_engine.domain.ports import CredentialProvider, ProgressCallback, UploadTransfer
from media_upload_engine.domain.transfer_types import JobStatus
from media_upload_engine.infrastructure.transfers.runtime import (
    BYTES_PER_MB,
    BandwidthThrottle,
    ThroughputMeter,
)

logger = logging.getLogger(__name__)

MAX_PARTS = 10_000
MAX_KEY_BYTES = 1024
_DEFAULT_MULTIPART_THRESHOLD_BYTES = 16 * BYTES_PER_MB
_DEFAULT_MULTIPART_PART_SIZE_BYTES = 8 * BYTES_PER_MB
_DEFAULT_PRESIGN_EXPIRY_SECONDS = 3600


class S3Client(Protocol):
    """Subset of S3 client operations used by the upload transfer."""

    def put_object(self, *, Bucket: str, Key: str, Body: bytes, **kwargs: Any) -> dict[str, Any]:
        """Upload a whole object in one request."""

    def create_multipart_upload(self, *, Bucket: str, Key: str) -> dict[str, Any]:
        """Start multipart upload."""

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
        """Upload one multipart segment."""

    def list_parts(self, *, Bucket: str, Key: str, UploadId: str, **kwargs: Any) -> dict[str, Any]:
        """List parts the backend holds for a session."""

    def complete_multipart_upload(
        self,
        *,
        Bucket: str,
        Key: str,
        UploadId: str,
        MultipartUpload: dict[str, list[dict[str, str | int]]],
    ) -> dict[str, Any]:
        """Finalize multipart upload."""

    def abort_multipart_upload(self, *, Bucket: str, Key: str, UploadId: str) -> dict[str, Any]:
        """Abort multipart upload."""

    def generate_presigned_url(
        self,
        ClientMethod: str,
        Params: dict[str, Any],
        ExpiresIn: int,
    ) -> str:
        """Sign a time-limited request URL."""


S3ClientFactory = Callable[[str, Credentials], S3Client]


@dataclass(slots=True)
class _ProgressReporter:
    """Folds per-object progress into the top-level job and notifies the observer."""

    job: TransferJob
    meter: ThroughputMeter
    on_progress: ProgressCallback | None

    async def report(self, target: TransferJob, bytes_done: int, part_number: int) -> None:
        target.progress.bytes_transferred = bytes_done
        target.progress.current_part = part_number

        progress = self.job.progress
        sequence = self.job.sequence
        if sequence is not None and target is not self.job:
            progress.bytes_transferred = sequence.transferred_bytes

        progress.throughput_bps = self.meter.record(progress.bytes_transferred)
        progress.eta_seconds = self.meter.eta_seconds(
            progress.total_bytes - progress.bytes_transferred
        )
        if self.on_progress is not None:
            await self.on_progress(self.job)


def _source_size(path: Path) -> int:
    if not path.is_file():
        raise ValidationTransferError(f"Source file not found: {path}")
    return path.stat().st_size


def _read_range(path: Path, offset: int, length: int) -> bytes:
    with path.open("rb") as handle:
        handle.seek(offset)
        data = handle.read(length)
    if len(data) != length:
        raise ValidationTransferError(
            f"Source file {path} shrank while uploading: wanted {length} bytes at {offset}, "
            f"read {len(data)}."
        )
    return data


def _client_error_code(exc: ClientError) -> str:
    error = exc.response.get("Error", {})
    return str(error.get("Code", ""))


class S3UploadTransfer(UploadTransfer):
    """Upload adapter for local files to S3.

    - Files up to the multipart threshold go up in one ``put_object``.
    - Larger files use a multipart session recorded on the job, so a later
      attempt resumes it and sends only the parts the backend does not hold.
    - Every request body passes through the shared bandwidth throttle first.
    - Sequence jobs upload their member files one after another.
    """

    def __init__(
        self,
        credential_provider: CredentialProvider,
        *,
        bandwidth_throttle: BandwidthThrottle | None = None,
        multipart_threshold_bytes: int = _DEFAULT_MULTIPART_THRESHOLD_BYTES,
        multipart_part_size_bytes: int = _DEFAULT_MULTIPART_PART_SIZE_BYTES,
        presign_expiry_seconds: int = _DEFAULT_PRESIGN_EXPIRY_SECONDS,
        verify_checksums: bool = True,
        endpoint_url: str | None = None,
        s3_client_factory: S3ClientFactory | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if multipart_threshold_bytes <= 0:
            raise ValueError("multipart_threshold_bytes must be > 0.")
        if multipart_part_size_bytes <= 0:
            raise ValueError("multipart_part_size_bytes must be > 0.")
        self._credential_provider = credential_provider
        self._bandwidth_throttle = bandwidth_throttle
        self._multipart_threshold_bytes = multipart_threshold_bytes
        self._multipart_part_size_bytes = multipart_part_size_bytes
        self._presign_expiry_seconds = presign_expiry_seconds
        self._verify_checksums = verify_checksums
        self._endpoint_url = endpoint_url
        self._s3_client_factory = s3_client_factory or self._build_default_s3_client
        self._clock = clock

    async def upload(
        self,
        job: TransferJob,
        control: TransferControl,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        client = self._client_for(job)
        meter = ThroughputMeter(clock=self._clock)
        meter.reset(job.completed_bytes)
        reporter = _ProgressReporter(job=job, meter=meter, on_progress=on_progress)

        if job.sequence is not None:
            await self._upload_sequence(client, job, control, reporter)
            return

        await self._upload_object(client, job, control, reporter)
        control.raise_if_cancelled()
        job.presigned_url = self._presign(client, job)

    async def abort(self, job: TransferJob) -> None:
        targets = job.sequence.members if job.sequence is not None else [job]
        open_sessions = [target for target in targets if target.upload_id is not None]
        if not open_sessions:
            return

        credentials = self._credential_provider.current_credentials()
        if credentials is None:
            logger.warning(
                "Cannot abort multipart upload(s) for job %s: no credentials available.",
                job.job_id,
            )
            return

        client = self._s3_client_factory(job.destination.region, credentials)
        for target in open_sessions:
            upload_id = cast(str, target.upload_id)
            try:
                await asyncio.to_thread(
                    client.abort_multipart_upload,
                    Bucket=target.destination.bucket,
                    Key=target.destination.key,
                    UploadId=upload_id,
                )
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "Failed to abort multipart upload %s for %s: %s",
                    upload_id,
                    target.s3_uri,
                    exc,
                )
            else:
                logger.info("Aborted multipart upload %s for %s.", upload_id, target.s3_uri)
            target.upload_id = None
            target.part_size = None
            target.completed_parts.clear()

    async def presigned_url(self, job: TransferJob) -> str | None:
        if job.sequence is not None:
            return None
        credentials = self._credential_provider.current_credentials()
        if credentials is None:
            return None
        client = self._s3_client_factory(job.destination.region, credentials)
        return self._presign(client, job)

    def _client_for(self, job: TransferJob) -> S3Client:
        credentials = self._credential_provider.current_credentials()
        if credentials is None:
            raise AuthenticationTransferError("No valid credentials available. Please sign in.")
        return self._s3_client_factory(job.destination.region, credentials)

    async def _upload_sequence(
        self,
        client: S3Client,
        job: TransferJob,
        control: TransferControl,
        reporter: _ProgressReporter,
    ) -> None:
        """Upload member files in frame order, skipping members already done."""

        sequence = job.sequence
        assert sequence is not None
        job.progress.total_parts = len(sequence.members)
        for index, member in enumerate(sequence.members, start=1):
            if member.status is JobStatus.COMPLETED:
                continue
            control.raise_if_cancelled()
            job.progress.current_part = index
            member.status = JobStatus.UPLOADING
            await self._upload_object(client, member, control, reporter)
            member.mark_completed(utc_now())
            await reporter.report(member, member.total_bytes, member.progress.total_parts)

    async def _upload_object(
        self,
        client: S3Client,
        target: TransferJob,
        control: TransferControl,
        reporter: _ProgressReporter,
    ) -> None:
        self._validate_key(target.destination.key)
        size = await asyncio.to_thread(_source_size, target.source_path)
        if size != target.total_bytes:
            raise ValidationTransferError(
                f"Source file {target.source_path} changed size: expected "
                f"{target.total_bytes} bytes, found {size}."
            )

        if target.upload_id is None and size <= self._multipart_threshold_bytes:
            await self._upload_single(client, target, control, reporter)
        else:
            await self._upload_multipart(client, target, control, reporter)

    async def _upload_single(
        self,
        client: S3Client,
        target: TransferJob,
        control: TransferControl,
        reporter: _ProgressReporter,
    ) -> None:
        control.raise_if_cancelled()
        payload = await asyncio.to_thread(_read_range, target.source_path, 0, target.total_bytes)
        await self._throttle(len(payload), control)
        await self._request(
            client.put_object,
            Bucket=target.destination.bucket,
            Key=target.destination.key,
            Body=payload,
            **self._checksum_kwargs(payload),
        )
        target.progress.total_parts = 1
        await reporter.report(target, target.total_bytes, 1)

    async def _upload_multipart(
        self,
        client: S3Client,
        target: TransferJob,
        control: TransferControl,
        reporter: _ProgressReporter,
    ) -> None:
        """Open or resume a session, send missing parts, then complete it."""

        if target.upload_id is not None:
            await self._reconcile_session(client, target)

        if target.upload_id is None:
            part_size = self._multipart_part_size_bytes
            total_parts = self._count_parts(target.total_bytes, part_size)
            control.raise_if_cancelled()
            await self._request(
                client.create_multipart_upload,
                record=partial(self._record_session, target, part_size),
                Bucket=target.destination.bucket,
                Key=target.destination.key,
            )
            logger.info(
                "Opened multipart upload %s for %s (%s parts).",
                target.upload_id,
                target.s3_uri,
                total_parts,
            )
        else:
            part_size = target.part_size or self._multipart_part_size_bytes
            total_parts = self._count_parts(target.total_bytes, part_size)
            logger.info(
                "Resuming multipart upload %s for %s at %s/%s parts.",
                target.upload_id,
                target.s3_uri,
                len(target.completed_parts),
                total_parts,
            )

        upload_id = target.upload_id
        target.progress.total_parts = total_parts
        done = {part.part_number for part in target.completed_parts}
        for part_number in range(1, total_parts + 1):
            if part_number in done:
                continue
            control.raise_if_cancelled()
            offset = (part_number - 1) * part_size
            length = min(part_size, target.total_bytes - offset)
            data = await asyncio.to_thread(_read_range, target.source_path, offset, length)
            await self._throttle(length, control)
            await self._request(
                client.upload_part,
                record=partial(self._record_part, target, part_number, length),
                Bucket=target.destination.bucket,
                Key=target.destination.key,
                UploadId=upload_id,
                PartNumber=part_number,
                Body=data,
                **self._checksum_kwargs(data),
            )
            await reporter.report(target, target.completed_bytes, part_number)

        control.raise_if_cancelled()
        parts = sorted(target.completed_parts)
        if [part.part_number for part in parts] != list(range(1, total_parts + 1)):
            raise ProtocolTransferError(
                f"Multipart upload {upload_id} is missing parts before completion."
            )
        await self._request(
            client.complete_multipart_upload,
            Bucket=target.destination.bucket,
            Key=target.destination.key,
            UploadId=upload_id,
            MultipartUpload={
                "Parts": [{"PartNumber": part.part_number, "ETag": part.etag} for part in parts]
            },
        )
        logger.info("Completed multipart upload %s for %s.", upload_id, target.s3_uri)

    async def _request(
        self,
        operation: Callable[..., dict[str, Any]],
        *,
        record: Callable[[dict[str, Any]], None] | None = None,
        **kwargs: Any,
    ) -> dict[str, Any]:
        """Run one S3 call in a worker thread and apply ``record`` to its response.

        The call is shielded: if the attempt task is cancelled meanwhile, the
        request still runs to the end and its response is recorded on the job
        before the cancellation propagates, so an opened session or a stored
        part is never lost.
        """

        call = asyncio.ensure_future(asyncio.to_thread(operation, **kwargs))
        try:
            response = await asyncio.shield(call)
        except asyncio.CancelledError:
            try:
                response = await call
                if record is not None:
                    record(response)
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "S3 %s interrupted by cancellation failed: %s",
                    getattr(operation, "__name__", "request"),
                    exc,
                )
            raise
        if record is not None:
            record(response)
        return response

    def _record_session(
        self,
        target: TransferJob,
        part_size: int,
        response: dict[str, Any],
    ) -> None:
        upload_id = response.get("UploadId")
        if not isinstance(upload_id, str) or not upload_id:
            raise ProtocolTransferError("create_multipart_upload did not return UploadId")
        target.upload_id = upload_id
        target.part_size = part_size
        target.completed_parts.clear()

    def _record_part(
        self,
        target: TransferJob,
        part_number: int,
        length: int,
        response: dict[str, Any],
    ) -> None:
        etag = self._extract_etag(response, "upload_part")
        target.completed_parts.append(
            CompletedPart(part_number=part_number, etag=etag, size=length)
        )

    async def _reconcile_session(self, client: S3Client, target: TransferJob) -> None:
        """Keep only the recorded parts the backend confirms with the same ETag."""

        try:
            remote_parts = await self._list_remote_parts(client, target)
        except ClientError as exc:
            if _client_error_code(exc) != "NoSuchUpload":
                raise
            logger.warning(
                "Multipart upload %s for %s no longer exists; starting a new session.",
                target.upload_id,
                target.s3_uri,
            )
            target.upload_id = None
            target.part_size = None
            target.completed_parts.clear()
            return

        confirmed = [
            part
            for part in target.completed_parts
            if remote_parts.get(part.part_number) == part.etag
        ]
        if len(confirmed) != len(target.completed_parts):
            logger.warning(
                "Backend is missing %s recorded part(s) of upload %s; they will be re-sent.",
                len(target.completed_parts) - len(confirmed),
                target.upload_id,
            )
            target.completed_parts[:] = confirmed

    async def _list_remote_parts(self, client: S3Client, target: TransferJob) -> dict[int, str]:
        parts: dict[int, str] = {}
        marker = 0
        while True:
            kwargs: dict[str, Any] = {
                "Bucket": target.destination.bucket,
                "Key": target.destination.key,
                "UploadId": target.upload_id,
            }
            if marker:
                kwargs["PartNumberMarker"] = marker
            response = await self._request(client.list_parts, **kwargs)
            for item in response.get("Parts", []):
                parts[int(item["PartNumber"])] = str(item.get("ETag", ""))
            marker = int(response.get("NextPartNumberMarker") or 0)
            if not response.get("IsTruncated") or not marker:
                return parts

    async def _throttle(self, byte_count: int, control: TransferControl) -> None:
        control.raise_if_cancelled()
        if self._bandwidth_throttle is not None:
            await self._bandwidth_throttle.wait_for_bytes(byte_count, control.cancel_event)
        control.raise_if_cancelled()

    def _presign(self, client: S3Client, job: TransferJob) -> str | None:
        """Best-effort retrieval URL; failure never fails the upload."""

        try:
            return client.generate_presigned_url(
                "get_object",
                Params={"Bucket": job.destination.bucket, "Key": job.destination.key},
                ExpiresIn=self._presign_expiry_seconds,
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("Could not generate presigned URL for %s: %s", job.s3_uri, exc)
            return None

    def _checksum_kwargs(self, payload: bytes) -> dict[str, str]:
        if not self._verify_checksums:
            return {}
        digest = hashlib.md5(payload, usedforsecurity=False).digest()
        return {"ContentMD5": base64.b64encode(digest).decode("ascii")}

    def _count_parts(self, total_bytes: int, part_size: int) -> int:
        total_parts = max(1, math.ceil(total_bytes / part_size))
        if total_parts > MAX_PARTS:
            raise ValidationTransferError(
                f"File is too large for {part_size}-byte parts: {total_parts} parts exceeds "
                f"the {MAX_PARTS} part limit."
            )
        return total_parts

    def _validate_key(self, key: str) -> None:
        if not key:
            raise ValidationTransferError("Destination key cannot be empty.")
        if len(key.encode("utf-8")) > MAX_KEY_BYTES:
            raise ValidationTransferError(
                f"Destination key exceeds {MAX_KEY_BYTES} bytes: '{key[:64]}...'"
            )

    def _extract_etag(self, response: dict[str, Any], operation: str) -> str:
        etag = response.get("ETag")
        if not isinstance(etag, str) or not etag:
            raise ProtocolTransferError(f"{operation} did not return ETag")
        return etag

    def _build_default_s3_client(self, region: str, credentials: Credentials) -> S3Client:
        client = boto3.client(
            "s3",
            region_name=region,
            aws_access_key_id=credentials.access_key_id,
            aws_secret_access_key=credentials.secret_access_key,
            aws_session_token=credentials.session_token,
            endpoint_url=self._endpoint_url,
            config=Config(signature_version="s3v4"),
        )
        return cast(S3Client, client)


__all__ = ["MAX_KEY_BYTES", "MAX_PARTS", "S3Client", "S3ClientFactory", "S3UploadTransfer"]
