"""PostgreSQL checkpoint and history store."""

from __future__ import annotations

import asyncio
import json
from typing import Any

import asyncpg  # type: ignore[import-untyped]

from media_upload_engine.domain.entities import TransferJob
from media_upload_engine.domain.job_records import job_from_record, job_to_record
from media_upload_engine.domain.monitoring_models import UploadOutcome
from media_upload_engine.domain.ports import UploadHistoryStore, UploadJobRepository

_DEFAULT_MAX_HISTORY_ITEMS = 1000


class PostgresUploadRepository(UploadJobRepository, UploadHistoryStore):
    """Upload checkpoints and history backed by PostgreSQL."""

    def __init__(
        self,
        dsn: str,
        min_pool_size: int = 1,
        max_pool_size: int = 10,
        max_history_items: int = _DEFAULT_MAX_HISTORY_ITEMS,
    ) -> None:
        self._dsn = dsn
        self._min_pool_size = min_pool_size
        self._max_pool_size = max_pool_size
        self._max_history_items = max(max_history_items, 1)
        self._pool: asyncpg.Pool | None = None
        self._pool_lock = asyncio.Lock()

    async def save_job(self, job: TransferJob) -> None:
        """Upsert the job checkpoint."""

        record = json.dumps(job_to_record(job))
        pool = await self._get_pool()
        await pool.execute(
            """
            INSERT INTO upload_jobs (job_id, status, record, updated_at)
            VALUES ($1, $2, $3::jsonb, NOW())
            ON CONFLICT (job_id) DO UPDATE SET
                status = EXCLUDED.status,
                record = EXCLUDED.record,
                updated_at = NOW()
            """,
            job.job_id,
            job.status.value,
            record,
        )

    async def delete_job(self, job_id: str) -> None:
        pool = await self._get_pool()
        await pool.execute("DELETE FROM upload_jobs WHERE job_id = $1", job_id)

    async def list_jobs(self) -> list[TransferJob]:
        pool = await self._get_pool()
        rows = await pool.fetch("SELECT record FROM upload_jobs ORDER BY updated_at ASC")
        return [job_from_record(self._decode_dict(row["record"])) for row in rows]

    async def record(self, outcome: UploadOutcome) -> None:
        """Append one outcome and trim history to the retention limit."""

        payload = outcome.model_dump_json(by_alias=True)
        pool = await self._get_pool()
        async with pool.acquire() as connection:
            async with connection.transaction():
                await connection.execute(
                    """
                    INSERT INTO upload_history (job_id, status, outcome, recorded_at)
                    VALUES ($1, $2, $3::jsonb, NOW())
                    """,
                    outcome.job_id,
                    outcome.status.value,
                    payload,
                )
                await connection.execute(
                    """
                    DELETE FROM upload_history
                    WHERE id NOT IN (
                        SELECT id FROM upload_history ORDER BY id DESC LIMIT $1
                    )
                    """,
                    self._max_history_items,
                )

    async def list_recent(self, limit: int = 100) -> list[UploadOutcome]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            "SELECT outcome FROM upload_history ORDER BY id DESC LIMIT $1",
            max(limit, 0),
        )
        return [UploadOutcome.model_validate(self._decode_dict(row["outcome"])) for row in rows]

    async def close(self) -> None:
        """Close the pool if it was initialized."""

        pool = self._pool
        self._pool = None
        if pool is not None:
            await pool.close()

    async def _get_pool(self) -> asyncpg.Pool:
        if self._pool is not None:
            return self._pool

        async with self._pool_lock:
            if self._pool is None:
                pool = await asyncpg.create_pool(
                    dsn=self._dsn,
                    min_size=self._min_pool_size,
                    max_size=self._max_pool_size,
                )
                await self._ensure_schema(pool)
                self._pool = pool
        assert self._pool is not None
        return self._pool

    async def _ensure_schema(self, pool: asyncpg.Pool) -> None:
        await pool.execute(
            """
            CREATE TABLE IF NOT EXISTS upload_jobs (
                job_id TEXT PRIMARY KEY,
                status TEXT NOT NULL,
                record JSONB NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );

            CREATE TABLE IF NOT EXISTS upload_history (
                id BIGSERIAL PRIMARY KEY,
                job_id TEXT NOT NULL,
                status TEXT NOT NULL,
                outcome JSONB NOT NULL,
                recorded_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );

            CREATE INDEX IF NOT EXISTS upload_history_job_id_idx ON upload_history (job_id);
            """
        )

    def _decode_json_field(self, value: object) -> Any:
        if value is None:
            return None
        if isinstance(value, str):
            return json.loads(value)
        return value

    def _decode_dict(self, value: object) -> dict[str, Any]:
        decoded = self._decode_json_field(value)
        if not isinstance(decoded, dict):
            raise TypeError(f"Expected JSON object payload, got {type(decoded)!r}.")
        return decoded


__all__ = ["PostgresUploadRepository"]
