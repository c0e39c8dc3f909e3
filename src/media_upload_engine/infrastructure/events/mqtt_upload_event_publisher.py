"""MQTT publisher for engine status snapshots and job outcomes."""

from __future__ import annotations

import asyncio
import json
import time
from datetime import UTC, datetime
from typing import Any

import paho.mqtt.client as mqtt  # type: ignore[import-untyped]

from media_upload_engine.domain.monitoring_models import UploadManagerStatus, UploadOutcome
from media_upload_engine.domain.ports import UploadHistorySink, UploadStatusPublisher


class MqttUploadEventPublisher(UploadStatusPublisher, UploadHistorySink):
    """Publish status to ``<prefix>/<engine>/status`` and outcomes per job."""

    def __init__(
        self,
        engine_id: str,
        broker_host: str,
        broker_port: int = 1883,
        topic_prefix: str = "media-upload-engine",
        qos: int = 1,
        username: str | None = None,
        password: str | None = None,
        client: Any | None = None,
    ) -> None:
        if not broker_host.strip():
            raise ValueError("broker_host cannot be empty.")
        if qos not in {0, 1, 2}:
            raise ValueError("qos must be one of 0, 1, 2.")

        self._engine_id = engine_id
        self._topic_prefix = topic_prefix.strip().strip("/")
        self._qos = qos

        if client is None:
            client = mqtt.Client(
                callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
                client_id=f"media-upload-engine-{engine_id}",
            )
            if username is not None:
                client.username_pw_set(username=username, password=password)
            self._connect_with_retry(
                client=client,
                broker_host=broker_host,
                broker_port=broker_port,
            )
            client.loop_start()
        self._client = client

    @property
    def status_topic(self) -> str:
        return f"{self._topic_prefix}/{self._engine_id}/status"

    def outcome_topic(self, job_id: str) -> str:
        return f"{self._topic_prefix}/{self._engine_id}/jobs/{job_id}/outcome"

    async def publish_status(self, status: UploadManagerStatus) -> None:
        payload: dict[str, object] = {
            "eventType": "status",
            "timestamp": self._timestamp(),
            "engineId": self._engine_id,
            **status.model_dump(mode="json", by_alias=True, exclude={"active_jobs"}),
            "activeJobs": [
                {
                    "jobId": job.job_id,
                    "displayName": job.display_name,
                    "percentComplete": job.progress.percent_complete,
                    "throughputBps": job.progress.throughput_bps,
                    "etaSeconds": job.progress.eta_seconds,
                }
                for job in status.active_jobs
            ],
        }
        await self._publish(self.status_topic, payload)

    async def record(self, outcome: UploadOutcome) -> None:
        payload: dict[str, object] = {
            "eventType": "outcome",
            "timestamp": self._timestamp(),
            "engineId": self._engine_id,
            **outcome.model_dump(mode="json", by_alias=True),
        }
        await self._publish(self.outcome_topic(outcome.job_id), payload)

    async def close(self) -> None:
        await asyncio.to_thread(self._client.loop_stop)
        await asyncio.to_thread(self._client.disconnect)

    async def _publish(self, topic: str, payload: dict[str, object]) -> None:
        message = json.dumps(payload, separators=(",", ":"))
        await asyncio.to_thread(self._client.publish, topic, message, self._qos)

    def _timestamp(self) -> str:
        return datetime.now(tz=UTC).isoformat()

    def _connect_with_retry(
        self,
        client: Any,
        broker_host: str,
        broker_port: int,
        max_attempts: int = 20,
    ) -> None:
        """Connect to MQTT broker with bounded retry/backoff."""

        delay_seconds = 0.5
        last_error: Exception | None = None
        for attempt in range(1, max_attempts + 1):
            try:
                client.connect(host=broker_host, port=broker_port, keepalive=60)
                return
            except Exception as exc:  # noqa: BLE001
                last_error = exc
                if attempt == max_attempts:
                    break
                time.sleep(delay_seconds)
                delay_seconds = min(3.0, delay_seconds * 1.5)

        raise RuntimeError(
            f"Failed to connect to MQTT broker {broker_host}:{broker_port} "
            f"after {max_attempts} attempts."
        ) from last_error


__all__ = ["MqttUploadEventPublisher"]
