"""Application settings."""

import json
from enum import StrEnum
from typing import Any

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from media_upload_engine.domain.retry_policy import RetryPolicy
from media_upload_engine.domain.schedule import (
    SCHEDULE_PRESETS,
    ThrottleSchedule,
    UploadSchedule,
    parse_rules,
)
from media_upload_engine.domain.transfer_types import ScheduleMode

BYTES_PER_MB = 1024 * 1024
MIN_PART_SIZE_MB = 5


class RepositoryBackend(StrEnum):
    """Available persistence adapters for job checkpoints and history."""

    IN_MEMORY = "in_memory"
    POSTGRES = "postgres"


def _load_rule_list(raw: str, env_name: str) -> list[dict[str, Any]]:
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"{env_name} is not valid JSON: {exc.msg}.") from exc
    if not isinstance(payload, list) or not all(isinstance(item, dict) for item in payload):
        raise ValueError(f"{env_name} must be a JSON list of rule objects.")
    return payload


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "Media Upload Engine"
    api_prefix: str = ""
    engine_id: str = "engine-local"
    host: str = "0.0.0.0"
    port: int = 8080
    max_concurrent_uploads: int = 4
    multipart_threshold_mb: int = 16
    multipart_part_size_mb: int = 8
    retry_max_attempts: int = 3
    retry_base_delay_seconds: float = 5.0
    retry_max_delay_seconds: float = 300.0
    retry_jitter_fraction: float = 0.1
    bandwidth_throttle_enabled: bool = False
    max_upload_speed_mbps: float = 0.0
    throttle_schedule_json: str | None = None
    upload_schedule_enabled: bool = False
    upload_schedule_mode: ScheduleMode = ScheduleMode.ALLOW_DURING
    upload_schedule_json: str | None = None
    upload_schedule_preset: str | None = None
    schedule_poll_seconds: float = 60.0
    checkpoint_interval_seconds: float = 1.0
    aws_region: str = "us-east-1"
    aws_access_key_id: str | None = None
    aws_secret_access_key: str | None = None
    aws_session_token: str | None = None
    aws_profile: str | None = None
    s3_endpoint_url: str | None = None
    presign_expiry_seconds: int = 3600
    verify_part_checksums: bool = True
    repository_backend: RepositoryBackend = RepositoryBackend.IN_MEMORY
    postgres_dsn: str | None = None
    postgres_pool_min_size: int = 1
    postgres_pool_max_size: int = 10
    history_max_items: int = 1000
    history_webhook_url: str | None = None
    history_webhook_timeout_seconds: float = 10.0
    status_events_enabled: bool = False
    mqtt_host: str | None = None
    mqtt_port: int = 1883
    mqtt_username: str | None = None
    mqtt_password: str | None = None
    mqtt_topic_prefix: str = "media-upload-engine"
    mqtt_qos: int = 1

    @model_validator(mode="after")
    def validate_settings(self) -> "Settings":
        """Reject inconsistent combinations, naming the offending env var."""

        if self.max_concurrent_uploads < 1:
            raise ValueError("MUE_MAX_CONCURRENT_UPLOADS must be >= 1.")
        if self.multipart_threshold_mb <= 0:
            raise ValueError("MUE_MULTIPART_THRESHOLD_MB must be > 0.")
        if self.multipart_part_size_mb < MIN_PART_SIZE_MB:
            raise ValueError(f"MUE_MULTIPART_PART_SIZE_MB must be >= {MIN_PART_SIZE_MB}.")
        if self.retry_max_attempts < 1:
            raise ValueError("MUE_RETRY_MAX_ATTEMPTS must be >= 1.")
        if self.retry_base_delay_seconds <= 0:
            raise ValueError("MUE_RETRY_BASE_DELAY_SECONDS must be > 0.")
        if self.retry_max_delay_seconds < self.retry_base_delay_seconds:
            raise ValueError(
                "MUE_RETRY_MAX_DELAY_SECONDS must be >= MUE_RETRY_BASE_DELAY_SECONDS."
            )
        if not 0 <= self.retry_jitter_fraction < 1:
            raise ValueError("MUE_RETRY_JITTER_FRACTION must be in [0, 1).")
        if self.max_upload_speed_mbps < 0:
            raise ValueError("MUE_MAX_UPLOAD_SPEED_MBPS must be >= 0.")
        if self.schedule_poll_seconds <= 0:
            raise ValueError("MUE_SCHEDULE_POLL_SECONDS must be > 0.")
        if self.checkpoint_interval_seconds < 0:
            raise ValueError("MUE_CHECKPOINT_INTERVAL_SECONDS must be >= 0.")
        if (
            self.upload_schedule_preset is not None
            and self.upload_schedule_preset not in SCHEDULE_PRESETS
        ):
            raise ValueError(
                "MUE_UPLOAD_SCHEDULE_PRESET must be one of "
                f"{', '.join(sorted(SCHEDULE_PRESETS))}."
            )
        if self.aws_access_key_id and not self.aws_secret_access_key:
            raise ValueError(
                "MUE_AWS_SECRET_ACCESS_KEY is required when MUE_AWS_ACCESS_KEY_ID is set."
            )
        if self.presign_expiry_seconds < 1:
            raise ValueError("MUE_PRESIGN_EXPIRY_SECONDS must be >= 1.")
        if self.repository_backend == RepositoryBackend.POSTGRES and not self.postgres_dsn:
            raise ValueError(
                "MUE_POSTGRES_DSN is required when MUE_REPOSITORY_BACKEND=postgres."
            )
        if self.postgres_pool_min_size < 1:
            raise ValueError("MUE_POSTGRES_POOL_MIN_SIZE must be >= 1.")
        if self.postgres_pool_max_size < self.postgres_pool_min_size:
            raise ValueError(
                "MUE_POSTGRES_POOL_MAX_SIZE must be >= MUE_POSTGRES_POOL_MIN_SIZE."
            )
        if self.history_max_items < 1:
            raise ValueError("MUE_HISTORY_MAX_ITEMS must be >= 1.")
        if self.history_webhook_timeout_seconds <= 0:
            raise ValueError("MUE_HISTORY_WEBHOOK_TIMEOUT_SECONDS must be > 0.")
        if self.status_events_enabled and not self.mqtt_host:
            raise ValueError(
                "MUE_MQTT_HOST is required when MUE_STATUS_EVENTS_ENABLED=true."
            )
        if self.mqtt_port < 1:
            raise ValueError("MUE_MQTT_PORT must be >= 1.")
        if self.mqtt_qos not in {0, 1, 2}:
            raise ValueError("MUE_MQTT_QOS must be one of 0, 1, 2.")

        # Parse once so malformed rules fail at startup rather than on first use.
        self.upload_schedule()
        self.throttle_schedule()
        return self

    def upload_schedule(self) -> UploadSchedule:
        """Schedule gate from the preset or the JSON rule list (the preset wins)."""

        if self.upload_schedule_preset is not None:
            preset = SCHEDULE_PRESETS[self.upload_schedule_preset]
            return UploadSchedule(
                enabled=self.upload_schedule_enabled,
                mode=preset.mode,
                rules=preset.rules,
            )
        rules = ()
        if self.upload_schedule_json:
            rules = parse_rules(
                _load_rule_list(self.upload_schedule_json, "MUE_UPLOAD_SCHEDULE_JSON")
            )
        return UploadSchedule(
            enabled=self.upload_schedule_enabled,
            mode=self.upload_schedule_mode,
            rules=rules,
        )

    def throttle_schedule(self) -> ThrottleSchedule | None:
        if not self.throttle_schedule_json:
            return None
        return ThrottleSchedule(
            rules=parse_rules(
                _load_rule_list(self.throttle_schedule_json, "MUE_THROTTLE_SCHEDULE_JSON")
            )
        )

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.retry_max_attempts,
            base_delay_seconds=self.retry_base_delay_seconds,
            max_delay_seconds=self.retry_max_delay_seconds,
            jitter_fraction=self.retry_jitter_fraction,
        )

    @property
    def multipart_threshold_bytes(self) -> int:
        return self.multipart_threshold_mb * BYTES_PER_MB

    @property
    def multipart_part_size_bytes(self) -> int:
        return self.multipart_part_size_mb * BYTES_PER_MB

    model_config = SettingsConfigDict(env_prefix="MUE_", extra="ignore")


__all__ = ["RepositoryBackend", "Settings"]
