"""Application bootstrap/wiring."""

import logging
from dataclasses import dataclass

from media_upload_engine.application.services import StatusBroadcaster, UploadManager
from media_upload_engine.config import RepositoryBackend, Settings
from media_upload_engine.domain.entities import Credentials
from media_upload_engine.domain.ports import (
    CredentialProvider,
    UploadHistorySink,
    UploadHistoryStore,
    UploadJobRepository,
)
from media_upload_engine.infrastructure.callbacks import WebhookHistoryNotifier
from media_upload_engine.infrastructure.credentials import (
    Boto3SessionCredentialProvider,
    StaticCredentialProvider,
)
from media_upload_engine.infrastructure.events import MqttUploadEventPublisher
from media_upload_engine.infrastructure.repositories import (
    InMemoryUploadRepository,
    PostgresUploadRepository,
)
from media_upload_engine.infrastructure.transfers import S3UploadTransfer
from media_upload_engine.infrastructure.transfers.runtime import (
    BandwidthThrottle,
    mbps_to_bytes_per_second,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class UploadEngine:
    """Wired object graph handed to the HTTP layer."""

    manager: UploadManager
    history_store: UploadHistoryStore
    repository: InMemoryUploadRepository | PostgresUploadRepository
    event_publisher: MqttUploadEventPublisher | None = None

    async def close(self) -> None:
        """Stop the manager, then release broker and database connections."""

        await self.manager.shutdown()
        if self.event_publisher is not None:
            await self.event_publisher.close()
        if isinstance(self.repository, PostgresUploadRepository):
            await self.repository.close()


def _build_credential_provider(settings: Settings) -> CredentialProvider:
    if settings.aws_access_key_id:
        if settings.aws_secret_access_key is None:
            raise ValueError(
                "MUE_AWS_SECRET_ACCESS_KEY is required when MUE_AWS_ACCESS_KEY_ID is set."
            )
        return StaticCredentialProvider(
            Credentials(
                access_key_id=settings.aws_access_key_id,
                secret_access_key=settings.aws_secret_access_key,
                session_token=settings.aws_session_token,
            )
        )
    return Boto3SessionCredentialProvider(profile_name=settings.aws_profile)


def _build_repository(settings: Settings) -> InMemoryUploadRepository | PostgresUploadRepository:
    if settings.repository_backend == RepositoryBackend.POSTGRES:
        if settings.postgres_dsn is None:
            raise ValueError(
                "MUE_POSTGRES_DSN is required when MUE_REPOSITORY_BACKEND=postgres."
            )
        return PostgresUploadRepository(
            dsn=settings.postgres_dsn,
            min_pool_size=settings.postgres_pool_min_size,
            max_pool_size=settings.postgres_pool_max_size,
            max_history_items=settings.history_max_items,
        )
    return InMemoryUploadRepository(max_history_items=settings.history_max_items)


def _build_bandwidth_throttle(settings: Settings) -> BandwidthThrottle:
    throttle = BandwidthThrottle()
    if settings.bandwidth_throttle_enabled:
        throttle.configure(
            mbps_to_bytes_per_second(settings.max_upload_speed_mbps),
            settings.throttle_schedule(),
        )
    return throttle


def _build_event_publisher(settings: Settings) -> MqttUploadEventPublisher | None:
    if not settings.status_events_enabled:
        return None
    if settings.mqtt_host is None:
        logger.warning(
            "Status events enabled but MUE_MQTT_HOST is missing. Status events are disabled."
        )
        return None
    return MqttUploadEventPublisher(
        engine_id=settings.engine_id,
        broker_host=settings.mqtt_host,
        broker_port=settings.mqtt_port,
        topic_prefix=settings.mqtt_topic_prefix,
        qos=settings.mqtt_qos,
        username=settings.mqtt_username,
        password=settings.mqtt_password,
    )


def _build_webhook_notifier(settings: Settings) -> WebhookHistoryNotifier | None:
    if settings.history_webhook_url is None or not settings.history_webhook_url.strip():
        return None
    return WebhookHistoryNotifier(
        url=settings.history_webhook_url,
        timeout_seconds=settings.history_webhook_timeout_seconds,
    )


def build_upload_engine(settings: Settings) -> UploadEngine:
    """Compose service graph."""

    repository = _build_repository(settings)
    throttle = _build_bandwidth_throttle(settings)
    event_publisher = _build_event_publisher(settings)
    webhook_notifier = _build_webhook_notifier(settings)

    history_sinks: list[UploadHistorySink] = [repository]
    if webhook_notifier is not None:
        history_sinks.append(webhook_notifier)
    if event_publisher is not None:
        history_sinks.append(event_publisher)

    broadcaster = StatusBroadcaster()
    if event_publisher is not None:
        broadcaster.subscribe(event_publisher.publish_status, name="mqtt-status")

    job_repository: UploadJobRepository = repository
    manager = UploadManager(
        S3UploadTransfer(
            _build_credential_provider(settings),
            bandwidth_throttle=throttle,
            multipart_threshold_bytes=settings.multipart_threshold_bytes,
            multipart_part_size_bytes=settings.multipart_part_size_bytes,
            presign_expiry_seconds=settings.presign_expiry_seconds,
            verify_checksums=settings.verify_part_checksums,
            endpoint_url=settings.s3_endpoint_url,
        ),
        max_concurrent=settings.max_concurrent_uploads,
        retry_policy=settings.retry_policy(),
        schedule=settings.upload_schedule(),
        bandwidth_throttle=throttle,
        job_repository=job_repository,
        history_sinks=history_sinks,
        status_broadcaster=broadcaster,
        schedule_poll_seconds=settings.schedule_poll_seconds,
        checkpoint_interval_seconds=settings.checkpoint_interval_seconds,
    )
    return UploadEngine(
        manager=manager,
        history_store=repository,
        repository=repository,
        event_publisher=event_publisher,
    )


__all__ = ["UploadEngine", "build_upload_engine"]
