"""Upload event publisher implementations."""

from media_upload_engine.infrastructure.events.mqtt_upload_event_publisher import (
    MqttUploadEventPublisher,
)

__all__ = ["MqttUploadEventPublisher"]
