"""Outbound callbacks for terminal upload outcomes."""

from media_upload_engine.infrastructure.callbacks.webhook_history_notifier import (
    HistoryWebhookError,
    WebhookHistoryNotifier,
)

__all__ = ["HistoryWebhookError", "WebhookHistoryNotifier"]
