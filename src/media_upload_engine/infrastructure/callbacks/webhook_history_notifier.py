"""HTTP webhook receiving one POST per terminal upload outcome."""

from __future__ import annotations

from typing import cast

import httpx

from media_upload_engine.domain.monitoring_models import UploadOutcome
from media_upload_engine.domain.ports import UploadHistorySink


class HistoryWebhookError(RuntimeError):
    """Raised when the outcome webhook call fails."""


class WebhookHistoryNotifier(UploadHistorySink):
    """POST each ``UploadOutcome`` as camelCase JSON to a fixed URL."""

    def __init__(
        self,
        url: str,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        normalized = url.strip()
        if not normalized:
            raise HistoryWebhookError("History webhook URL cannot be empty.")
        self._url = normalized
        self._timeout_seconds = timeout_seconds
        self._transport = transport

    async def record(self, outcome: UploadOutcome) -> None:
        async_transport = cast(httpx.AsyncBaseTransport | None, self._transport)
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout_seconds,
                transport=async_transport,
            ) as http_client:
                response = await http_client.post(
                    self._url,
                    json=outcome.model_dump(mode="json", by_alias=True, exclude_none=True),
                )
        except httpx.HTTPError as exc:
            raise HistoryWebhookError(f"POST {self._url} failed: {exc}") from exc
        self._ensure_success(response)

    def _ensure_success(self, response: httpx.Response) -> None:
        if response.is_success:
            return
        raise HistoryWebhookError(
            f"{response.request.method} {response.request.url} failed: "
            f"{response.status_code} {self._detail_from_response(response)}"
        )

    def _detail_from_response(self, response: httpx.Response) -> str:
        try:
            payload = response.json()
        except ValueError:
            text = response.text.strip()
            return text or "<no response body>"

        if isinstance(payload, dict):
            detail = payload.get("detail")
            if isinstance(detail, str):
                return detail
        return str(payload)


__all__ = ["HistoryWebhookError", "WebhookHistoryNotifier"]
