"""Upload history routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from media_upload_engine.api.dependencies import get_history_store
from media_upload_engine.api.routes.errors import raise_http_exception
from media_upload_engine.domain.monitoring_models import UploadHistoryResponse
from media_upload_engine.domain.ports import UploadHistoryStore

router = APIRouter(prefix="/history", tags=["history"])


@router.get("", response_model=UploadHistoryResponse, status_code=200)
async def list_history(
    limit: int = Query(default=100, ge=1, le=1000),
    store: UploadHistoryStore = Depends(get_history_store),
) -> UploadHistoryResponse:
    """Most recent terminal outcomes, newest first."""

    try:
        return UploadHistoryResponse(items=await store.list_recent(limit))
    except Exception as exc:  # noqa: BLE001
        raise_http_exception(exc)


__all__ = ["router"]
