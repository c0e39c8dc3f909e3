"""Top-level API router composition."""

from fastapi import APIRouter

from media_upload_engine.api.routes import (
    control_router,
    health_router,
    history_router,
    uploads_router,
)

api_router = APIRouter()
api_router.include_router(health_router)
api_router.include_router(uploads_router)
api_router.include_router(control_router)
api_router.include_router(history_router)

__all__ = ["api_router"]
