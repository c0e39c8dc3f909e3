"""Route modules public API."""

from media_upload_engine.api.routes.control import router as control_router
from media_upload_engine.api.routes.health import router as health_router
from media_upload_engine.api.routes.history import router as history_router
from media_upload_engine.api.routes.uploads import router as uploads_router

__all__ = ["control_router", "health_router", "history_router", "uploads_router"]
