"""HTTP API package."""

from media_upload_engine.api.router import api_router

__all__ = ["api_router"]
