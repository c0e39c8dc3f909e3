"""Dependency providers for FastAPI routes."""

from functools import lru_cache

from media_upload_engine.application.services import UploadManager
from media_upload_engine.bootstrap import UploadEngine, build_upload_engine
from media_upload_engine.config import Settings
from media_upload_engine.domain.ports import UploadHistoryStore


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return singleton settings."""

    return Settings()


@lru_cache(maxsize=1)
def get_upload_engine() -> UploadEngine:
    """Return singleton service graph."""

    return build_upload_engine(get_settings())


def get_upload_manager() -> UploadManager:
    return get_upload_engine().manager


def get_history_store() -> UploadHistoryStore:
    return get_upload_engine().history_store


__all__ = [
    "get_history_store",
    "get_settings",
    "get_upload_engine",
    "get_upload_manager",
]
