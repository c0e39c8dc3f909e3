"""Repository implementations."""

from media_upload_engine.infrastructure.repositories.in_memory_upload_repository import (
    InMemoryUploadRepository,
)
from media_upload_engine.infrastructure.repositories.postgres_upload_repository import (
    PostgresUploadRepository,
)

__all__ = ["InMemoryUploadRepository", "PostgresUploadRepository"]
