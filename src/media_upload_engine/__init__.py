"""Queue-driven, resumable multipart uploader for large media files."""

__version__ = "0.1.0"

__all__ = ["__version__"]
