"""Core utilities for the Huddle backend."""

from .storage import build_download_url, resolve_path, store_upload

__all__ = ["store_upload", "resolve_path", "build_download_url"]
