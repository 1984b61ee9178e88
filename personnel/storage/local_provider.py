"""
Local filesystem storage provider.
Decision documents are written under ``<storage_dir>/uploads/<key>``.
"""
from typing import Optional
from pathlib import Path

import structlog

from ..config import settings
from .provider import StorageProvider


log = structlog.get_logger(__name__)


class LocalStorageProvider(StorageProvider):
    """Local filesystem storage provider."""

    def __init__(self, base_dir: Optional[str] = None):
        self.base_dir = Path(base_dir or settings.storage_dir)
        (self.base_dir / "uploads").mkdir(parents=True, exist_ok=True)

    def _get_path(self, key: str) -> Path:
        """Get the local filesystem path for a given key."""
        # Remove leading slash and sanitize
        clean_key = key.lstrip("/").replace("..", "").replace("\\", "/")
        return self.base_dir / "uploads" / clean_key

    def save_bytes(self, key: str, data: bytes) -> str:
        path = self._get_path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return key

    def exists(self, key: str) -> bool:
        """Check if a file exists locally."""
        if not key:
            return False
        return self._get_path(key).exists()

    def path_for(self, key: str) -> Optional[Path]:
        path = self._get_path(key)
        return path if path.exists() else None

    def delete(self, key: str) -> None:
        """Delete a file from local storage."""
        path = self._get_path(key)
        try:
            if path.exists():
                path.unlink()
        except OSError as e:
            log.warning("storage_delete_failed", key=key, error=str(e))
