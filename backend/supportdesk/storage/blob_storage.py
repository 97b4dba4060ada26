"""
Filesystem-backed blob storage.

Objects live under ``<root>/<bucket>/<path>``. Public URLs are built from
``storage_public_base_url`` so a reverse proxy or static mount can serve them.
"""
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiofiles

from ..config import settings
from ..exceptions import StorageError

logger = logging.getLogger(__name__)


class LocalBlobStorage:
    """Bucket-style object storage on the local filesystem."""

    def __init__(
        self,
        root: Optional[str] = None,
        bucket: Optional[str] = None,
        public_base_url: Optional[str] = None,
        default_cache_control: Optional[str] = None
    ):
        self.root = Path(root or settings.storage_root)
        self.bucket = bucket or settings.storage_bucket
        self.public_base_url = (public_base_url or settings.storage_public_base_url).rstrip("/")
        self.bucket_dir = self.root / self.bucket
        self.default_cache_control = default_cache_control or settings.storage_cache_control
        # cache-control recorded per object at upload
        self._metadata: Dict[str, Dict[str, str]] = {}

    def _resolve(self, path: str) -> Path:
        target = (self.bucket_dir / path).resolve()
        if self.bucket_dir.resolve() not in target.parents:
            raise StorageError(f"Invalid storage path: {path}")
        return target

    async def upload(
        self,
        path: str,
        data: bytes,
        cache_control: str = "3600",
        upsert: bool = False
    ) -> str:
        """
        Store an object.

        Args:
            path: Object path inside the bucket
            data: Object content
            cache_control: Cache-Control max-age recorded with the object
            upsert: Overwrite an existing object instead of failing

        Returns:
            The stored path
        """
        target = self._resolve(path)
        if target.exists() and not upsert:
            raise StorageError(f"Object already exists: {path}")

        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(target, 'wb') as f:
                await f.write(data)
        except OSError as e:
            raise StorageError(f"Upload failed for {path}: {e}") from e

        self._metadata[path] = {"cache_control": cache_control}
        logger.info(f"Stored object {self.bucket}/{path} ({len(data)} bytes)")
        return path

    async def download(self, path: str) -> bytes:
        target = self._resolve(path)
        if not target.exists():
            raise StorageError(f"Object not found: {path}")
        async with aiofiles.open(target, 'rb') as f:
            return await f.read()

    def remove(self, paths: List[str]) -> int:
        """Delete objects. Missing objects are ignored. Returns the number removed."""
        removed = 0
        for path in paths:
            target = self._resolve(path)
            try:
                os.remove(target)
                removed += 1
            except FileNotFoundError:
                logger.debug(f"Object already gone: {path}")
            except OSError as e:
                raise StorageError(f"Failed to remove {path}: {e}") from e
            self._metadata.pop(path, None)
        return removed

    def get_metadata(self, path: str) -> Dict[str, Any]:
        """
        Size and cache-control of a stored object.

        Objects stored by an earlier process report the default cache-control.
        """
        target = self._resolve(path)
        if not target.exists():
            raise StorageError(f"Object not found: {path}")
        recorded = self._metadata.get(path, {})
        return {
            "size": target.stat().st_size,
            "cache_control": recorded.get("cache_control", self.default_cache_control)
        }

    def exists(self, path: str) -> bool:
        return self._resolve(path).exists()

    def get_public_url(self, path: str) -> str:
        return f"{self.public_base_url}/{self.bucket}/{path}"
