"""
Local filesystem blob store.

Blobs are written below a root directory. Each blob gets a `.meta.json`
sidecar holding its content type, so a wrong type reported at upload time
can be fixed later without rewriting the bytes.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

META_SUFFIX = ".meta.json"


class BlobStoreError(Exception):
    """Raised for invalid blob paths or missing blobs."""

    pass


@dataclass
class StoredBlob:
    """Result of a successful upload."""

    path: str
    download_url: str
    content_type: str
    size: int


class LocalBlobStore:
    """Blob storage on the local disk (bucket stand-in)."""

    def __init__(self, root: Path | str):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if self.root.resolve() not in target.parents:
            raise BlobStoreError(f"Blob path escapes the store root: {path}")
        return target

    def put(self, path: str, data: bytes, content_type: str) -> StoredBlob:
        """
        Write a blob and its metadata.

        Args:
            path: Relative path, e.g. "files/<user>/<ts>_<name>"
            data: Raw bytes
            content_type: MIME type to record

        Returns:
            StoredBlob with a file:// download URL
        """
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        self._write_meta(target, content_type)

        logger.debug(f"Stored blob {path} ({len(data)} bytes, {content_type})")
        return StoredBlob(
            path=path,
            download_url=target.as_uri(),
            content_type=content_type,
            size=len(data),
        )

    def get(self, path: str) -> bytes:
        target = self._resolve(path)
        if not target.exists():
            raise BlobStoreError(f"Blob not found: {path}")
        return target.read_bytes()

    def exists(self, path: str) -> bool:
        return self._resolve(path).exists()

    def get_content_type(self, path: str) -> str | None:
        meta = self._resolve(path).with_name(self._resolve(path).name + META_SUFFIX)
        if not meta.exists():
            return None
        return json.loads(meta.read_text()).get("content_type")

    def set_content_type(self, path: str, content_type: str) -> None:
        """Correct the recorded content type of an existing blob."""
        target = self._resolve(path)
        if not target.exists():
            raise BlobStoreError(f"Blob not found: {path}")
        self._write_meta(target, content_type)

    def _write_meta(self, target: Path, content_type: str) -> None:
        meta = target.with_name(target.name + META_SUFFIX)
        meta.write_text(json.dumps({"content_type": content_type}))
