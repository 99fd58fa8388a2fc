"""Blob storage for generated images."""
import asyncio
import mimetypes
from pathlib import Path
from typing import Protocol
from uuid import uuid4


class BlobStore(Protocol):
    """Where generated images are copied when results are persisted."""

    async def put(self, data: bytes, content_type: str) -> str:
        """Store data and return a reference to it."""
        ...


class LocalBlobStore:
    """Stores blobs as files in a directory; references are file URIs."""

    def __init__(self, root: str):
        """Initialize with the target directory (created on first write)."""
        self.root = Path(root)

    async def put(self, data: bytes, content_type: str) -> str:
        extension = mimetypes.guess_extension(content_type.split(";")[0].strip()) or ".bin"
        path = self.root / f"{uuid4().hex}{extension}"
        await asyncio.to_thread(self._write, path, data)
        return path.resolve().as_uri()

    def _write(self, path: Path, data: bytes) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
