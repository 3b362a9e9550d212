"""Asset Store - content-addressed storage for generated files."""

import asyncio
import hashlib
import logging
import mimetypes
from pathlib import Path

from pydantic import BaseModel, Field

from nodestudio.storage.project_store import sidecar_path
from nodestudio.utils.io import atomic_write

logger = logging.getLogger(__name__)

_EXTENSIONS = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/webp": ".webp",
    "image/gif": ".gif",
    "audio/mpeg": ".mp3",
    "audio/wav": ".wav",
    "video/mp4": ".mp4",
    "text/plain": ".txt",
    "application/json": ".json",
}


class AssetRef(BaseModel):
    """Reference to a stored blob, as carried on ports."""

    hash: str
    mime_type: str = Field(alias="mimeType")
    size_bytes: int = Field(alias="sizeBytes")
    path: str

    model_config = {"populate_by_name": True}


class AssetStore:
    """Writes blobs to ``<root>/blobs/<sha256><ext>``; identical content is stored once."""

    def __init__(self, root: Path):
        self.root = Path(root)

    @classmethod
    def for_project(cls, project_path: Path) -> "AssetStore":
        return cls(sidecar_path(project_path, ".assets"))

    @staticmethod
    def extension_for(mime_type: str) -> str:
        mime_type = (mime_type or "").split(";")[0].strip().lower()
        return _EXTENSIONS.get(mime_type) or mimetypes.guess_extension(mime_type) or ".bin"

    async def store_bytes(self, data: bytes, mime_type: str) -> AssetRef:
        digest = hashlib.sha256(data).hexdigest()
        target = self.root / "blobs" / f"{digest}{self.extension_for(mime_type)}"

        def _write() -> None:
            if target.exists():
                return
            with atomic_write(target, mode="wb") as f:
                f.write(data)

        await asyncio.to_thread(_write)
        logger.debug(f"Stored asset {digest[:12]} ({len(data)} bytes, {mime_type})")
        return AssetRef(hash=digest, mime_type=mime_type, size_bytes=len(data), path=str(target))

    async def read_bytes(self, ref: AssetRef) -> bytes:
        return await asyncio.to_thread(Path(ref.path).read_bytes)
