"""
File storage for generated media.

Files live under ``settings.storage_root``; each one gets a Media row whose
URL is built from ``settings.storage_base_url``. Media rows removed by the
enhancement cleanup trigger leave their files behind, so
``purge_orphaned_files`` sweeps files that no Media row references.
"""

import base64
import logging
import os
import time
from pathlib import Path
from typing import Optional, Tuple, List

import httpx
from sqlalchemy.orm import Session

from ..config import settings
from ..models import Media
from .exceptions import ImageGenerationError
from .image_generation.base import GenerationResult

logger = logging.getLogger(__name__)

MIME_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/webp": "webp",
    "image/gif": "gif",
}


class MediaStorage:
    """Write media files and their Media rows"""

    def __init__(
        self,
        root: Optional[str] = None,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        download_timeout: float = 60.0,
    ):
        self.root = Path(root or settings.storage_root).resolve()
        self.base_url = (base_url if base_url is not None else settings.storage_base_url).rstrip("/")
        self._transport = transport
        self.download_timeout = download_timeout

    @staticmethod
    def enhancement_path(chapter_id: int, anchor_id: int, mime_type: str = "image/png") -> str:
        ext = MIME_EXTENSIONS.get(mime_type, "png")
        return f"enhancements/{chapter_id}/{anchor_id}_{int(time.time() * 1000)}.{ext}"

    def url_for(self, relative_path: str) -> str:
        return f"{self.base_url}/{relative_path}"

    def _absolute(self, relative_path: str) -> Path:
        path = (self.root / relative_path).resolve()
        if self.root not in path.parents:
            raise ValueError(f"Storage path escapes storage root: {relative_path}")
        return path

    async def fetch_image(self, result: GenerationResult) -> Tuple[bytes, str]:
        """Image bytes and mime type of a completed generation result"""
        if result.image_data is not None:
            return result.image_data, result.mime_type or "image/png"

        url = result.image_url
        if not url:
            raise ImageGenerationError("Generation result has neither image data nor URL")

        if url.startswith("data:"):
            header, _, encoded = url.partition(",")
            mime_type = header[5:].split(";")[0] or "image/png"
            try:
                return base64.b64decode(encoded), mime_type
            except ValueError as e:
                raise ImageGenerationError(f"Invalid data URL: {e}") from e

        try:
            async with httpx.AsyncClient(timeout=self.download_timeout, transport=self._transport) as client:
                response = await client.get(url)
        except httpx.HTTPError as e:
            raise ImageGenerationError(f"Failed to download image: {e}") from e
        if response.status_code != 200:
            raise ImageGenerationError(f"Failed to download image: HTTP {response.status_code}")
        mime_type = response.headers.get("content-type", "image/png").split(";")[0].strip()
        return response.content, mime_type

    def save(
        self,
        db: Session,
        data: bytes,
        relative_path: str,
        mime_type: str = "image/png",
        uploader_id: Optional[str] = None,
        width: Optional[int] = None,
        height: Optional[int] = None,
        metadata: Optional[dict] = None,
    ) -> Media:
        """Write the file and insert an unowned Media row"""
        path = self._absolute(relative_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

        media = Media(
            uploader_id=uploader_id,
            url=self.url_for(relative_path),
            storage_path=relative_path,
            media_type="image",
            mime_type=mime_type,
            file_size=len(data),
            width=width,
            height=height,
            media_metadata=metadata or {},
        )
        db.add(media)
        try:
            db.commit()
        except Exception:
            db.rollback()
            path.unlink(missing_ok=True)
            raise
        db.refresh(media)
        logger.info(f"[STORAGE] Stored {len(data)} bytes as media {media.id} at {relative_path}")
        return media

    async def store_result(
        self,
        db: Session,
        result: GenerationResult,
        chapter_id: int,
        anchor_id: int,
        uploader_id: Optional[str] = None,
    ) -> Media:
        data, mime_type = await self.fetch_image(result)
        relative_path = self.enhancement_path(chapter_id, anchor_id, mime_type)
        metadata = {"job_id": result.job_id, "seed": result.seed}
        return self.save(
            db, data, relative_path,
            mime_type=mime_type,
            uploader_id=uploader_id,
            width=result.width,
            height=result.height,
            metadata=metadata,
        )

    def delete_media(self, db: Session, media_id: int) -> None:
        """Remove an unreferenced Media row and its file"""
        media = db.query(Media).filter(Media.id == media_id).first()
        if not media:
            return
        storage_path = media.storage_path
        db.delete(media)
        db.commit()
        if storage_path:
            self._absolute(storage_path).unlink(missing_ok=True)
        logger.info(f"[STORAGE] Deleted media {media_id}")

    def purge_orphaned_files(self, db: Session) -> List[str]:
        """Delete stored files that no Media row references. Returns their relative paths."""
        if not self.root.exists():
            return []
        referenced = {
            path for (path,) in db.query(Media.storage_path).filter(Media.storage_path.isnot(None)).all()
        }
        removed = []
        for dirpath, _dirnames, filenames in os.walk(self.root):
            for filename in filenames:
                absolute = Path(dirpath) / filename
                relative = absolute.relative_to(self.root).as_posix()
                if relative not in referenced:
                    absolute.unlink()
                    removed.append(relative)
        if removed:
            logger.info(f"[STORAGE] Purged {len(removed)} orphaned files")
        return sorted(removed)
