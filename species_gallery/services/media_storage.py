from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import quote

import httpx
from azure.core.exceptions import ResourceExistsError, ResourceNotFoundError
from azure.storage.blob import BlobServiceClient, ContentSettings
from tenacity import AsyncRetrying, RetryError, retry_if_exception_type, stop_after_attempt, wait_exponential

from species_gallery.config import settings
from species_gallery.domain.enums import MediaType
from species_gallery.domain.errors import MediaStorageError
from species_gallery.domain.models import StoredMedia

logger = logging.getLogger(__name__)

IMAGE_FOLDER = "images"
VIDEO_FOLDER = "videos"

ALLOWED_MIME_TYPES = ("image/jpeg", "image/png", "image/webp", "video/mp4", "video/webm")

DEFAULT_CONTENT_TYPE = {
    MediaType.image: "image/jpeg",
    MediaType.video: "video/mp4",
}

EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "video/mp4": ".mp4",
    "video/webm": ".webm",
}


def folder_for(media_type: MediaType) -> str:
    return IMAGE_FOLDER if MediaType(media_type) == MediaType.image else VIDEO_FOLDER


def sanitize_name(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9]", "_", name or "").lower()


def resolve_content_type(raw: Optional[str], media_type: MediaType) -> str:
    """Strip parameters; anything outside the allow-list falls back to the media default."""
    ct = (raw or "").split(";", 1)[0].strip().lower()
    if ct == "image/jpg":
        ct = "image/jpeg"
    if ct in ALLOWED_MIME_TYPES and ct.startswith(f"{MediaType(media_type).value}/"):
        return ct
    return DEFAULT_CONTENT_TYPE[MediaType(media_type)]


def extension_for(content_type: str, media_type: MediaType) -> str:
    default = ".jpg" if MediaType(media_type) == MediaType.image else ".mp4"
    return EXTENSIONS.get(content_type, default)


def build_media_path(
    *,
    media_type: MediaType,
    display_name: str,
    species_id: str,
    version: int,
    timestamp_ms: int,
    extension: str,
) -> str:
    """
    Canonical media path:
      {images|videos}/{sanitized_name}_{species_id[:8]}_v{version}_{timestamp_ms}{.ext}
    """
    return (
        f"{folder_for(media_type)}/"
        f"{sanitize_name(display_name)}_{str(species_id)[:8]}_v{int(version)}_{int(timestamp_ms)}{extension}"
    )


class MediaStorageService:
    """
    Copies provider output into the media container so URLs outlive the provider's.

    Blob layout:
      images/{name}_{id8}_v{N}_{ms}.jpg|png|webp
      videos/{name}_{id8}_v{N}_{ms}.mp4|webm

    The container is created lazily with public blob read access. Azure SDK calls
    are sync and run in a worker thread.
    """

    def __init__(
        self,
        *,
        container_client: Any = None,
        container: Optional[str] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
        attempts: Optional[int] = None,
        retry_base_seconds: Optional[float] = None,
        retry_max_seconds: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock_ms: Callable[[], int] = lambda: int(time.time() * 1000),
    ) -> None:
        self.container = (container or settings.MEDIA_CONTAINER).strip()
        self._container_client = container_client
        self._container_ready = False
        self._http_transport = http_transport
        self.attempts = int(settings.MEDIA_UPLOAD_ATTEMPTS if attempts is None else attempts)
        self.retry_base_seconds = float(
            settings.MEDIA_RETRY_BASE_SECONDS if retry_base_seconds is None else retry_base_seconds
        )
        self.retry_max_seconds = float(
            settings.MEDIA_RETRY_MAX_SECONDS if retry_max_seconds is None else retry_max_seconds
        )
        self._sleep = sleep
        self._clock_ms = clock_ms

    # ------------------------------------------------------------------
    # container
    # ------------------------------------------------------------------
    def _container(self) -> Any:
        if self._container_client is None:
            cs = (settings.AZURE_STORAGE_CONNECTION_STRING or "").strip()
            if not cs:
                raise RuntimeError("missing_azure_storage_connection_string")
            blob_service = BlobServiceClient.from_connection_string(cs)
            self._container_client = blob_service.get_container_client(self.container)
        return self._container_client

    def _sync_ensure_container(self) -> bool:
        cc = self._container()
        try:
            cc.get_container_properties()
            return False
        except ResourceNotFoundError:
            pass
        try:
            cc.create_container(public_access="blob")
            logger.info("Created media container", extra={"container": self.container})
            return True
        except ResourceExistsError:
            return False

    async def ensure_container(self) -> bool:
        """Idempotent. Returns True when the container was created by this call."""
        if self._container_ready:
            return False
        created = await asyncio.to_thread(self._sync_ensure_container)
        self._container_ready = True
        return created

    def public_url(self, path: str) -> str:
        return f"{self._container().url.rstrip('/')}/{quote(path)}"

    # ------------------------------------------------------------------
    # store
    # ------------------------------------------------------------------
    async def store(
        self,
        remote_url: str,
        species_id: str,
        media_type: MediaType,
        display_name: str,
        version: int,
    ) -> StoredMedia:
        """
        Download remote_url and upload it under a fresh path. The whole attempt
        (download + upload + verify) is retried with exponential backoff.
        """
        if not remote_url:
            raise ValueError("remote_url is required")
        media_type = MediaType(media_type)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_exponential(
                multiplier=self.retry_base_seconds,
                min=self.retry_base_seconds,
                max=self.retry_max_seconds,
            ),
            retry=retry_if_exception_type(Exception),
            sleep=self._sleep,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    n = attempt.retry_state.attempt_number
                    if n > 1:
                        logger.warning(
                            "Retrying media store",
                            extra={"species_id": species_id, "media_type": media_type.value, "attempt": n},
                        )
                    stored = await self._store_once(remote_url, species_id, media_type, display_name, version)
        except RetryError as e:
            last = e.last_attempt.exception()
            logger.error(
                "Media store failed",
                extra={
                    "species_id": species_id,
                    "media_type": media_type.value,
                    "attempts": e.last_attempt.attempt_number,
                    "error": str(last),
                },
            )
            raise MediaStorageError(
                f"Failed to store {media_type.value}",
                attempts=e.last_attempt.attempt_number,
                last_error=str(last) if last else None,
            ) from last

        logger.info(
            "Media stored",
            extra={
                "species_id": species_id,
                "media_type": media_type.value,
                "path": stored.path,
                "bytes": stored.size_bytes,
            },
        )
        return stored

    async def _store_once(
        self,
        remote_url: str,
        species_id: str,
        media_type: MediaType,
        display_name: str,
        version: int,
    ) -> StoredMedia:
        await self.ensure_container()

        data, raw_ct = await self._download(remote_url)
        content_type = resolve_content_type(raw_ct, media_type)

        path = build_media_path(
            media_type=media_type,
            display_name=display_name,
            species_id=species_id,
            version=version,
            timestamp_ms=self._clock_ms(),
            extension=extension_for(content_type, media_type),
        )

        await asyncio.to_thread(self._sync_upload, path, data, content_type)
        url = self.public_url(path)
        await self._verify_or_warn(path, url)

        return StoredMedia(path=path, public_url=url, content_type=content_type, size_bytes=len(data))

    async def _download(self, url: str) -> tuple[bytes, Optional[str]]:
        max_bytes = int(settings.MEDIA_MAX_BYTES)
        async with httpx.AsyncClient(
            timeout=settings.MEDIA_DOWNLOAD_TIMEOUT_SECONDS,
            follow_redirects=True,
            transport=self._http_transport,
        ) as client:
            async with client.stream("GET", url) as r:
                r.raise_for_status()
                content_type = r.headers.get("content-type")

                declared = r.headers.get("content-length")
                if declared and declared.isdigit() and int(declared) > max_bytes:
                    raise ValueError(f"media_too_large:{declared}")

                buf = bytearray()
                async for chunk in r.aiter_bytes():
                    buf.extend(chunk)
                    # stop reading as soon as the cap is crossed
                    if len(buf) > max_bytes:
                        raise ValueError(f"media_too_large:>{max_bytes}")

        if not buf:
            raise ValueError("media_empty")
        return bytes(buf), content_type

    def _sync_upload(self, path: str, data: bytes, content_type: str) -> None:
        self._container().upload_blob(
            path,
            data,
            overwrite=False,
            content_settings=ContentSettings(content_type=content_type),
        )

    async def _verify_or_warn(self, path: str, url: str) -> bool:
        try:
            async with httpx.AsyncClient(timeout=10.0, transport=self._http_transport) as client:
                r = await client.head(url)
            if r.status_code == 200:
                return True
        except httpx.HTTPError as e:
            logger.debug("HEAD verification errored", extra={"path": path, "error": str(e)})

        try:
            if await self.file_exists(path):
                return True
        except Exception as e:
            logger.debug("List verification errored", extra={"path": path, "error": str(e)})

        logger.warning("Uploaded media not yet visible", extra={"path": path, "url": url})
        return False

    # ------------------------------------------------------------------
    # admin helpers
    # ------------------------------------------------------------------
    def _sync_list(self, prefix: Optional[str]) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        for b in self._container().list_blobs(name_starts_with=prefix):
            cs = getattr(b, "content_settings", None)
            last_modified = getattr(b, "last_modified", None)
            out.append(
                {
                    "name": b.name,
                    "size": int(getattr(b, "size", 0) or 0),
                    "content_type": getattr(cs, "content_type", None),
                    "last_modified": last_modified.isoformat() if last_modified else None,
                }
            )
        return out

    async def list_files(self, prefix: Optional[str] = None) -> List[Dict[str, Any]]:
        files = await asyncio.to_thread(self._sync_list, prefix)
        for f in files:
            f["url"] = self.public_url(f["name"])
        return files

    async def file_exists(self, path: str) -> bool:
        files = await asyncio.to_thread(self._sync_list, path)
        return any(f["name"] == path for f in files)

    def _sync_delete(self, path: str) -> bool:
        try:
            self._container().delete_blob(path)
            return True
        except ResourceNotFoundError:
            return False

    async def delete_file(self, path: str) -> bool:
        deleted = await asyncio.to_thread(self._sync_delete, path)
        logger.info("Media file delete", extra={"path": path, "deleted": deleted})
        return deleted

    async def get_storage_stats(self) -> Dict[str, Any]:
        images = await asyncio.to_thread(self._sync_list, f"{IMAGE_FOLDER}/")
        videos = await asyncio.to_thread(self._sync_list, f"{VIDEO_FOLDER}/")
        image_bytes = sum(f["size"] for f in images)
        video_bytes = sum(f["size"] for f in videos)
        return {
            "total_files": len(images) + len(videos),
            "total_bytes": image_bytes + video_bytes,
            "image_count": len(images),
            "image_bytes": image_bytes,
            "video_count": len(videos),
            "video_bytes": video_bytes,
        }

    async def reset_container(self) -> Dict[str, Any]:
        """Delete every blob under images/ and videos/. Other prefixes are left alone."""
        await self.ensure_container()
        deleted = 0
        errors: List[str] = []
        for folder in (IMAGE_FOLDER, VIDEO_FOLDER):
            for f in await asyncio.to_thread(self._sync_list, f"{folder}/"):
                try:
                    if await asyncio.to_thread(self._sync_delete, f["name"]):
                        deleted += 1
                except Exception as e:
                    errors.append(f"{f['name']}: {e}")
        logger.warning("Media container reset", extra={"deleted": deleted, "errors": len(errors)})
        return {"deleted": deleted, "errors": errors}
