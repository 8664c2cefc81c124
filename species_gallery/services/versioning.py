from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from species_gallery.domain.enums import MediaType
from species_gallery.domain.models import MediaContent
from species_gallery.repos.species_media_repo import SpeciesMediaRepo
from species_gallery.repos.species_repo import SpeciesRepo, media_columns

logger = logging.getLogger(__name__)

PERSISTED_VERSIONED = "versioned"
PERSISTED_LEGACY = "legacy"


class VersioningService:
    """
    Append-only media versions per (species, media_type).

    Version numbers are never reused; deleting ("hiding") a version leaves a gap.
    Flag changes are clear-then-set across two statements with no lock, so
    interleaved requests can leave zero or two primaries.
    """

    def __init__(self, species_repo: SpeciesRepo, media_repo: SpeciesMediaRepo):
        self.species_repo = species_repo
        self.media_repo = media_repo

    async def next_version(self, species_id: str, media_type: MediaType) -> int:
        return await self.media_repo.max_version(species_id, media_type) + 1

    async def append_version(
        self,
        species_id: str,
        media_type: MediaType,
        version: int,
        content: MediaContent,
    ) -> Dict[str, Any]:
        first = int(version) == 1
        record = await self.media_repo.insert_version(
            species_id,
            media_type,
            version,
            content,
            is_primary=first,
            is_selected_for_exhibit=first,
        )

        total = await self.media_repo.count_versions(species_id, media_type)
        await self.species_repo.update_version_summary(
            species_id,
            media_type,
            total_versions=total,
            current_version=version,
            current_url=content.storage_url or content.provider_url,
        )
        return record

    async def persist(
        self,
        species_id: str,
        media_type: MediaType,
        version: int,
        content: MediaContent,
    ) -> str:
        """
        Versioned ledger first; legacy flat columns only if that fails.
        Returns which path stored the media. Raises if both fail.
        """
        try:
            await self.append_version(species_id, media_type, version, content)
            logger.info(
                "Media persisted to version ledger",
                extra={"species_id": species_id, "media_type": MediaType(media_type).value, "version": version},
            )
            return PERSISTED_VERSIONED
        except Exception as e:
            logger.warning(
                "Version ledger write failed; falling back to legacy columns",
                extra={
                    "species_id": species_id,
                    "media_type": MediaType(media_type).value,
                    "version": version,
                    "error": str(e),
                },
            )

        await self.species_repo.update_legacy_media(
            species_id,
            media_type,
            provider_url=content.provider_url,
            storage_url=content.storage_url,
            storage_path=content.storage_path,
        )
        logger.info(
            "Media persisted to legacy columns",
            extra={"species_id": species_id, "media_type": MediaType(media_type).value},
        )
        return PERSISTED_LEGACY

    async def set_primary(self, species_id: str, media_type: MediaType, version: int) -> bool:
        target = await self.media_repo.get_version(species_id, media_type, version)
        if not target:
            return False

        await self.media_repo.clear_flag(species_id, media_type, "is_primary")
        await self.media_repo.set_flag(species_id, media_type, version, "is_primary", True)
        await self.species_repo.set_current_version(species_id, media_type, version)
        return True

    async def set_for_exhibit(self, species_id: str, media_type: MediaType, version: int, selected: bool) -> bool:
        target = await self.media_repo.get_version(species_id, media_type, version)
        if not target:
            return False

        if selected:
            await self.media_repo.clear_flag(species_id, media_type, "is_selected_for_exhibit")
        await self.media_repo.set_flag(species_id, media_type, version, "is_selected_for_exhibit", bool(selected))
        return True

    async def favorite(self, species_id: str, media_type: MediaType, version: int, value: bool) -> bool:
        # set_flag degrades to False on schemas without is_favorite
        return await self.media_repo.set_flag(species_id, media_type, version, "is_favorite", bool(value))

    async def hide_version(self, species_id: str, media_type: MediaType, version: int) -> Dict[str, int]:
        """
        Hard delete. The pointer moves to the highest remaining version, or back
        to 1 when none remain (1 with a zero total means "no media").
        """
        deleted = await self.media_repo.delete_version(species_id, media_type, version)

        remaining = await self.media_repo.list_versions(species_id, media_type)
        total = len(remaining)
        current = max(int(r["version_number"]) for r in remaining) if remaining else 1

        await self.species_repo.update_version_summary(
            species_id,
            media_type,
            total_versions=total,
            current_version=current,
        )
        logger.info(
            "Media version hidden",
            extra={
                "species_id": species_id,
                "media_type": MediaType(media_type).value,
                "version": version,
                "deleted": deleted,
                "remaining": total,
            },
        )
        return {"deleted": int(deleted), "total_versions": total, "current_version": current}

    async def media_listing(self, species: Dict[str, Any]) -> Dict[str, Any]:
        species_id = str(species["id"])
        try:
            rows = await self.media_repo.list_versions(species_id)
        except Exception as e:
            logger.warning("species_media unavailable; using legacy columns", extra={"species_id": species_id, "error": str(e)})
            rows = []

        if rows:
            images = [r for r in rows if r.get("media_type") == MediaType.image.value]
            videos = [r for r in rows if r.get("media_type") == MediaType.video.value]
        else:
            images = _legacy_entries(species, MediaType.image)
            videos = _legacy_entries(species, MediaType.video)

        current_image = _resolve_current(species, MediaType.image, images)
        current_video = _resolve_current(species, MediaType.video, videos)

        return {
            "images": [_entry(r, current_image) for r in images],
            "videos": [_entry(r, current_video, video=True) for r in videos],
            "current_image_version": current_image,
            "current_video_version": current_video,
            "total_images": len(images),
            "total_videos": len(videos),
        }


def _legacy_entries(species: Dict[str, Any], media_type: MediaType) -> List[Dict[str, Any]]:
    cols = media_columns(media_type)
    provider_url = species.get(cols["provider_url"])
    storage_url = species.get(cols["storage_url"])
    if not provider_url and not storage_url:
        return []

    entry: Dict[str, Any] = {
        "version_number": 1,
        "storage_url": storage_url,
        "provider_url": provider_url,
        "created_at": species.get(cols["generated_at"]) or species.get("created_at"),
        "is_primary": True,
        "is_selected_for_exhibit": True,
        "is_favorite": False,
    }
    if media_type == MediaType.video:
        entry["seed_image_version"] = 1
        entry["seed_image_url"] = species.get("storage_image_url") or species.get("image_url")
    return [entry]


def _resolve_current(species: Dict[str, Any], media_type: MediaType, rows: List[Dict[str, Any]]) -> int:
    """The displayed-version pointer when it names a listed version, else the highest version; 0 for none."""
    if not rows:
        return 0
    versions = {int(r["version_number"]) for r in rows}
    pointer: Optional[Any] = species.get(media_columns(media_type)["current_version"])
    if pointer is not None and int(pointer) in versions:
        return int(pointer)
    return max(versions)


def _entry(row: Dict[str, Any], current: int, *, video: bool = False) -> Dict[str, Any]:
    version = int(row["version_number"])
    out: Dict[str, Any] = {
        "version": version,
        "url": row.get("storage_url") or row.get("provider_url"),
        "supabase_url": row.get("storage_url"),
        "replicate_url": row.get("provider_url"),
        # same values under backend-neutral names
        "storage_url": row.get("storage_url"),
        "provider_url": row.get("provider_url"),
        "created_at": row.get("created_at"),
        "is_current": version == current,
        "is_favorite": bool(row.get("is_favorite") or False),
        "is_selected_for_exhibit": bool(row.get("is_selected_for_exhibit") or False),
    }
    if video:
        out["seed_image_version"] = row.get("seed_image_version")
        out["seed_image_url"] = row.get("seed_image_url")
    return out
