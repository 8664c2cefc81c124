from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Set

from species_gallery.config import settings
from species_gallery.domain.enums import EventType, GenerationStatus, MediaType, RejectReason
from species_gallery.domain.models import GenerationDecision, MediaContent
from species_gallery.repos.species_media_repo import SpeciesMediaRepo
from species_gallery.repos.species_repo import SpeciesRepo, media_columns
from species_gallery.services.event_hub import EventHub
from species_gallery.services.media_storage import MediaStorageService
from species_gallery.services.versioning import VersioningService

logger = logging.getLogger("generation")


class GenerationOrchestrator:
    """
    Accepts image/video generation requests and runs them as detached tasks.

    In-flight counters are per process. The ceiling is checked up front and again
    at the acceptance point, where the slot is taken with no await in between,
    so rejected requests never hold a slot. Every accepted task frees its slot
    in a finally block. Per-species exclusion is a plain status read
    followed by a status write; two requests racing between those two steps can
    both be accepted.
    """

    def __init__(
        self,
        *,
        species_repo: SpeciesRepo,
        media_repo: SpeciesMediaRepo,
        versioning: VersioningService,
        storage: MediaStorageService,
        image_generator: Any,
        video_generator: Any,
        events: EventHub,
        image_max_concurrent: Optional[int] = None,
        video_max_concurrent: Optional[int] = None,
        broadcast_failures: Optional[bool] = None,
    ) -> None:
        self.species_repo = species_repo
        self.media_repo = media_repo
        self.versioning = versioning
        self.storage = storage
        self.events = events
        self._generators = {MediaType.image: image_generator, MediaType.video: video_generator}
        self.limits: Dict[MediaType, int] = {
            MediaType.image: int(settings.IMAGE_MAX_CONCURRENT if image_max_concurrent is None else image_max_concurrent),
            MediaType.video: int(settings.VIDEO_MAX_CONCURRENT if video_max_concurrent is None else video_max_concurrent),
        }
        self.broadcast_failures = (
            settings.BROADCAST_GENERATION_FAILURES if broadcast_failures is None else bool(broadcast_failures)
        )
        self._in_flight: Dict[MediaType, int] = {MediaType.image: 0, MediaType.video: 0}
        self._tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # slots
    # ------------------------------------------------------------------
    def in_flight(self, media_type: MediaType) -> int:
        return self._in_flight[MediaType(media_type)]

    def _at_capacity(self, media_type: MediaType) -> bool:
        return self._in_flight[media_type] >= self.limits[media_type]

    def _try_reserve(self, media_type: MediaType) -> bool:
        if self._at_capacity(media_type):
            return False
        self._in_flight[media_type] += 1
        return True

    def _release(self, media_type: MediaType) -> None:
        self._in_flight[media_type] = max(0, self._in_flight[media_type] - 1)

    # ------------------------------------------------------------------
    # request
    # ------------------------------------------------------------------
    async def request_generation(
        self,
        species_id: str,
        media_type: MediaType,
        *,
        image_url: Optional[str] = None,
        seed_image_version: Optional[int] = None,
    ) -> GenerationDecision:
        media_type = MediaType(media_type)
        label = media_type.value.capitalize()

        if self._at_capacity(media_type):
            return self._rate_limited(species_id, media_type)

        species = await self.species_repo.get_species(species_id)
        if not species:
            return GenerationDecision(accepted=False, reason=RejectReason.not_found, message="Species not found")

        generating = GenerationStatus.generating(media_type)
        if species.get("generation_status") == generating.value:
            return GenerationDecision(
                accepted=False,
                reason=RejectReason.duplicate_request,
                message=f"{label} generation already in progress for this species",
            )

        if media_type == MediaType.video and not (image_url or "").strip():
            return GenerationDecision(
                accepted=False,
                reason=RejectReason.validation,
                message="Image URL is required for video generation",
            )

        version = await self._next_version(species, media_type)

        # counter moves only on acceptance; check and increment share no await
        if not self._try_reserve(media_type):
            return self._rate_limited(species_id, media_type)

        started = False
        try:
            await self.species_repo.update_status(species_id, generating)
            task = asyncio.create_task(
                self._run(species, media_type, version, image_url=image_url, seed_image_version=seed_image_version),
                name=f"generate-{media_type.value}-{species_id}",
            )
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            started = True
        finally:
            if not started:
                self._release(media_type)

        logger.info(
            "Generation started",
            extra={"species_id": species_id, "media_type": media_type.value, "version": version},
        )
        return GenerationDecision(
            accepted=True,
            message=f"{label} generation started",
            version=version,
        )

    def _rate_limited(self, species_id: str, media_type: MediaType) -> GenerationDecision:
        logger.info(
            "Generation rate limited",
            extra={"species_id": species_id, "media_type": media_type.value, "in_flight": self._in_flight[media_type]},
        )
        return GenerationDecision(
            accepted=False,
            reason=RejectReason.rate_limited,
            message=f"Too many {media_type.value} generations in progress. Please try again shortly.",
        )

    async def _next_version(self, species: Dict[str, Any], media_type: MediaType) -> int:
        species_id = str(species["id"])
        try:
            return await self.versioning.next_version(species_id, media_type)
        except Exception as e:
            fallback = int(species.get(media_columns(media_type)["total_versions"]) or 0) + 1
            logger.warning(
                "Could not read version ledger; numbering from species counters",
                extra={"species_id": species_id, "media_type": media_type.value, "version": fallback, "error": str(e)},
            )
            return fallback

    # ------------------------------------------------------------------
    # background work
    # ------------------------------------------------------------------
    async def _run(
        self,
        species: Dict[str, Any],
        media_type: MediaType,
        version: int,
        *,
        image_url: Optional[str],
        seed_image_version: Optional[int],
    ) -> None:
        species_id = str(species["id"])
        display_name = str(species.get("common_name") or species.get("scientific_name") or "species")

        try:
            output = await self._generators[media_type].generate(species, seed_image_url=image_url)
            stored = await self.storage.store(output.url, species_id, media_type, display_name, version)

            content = MediaContent(
                provider_url=output.url,
                storage_url=stored.public_url,
                storage_path=stored.path,
                prediction_id=output.prediction_id,
                prompt=output.prompt,
                mime_type=stored.content_type,
                file_size_bytes=stored.size_bytes,
                seed_image_version=seed_image_version if media_type == MediaType.video else None,
                seed_image_url=image_url if media_type == MediaType.video else None,
            )
            persisted = await self.versioning.persist(species_id, media_type, version, content)
            await self.species_repo.update_status(species_id, GenerationStatus.completed)

            logger.info(
                "Generation completed",
                extra={
                    "species_id": species_id,
                    "media_type": media_type.value,
                    "version": version,
                    "persisted": persisted,
                    "storage_path": stored.path,
                },
            )
            self.events.emit(
                EventType.media_generated,
                message=f"New {media_type.value} generated for {display_name}",
                data={
                    "species_id": species_id,
                    "species_name": display_name,
                    "media_type": media_type.value,
                    "version": version,
                    "url": stored.public_url,
                },
            )
        except Exception as e:
            logger.error(
                "Generation failed",
                extra={"species_id": species_id, "media_type": media_type.value, "version": version, "error": str(e)},
                exc_info=True,
            )
            await self._mark_error(species_id)
            if self.broadcast_failures:
                self.events.emit(
                    EventType.generation_failed,
                    message=f"{media_type.value.capitalize()} generation failed for {display_name}",
                    data={"species_id": species_id, "media_type": media_type.value, "version": version},
                )
        finally:
            self._release(media_type)

    async def _mark_error(self, species_id: str) -> None:
        try:
            await self.species_repo.update_status(species_id, GenerationStatus.error)
        except Exception as e:
            # Recovery sweeper will find the species stuck in generating_*
            logger.error("Could not record generation error", extra={"species_id": species_id, "error": str(e)})

    # ------------------------------------------------------------------
    # introspection
    # ------------------------------------------------------------------
    def status(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for mt in (MediaType.image, MediaType.video):
            out[mt.value] = {
                "in_flight": self._in_flight[mt],
                "max_concurrent": self.limits[mt],
                "available": max(0, self.limits[mt] - self._in_flight[mt]),
            }
        out["background_tasks"] = len(self._tasks)
        return out

    async def drain(self) -> None:
        """Wait for every running generation task to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
