from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import asyncpg

from species_gallery.config import settings
from species_gallery.repos.species_lists_repo import SpeciesListsRepo
from species_gallery.repos.species_media_repo import SpeciesMediaRepo
from species_gallery.repos.species_repo import SpeciesRepo
from species_gallery.services.catalog import CatalogService
from species_gallery.services.event_hub import EventHub
from species_gallery.services.generation_orchestrator import GenerationOrchestrator
from species_gallery.services.generators import ImageGenerator, VideoGenerator
from species_gallery.services.media_storage import MediaStorageService
from species_gallery.services.recovery import RecoverySweeper
from species_gallery.services.replicate_client import ReplicateClient
from species_gallery.services.versioning import VersioningService
from species_gallery.workers.recovery_worker import RecoveryScheduler


@dataclass
class AppServices:
    """Process-wide service objects; built once and kept on app.state.services."""

    species_repo: SpeciesRepo
    media_repo: SpeciesMediaRepo
    lists_repo: SpeciesListsRepo
    events: EventHub
    storage: MediaStorageService
    versioning: VersioningService
    orchestrator: GenerationOrchestrator
    recovery: RecoverySweeper
    catalog: CatalogService
    scheduler: Optional[RecoveryScheduler] = None


def build_services(pool: asyncpg.Pool) -> AppServices:
    species_repo = SpeciesRepo(pool)
    media_repo = SpeciesMediaRepo(pool)
    lists_repo = SpeciesListsRepo(pool)

    events = EventHub()
    storage = MediaStorageService()
    versioning = VersioningService(species_repo, media_repo)

    replicate = ReplicateClient()
    orchestrator = GenerationOrchestrator(
        species_repo=species_repo,
        media_repo=media_repo,
        versioning=versioning,
        storage=storage,
        image_generator=ImageGenerator(
            replicate,
            version=settings.REPLICATE_IMAGE_VERSION,
            poll_seconds=settings.IMAGE_POLL_SECONDS,
            max_attempts=settings.IMAGE_MAX_POLL_ATTEMPTS,
        ),
        video_generator=VideoGenerator(
            replicate,
            model=settings.REPLICATE_VIDEO_MODEL,
            poll_seconds=settings.VIDEO_POLL_SECONDS,
            max_attempts=settings.VIDEO_MAX_POLL_ATTEMPTS,
        ),
        events=events,
    )

    recovery = RecoverySweeper(species_repo=species_repo, media_repo=media_repo, events=events)

    scheduler = None
    if settings.RECOVERY_SCHEDULE_SECONDS > 0:
        scheduler = RecoveryScheduler(recovery, interval_seconds=settings.RECOVERY_SCHEDULE_SECONDS)

    return AppServices(
        species_repo=species_repo,
        media_repo=media_repo,
        lists_repo=lists_repo,
        events=events,
        storage=storage,
        versioning=versioning,
        orchestrator=orchestrator,
        recovery=recovery,
        catalog=CatalogService(species_repo, lists_repo),
        scheduler=scheduler,
    )
