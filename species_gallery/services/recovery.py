from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Set

from species_gallery.config import settings
from species_gallery.domain.enums import EventType, GenerationStatus
from species_gallery.domain.models import RecoveryResult
from species_gallery.repos.species_media_repo import SpeciesMediaRepo
from species_gallery.repos.species_repo import SpeciesRepo
from species_gallery.services.event_hub import EventHub

logger = logging.getLogger("recovery")

GENERATING = (GenerationStatus.generating_image, GenerationStatus.generating_video)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_aware(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def has_image(species: Dict[str, Any]) -> bool:
    return bool(
        species.get("image_url")
        or species.get("storage_image_url")
        or species.get("current_image_url")
        or int(species.get("total_image_versions") or 0) > 0
    )


def has_video(species: Dict[str, Any]) -> bool:
    return bool(
        species.get("video_url")
        or species.get("storage_video_url")
        or species.get("current_video_url")
        or int(species.get("total_video_versions") or 0) > 0
    )


def infer_settled_status(species: Dict[str, Any]) -> GenerationStatus:
    if has_video(species):
        return GenerationStatus.completed
    if has_image(species):
        return GenerationStatus.image_generated
    return GenerationStatus.pending


class RecoverySweeper:
    """
    Repairs generation_status values that contradict the stored media.

      fix_error_statuses       error -> completed (media present) or pending (old error)
      reset_stuck_generations  generating_* older than the stuck window -> inferred status

    Both are idempotent. fix_error_statuses is guarded against overlapping and
    too-frequent runs; a rejected run returns success=False and does nothing.
    """

    def __init__(
        self,
        *,
        species_repo: SpeciesRepo,
        media_repo: SpeciesMediaRepo,
        events: EventHub,
        error_grace_seconds: Optional[int] = None,
        stuck_seconds: Optional[int] = None,
        min_interval_seconds: Optional[float] = None,
        now: Callable[[], datetime] = _utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.species_repo = species_repo
        self.media_repo = media_repo
        self.events = events
        self.error_grace = timedelta(
            seconds=settings.RECOVERY_ERROR_GRACE_SECONDS if error_grace_seconds is None else error_grace_seconds
        )
        self.stuck_after = timedelta(seconds=settings.RECOVERY_STUCK_SECONDS if stuck_seconds is None else stuck_seconds)
        self.min_interval = float(
            settings.RECOVERY_MIN_INTERVAL_SECONDS if min_interval_seconds is None else min_interval_seconds
        )
        self._now = now
        self._monotonic = monotonic
        self._running = False
        self._last_run: Optional[float] = None

    # ------------------------------------------------------------------
    # error statuses
    # ------------------------------------------------------------------
    async def fix_error_statuses(self) -> RecoveryResult:
        if self._running:
            return RecoveryResult(
                success=False,
                errors=["Error recovery already in progress"],
                message="Recovery already running",
            )

        started = self._monotonic()
        if self._last_run is not None and started - self._last_run < self.min_interval:
            return RecoveryResult(
                success=False,
                errors=["Too frequent recovery attempts"],
                message="Please wait before retrying",
            )

        self._running = True
        self._last_run = started
        try:
            return await self._fix_error_statuses()
        except Exception as e:
            logger.exception("Error status recovery failed")
            return RecoveryResult(success=False, errors=[str(e)], message="Auto-recovery failed")
        finally:
            self._running = False

    async def _fix_error_statuses(self) -> RecoveryResult:
        rows = await self.species_repo.list_by_status([GenerationStatus.error])
        if not rows:
            return RecoveryResult(success=True, message="No species with error status found")

        with_media = await self._species_with_ledger_media([str(r["id"]) for r in rows])
        cutoff = self._now() - self.error_grace

        fixed = 0
        retried = 0
        errors: List[str] = []
        details: List[Dict[str, Any]] = []

        for sp in rows:
            sid = str(sp["id"])
            name = sp.get("common_name") or sid
            try:
                if has_image(sp) or has_video(sp) or sid in with_media:
                    await self._set_status(sp, GenerationStatus.completed, f"Status fixed for {name}")
                    fixed += 1
                    details.append({"species_id": sid, "action": "completed"})
                    continue

                updated_at = _as_aware(sp.get("updated_at"))
                if updated_at is not None and updated_at < cutoff:
                    await self._set_status(sp, GenerationStatus.pending, f"Reset {name} to pending for retry")
                    retried += 1
                    details.append({"species_id": sid, "action": "pending"})
                else:
                    logger.info("Recent error left alone", extra={"species_id": sid})
            except Exception as e:
                logger.error("Could not repair species status", extra={"species_id": sid, "error": str(e)})
                errors.append(f"Error processing {name}: {e}")

        logger.info("Error recovery completed", extra={"fixed": fixed, "retried": retried, "errors": len(errors)})
        return RecoveryResult(
            success=True,
            fixed=fixed,
            retried=retried,
            errors=errors,
            message=f"Auto-recovery completed: {fixed} fixed, {retried} retried",
            details=details,
        )

    async def _species_with_ledger_media(self, species_ids: List[str]) -> Set[str]:
        try:
            return await self.media_repo.species_ids_with_media(species_ids)
        except Exception as e:
            logger.warning("species_media lookup failed; using legacy columns only", extra={"error": str(e)})
            return set()

    # ------------------------------------------------------------------
    # stuck generations
    # ------------------------------------------------------------------
    async def reset_stuck_generations(self) -> RecoveryResult:
        try:
            rows = await self.species_repo.list_by_status_older_than(GENERATING, self._now() - self.stuck_after)
        except Exception as e:
            logger.exception("Stuck generation scan failed")
            return RecoveryResult(success=False, errors=[str(e)], message="Failed to reset stuck generations")

        if not rows:
            return RecoveryResult(success=True, message="No stuck generations found")

        reset = 0
        errors: List[str] = []
        details: List[Dict[str, Any]] = []

        for sp in rows:
            sid = str(sp["id"])
            name = sp.get("common_name") or sid
            target = infer_settled_status(sp)
            try:
                await self._set_status(sp, target, f"Reset stuck generation for {name}")
                reset += 1
                details.append({"species_id": sid, "from": sp.get("generation_status"), "to": target.value})
            except Exception as e:
                logger.error("Could not reset stuck species", extra={"species_id": sid, "error": str(e)})
                errors.append(f"Failed to reset {name}: {e}")

        logger.info("Stuck generation reset completed", extra={"reset": reset, "errors": len(errors)})
        return RecoveryResult(
            success=True,
            fixed=reset,
            errors=errors,
            message=f"Reset {reset} stuck generations",
            details=details,
        )

    async def find_stuck(self) -> List[Dict[str, Any]]:
        now = self._now()
        rows = await self.species_repo.list_by_status_older_than(GENERATING, now - self.stuck_after)
        out: List[Dict[str, Any]] = []
        for sp in rows:
            updated_at = _as_aware(sp.get("updated_at"))
            stuck_seconds = int((now - updated_at).total_seconds()) if updated_at else None
            out.append(
                {
                    "id": str(sp["id"]),
                    "common_name": sp.get("common_name"),
                    "generation_status": sp.get("generation_status"),
                    "updated_at": updated_at.isoformat() if updated_at else None,
                    "stuck_minutes": (stuck_seconds // 60) if stuck_seconds is not None else None,
                }
            )
        return out

    # ------------------------------------------------------------------
    # combined
    # ------------------------------------------------------------------
    async def run_comprehensive(self) -> RecoveryResult:
        error_result, stuck_result = await asyncio.gather(
            self.fix_error_statuses(),
            self.reset_stuck_generations(),
        )
        fixed = error_result.fixed + stuck_result.fixed
        retried = error_result.retried + stuck_result.retried
        return RecoveryResult(
            success=error_result.success and stuck_result.success,
            fixed=fixed,
            retried=retried,
            errors=[*error_result.errors, *stuck_result.errors],
            message=f"Comprehensive recovery: {fixed} fixed, {retried} retried",
            details=[*error_result.details, *stuck_result.details],
        )

    async def _set_status(self, species: Dict[str, Any], status: GenerationStatus, message: str) -> None:
        sid = str(species["id"])
        await self.species_repo.update_status(sid, status)
        self.events.emit(
            EventType.species_updated,
            message=message,
            data={"species_id": sid, "species_name": species.get("common_name"), "status": status.value},
        )
