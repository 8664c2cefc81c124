from __future__ import annotations

from fastapi import APIRouter, Depends

from species_gallery.api.deps import get_services
from species_gallery.container import AppServices

router = APIRouter()


@router.get("/status")
async def queue_status(services: AppServices = Depends(get_services)):
    stats = services.orchestrator.status()
    return {
        "active": stats["background_tasks"] > 0,
        "queueSize": stats["background_tasks"],
        **stats,
    }
