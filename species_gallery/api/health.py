from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from species_gallery.api.deps import get_services
from species_gallery.config import settings
from species_gallery.container import AppServices

router = APIRouter()

logger = logging.getLogger("api.health")


@router.get("")
async def health(services: AppServices = Depends(get_services)):
    try:
        db_ok = await services.species_repo.ping()
    except Exception as e:
        logger.warning("Health check database ping failed", extra={"error": str(e)})
        db_ok = False

    body = {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": settings.SERVICE_NAME,
        "version": settings.SERVICE_VERSION,
        "health": {"database": "healthy" if db_ok else "unhealthy"},
        "queue": services.orchestrator.status(),
        "sse": services.events.get_stats(),
    }
    return JSONResponse(status_code=200 if db_ok else 503, content=body)
