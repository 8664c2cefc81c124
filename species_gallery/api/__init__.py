from __future__ import annotations

from fastapi import APIRouter

from .health import router as health_router
from .routes.admin import router as admin_router
from .routes.cron import router as cron_router
from .routes.generate import router as generate_router
from .routes.queue import router as queue_router
from .routes.species import router as species_router
from .routes.species_lists import router as species_lists_router
from .routes.sse import router as sse_router


def build_router() -> APIRouter:
    router = APIRouter()
    router.include_router(health_router, prefix="/api/health", tags=["health"])
    router.include_router(generate_router, prefix="/api/generate", tags=["generate"])
    router.include_router(species_router, prefix="/api/species", tags=["species"])
    router.include_router(species_lists_router, prefix="/api/species-lists", tags=["species-lists"])
    router.include_router(sse_router, prefix="/api/sse", tags=["sse"])
    router.include_router(queue_router, prefix="/api/queue", tags=["queue"])
    router.include_router(admin_router, prefix="/api/admin", tags=["admin"])
    router.include_router(cron_router, prefix="/api/cron", tags=["cron"])

    return router
