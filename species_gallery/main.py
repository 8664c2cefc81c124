from __future__ import annotations

import asyncio
import logging
from typing import Optional

from fastapi import FastAPI

from species_gallery.api import build_router
from species_gallery.api.errors import install_error_handlers
from species_gallery.config import settings
from species_gallery.container import AppServices, build_services
from species_gallery.db import close_pool, get_pool
from species_gallery.logging import configure_logging

logger = logging.getLogger("species_gallery")


def create_app(services: Optional[AppServices] = None) -> FastAPI:
    """
    Pass services to run against prebuilt (e.g. in-memory) collaborators;
    otherwise the asyncpg pool and services are built on startup.
    """
    configure_logging()

    app = FastAPI(
        title="Species Gallery",
        version=settings.SERVICE_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    app.state.services = services

    install_error_handlers(app)
    app.include_router(build_router())

    @app.on_event("startup")
    async def startup():
        if app.state.services is None:
            pool = await get_pool()
            app.state.services = build_services(pool)
        scheduler = app.state.services.scheduler
        if scheduler is not None:
            scheduler.start()
        logger.info("Species gallery started", extra={"service": settings.SERVICE_NAME})

    @app.on_event("shutdown")
    async def shutdown():
        svc = app.state.services
        if svc is not None:
            if svc.scheduler is not None:
                await svc.scheduler.stop()
            try:
                await asyncio.wait_for(svc.orchestrator.drain(), timeout=10)
            except asyncio.TimeoutError:
                logger.warning("Shutdown cancelled in-flight generations", extra={"queue": svc.orchestrator.status()})
        await close_pool()

    @app.get("/")
    async def root():
        return {"service": settings.SERVICE_NAME, "status": "ok", "version": settings.SERVICE_VERSION}

    return app


app = create_app()
