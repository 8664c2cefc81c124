from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import Response

from species_gallery.api.deps import get_services
from species_gallery.container import AppServices
from species_gallery.domain.enums import EventType, MediaAction, MediaType
from species_gallery.domain.errors import SpeciesNotFoundError
from species_gallery.domain.models import MediaPatchRequest

router = APIRouter()

logger = logging.getLogger("api.species")


async def _require_species(services: AppServices, species_id: str) -> dict:
    species = await services.species_repo.get_species(species_id)
    if not species:
        raise SpeciesNotFoundError(species_id)
    return species


@router.get("")
async def list_species(
    list_id: Optional[str] = Query(default=None),
    services: AppServices = Depends(get_services),
):
    species = await services.species_repo.list_species(list_id)
    return {"species": species, "count": len(species)}


@router.get("/export")
async def export_species(
    list_id: Optional[str] = Query(default=None),
    services: AppServices = Depends(get_services),
):
    body = await services.catalog.export_csv(list_id)
    return Response(
        content=body,
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="species.csv"'},
    )


@router.get("/{species_id}")
async def get_species(species_id: str, services: AppServices = Depends(get_services)):
    return {"species": await _require_species(services, species_id)}


@router.get("/{species_id}/media")
async def get_species_media(species_id: str, services: AppServices = Depends(get_services)):
    species = await _require_species(services, species_id)
    media = await services.versioning.media_listing(species)
    return {"success": True, "species": species, "media": media}


@router.delete("/{species_id}/media/{media_type}/{version}")
async def hide_media_version(
    species_id: str,
    media_type: MediaType,
    version: int,
    services: AppServices = Depends(get_services),
):
    species = await _require_species(services, species_id)
    result = await services.versioning.hide_version(species_id, media_type, version)

    services.events.emit(
        EventType.species_updated,
        message=f"{media_type.value.capitalize()} version {version} removed for {species.get('common_name')}",
        data={"species_id": species_id, "media_type": media_type.value, **result},
    )
    return {"success": True, "message": "Media version deleted successfully", **result}


@router.patch("/{species_id}/media/{media_type}/{version}")
async def update_media_version(
    species_id: str,
    media_type: MediaType,
    version: int,
    req: MediaPatchRequest,
    services: AppServices = Depends(get_services),
):
    if not req.action:
        raise HTTPException(status_code=400, detail="Invalid parameters")
    try:
        action = MediaAction(req.action)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid action")

    await _require_species(services, species_id)
    enabled = req.value is True

    if action == MediaAction.favorite:
        applied = await services.versioning.favorite(species_id, media_type, version, enabled)
        # missing is_favorite column degrades to a no-op, not an error
        return {"success": True, "message": "Media version updated successfully", "applied": applied}

    if action == MediaAction.set_primary:
        if enabled and not await services.versioning.set_primary(species_id, media_type, version):
            raise HTTPException(status_code=404, detail="Media version not found")
    else:
        if not await services.versioning.set_for_exhibit(species_id, media_type, version, enabled):
            raise HTTPException(status_code=404, detail="Media version not found")

    return {"success": True, "message": "Media version updated successfully"}
