from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from species_gallery.api.deps import get_services
from species_gallery.container import AppServices
from species_gallery.domain.models import SpeciesListActionRequest

router = APIRouter()


@router.get("")
async def list_species_lists(services: AppServices = Depends(get_services)):
    return {"success": True, "lists": await services.catalog.list_lists()}


@router.post("")
async def update_species_list(req: SpeciesListActionRequest, services: AppServices = Depends(get_services)):
    if req.action != "set_active":
        raise HTTPException(status_code=400, detail={"success": False, "error": "Invalid action"})
    if not req.list_id:
        raise HTTPException(status_code=400, detail={"success": False, "error": "List ID is required"})

    if not await services.catalog.set_active_list(req.list_id):
        raise HTTPException(status_code=404, detail={"success": False, "error": "Species list not found"})

    return {"success": True, "message": "Active species list updated"}
