from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile
from fastapi.responses import JSONResponse

from species_gallery.api.deps import get_services
from species_gallery.container import AppServices
from species_gallery.domain.enums import EventType, RecoveryType
from species_gallery.domain.models import (
    FixSpeciesNameRequest,
    ForceStatusRequest,
    RecoveryRequest,
    RecoveryResult,
)

router = APIRouter()

logger = logging.getLogger("api.admin")


async def run_recovery(services: AppServices, recovery_type: RecoveryType) -> RecoveryResult:
    sweeper = services.recovery
    if recovery_type == RecoveryType.fix_errors:
        return await sweeper.fix_error_statuses()
    if recovery_type == RecoveryType.reset_stuck:
        return await sweeper.reset_stuck_generations()
    return await sweeper.run_comprehensive()


# ------------------------------------------------------------------------------
# Recovery
# ------------------------------------------------------------------------------

@router.get("/auto-error-recovery")
async def auto_error_recovery_check(services: AppServices = Depends(get_services)):
    result = await services.recovery.fix_error_statuses()
    return result.model_dump()


@router.post("/auto-error-recovery")
async def auto_error_recovery(
    req: Optional[RecoveryRequest] = None,
    services: AppServices = Depends(get_services),
):
    recovery_type = req.type if req else RecoveryType.comprehensive
    result = await run_recovery(services, recovery_type)
    logger.info("Admin recovery run", extra={"type": recovery_type.value, "success": result.success})
    return result.model_dump()


@router.post("/fix-error-statuses")
async def fix_error_statuses(services: AppServices = Depends(get_services)):
    return (await services.recovery.fix_error_statuses()).model_dump()


@router.get("/reset-stuck-statuses")
async def check_stuck_statuses(services: AppServices = Depends(get_services)):
    stuck = await services.recovery.find_stuck()
    return {
        "success": True,
        "message": f"Found {len(stuck)} stuck generations",
        "count": len(stuck),
        "stuck": stuck,
    }


@router.post("/reset-stuck-statuses")
async def reset_stuck_statuses(services: AppServices = Depends(get_services)):
    return (await services.recovery.reset_stuck_generations()).model_dump()


@router.post("/force-reset-status")
async def force_reset_status(req: ForceStatusRequest, services: AppServices = Depends(get_services)):
    result = await services.catalog.force_status(req.species_id, req.status)
    services.events.emit(
        EventType.species_updated,
        message="Status reset by admin",
        data={"species_id": req.species_id, "status": result["status"]},
    )
    return {"success": True, "message": f"Status set to {result['status']}", **result}


# ------------------------------------------------------------------------------
# Storage
# ------------------------------------------------------------------------------

@router.post("/init-storage")
async def init_storage(services: AppServices = Depends(get_services)):
    created = await services.storage.ensure_container()
    return {
        "success": True,
        "message": "Media container created" if created else "Media container already exists",
        "container": services.storage.container,
        "created": created,
    }


@router.post("/reset-storage")
async def reset_storage(services: AppServices = Depends(get_services)):
    result = await services.storage.reset_container()
    return {"success": not result["errors"], "message": f"Deleted {result['deleted']} files", **result}


@router.get("/list-storage-files")
async def list_storage_files(
    prefix: Optional[str] = Query(default=None),
    services: AppServices = Depends(get_services),
):
    files = await services.storage.list_files(prefix)
    stats = await services.storage.get_storage_stats()
    return {"success": True, "message": f"Found {len(files)} files", "files": files, "stats": stats}


# ------------------------------------------------------------------------------
# Catalog
# ------------------------------------------------------------------------------

@router.post("/import-csv")
async def import_csv(
    file: UploadFile = File(...),
    list_name: Optional[str] = Form(default=None),
    list_description: Optional[str] = Form(default=None),
    services: AppServices = Depends(get_services),
):
    raw = await file.read()
    try:
        text = raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        raise HTTPException(status_code=400, detail="CSV file must be UTF-8 encoded")

    filename = file.filename or "species.csv"
    result = await services.catalog.import_csv(
        text,
        list_name=(list_name or "").strip() or filename.rsplit(".", 1)[0],
        list_description=list_description,
        csv_filename=filename,
    )
    body = result.model_dump()
    if not result.success:
        return JSONResponse(status_code=400, content={"error": result.message, **body})
    return body


@router.post("/remove-duplicates")
async def remove_duplicates(services: AppServices = Depends(get_services)):
    result = await services.catalog.remove_duplicates()
    return {"success": True, "message": f"Removed {result['removed']} duplicate species", **result}


@router.post("/fix-species-name")
async def fix_species_name(req: FixSpeciesNameRequest, services: AppServices = Depends(get_services)):
    result = await services.catalog.fix_species_name(
        req.species_id,
        common_name=req.common_name,
        scientific_name=req.scientific_name,
        type=req.type,
    )
    if result["changed"]:
        services.events.emit(
            EventType.species_updated,
            message="Species details corrected",
            data={"species_id": req.species_id},
        )
    return {
        "success": True,
        "message": "Species updated" if result["changed"] else "Nothing to update",
        **result,
    }
