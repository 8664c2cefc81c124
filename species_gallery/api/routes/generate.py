from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from species_gallery.api.deps import get_services
from species_gallery.api.errors import error_response
from species_gallery.container import AppServices
from species_gallery.domain.enums import MediaType
from species_gallery.domain.models import GenerateImageRequest, GenerateVideoRequest, GenerationDecision

router = APIRouter()

logger = logging.getLogger("api.generate")


def _decision_response(decision: GenerationDecision, species_id: str) -> JSONResponse:
    if not decision.accepted:
        return error_response(decision.status_code, decision.message, status=decision.reason.value)
    return JSONResponse(
        status_code=200,
        content={
            "success": True,
            "message": decision.message,
            "status": "generating",
            "speciesId": species_id,
            "version": decision.version,
        },
    )


@router.post("/image")
async def generate_image(req: GenerateImageRequest, services: AppServices = Depends(get_services)):
    species_id = (req.species_id or "").strip()
    if not species_id:
        return error_response(400, "Species ID is required")

    decision = await services.orchestrator.request_generation(species_id, MediaType.image)
    return _decision_response(decision, species_id)


@router.post("/video")
async def generate_video(req: GenerateVideoRequest, services: AppServices = Depends(get_services)):
    species_id = (req.species_id or "").strip()
    if not species_id:
        return error_response(400, "Species ID is required")

    decision = await services.orchestrator.request_generation(
        species_id,
        MediaType.video,
        image_url=(req.image_url or "").strip() or None,
        seed_image_version=req.seed_image_version,
    )
    return _decision_response(decision, species_id)
