from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from species_gallery.api.deps import get_services
from species_gallery.container import AppServices

router = APIRouter()


@router.get("")
async def sse(request: Request, services: AppServices = Depends(get_services)):
    return StreamingResponse(
        services.events.stream(request.is_disconnected),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
