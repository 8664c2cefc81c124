from __future__ import annotations

import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException

from species_gallery.api.deps import get_services
from species_gallery.config import settings
from species_gallery.container import AppServices

router = APIRouter()

logger = logging.getLogger("api.cron")


def require_cron_secret(authorization: Optional[str] = Header(default=None)) -> None:
    secret = (settings.CRON_SECRET or "").strip()
    if not secret:
        return
    expected = f"Bearer {secret}"
    if not authorization or not hmac.compare_digest(authorization.strip(), expected):
        raise HTTPException(status_code=401, detail="Unauthorized")


@router.api_route("/recovery", methods=["GET", "POST"], dependencies=[Depends(require_cron_secret)])
async def cron_recovery(services: AppServices = Depends(get_services)):
    result = await services.recovery.run_comprehensive()
    logger.info("Cron recovery run", extra={"success": result.success, "fixed": result.fixed, "retried": result.retried})
    return result.model_dump()
