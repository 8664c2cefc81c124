from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from species_gallery.domain.errors import SpeciesNotFoundError

logger = logging.getLogger("api.errors")


def error_response(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra})


def install_error_handlers(app: FastAPI) -> None:
    """Every error leaves the API as {"error": <message>, ...}."""

    @app.exception_handler(RequestValidationError)
    async def _validation(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"Invalid request: {field} {first.get('msg', '')}".strip() if field else "Invalid request"
        return error_response(400, message, details=[{"loc": list(e.get("loc", ())), "msg": e.get("msg")} for e in errors])

    @app.exception_handler(StarletteHTTPException)
    async def _http(request: Request, exc: StarletteHTTPException):
        if isinstance(exc.detail, dict):
            return JSONResponse(status_code=exc.status_code, content=exc.detail)
        return error_response(exc.status_code, str(exc.detail))

    @app.exception_handler(SpeciesNotFoundError)
    async def _not_found(request: Request, exc: SpeciesNotFoundError):
        return error_response(404, "Species not found")

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        logger.error(
            "Unhandled request error",
            extra={"path": request.url.path, "method": request.method, "error": str(exc)},
            exc_info=exc,
        )
        return error_response(500, str(exc) or exc.__class__.__name__)
