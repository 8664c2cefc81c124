from __future__ import annotations

import logging
import os
from typing import Optional

from pythonjsonlogger import jsonlogger

from species_gallery.config import settings

_HANDLER_NAME = "species_gallery.json"

# library logger -> env var overriding its level
_QUIET_LOGGERS = {
    "httpx": "HTTPX_LOG_LEVEL",
    "uvicorn.access": "UVICORN_ACCESS_LOG_LEVEL",
    "azure": "AZURE_LOG_LEVEL",
    "azure.core.pipeline.policies.http_logging_policy": "AZURE_LOG_LEVEL",
}


class ServiceContextFilter(logging.Filter):
    """Stamps every record with the service name and version."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.service = settings.SERVICE_NAME
        record.version = settings.SERVICE_VERSION
        return True


def _resolve_level(name: Optional[str]) -> int:
    return getattr(logging, (name or "INFO").upper(), logging.INFO)


def configure_logging(level: Optional[str] = None) -> None:
    """
    One JSON object per line on stderr. Keys passed through `extra={...}`
    become top-level fields. Safe to call more than once.
    """
    root = logging.getLogger()
    root.setLevel(_resolve_level(level or settings.LOG_LEVEL))

    if any(h.get_name() == _HANDLER_NAME for h in root.handlers):
        return

    handler = logging.StreamHandler()
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(
        jsonlogger.JsonFormatter("%(asctime)s %(levelname)s %(name)s %(service)s %(version)s %(message)s")
    )
    handler.addFilter(ServiceContextFilter())
    root.addHandler(handler)

    for logger_name, env_var in _QUIET_LOGGERS.items():
        logging.getLogger(logger_name).setLevel(os.getenv(env_var, "WARNING"))
