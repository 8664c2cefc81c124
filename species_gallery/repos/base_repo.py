from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence

import asyncpg

logger = logging.getLogger(__name__)


# =============================================================================
# Converter
# =============================================================================
class DatabaseTypeConverter:
    """asyncpg -> plain Python values for the gallery tables."""

    @staticmethod
    def convert_uuid_to_string(value: Any) -> Optional[str]:
        if value is None:
            return None
        # asyncpg hands back uuid.UUID
        if hasattr(value, "hex"):
            return str(value)
        if isinstance(value, str):
            return value
        raise ValueError(f"Cannot convert UUID value: {value} (type: {type(value)})")

    @staticmethod
    def ensure_utc(value: Any) -> Any:
        """timestamp columns created without a zone come back naive; treat them as UTC."""
        if isinstance(value, datetime) and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


# =============================================================================
# Base Repo
# =============================================================================
class BaseRepository:
    """
    Shared plumbing for the species, species_media and species_lists repos.

    Rows leave the repository as dicts with UUIDs as strings and timestamps
    timezone-aware. Query helpers log the failing statement and re-raise;
    callers decide whether a failure is fatal.
    """

    UUID_FIELDS = frozenset({"id", "species_id", "species_list_id"})
    TIMESTAMP_FIELDS = frozenset(
        {"created_at", "updated_at", "image_generated_at", "video_generated_at"}
    )

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool
        self.converter = DatabaseTypeConverter()

    def convert_db_row(self, row: Optional[asyncpg.Record]) -> Dict[str, Any]:
        if not row:
            return {}

        converted: Dict[str, Any] = {}
        for field_name, field_value in dict(row).items():
            try:
                if field_name in self.UUID_FIELDS:
                    field_value = self.converter.convert_uuid_to_string(field_value)
                elif field_name in self.TIMESTAMP_FIELDS:
                    field_value = self.converter.ensure_utc(field_value)
            except ValueError as e:
                # keep the raw value; a bad column must not sink a background task
                logger.warning(
                    "Row field conversion failed",
                    extra={"field": field_name, "error": str(e), "type": type(field_value).__name__},
                )
            converted[field_name] = field_value
        return converted

    def convert_db_rows(self, rows: Iterable[asyncpg.Record]) -> List[Dict[str, Any]]:
        return [self.convert_db_row(row) for row in rows]

    @staticmethod
    def _log_failure(kind: str, statement: str, params: Sequence[Any], error: Exception) -> None:
        logger.error(
            f"{kind} failed",
            extra={"statement": " ".join(statement.split())[:300], "params": list(params), "error": str(error)},
        )

    async def execute_query(self, query: str, *params) -> Optional[asyncpg.Record]:
        try:
            async with self.pool.acquire() as conn:
                return await conn.fetchrow(query, *params)
        except Exception as e:
            self._log_failure("Query", query, params, e)
            raise

    async def execute_queries(self, query: str, *params) -> List[asyncpg.Record]:
        try:
            async with self.pool.acquire() as conn:
                return await conn.fetch(query, *params)
        except Exception as e:
            self._log_failure("Multi-row query", query, params, e)
            raise

    async def execute_command(self, command: str, *params) -> str:
        try:
            async with self.pool.acquire() as conn:
                return await conn.execute(command, *params)
        except Exception as e:
            self._log_failure("Command", command, params, e)
            raise

    async def fetch_scalar(self, query: str, *params) -> Any:
        try:
            async with self.pool.acquire() as conn:
                return await conn.fetchval(query, *params)
        except Exception as e:
            self._log_failure("Scalar query", query, params, e)
            raise

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[asyncpg.Connection]:
        """Connection with an open transaction; rolled back if the block raises."""
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield conn

    @staticmethod
    def affected_rows(status: str) -> int:
        """asyncpg command tags look like 'UPDATE 3' / 'DELETE 0'."""
        try:
            return int((status or "").rsplit(" ", 1)[-1])
        except (TypeError, ValueError):
            return 0
