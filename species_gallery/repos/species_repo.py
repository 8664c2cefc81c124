from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence
from uuid import UUID

from .base_repo import BaseRepository
from ..domain.enums import GenerationStatus, MediaType

logger = logging.getLogger(__name__)

# Species columns written by CSV import (order matters for the INSERT below)
IMPORT_COLUMNS = (
    "scientific_name",
    "common_name",
    "year_extinct",
    "last_location",
    "extinction_cause",
    "extinction_date",
    "type",
    "region",
    "habitat",
    "last_seen",
    "description",
    "sources",
    "display_order",
)

EDITABLE_COLUMNS = {"common_name", "scientific_name", "type"}


def is_uuid(value: Any) -> bool:
    try:
        UUID(str(value))
        return True
    except (TypeError, ValueError):
        return False


def media_columns(media_type: MediaType) -> Dict[str, str]:
    """Per-type column names on the species table."""
    t = MediaType(media_type).value
    return {
        "provider_url": f"{t}_url",
        "storage_url": f"storage_{t}_url",
        "storage_path": f"storage_{t}_path",
        "generated_at": f"{t}_generated_at",
        "current_url": f"current_{t}_url",
        "current_version": f"current_displayed_{t}_version",
        "total_versions": f"total_{t}_versions",
    }


class SpeciesRepo(BaseRepository):
    """Repository for the species table."""

    async def get_species(self, species_id: str) -> Optional[Dict[str, Any]]:
        if not is_uuid(species_id):
            return None
        row = await self.execute_query("SELECT * FROM species WHERE id = $1::uuid", species_id)
        return self.convert_db_row(row) if row else None

    async def list_species(self, species_list_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Species of one list. Without an explicit list id the active list is used;
        when no list is active every species is returned.
        """
        if species_list_id is None:
            species_list_id = await self.fetch_scalar(
                "SELECT id::text FROM species_lists WHERE is_active = true ORDER BY updated_at DESC LIMIT 1"
            )

        if species_list_id is None:
            rows = await self.execute_queries("SELECT * FROM species ORDER BY display_order, common_name")
        else:
            if not is_uuid(species_list_id):
                return []
            rows = await self.execute_queries(
                "SELECT * FROM species WHERE species_list_id = $1::uuid ORDER BY display_order, common_name",
                species_list_id,
            )
        return self.convert_db_rows(rows)

    async def update_status(self, species_id: str, status: GenerationStatus) -> None:
        await self.execute_command(
            "UPDATE species SET generation_status = $2, updated_at = now() WHERE id = $1::uuid",
            species_id,
            getattr(status, "value", status),
        )
        logger.info("Species status updated", extra={"species_id": species_id, "status": getattr(status, "value", status)})

    async def update_version_summary(
        self,
        species_id: str,
        media_type: MediaType,
        *,
        total_versions: int,
        current_version: int,
        current_url: Optional[str] = None,
    ) -> None:
        cols = media_columns(media_type)
        query = f"""
        UPDATE species
        SET
          {cols["total_versions"]} = $2,
          {cols["current_version"]} = $3,
          {cols["current_url"]} = COALESCE($4, {cols["current_url"]}),
          updated_at = now()
        WHERE id = $1::uuid
        """
        await self.execute_command(query, species_id, int(total_versions), int(current_version), current_url)

    async def set_current_version(self, species_id: str, media_type: MediaType, version: int) -> None:
        cols = media_columns(media_type)
        await self.execute_command(
            f"UPDATE species SET {cols['current_version']} = $2, updated_at = now() WHERE id = $1::uuid",
            species_id,
            int(version),
        )

    async def update_legacy_media(
        self,
        species_id: str,
        media_type: MediaType,
        *,
        provider_url: str,
        storage_url: Optional[str],
        storage_path: Optional[str],
    ) -> None:
        """Flat-column write used when the versioned ledger is unavailable."""
        cols = media_columns(media_type)
        query = f"""
        UPDATE species
        SET
          {cols["provider_url"]} = $2,
          {cols["storage_url"]} = COALESCE($3, {cols["storage_url"]}),
          {cols["storage_path"]} = COALESCE($4, {cols["storage_path"]}),
          {cols["current_url"]} = COALESCE($3, $2),
          {cols["generated_at"]} = now(),
          updated_at = now()
        WHERE id = $1::uuid
        """
        await self.execute_command(query, species_id, provider_url, storage_url, storage_path)

    async def list_by_status(self, statuses: Sequence[str]) -> List[Dict[str, Any]]:
        rows = await self.execute_queries(
            "SELECT * FROM species WHERE generation_status = ANY($1::text[]) ORDER BY updated_at",
            [getattr(s, "value", s) for s in statuses],
        )
        return self.convert_db_rows(rows)

    async def list_by_status_older_than(self, statuses: Sequence[str], cutoff: datetime) -> List[Dict[str, Any]]:
        rows = await self.execute_queries(
            """
            SELECT * FROM species
            WHERE generation_status = ANY($1::text[])
              AND updated_at < $2
            ORDER BY updated_at
            """,
            [getattr(s, "value", s) for s in statuses],
            cutoff,
        )
        return self.convert_db_rows(rows)

    async def insert_many(self, species_list_id: str, rows: List[Dict[str, Any]]) -> int:
        if not rows:
            return 0

        placeholders = ", ".join(f"${i + 2}" for i in range(len(IMPORT_COLUMNS)))
        query = f"""
        INSERT INTO species (species_list_id, {", ".join(IMPORT_COLUMNS)}, generation_status, created_at, updated_at)
        VALUES ($1::uuid, {placeholders}, 'pending', now(), now())
        """
        args = [
            (species_list_id, *[r.get(c) for c in IMPORT_COLUMNS])
            for r in rows
        ]
        async with self.transaction() as conn:
            await conn.executemany(query, args)

        logger.info("Species inserted", extra={"species_list_id": species_list_id, "count": len(rows)})
        return len(rows)

    async def find_duplicate_ids(self) -> List[str]:
        """Ids of every duplicate except the oldest row per (list, scientific name)."""
        rows = await self.execute_queries(
            """
            SELECT id::text AS id FROM (
              SELECT
                id,
                row_number() OVER (
                  PARTITION BY species_list_id, lower(trim(scientific_name))
                  ORDER BY created_at, id
                ) AS rn
              FROM species
            ) ranked
            WHERE rn > 1
            """
        )
        return [str(r["id"]) for r in rows]

    async def delete_species(self, species_ids: Sequence[str]) -> int:
        if not species_ids:
            return 0
        async with self.transaction() as conn:
            await conn.execute("DELETE FROM species_media WHERE species_id = ANY($1::uuid[])", list(species_ids))
            status = await conn.execute("DELETE FROM species WHERE id = ANY($1::uuid[])", list(species_ids))
        return self.affected_rows(status)

    async def update_fields(self, species_id: str, fields: Dict[str, Any]) -> bool:
        updates = {k: v for k, v in fields.items() if k in EDITABLE_COLUMNS and v is not None}
        if not updates or not is_uuid(species_id):
            return False

        assignments = ", ".join(f"{col} = ${i + 2}" for i, col in enumerate(updates))
        status = await self.execute_command(
            f"UPDATE species SET {assignments}, updated_at = now() WHERE id = $1::uuid",
            species_id,
            *[str(getattr(v, "value", v)) for v in updates.values()],
        )
        return self.affected_rows(status) > 0

    async def ping(self) -> bool:
        return (await self.fetch_scalar("SELECT 1")) == 1
