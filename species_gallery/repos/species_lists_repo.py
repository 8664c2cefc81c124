from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from .base_repo import BaseRepository
from .species_repo import is_uuid

logger = logging.getLogger(__name__)


class SpeciesListsRepo(BaseRepository):
    """Repository for species_lists - one row per imported catalog."""

    async def list_lists(self) -> List[Dict[str, Any]]:
        rows = await self.execute_queries("SELECT * FROM species_lists ORDER BY created_at DESC")
        return self.convert_db_rows(rows)

    async def get_active(self) -> Optional[Dict[str, Any]]:
        row = await self.execute_query(
            "SELECT * FROM species_lists WHERE is_active = true ORDER BY updated_at DESC LIMIT 1"
        )
        return self.convert_db_row(row) if row else None

    async def create_list(
        self,
        *,
        name: str,
        description: Optional[str],
        csv_filename: Optional[str],
        total_species_count: int,
    ) -> Dict[str, Any]:
        """
        Creates the list as the active one. Other lists are deactivated first;
        two concurrent imports can race here.
        """
        await self.execute_command("UPDATE species_lists SET is_active = false, updated_at = now() WHERE is_active = true")
        row = await self.execute_query(
            """
            INSERT INTO species_lists (name, description, csv_filename, total_species_count, is_active, created_at, updated_at)
            VALUES ($1, $2, $3, $4, true, now(), now())
            RETURNING *
            """,
            name,
            description,
            csv_filename,
            int(total_species_count),
        )
        created = self.convert_db_row(row)
        logger.info("Species list created", extra={"species_list_id": created.get("id"), "list_name": name})
        return created

    async def set_active(self, list_id: str) -> bool:
        if not is_uuid(list_id):
            return False
        exists = await self.fetch_scalar("SELECT 1 FROM species_lists WHERE id = $1::uuid", list_id)
        if not exists:
            return False

        await self.execute_command("UPDATE species_lists SET is_active = false, updated_at = now() WHERE is_active = true")
        await self.execute_command(
            "UPDATE species_lists SET is_active = true, updated_at = now() WHERE id = $1::uuid",
            list_id,
        )
        logger.info("Species list activated", extra={"species_list_id": list_id})
        return True

    async def update_count(self, list_id: str, total_species_count: int) -> None:
        await self.execute_command(
            "UPDATE species_lists SET total_species_count = $2, updated_at = now() WHERE id = $1::uuid",
            list_id,
            int(total_species_count),
        )
