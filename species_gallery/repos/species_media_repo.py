from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Set

import asyncpg

from .base_repo import BaseRepository
from ..domain.enums import MediaType
from ..domain.models import MediaContent

logger = logging.getLogger(__name__)

FLAG_COLUMNS = {"is_primary", "is_selected_for_exhibit", "is_favorite"}


class SpeciesMediaRepo(BaseRepository):
    """Repository for species_media - the append-only ledger of generated versions."""

    async def max_version(self, species_id: str, media_type: MediaType) -> int:
        n = await self.fetch_scalar(
            """
            SELECT COALESCE(MAX(version_number), 0)
            FROM species_media
            WHERE species_id = $1::uuid AND media_type = $2
            """,
            species_id,
            MediaType(media_type).value,
        )
        return int(n or 0)

    async def insert_version(
        self,
        species_id: str,
        media_type: MediaType,
        version_number: int,
        content: MediaContent,
        *,
        is_primary: bool,
        is_selected_for_exhibit: bool,
    ) -> Dict[str, Any]:
        q = """
        INSERT INTO species_media (
          species_id, media_type, version_number,
          provider_url, storage_url, storage_path,
          provider_prediction_id, generation_prompt,
          seed_image_version, seed_image_url,
          mime_type, file_size_bytes,
          is_primary, is_selected_for_exhibit,
          created_at, updated_at
        )
        VALUES (
          $1::uuid, $2, $3,
          $4, $5, $6,
          $7, $8,
          $9, $10,
          $11, $12,
          $13, $14,
          now(), now()
        )
        RETURNING *
        """
        row = await self.execute_query(
            q,
            species_id,
            MediaType(media_type).value,
            int(version_number),
            content.provider_url,
            content.storage_url,
            content.storage_path,
            content.prediction_id,
            content.prompt,
            content.seed_image_version,
            content.seed_image_url,
            content.mime_type,
            content.file_size_bytes,
            bool(is_primary),
            bool(is_selected_for_exhibit),
        )
        logger.info(
            "Media version inserted",
            extra={"species_id": species_id, "media_type": MediaType(media_type).value, "version": version_number},
        )
        return self.convert_db_row(row)

    async def list_versions(self, species_id: str, media_type: Optional[MediaType] = None) -> List[Dict[str, Any]]:
        query = "SELECT * FROM species_media WHERE species_id = $1::uuid"
        params: List[Any] = [species_id]
        if media_type is not None:
            query += " AND media_type = $2"
            params.append(MediaType(media_type).value)
        query += " ORDER BY media_type, version_number"

        rows = await self.execute_queries(query, *params)
        return self.convert_db_rows(rows)

    async def count_versions(self, species_id: str, media_type: MediaType) -> int:
        n = await self.fetch_scalar(
            "SELECT COUNT(*) FROM species_media WHERE species_id = $1::uuid AND media_type = $2",
            species_id,
            MediaType(media_type).value,
        )
        return int(n or 0)

    async def clear_flag(self, species_id: str, media_type: MediaType, flag: str) -> None:
        if flag not in FLAG_COLUMNS:
            raise ValueError(f"unknown_media_flag:{flag}")
        await self.execute_command(
            f"""
            UPDATE species_media SET {flag} = false, updated_at = now()
            WHERE species_id = $1::uuid AND media_type = $2
            """,
            species_id,
            MediaType(media_type).value,
        )

    async def set_flag(self, species_id: str, media_type: MediaType, version: int, flag: str, value: bool) -> bool:
        """
        Returns False when no row matched. A missing flag column (older schemas
        without is_favorite) is logged and reported as no-op.
        """
        if flag not in FLAG_COLUMNS:
            raise ValueError(f"unknown_media_flag:{flag}")
        try:
            status = await self.execute_command(
                f"""
                UPDATE species_media SET {flag} = $4, updated_at = now()
                WHERE species_id = $1::uuid AND media_type = $2 AND version_number = $3
                """,
                species_id,
                MediaType(media_type).value,
                int(version),
                bool(value),
            )
        except asyncpg.UndefinedColumnError:
            logger.warning("Media flag column missing; ignoring update", extra={"flag": flag})
            return False
        return self.affected_rows(status) > 0

    async def delete_version(self, species_id: str, media_type: MediaType, version: int) -> bool:
        status = await self.execute_command(
            """
            DELETE FROM species_media
            WHERE species_id = $1::uuid AND media_type = $2 AND version_number = $3
            """,
            species_id,
            MediaType(media_type).value,
            int(version),
        )
        return self.affected_rows(status) > 0

    async def species_ids_with_media(self, species_ids: Iterable[str]) -> Set[str]:
        ids = list(species_ids)
        if not ids:
            return set()
        rows = await self.execute_queries(
            """
            SELECT DISTINCT species_id::text AS species_id
            FROM species_media
            WHERE species_id = ANY($1::uuid[]) AND storage_url IS NOT NULL
            """,
            ids,
        )
        return {str(r["species_id"]) for r in rows}

    async def get_version(self, species_id: str, media_type: MediaType, version: int) -> Optional[Dict[str, Any]]:
        row = await self.execute_query(
            """
            SELECT * FROM species_media
            WHERE species_id = $1::uuid AND media_type = $2 AND version_number = $3
            """,
            species_id,
            MediaType(media_type).value,
            int(version),
        )
        return self.convert_db_row(row) if row else None
