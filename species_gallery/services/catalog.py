from __future__ import annotations

import csv
import io
import logging
from typing import Any, Dict, List, Optional, Tuple

from species_gallery.domain.enums import GenerationStatus, SpeciesType
from species_gallery.domain.errors import SpeciesNotFoundError
from species_gallery.domain.models import ImportResult
from species_gallery.repos.species_lists_repo import SpeciesListsRepo
from species_gallery.repos.species_repo import SpeciesRepo

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = (
    "common_name",
    "scientific_name",
    "extinction_date",
    "type",
    "region",
    "habitat",
    "extinction_cause",
    "last_seen",
    "description",
    "sources",
)

# (field, label) checked for non-empty values on import
REQUIRED_VALUES = (
    ("scientific_name", "scientific name"),
    ("common_name", "common name"),
    ("extinction_date", "extinction date"),
    ("region", "region"),
    ("habitat", "habitat"),
    ("extinction_cause", "extinction cause"),
    ("description", "description"),
    ("sources", "sources"),
)

EXPORT_COLUMNS: Tuple[Tuple[str, Any], ...] = (
    ("Scientific Name", lambda s: s.get("scientific_name")),
    ("Common Name", lambda s: s.get("common_name")),
    ("Year Extinct", lambda s: s.get("year_extinct")),
    ("Last Location", lambda s: s.get("last_location")),
    ("Extinction Cause", lambda s: s.get("extinction_cause")),
    ("Type", lambda s: s.get("type")),
    ("Image URL", lambda s: s.get("current_image_url") or s.get("storage_image_url") or s.get("image_url")),
    ("Video URL", lambda s: s.get("current_video_url") or s.get("storage_video_url") or s.get("video_url")),
    ("Generation Status", lambda s: s.get("generation_status")),
    ("Display Order", lambda s: s.get("display_order")),
)


class CSVFormatError(ValueError):
    pass


def parse_csv(text: str) -> List[Dict[str, str]]:
    """Header row required; blank lines skipped. Raises CSVFormatError."""
    text = (text or "").lstrip("\ufeff")
    reader = csv.DictReader(io.StringIO(text))
    try:
        rows = [r for r in reader if any((v or "").strip() for v in r.values() if isinstance(v, str))]
    except csv.Error as e:
        raise CSVFormatError(f"Failed to parse CSV: {e}") from e

    if not rows:
        raise CSVFormatError("CSV file is empty")

    header = [h.strip() for h in (reader.fieldnames or [])]
    missing = [c for c in REQUIRED_COLUMNS if c not in header]
    if missing:
        raise CSVFormatError(f"Missing required columns: {', '.join(missing)}")

    return [{(k or "").strip(): (v or "").strip() if isinstance(v, str) else "" for k, v in r.items()} for r in rows]


def convert_rows(rows: List[Dict[str, str]]) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    for index, row in enumerate(rows):
        out.append(
            {
                "scientific_name": row.get("scientific_name", ""),
                "common_name": row.get("common_name", ""),
                # legacy columns the gallery and prompts still read
                "year_extinct": row.get("extinction_date", ""),
                "last_location": row.get("region", ""),
                "extinction_cause": row.get("extinction_cause", ""),
                "extinction_date": row.get("extinction_date", ""),
                "type": row.get("type") or SpeciesType.animal.value,
                "region": row.get("region", ""),
                "habitat": row.get("habitat", ""),
                "last_seen": row.get("last_seen", ""),
                "description": row.get("description", ""),
                "sources": row.get("sources", ""),
                "generation_status": GenerationStatus.pending.value,
                "display_order": index + 1,
            }
        )
    return out


def validate_species(species: List[Dict[str, Any]]) -> List[str]:
    errors: List[str] = []
    allowed_types = {t.value for t in SpeciesType}
    for index, sp in enumerate(species):
        row_num = index + 1
        for field_name, label in REQUIRED_VALUES:
            if not sp.get(field_name):
                errors.append(f"Row {row_num}: Missing {label}")
        if sp.get("type") not in allowed_types:
            errors.append(f"Row {row_num}: Invalid or missing type (must be 'Animal' or 'Plant')")
    return errors


def _cell(value: Any) -> Any:
    return "" if value is None else value


def render_csv(species: List[Dict[str, Any]]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow([label for label, _ in EXPORT_COLUMNS])
    for sp in species:
        writer.writerow([_cell(get(sp)) for _, get in EXPORT_COLUMNS])
    return buf.getvalue()


class CatalogService:
    """Species lists, CSV import/export and admin data corrections."""

    def __init__(self, species_repo: SpeciesRepo, lists_repo: SpeciesListsRepo):
        self.species_repo = species_repo
        self.lists_repo = lists_repo

    async def import_csv(
        self,
        text: str,
        *,
        list_name: str,
        list_description: Optional[str] = None,
        csv_filename: Optional[str] = None,
    ) -> ImportResult:
        try:
            rows = parse_csv(text)
        except CSVFormatError as e:
            return ImportResult(success=False, errors=[str(e)], message="Failed to read CSV file")

        species = convert_rows(rows)
        errors = validate_species(species)
        if errors:
            return ImportResult(success=False, errors=errors, message="Validation failed")

        species_list = await self.lists_repo.create_list(
            name=list_name,
            description=list_description,
            csv_filename=csv_filename,
            total_species_count=len(species),
        )
        list_id = str(species_list["id"])

        imported = await self.species_repo.insert_many(list_id, species)
        await self.lists_repo.update_count(list_id, imported)

        logger.info("CSV import completed", extra={"species_list_id": list_id, "imported": imported})
        return ImportResult(
            success=True,
            imported=imported,
            species_list_id=list_id,
            message=f'Successfully imported {imported} species to "{list_name}" list',
        )

    async def export_csv(self, list_id: Optional[str] = None) -> str:
        species = await self.species_repo.list_species(list_id)
        return render_csv(species)

    async def list_lists(self) -> List[Dict[str, Any]]:
        return await self.lists_repo.list_lists()

    async def set_active_list(self, list_id: str) -> bool:
        return await self.lists_repo.set_active(list_id)

    async def remove_duplicates(self) -> Dict[str, Any]:
        ids = await self.species_repo.find_duplicate_ids()
        removed = await self.species_repo.delete_species(ids)
        logger.info("Duplicate species removed", extra={"removed": removed})
        return {"removed": removed, "species_ids": ids}

    async def fix_species_name(
        self,
        species_id: str,
        *,
        common_name: Optional[str] = None,
        scientific_name: Optional[str] = None,
        type: Optional[SpeciesType] = None,
    ) -> Dict[str, Any]:
        existing = await self.species_repo.get_species(species_id)
        if not existing:
            raise SpeciesNotFoundError(species_id)

        fields = {
            "common_name": (common_name or "").strip() or None,
            "scientific_name": (scientific_name or "").strip() or None,
            "type": SpeciesType(type).value if type else None,
        }
        changed = await self.species_repo.update_fields(species_id, fields)
        updated = await self.species_repo.get_species(species_id) if changed else existing
        return {"changed": changed, "species": updated}

    async def force_status(self, species_id: str, status: GenerationStatus) -> Dict[str, Any]:
        existing = await self.species_repo.get_species(species_id)
        if not existing:
            raise SpeciesNotFoundError(species_id)
        await self.species_repo.update_status(species_id, status)
        logger.warning(
            "Species status forced",
            extra={"species_id": species_id, "from": existing.get("generation_status"), "to": GenerationStatus(status).value},
        )
        return {"species_id": species_id, "previous_status": existing.get("generation_status"), "status": GenerationStatus(status).value}
