"""
In-memory stand-ins for the asyncpg repositories, the Replicate generators,
the media storage adapter and the Azure container client.
"""
from __future__ import annotations

import asyncio
import copy
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any, Dict, List, Optional
from uuid import uuid4

import pytest
from azure.core.exceptions import ResourceExistsError, ResourceNotFoundError

from species_gallery.container import AppServices
from species_gallery.domain.enums import MediaType
from species_gallery.domain.models import StoredMedia
from species_gallery.repos.species_repo import media_columns
from species_gallery.services.catalog import CatalogService
from species_gallery.services.event_hub import EventHub
from species_gallery.services.generation_orchestrator import GenerationOrchestrator
from species_gallery.services.generators import ProviderOutput
from species_gallery.services.media_storage import MediaStorageService
from species_gallery.services.recovery import RecoverySweeper
from species_gallery.services.versioning import VersioningService


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _v(x: Any) -> Any:
    return getattr(x, "value", x)


# ------------------------------------------------------------------------------
# Repositories
# ------------------------------------------------------------------------------

@dataclass
class FakeDB:
    species: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    media: List[Dict[str, Any]] = field(default_factory=list)
    lists: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def add_species(self, **overrides) -> Dict[str, Any]:
        sid = overrides.pop("id", None) or str(uuid4())
        now = utcnow()
        row = {
            "id": sid,
            "species_list_id": None,
            "scientific_name": "Raphus cucullatus",
            "common_name": "Dodo",
            "year_extinct": "1681",
            "last_location": "Mauritius",
            "type": "Animal",
            "display_order": len(self.species) + 1,
            "image_url": None,
            "video_url": None,
            "storage_image_url": None,
            "storage_video_url": None,
            "storage_image_path": None,
            "storage_video_path": None,
            "image_generated_at": None,
            "video_generated_at": None,
            "current_image_url": None,
            "current_video_url": None,
            "current_displayed_image_version": 1,
            "current_displayed_video_version": 1,
            "total_image_versions": 0,
            "total_video_versions": 0,
            "generation_status": "pending",
            "created_at": now,
            "updated_at": now,
        }
        row.update(overrides)
        self.species[sid] = row
        return row


class FakeSpeciesRepo:
    def __init__(self, db: FakeDB):
        self.db = db
        self.status_writes: List[tuple] = []

    def _touch(self, species_id: str, **values) -> None:
        row = self.db.species.get(species_id)
        if row is None:
            return
        row.update(values)
        row["updated_at"] = utcnow()

    async def get_species(self, species_id: str) -> Optional[Dict[str, Any]]:
        row = self.db.species.get(species_id)
        return copy.deepcopy(row) if row else None

    async def list_species(self, species_list_id: Optional[str] = None) -> List[Dict[str, Any]]:
        if species_list_id is None:
            active = [l for l in self.db.lists.values() if l["is_active"]]
            species_list_id = active[0]["id"] if active else None
        rows = list(self.db.species.values())
        if species_list_id is not None:
            rows = [r for r in rows if r.get("species_list_id") == species_list_id]
        rows.sort(key=lambda r: (r.get("display_order") or 0, r.get("common_name") or ""))
        return copy.deepcopy(rows)

    async def update_status(self, species_id: str, status) -> None:
        self.status_writes.append((species_id, _v(status)))
        self._touch(species_id, generation_status=_v(status))

    async def update_version_summary(self, species_id, media_type, *, total_versions, current_version, current_url=None):
        cols = media_columns(media_type)
        values = {cols["total_versions"]: total_versions, cols["current_version"]: current_version}
        if current_url is not None:
            values[cols["current_url"]] = current_url
        self._touch(species_id, **values)

    async def set_current_version(self, species_id, media_type, version):
        self._touch(species_id, **{media_columns(media_type)["current_version"]: version})

    async def update_legacy_media(self, species_id, media_type, *, provider_url, storage_url, storage_path):
        cols = media_columns(media_type)
        self._touch(
            species_id,
            **{
                cols["provider_url"]: provider_url,
                cols["storage_url"]: storage_url,
                cols["storage_path"]: storage_path,
                cols["current_url"]: storage_url or provider_url,
                cols["generated_at"]: utcnow(),
            },
        )

    async def list_by_status(self, statuses) -> List[Dict[str, Any]]:
        wanted = {_v(s) for s in statuses}
        return copy.deepcopy([r for r in self.db.species.values() if r["generation_status"] in wanted])

    async def list_by_status_older_than(self, statuses, cutoff) -> List[Dict[str, Any]]:
        wanted = {_v(s) for s in statuses}
        return copy.deepcopy(
            [r for r in self.db.species.values() if r["generation_status"] in wanted and r["updated_at"] < cutoff]
        )

    async def insert_many(self, species_list_id: str, rows: List[Dict[str, Any]]) -> int:
        for r in rows:
            self.db.add_species(species_list_id=species_list_id, **r)
        return len(rows)

    async def find_duplicate_ids(self) -> List[str]:
        seen = set()
        dupes = []
        for r in sorted(self.db.species.values(), key=lambda r: (r["created_at"], r["id"])):
            key = (r.get("species_list_id"), (r.get("scientific_name") or "").strip().lower())
            if key in seen:
                dupes.append(r["id"])
            seen.add(key)
        return dupes

    async def delete_species(self, species_ids) -> int:
        ids = set(species_ids)
        self.db.media = [m for m in self.db.media if m["species_id"] not in ids]
        before = len(self.db.species)
        for sid in ids:
            self.db.species.pop(sid, None)
        return before - len(self.db.species)

    async def update_fields(self, species_id: str, fields: Dict[str, Any]) -> bool:
        updates = {k: _v(v) for k, v in fields.items() if v is not None}
        if not updates or species_id not in self.db.species:
            return False
        self._touch(species_id, **updates)
        return True

    async def ping(self) -> bool:
        return True


class FakeMediaRepo:
    def __init__(self, db: FakeDB):
        self.db = db
        self.fail_inserts = False
        self.missing_columns: set = set()

    def _rows(self, species_id, media_type=None):
        return [
            m
            for m in self.db.media
            if m["species_id"] == species_id and (media_type is None or m["media_type"] == _v(media_type))
        ]

    async def max_version(self, species_id, media_type) -> int:
        return max((m["version_number"] for m in self._rows(species_id, media_type)), default=0)

    async def insert_version(self, species_id, media_type, version_number, content, *, is_primary, is_selected_for_exhibit):
        if self.fail_inserts:
            raise RuntimeError('relation "species_media" does not exist')
        if any(m["version_number"] == version_number for m in self._rows(species_id, media_type)):
            raise RuntimeError("duplicate key value violates unique constraint")
        now = utcnow()
        row = {
            "id": str(uuid4()),
            "species_id": species_id,
            "media_type": _v(media_type),
            "version_number": version_number,
            "provider_url": content.provider_url,
            "storage_url": content.storage_url,
            "storage_path": content.storage_path,
            "provider_prediction_id": content.prediction_id,
            "generation_prompt": content.prompt,
            "seed_image_version": content.seed_image_version,
            "seed_image_url": content.seed_image_url,
            "mime_type": content.mime_type,
            "file_size_bytes": content.file_size_bytes,
            "is_primary": is_primary,
            "is_selected_for_exhibit": is_selected_for_exhibit,
            "is_favorite": False,
            "created_at": now,
            "updated_at": now,
        }
        self.db.media.append(row)
        return copy.deepcopy(row)

    async def list_versions(self, species_id, media_type=None):
        rows = sorted(self._rows(species_id, media_type), key=lambda m: (m["media_type"], m["version_number"]))
        return copy.deepcopy(rows)

    async def count_versions(self, species_id, media_type) -> int:
        return len(self._rows(species_id, media_type))

    async def get_version(self, species_id, media_type, version):
        for m in self._rows(species_id, media_type):
            if m["version_number"] == int(version):
                return copy.deepcopy(m)
        return None

    async def clear_flag(self, species_id, media_type, flag) -> None:
        for m in self._rows(species_id, media_type):
            m[flag] = False

    async def set_flag(self, species_id, media_type, version, flag, value) -> bool:
        if flag in self.missing_columns:
            return False
        hit = False
        for m in self._rows(species_id, media_type):
            if m["version_number"] == int(version):
                m[flag] = bool(value)
                hit = True
        return hit

    async def delete_version(self, species_id, media_type, version) -> bool:
        before = len(self.db.media)
        self.db.media = [
            m
            for m in self.db.media
            if not (m["species_id"] == species_id and m["media_type"] == _v(media_type) and m["version_number"] == int(version))
        ]
        return len(self.db.media) < before

    async def species_ids_with_media(self, species_ids):
        ids = set(species_ids)
        return {m["species_id"] for m in self.db.media if m["species_id"] in ids and m.get("storage_url")}


class FakeListsRepo:
    def __init__(self, db: FakeDB):
        self.db = db

    async def list_lists(self):
        return copy.deepcopy(sorted(self.db.lists.values(), key=lambda l: l["created_at"], reverse=True))

    async def get_active(self):
        for l in self.db.lists.values():
            if l["is_active"]:
                return copy.deepcopy(l)
        return None

    async def create_list(self, *, name, description, csv_filename, total_species_count):
        for l in self.db.lists.values():
            l["is_active"] = False
        lid = str(uuid4())
        row = {
            "id": lid,
            "name": name,
            "description": description,
            "csv_filename": csv_filename,
            "total_species_count": total_species_count,
            "is_active": True,
            "created_at": utcnow(),
            "updated_at": utcnow(),
        }
        self.db.lists[lid] = row
        return copy.deepcopy(row)

    async def set_active(self, list_id):
        if list_id not in self.db.lists:
            return False
        for l in self.db.lists.values():
            l["is_active"] = l["id"] == list_id
        return True

    async def update_count(self, list_id, total_species_count):
        self.db.lists[list_id]["total_species_count"] = total_species_count


# ------------------------------------------------------------------------------
# Provider + storage
# ------------------------------------------------------------------------------

class FakeGenerator:
    """Resolves when `gate` is set (immediately when gate is None)."""

    def __init__(self, media_type: MediaType, *, gate: Optional[asyncio.Event] = None, error: Optional[Exception] = None):
        self.media_type = media_type
        self.gate = gate
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    async def generate(self, species, *, seed_image_url=None) -> ProviderOutput:
        self.calls.append({"species_id": species["id"], "seed_image_url": seed_image_url})
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        n = len(self.calls)
        ext = "png" if self.media_type == MediaType.image else "mp4"
        return ProviderOutput(
            url=f"https://replicate.delivery/out/{species['id'][:8]}-{n}.{ext}",
            prediction_id=f"pred-{n}",
            prompt=f"prompt for {species.get('common_name')}",
        )


class FakeStorage:
    def __init__(self):
        self.calls: List[tuple] = []
        self.error: Optional[Exception] = None

    async def store(self, remote_url, species_id, media_type, display_name, version) -> StoredMedia:
        self.calls.append((remote_url, species_id, _v(media_type), display_name, version))
        if self.error is not None:
            raise self.error
        folder = "images" if _v(media_type) == "image" else "videos"
        path = f"{folder}/{display_name.lower()}_{species_id[:8]}_v{version}_1700000000000.bin"
        return StoredMedia(
            path=path,
            public_url=f"https://acct.blob.core.windows.net/species-media/{path}",
            content_type="image/png" if folder == "images" else "video/mp4",
            size_bytes=1234,
        )


class FakeContainerClient:
    """Subset of azure.storage.blob.ContainerClient used by MediaStorageService."""

    url = "https://acct.blob.core.windows.net/species-media"

    def __init__(self, *, exists: bool = False, fail_uploads: int = 0):
        self.exists = exists
        self.public_access = None
        self.blobs: Dict[str, Dict[str, Any]] = {}
        self.fail_uploads = fail_uploads
        self.upload_attempts = 0

    def get_container_properties(self):
        if not self.exists:
            raise ResourceNotFoundError("ContainerNotFound")
        return {"name": "species-media"}

    def create_container(self, public_access=None):
        if self.exists:
            raise ResourceExistsError("ContainerAlreadyExists")
        self.exists = True
        self.public_access = public_access

    def upload_blob(self, name, data, overwrite=False, content_settings=None):
        self.upload_attempts += 1
        if self.fail_uploads > 0:
            self.fail_uploads -= 1
            raise ConnectionError("upload connection reset")
        if name in self.blobs and not overwrite:
            raise ResourceExistsError("BlobAlreadyExists")
        self.blobs[name] = {
            "data": bytes(data),
            "content_type": getattr(content_settings, "content_type", None),
            "last_modified": utcnow(),
        }

    def list_blobs(self, name_starts_with=None):
        for name, b in sorted(self.blobs.items()):
            if name_starts_with and not name.startswith(name_starts_with):
                continue
            yield SimpleNamespace(
                name=name,
                size=len(b["data"]),
                content_settings=SimpleNamespace(content_type=b["content_type"]),
                last_modified=b["last_modified"],
            )

    def delete_blob(self, name):
        if name not in self.blobs:
            raise ResourceNotFoundError("BlobNotFound")
        del self.blobs[name]


# ------------------------------------------------------------------------------
# Fixtures
# ------------------------------------------------------------------------------

@pytest.fixture
def db() -> FakeDB:
    return FakeDB()


@pytest.fixture
def species_repo(db) -> FakeSpeciesRepo:
    return FakeSpeciesRepo(db)


@pytest.fixture
def media_repo(db) -> FakeMediaRepo:
    return FakeMediaRepo(db)


@pytest.fixture
def lists_repo(db) -> FakeListsRepo:
    return FakeListsRepo(db)


@pytest.fixture
def events() -> EventHub:
    return EventHub(heartbeat_seconds=0.05, queue_size=10)


@pytest.fixture
def versioning(species_repo, media_repo) -> VersioningService:
    return VersioningService(species_repo, media_repo)


@pytest.fixture
def fake_storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def image_generator() -> FakeGenerator:
    return FakeGenerator(MediaType.image)


@pytest.fixture
def video_generator() -> FakeGenerator:
    return FakeGenerator(MediaType.video)


@pytest.fixture
def orchestrator(species_repo, media_repo, versioning, fake_storage, image_generator, video_generator, events):
    return GenerationOrchestrator(
        species_repo=species_repo,
        media_repo=media_repo,
        versioning=versioning,
        storage=fake_storage,
        image_generator=image_generator,
        video_generator=video_generator,
        events=events,
        image_max_concurrent=5,
        video_max_concurrent=3,
        broadcast_failures=False,
    )


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.t = start

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sweeper(species_repo, media_repo, events, clock) -> RecoverySweeper:
    return RecoverySweeper(
        species_repo=species_repo,
        media_repo=media_repo,
        events=events,
        error_grace_seconds=120,
        stuck_seconds=600,
        min_interval_seconds=30,
        monotonic=clock,
    )


@pytest.fixture
def container_client() -> FakeContainerClient:
    return FakeContainerClient(exists=True)


@pytest.fixture
def services(species_repo, media_repo, lists_repo, events, versioning, orchestrator, sweeper, container_client):
    return AppServices(
        species_repo=species_repo,
        media_repo=media_repo,
        lists_repo=lists_repo,
        events=events,
        storage=MediaStorageService(container_client=container_client),
        versioning=versioning,
        orchestrator=orchestrator,
        recovery=sweeper,
        catalog=CatalogService(species_repo, lists_repo),
    )


def minutes_ago(n: float) -> datetime:
    return utcnow() - timedelta(minutes=n)
