from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from species_gallery.domain.enums import GenerationStatus, RecoveryType, RejectReason, SpeciesType


# ============================================================================
# REQUEST MODELS
# ============================================================================


class GenerateImageRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    species_id: Optional[str] = Field(default=None, alias="speciesId")


class GenerateVideoRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    species_id: Optional[str] = Field(default=None, alias="speciesId")
    # Caller-supplied seed image; provenance is not re-derived server-side.
    image_url: Optional[str] = Field(default=None, alias="imageUrl")
    seed_image_version: Optional[int] = Field(default=None, alias="seedImageVersion")


class MediaPatchRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    action: Optional[str] = None
    value: Any = None


class SpeciesListActionRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    action: Optional[str] = None
    list_id: Optional[str] = Field(default=None, alias="listId")


class RecoveryRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: RecoveryType = RecoveryType.comprehensive


class ForceStatusRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    species_id: str = Field(alias="speciesId")
    status: GenerationStatus = GenerationStatus.pending


class FixSpeciesNameRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    species_id: str = Field(alias="speciesId")
    common_name: Optional[str] = Field(default=None, max_length=300)
    scientific_name: Optional[str] = Field(default=None, max_length=300)
    type: Optional[SpeciesType] = None


# ============================================================================
# RESULTS
# ============================================================================


class RecoveryResult(BaseModel):
    success: bool
    fixed: int = 0
    retried: int = 0
    errors: List[str] = Field(default_factory=list)
    message: str = ""
    details: List[Dict[str, Any]] = Field(default_factory=list)


class ImportResult(BaseModel):
    success: bool
    imported: int = 0
    errors: List[str] = Field(default_factory=list)
    species_list_id: Optional[str] = None
    message: str = ""


@dataclass(frozen=True)
class StoredMedia:
    path: str
    public_url: str
    content_type: str
    size_bytes: int


@dataclass(frozen=True)
class GenerationDecision:
    accepted: bool
    reason: Optional[RejectReason] = None
    message: str = ""
    version: Optional[int] = None

    @property
    def status_code(self) -> int:
        if self.accepted:
            return 200
        return {
            RejectReason.rate_limited: 429,
            RejectReason.not_found: 404,
        }.get(self.reason, 400)


@dataclass
class MediaContent:
    """What a finished generation produced, ready to be persisted as a version."""

    provider_url: str
    storage_url: Optional[str] = None
    storage_path: Optional[str] = None
    prediction_id: Optional[str] = None
    prompt: Optional[str] = None
    mime_type: Optional[str] = None
    file_size_bytes: Optional[int] = None
    seed_image_version: Optional[int] = None
    seed_image_url: Optional[str] = None
