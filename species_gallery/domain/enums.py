from __future__ import annotations

from enum import Enum


class MediaType(str, Enum):
    image = "image"
    video = "video"


class GenerationStatus(str, Enum):
    pending = "pending"
    generating_image = "generating_image"
    generating_video = "generating_video"
    image_generated = "image_generated"
    completed = "completed"
    error = "error"

    @classmethod
    def generating(cls, media_type: MediaType) -> "GenerationStatus":
        return cls.generating_image if MediaType(media_type) == MediaType.image else cls.generating_video


class SpeciesType(str, Enum):
    animal = "Animal"
    plant = "Plant"


class MediaAction(str, Enum):
    favorite = "favorite"
    set_primary = "setPrimary"
    set_for_exhibit = "setForExhibit"


class EventType(str, Enum):
    connection = "connection"
    heartbeat = "heartbeat"
    media_generated = "media_generated"
    species_updated = "species_updated"
    generation_failed = "generation_failed"


class RejectReason(str, Enum):
    rate_limited = "rate_limited"
    duplicate_request = "duplicate_request"
    not_found = "not_found"
    validation = "validation"


class RecoveryType(str, Enum):
    comprehensive = "comprehensive"
    fix_errors = "fix-errors"
    reset_stuck = "reset-stuck"
