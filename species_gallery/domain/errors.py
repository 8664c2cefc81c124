from __future__ import annotations

from typing import Optional


class ProviderError(RuntimeError):
    """Replicate rejected the request, failed the prediction or returned unusable output."""


class ProviderTimeoutError(ProviderError):
    pass


class MediaStorageError(RuntimeError):
    def __init__(self, message: str, *, attempts: int, last_error: Optional[str] = None):
        super().__init__(f"{message} after {attempts} attempts: {last_error or 'unknown error'}")
        self.attempts = attempts
        self.last_error = last_error


class SpeciesNotFoundError(LookupError):
    def __init__(self, species_id: str):
        super().__init__(f"Species not found: {species_id}")
        self.species_id = species_id
