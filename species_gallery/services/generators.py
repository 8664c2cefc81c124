from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import Any, Dict, Optional

from species_gallery.domain.enums import MediaType
from species_gallery.domain.errors import ProviderError
from species_gallery.services.replicate_client import ReplicateClient

logger = logging.getLogger(__name__)


def _text(species: Dict[str, Any], key: str, default: str) -> str:
    v = species.get(key)
    if v is None:
        return default
    s = str(v).strip()
    return s or default


def build_image_prompt(species: Dict[str, Any]) -> str:
    common = _text(species, "common_name", "an extinct species")
    scientific = _text(species, "scientific_name", "unknown species")
    year = _text(species, "year_extinct", "recent times")
    location = _text(species, "last_location", "its natural habitat")
    return (
        f"A photorealistic image of {common} ({scientific}), an extinct species that lived until {year}. "
        f"Show the animal in its natural habitat of {location}. "
        "High quality, detailed, National Geographic style photography."
    )


def build_video_prompt(species: Dict[str, Any]) -> str:
    common = _text(species, "common_name", "an extinct species")
    scientific = _text(species, "scientific_name", "unknown species")
    return (
        f"A photorealistic video of {common} ({scientific}) in its natural habitat. "
        f"The extinct {common} moves naturally through its environment, "
        "showing realistic behavior and movement patterns."
    )


@dataclass(frozen=True)
class ProviderOutput:
    url: str
    prediction_id: str
    prompt: str


class ImageGenerator:
    """SDXL text-to-image. Output is an array of URLs; the first one is used."""

    media_type = MediaType.image

    def __init__(
        self,
        client: ReplicateClient,
        *,
        version: str,
        poll_seconds: float,
        max_attempts: Optional[int] = None,
    ) -> None:
        self.client = client
        self.version = version
        self.poll_seconds = poll_seconds
        self.max_attempts = max_attempts

    def build_input(self, species: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "prompt": build_image_prompt(species),
            "width": 1024,
            "height": 768,
            "num_outputs": 1,
            "scheduler": "K_EULER",
            "num_inference_steps": 30,
            "guidance_scale": 7.5,
            "seed": random.randint(0, 999_999),
        }

    @staticmethod
    def extract_output(prediction: Dict[str, Any]) -> str:
        output = prediction.get("output")
        if isinstance(output, list) and output and isinstance(output[0], str) and output[0].strip():
            return output[0].strip()
        raise ProviderError(f"replicate_malformed_image_output:{output!r}")

    async def generate(self, species: Dict[str, Any], *, seed_image_url: Optional[str] = None) -> ProviderOutput:
        payload = self.build_input(species)
        prediction = await self.client.create_prediction(payload, version=self.version)
        done = await self.client.wait_for_prediction(
            prediction["id"],
            poll_seconds=self.poll_seconds,
            max_attempts=self.max_attempts,
        )
        return ProviderOutput(url=self.extract_output(done), prediction_id=str(prediction["id"]), prompt=payload["prompt"])


class VideoGenerator:
    """Kling image-to-video. Output is a single URL string."""

    media_type = MediaType.video

    def __init__(
        self,
        client: ReplicateClient,
        *,
        model: str,
        poll_seconds: float,
        max_attempts: Optional[int],
    ) -> None:
        self.client = client
        self.model = model
        self.poll_seconds = poll_seconds
        self.max_attempts = max_attempts

    def build_input(self, species: Dict[str, Any], seed_image_url: str) -> Dict[str, Any]:
        return {
            "prompt": build_video_prompt(species),
            "start_image": seed_image_url,
            "duration": 10,
            "aspect_ratio": "16:9",
            "camera_movement": "none",
        }

    @staticmethod
    def extract_output(prediction: Dict[str, Any]) -> str:
        output = prediction.get("output")
        if isinstance(output, str) and output.strip():
            return output.strip()
        raise ProviderError(f"replicate_malformed_video_output:{output!r}")

    async def generate(self, species: Dict[str, Any], *, seed_image_url: Optional[str] = None) -> ProviderOutput:
        if not seed_image_url:
            raise ValueError("seed_image_url is required for video generation")

        payload = self.build_input(species, seed_image_url)
        prediction = await self.client.create_prediction(payload, model=self.model)
        logger.info(
            "Video prediction submitted",
            extra={"prediction_id": prediction.get("id"), "species_id": species.get("id")},
        )
        done = await self.client.wait_for_prediction(
            prediction["id"],
            poll_seconds=self.poll_seconds,
            max_attempts=self.max_attempts,
        )
        return ProviderOutput(url=self.extract_output(done), prediction_id=str(prediction["id"]), prompt=payload["prompt"])
