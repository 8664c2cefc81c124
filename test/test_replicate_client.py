import json

import httpx
import pytest

from species_gallery.domain.errors import ProviderError, ProviderTimeoutError
from species_gallery.services.generators import (
    ImageGenerator,
    VideoGenerator,
    build_image_prompt,
    build_video_prompt,
)
from species_gallery.services.replicate_client import ReplicateClient

BASE = "https://replicate.test"


class ScriptedReplicate:
    """Answers create with a fixed id and each poll with the next scripted status."""

    def __init__(self, statuses, output=None, error=None):
        self.statuses = list(statuses)
        self.output = output
        self.error = error
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        self.requests.append((request.method, request.url.path, body, request.headers.get("authorization")))
        if request.method == "POST":
            return httpx.Response(201, json={"id": "pred-1", "status": "starting"})
        status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        payload = {"id": "pred-1", "status": status}
        if status == "succeeded":
            payload["output"] = self.output
        if self.error:
            payload["error"] = self.error
        return httpx.Response(200, json=payload)


async def _no_sleep(_seconds):
    return None


def make_client(handler):
    return ReplicateClient(
        api_token="r8_test",
        base_url=BASE,
        transport=httpx.MockTransport(handler),
        sleep=_no_sleep,
    )


@pytest.fixture
def species():
    return {
        "id": "3f2b8c1e-9d4a-4c7e-8a1b-5e6f7a8b9c0d",
        "common_name": "Dodo",
        "scientific_name": "Raphus cucullatus",
        "year_extinct": "1681",
        "last_location": "Mauritius",
    }


def test_prompts_fill_defaults():
    """Missing fields fall back to neutral wording"""
    prompt = build_image_prompt({"common_name": "  "})
    assert "an extinct species (unknown species)" in prompt
    assert "lived until recent times" in prompt
    assert "natural habitat of its natural habitat" in prompt

    video = build_video_prompt({"common_name": "Quagga", "scientific_name": "Equus quagga quagga"})
    assert video.startswith("A photorealistic video of Quagga (Equus quagga quagga)")


@pytest.mark.asyncio
async def test_create_prediction_versioned_and_model_routes():
    """version goes to /v1/predictions, model to /v1/models/{model}/predictions"""
    handler = ScriptedReplicate(["succeeded"])
    client = make_client(handler)

    await client.create_prediction({"prompt": "x"}, version="abc123")
    await client.create_prediction({"prompt": "y"}, model="kwaivgi/kling-v1.6-standard")

    (m1, path1, body1, auth1), (m2, path2, body2, _) = handler.requests
    assert (m1, path1) == ("POST", "/v1/predictions")
    assert body1 == {"version": "abc123", "input": {"prompt": "x"}}
    assert auth1 == "Bearer r8_test"
    assert (m2, path2) == ("POST", "/v1/models/kwaivgi/kling-v1.6-standard/predictions")
    assert body2 == {"input": {"prompt": "y"}}


@pytest.mark.asyncio
async def test_create_prediction_error_status():
    """4xx from Replicate is a ProviderError"""
    client = make_client(lambda request: httpx.Response(422, json={"detail": "bad input"}))

    with pytest.raises(ProviderError, match="422"):
        await client.create_prediction({"prompt": "x"}, version="abc")


@pytest.mark.asyncio
async def test_missing_token_is_rejected():
    """No API token means no request is sent"""
    client = ReplicateClient(api_token="", base_url=BASE, transport=httpx.MockTransport(lambda r: httpx.Response(500)))
    client.api_token = ""

    with pytest.raises(ProviderError, match="REPLICATE_API_TOKEN"):
        await client.create_prediction({"prompt": "x"}, version="abc")


@pytest.mark.asyncio
async def test_wait_polls_until_succeeded():
    """starting/processing keep polling; succeeded returns the prediction"""
    handler = ScriptedReplicate(["starting", "processing", "succeeded"], output=["https://x/out.png"])
    slept = []

    async def record(seconds):
        slept.append(seconds)

    client = ReplicateClient(api_token="t", base_url=BASE, transport=httpx.MockTransport(handler), sleep=record)
    result = await client.wait_for_prediction("pred-1", poll_seconds=1.5)

    assert result["status"] == "succeeded"
    assert slept == [1.5, 1.5]
    assert [r[1] for r in handler.requests] == ["/v1/predictions/pred-1"] * 3


@pytest.mark.asyncio
async def test_wait_raises_on_failed_prediction():
    """failed is terminal and carries the provider error text"""
    client = make_client(ScriptedReplicate(["failed"], error="NSFW content detected"))

    with pytest.raises(ProviderError, match="replicate_prediction_failed:NSFW content detected"):
        await client.wait_for_prediction("pred-1", poll_seconds=0)


@pytest.mark.asyncio
async def test_wait_times_out_after_max_attempts():
    """A prediction still processing after max_attempts polls is a timeout"""
    handler = ScriptedReplicate(["processing"])
    client = make_client(handler)

    with pytest.raises(ProviderTimeoutError):
        await client.wait_for_prediction("pred-1", poll_seconds=2, max_attempts=4)

    assert len(handler.requests) == 4


@pytest.mark.asyncio
async def test_image_generator_uses_first_output(species):
    """SDXL output list; first URL wins"""
    handler = ScriptedReplicate(["succeeded"], output=["https://x/a.png", "https://x/b.png"])
    gen = ImageGenerator(make_client(handler), version="sdxl-v", poll_seconds=0)

    out = await gen.generate(species)

    assert out.url == "https://x/a.png"
    assert out.prediction_id == "pred-1"
    sent = handler.requests[0][2]["input"]
    assert sent["width"] == 1024 and sent["height"] == 768
    assert sent["scheduler"] == "K_EULER"
    assert "Dodo (Raphus cucullatus)" in sent["prompt"]


@pytest.mark.asyncio
async def test_image_generator_rejects_malformed_output(species):
    """Empty output list is a provider failure"""
    gen = ImageGenerator(make_client(ScriptedReplicate(["succeeded"], output=[])), version="v", poll_seconds=0)

    with pytest.raises(ProviderError, match="malformed_image_output"):
        await gen.generate(species)


@pytest.mark.asyncio
async def test_video_generator_requires_seed_image(species):
    """Video input carries the seed image and a single URL comes back"""
    handler = ScriptedReplicate(["succeeded"], output="https://x/clip.mp4")
    gen = VideoGenerator(make_client(handler), model="kwaivgi/kling-v1.6-standard", poll_seconds=0, max_attempts=3)

    with pytest.raises(ValueError):
        await gen.generate(species)

    out = await gen.generate(species, seed_image_url="https://blob/images/dodo.png")
    assert out.url == "https://x/clip.mp4"
    sent = handler.requests[0][2]["input"]
    assert sent["start_image"] == "https://blob/images/dodo.png"
    assert sent["duration"] == 10
    assert sent["aspect_ratio"] == "16:9"
