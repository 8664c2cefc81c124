from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from species_gallery.config import settings
from species_gallery.domain.errors import ProviderError, ProviderTimeoutError

logger = logging.getLogger("replicate")

TERMINAL_OK = "succeeded"
TERMINAL_FAILED = ("failed", "canceled")


def _safe_json(resp: httpx.Response) -> Dict[str, Any]:
    text = (resp.text or "").strip()
    if not text:
        raise ProviderError(f"replicate_empty_body status={resp.status_code}")
    try:
        obj = resp.json()
    except json.JSONDecodeError as e:
        raise ProviderError(f"replicate_invalid_json: {str(e)} body={text[:200]}") from e
    if not isinstance(obj, dict):
        raise ProviderError(f"replicate_unexpected_json_type: {type(obj)}")
    return obj


class ReplicateClient:
    """
    Minimal wrapper around the Replicate predictions API.

    Versioned models are submitted to /v1/predictions with {"version", "input"};
    official models ("owner/name") go to /v1/models/{owner}/{name}/predictions.
    A prediction is polled until it reaches succeeded / failed / canceled.
    """

    provider_name = "replicate"

    def __init__(
        self,
        *,
        api_token: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.api_token = (api_token or settings.REPLICATE_API_TOKEN or "").strip()
        self.base = (base_url or settings.REPLICATE_BASE_URL).rstrip("/")
        self.timeout = settings.REPLICATE_TIMEOUT_SECONDS if timeout is None else timeout
        self._transport = transport
        self._sleep = sleep

    def _headers(self) -> Dict[str, str]:
        if not self.api_token:
            raise ProviderError("REPLICATE_API_TOKEN is not set.")
        return {
            "Authorization": f"Bearer {self.api_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    @retry(
        reraise=True,
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4.0),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.TransportError)),
    )
    async def create_prediction(
        self,
        input: Dict[str, Any],
        *,
        version: Optional[str] = None,
        model: Optional[str] = None,
    ) -> Dict[str, Any]:
        if version:
            url = f"{self.base}/v1/predictions"
            payload: Dict[str, Any] = {"version": version, "input": input}
        elif model:
            url = f"{self.base}/v1/models/{model.strip('/')}/predictions"
            payload = {"input": input}
        else:
            raise ValueError("version_or_model_required")

        async with self._client() as client:
            r = await client.post(url, headers=self._headers(), json=payload)

        if r.status_code >= 400:
            raise ProviderError(f"Replicate create failed {r.status_code}: {r.text[:500]}")

        data = _safe_json(r)
        if not data.get("id"):
            raise ProviderError(f"Replicate create missing prediction id. Response: {data}")

        logger.info(
            "replicate_prediction_created",
            extra={"prediction_id": data.get("id"), "status": data.get("status"), "model": model or version},
        )
        return data

    @retry(
        reraise=True,
        stop=stop_after_attempt(4),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=6.0),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.TransportError)),
    )
    async def get_prediction(self, prediction_id: str) -> Dict[str, Any]:
        prediction_id = (prediction_id or "").strip()
        if not prediction_id:
            raise ValueError("prediction_id_required")

        async with self._client() as client:
            r = await client.get(f"{self.base}/v1/predictions/{prediction_id}", headers=self._headers())

        if r.status_code >= 400:
            raise ProviderError(f"Replicate get failed {r.status_code}: {r.text[:500]}")
        return _safe_json(r)

    async def wait_for_prediction(
        self,
        prediction_id: str,
        *,
        poll_seconds: float,
        max_attempts: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Poll until terminal. Without max_attempts this polls until the provider
        gives a terminal answer. Hitting the attempt cap raises
        ProviderTimeoutError; the remote prediction is not cancelled.
        """
        attempts = 0
        while True:
            prediction = await self.get_prediction(prediction_id)
            status = str(prediction.get("status") or "").lower()

            if status == TERMINAL_OK:
                return prediction

            if status in TERMINAL_FAILED:
                raise ProviderError(
                    f"replicate_prediction_{status}:{prediction.get('error') or 'no error message'}"
                )

            attempts += 1
            if max_attempts is not None and attempts >= max_attempts:
                raise ProviderTimeoutError(
                    f"replicate_prediction_timeout:{prediction_id} after {attempts} polls"
                )

            # starting / processing => keep polling
            await self._sleep(poll_seconds)
