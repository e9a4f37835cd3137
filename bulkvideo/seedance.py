"""
ByteDance Seedance image-to-video via the fal.ai queue API.

Submit → poll status_url → fetch response_url. Durations are 5 or 10
seconds, resolutions 480p or 720p; the model honours camera_fixed and
returns the seed it used.
"""

import os
import asyncio
import logging
from typing import Optional

import httpx

from .animation_provider import (
    AnimationProvider,
    AnimationProviderId,
    AnimationResult,
    ProviderCapabilities,
)
from .backoff import request_with_backoff, MAX_RETRIES, BASE_DELAY
from .errors import AnimationError, classify_provider_error

logger = logging.getLogger(__name__)

FAL_KEY = os.getenv("FAL_KEY", "")
FAL_QUEUE_BASE = "https://queue.fal.run"
SEEDANCE_MODEL = os.getenv("SEEDANCE_MODEL", "fal-ai/bytedance/seedance/v1/lite/image-to-video")

POLL_INTERVAL = 5  # seconds
MAX_POLL_ATTEMPTS = 120  # 10 minutes max


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:500]
    if not isinstance(body, dict):
        return str(body)[:500]
    detail = body.get("detail") or body.get("error") or body.get("message") or body
    if isinstance(detail, list) and detail:
        # FastAPI-style validation list from fal
        detail = "; ".join(str(d.get("msg", d)) if isinstance(d, dict) else str(d) for d in detail)
    return str(detail)[:500]


class SeedanceProvider(AnimationProvider):
    provider_id = AnimationProviderId.BYTEDANCE
    capabilities = ProviderCapabilities(
        durations=(5, 10),
        resolutions=("480p", "720p"),
        default_resolution="720p",
        supports_camera_fixed=True,
        supports_seed=True,
    )

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = SEEDANCE_MODEL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        poll_interval: float = POLL_INTERVAL,
        max_poll_attempts: int = MAX_POLL_ATTEMPTS,
        max_retries: int = MAX_RETRIES,
        base_delay: float = BASE_DELAY,
    ):
        self._api_key = api_key if api_key is not None else FAL_KEY
        self._model = model
        self._transport = transport
        self._poll_interval = poll_interval
        self._max_poll_attempts = max_poll_attempts
        self._max_retries = max_retries
        self._base_delay = base_delay

    def _raise_for_error(self, response: httpx.Response):
        if response.is_success:
            return
        raise classify_provider_error(self.provider_id.value, response.status_code, _error_detail(response))

    async def _request(self, client: httpx.AsyncClient, method: str, url: str, **kwargs) -> dict:
        response = await request_with_backoff(
            client, method, url,
            label="Seedance",
            max_retries=self._max_retries,
            base_delay=self._base_delay,
            **kwargs,
        )
        self._raise_for_error(response)
        return response.json()

    async def _submit(self, source_image_url, motion_prompt, duration, resolution, camera_fixed, seed, aspect_ratio):
        if not self._api_key:
            raise AnimationError("FAL_KEY is not configured", self.provider_id.value)

        payload = {
            "prompt": motion_prompt,
            "image_url": source_image_url,
            "duration": str(duration),
            "resolution": resolution,
            "camera_fixed": camera_fixed,
        }
        if seed is not None:
            payload["seed"] = seed

        # fal routes status/result by app id, not the full model path
        app_id = "/".join(self._model.split("/")[:2])

        async with httpx.AsyncClient(
            timeout=60,
            transport=self._transport,
            headers={"Authorization": f"Key {self._api_key}"},
        ) as client:
            submitted = await self._request(client, "POST", f"{FAL_QUEUE_BASE}/{self._model}", json=payload)
            request_id = submitted.get("request_id")
            if not request_id:
                raise AnimationError(f"Seedance returned no request_id: {submitted}", self.provider_id.value)

            status_url = submitted.get("status_url") or f"{FAL_QUEUE_BASE}/{app_id}/requests/{request_id}/status"
            response_url = submitted.get("response_url") or f"{FAL_QUEUE_BASE}/{app_id}/requests/{request_id}"
            logger.info(f"Seedance task submitted: {request_id} ({duration}s, {resolution})")

            for attempt in range(self._max_poll_attempts):
                status = (await self._request(client, "GET", status_url)).get("status")
                if status == "COMPLETED":
                    break
                if status in ("FAILED", "ERROR"):
                    raise AnimationError(f"Seedance task {request_id} failed", self.provider_id.value)
                if attempt % 6 == 0:
                    logger.info(f"Seedance poll #{attempt + 1}: {status}")
                await asyncio.sleep(self._poll_interval)
            else:
                raise AnimationError(
                    f"Seedance task {request_id} timed out after "
                    f"{self._max_poll_attempts * self._poll_interval:.0f}s",
                    self.provider_id.value,
                )

            result = await self._request(client, "GET", response_url)

        video_url = (result.get("video") or {}).get("url")
        if not video_url:
            raise AnimationError(f"Seedance task {request_id} returned no video", self.provider_id.value)

        logger.info(f"Seedance task {request_id} complete: {video_url[:80]}")
        return AnimationResult(video_url=video_url, seed=result.get("seed"))
