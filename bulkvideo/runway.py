"""
Runway gen4_turbo image-to-video.

Runway takes an output ratio rather than a resolution name, so the
aspect ratio picked for the scene image is mapped onto Runway's ratio
vocabulary. Durations are 5 or 10 seconds; no fixed-camera flag.
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

RUNWAY_API_KEY = os.getenv("RUNWAY_API_KEY", "")
RUNWAY_API_BASE = "https://api.dev.runwayml.com/v1"
RUNWAY_API_VERSION = "2024-11-06"
RUNWAY_MODEL = "gen4_turbo"

POLL_INTERVAL = 5  # seconds
MAX_POLL_ATTEMPTS = 120

RATIOS = {
    "16:9": "1280:720",
    "9:16": "720:1280",
    "4:5": "832:1104",
    "1:1": "960:960",
}


class RunwayProvider(AnimationProvider):
    provider_id = AnimationProviderId.RUNWAY
    capabilities = ProviderCapabilities(
        durations=(5, 10),
        resolutions=("720p",),
        default_resolution="720p",
        supports_camera_fixed=False,
        supports_seed=True,
    )

    def __init__(
        self,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        poll_interval: float = POLL_INTERVAL,
        max_poll_attempts: int = MAX_POLL_ATTEMPTS,
        max_retries: int = MAX_RETRIES,
        base_delay: float = BASE_DELAY,
    ):
        self._api_key = api_key if api_key is not None else RUNWAY_API_KEY
        self._transport = transport
        self._poll_interval = poll_interval
        self._max_poll_attempts = max_poll_attempts
        self._max_retries = max_retries
        self._base_delay = base_delay

    async def _request(self, client: httpx.AsyncClient, method: str, url: str, **kwargs) -> dict:
        response = await request_with_backoff(
            client, method, url,
            label="Runway",
            max_retries=self._max_retries,
            base_delay=self._base_delay,
            **kwargs,
        )
        if not response.is_success:
            try:
                body = response.json()
                detail = body.get("error") or body.get("message") or str(body)
            except (ValueError, AttributeError):
                detail = response.text[:500]
            raise classify_provider_error(self.provider_id.value, response.status_code, str(detail))
        return response.json()

    async def _submit(self, source_image_url, motion_prompt, duration, resolution, camera_fixed, seed, aspect_ratio):
        if not self._api_key:
            raise AnimationError("RUNWAY_API_KEY is not configured", self.provider_id.value)

        payload = {
            "model": RUNWAY_MODEL,
            "promptImage": source_image_url,
            "promptText": motion_prompt[:1000],
            "ratio": RATIOS.get(aspect_ratio, RATIOS["9:16"]),
            "duration": duration,
        }
        if seed is not None:
            payload["seed"] = seed

        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "X-Runway-Version": RUNWAY_API_VERSION,
        }

        async with httpx.AsyncClient(timeout=60, transport=self._transport, headers=headers) as client:
            created = await self._request(client, "POST", f"{RUNWAY_API_BASE}/image_to_video", json=payload)
            task_id = created.get("id")
            if not task_id:
                raise AnimationError(f"Runway returned no task id: {created}", self.provider_id.value)
            logger.info(f"Runway task submitted: {task_id} ({duration}s, ratio={payload['ratio']})")

            for attempt in range(self._max_poll_attempts):
                task = await self._request(client, "GET", f"{RUNWAY_API_BASE}/tasks/{task_id}")
                status = task.get("status")

                if status == "SUCCEEDED":
                    output = task.get("output") or []
                    if not output:
                        raise AnimationError(f"Runway task {task_id} returned no video", self.provider_id.value)
                    logger.info(f"Runway task {task_id} complete: {output[0][:80]}")
                    return AnimationResult(video_url=output[0], seed=seed)

                if status in ("FAILED", "CANCELLED"):
                    failure = task.get("failure") or task.get("failureCode") or "unknown failure"
                    raise classify_provider_error(self.provider_id.value, None, str(failure))

                if attempt % 6 == 0:
                    logger.info(f"Runway poll #{attempt + 1}: {status}")
                await asyncio.sleep(self._poll_interval)

        raise AnimationError(
            f"Runway task {task_id} timed out after {self._max_poll_attempts * self._poll_interval:.0f}s",
            self.provider_id.value,
        )
