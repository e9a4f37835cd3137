import random
import asyncio
import logging

import httpx

logger = logging.getLogger(__name__)

# ── Retry configuration ──────────────────────────────────────────────────────
MAX_RETRIES = 5
BASE_DELAY = 2.0       # seconds, doubled on each retry
JITTER_MAX = 1.0        # random jitter 0–1s added to each delay
RETRYABLE_STATUS_CODES = {429, 502, 503, 504}


def _retry_delay(response: httpx.Response | None, attempt: int, base_delay: float) -> float:
    if response is not None:
        retry_after = response.headers.get("Retry-After")
        if retry_after and retry_after.isdigit():
            return float(retry_after)
    return base_delay * (2 ** attempt) + random.uniform(0, JITTER_MAX if base_delay else 0)


async def request_with_backoff(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    label: str = "provider",
    max_retries: int = MAX_RETRIES,
    base_delay: float = BASE_DELAY,
    **kwargs,
) -> httpx.Response:
    """
    Make an HTTP request with exponential backoff on retryable errors (429, 5xx).

    Uses: base_delay * 2^attempt + random jitter, or Retry-After when sent.
    The final response is returned as-is once retries are spent; callers
    classify non-2xx responses themselves. Transport errors re-raise.
    """
    for attempt in range(max_retries + 1):
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            if attempt >= max_retries:
                raise
            delay = _retry_delay(None, attempt, base_delay)
            logger.warning(
                f"{label} request error on attempt {attempt + 1}/{max_retries + 1}: {e} "
                f"— retrying in {delay:.1f}s"
            )
            await asyncio.sleep(delay)
            continue

        if response.status_code not in RETRYABLE_STATUS_CODES or attempt >= max_retries:
            return response

        delay = _retry_delay(response, attempt, base_delay)
        logger.warning(
            f"{label} {response.status_code} on attempt {attempt + 1}/{max_retries + 1} "
            f"— retrying in {delay:.1f}s (url={url})"
        )
        await asyncio.sleep(delay)

    raise RuntimeError(f"Request to {url} failed after {max_retries + 1} attempts")
