"""PiAPI client for Kling video and sound tasks.

This module provides a rate-limited, retry-enabled client for the PiAPI
task gateway that fronts Kling. It implements:
- Provider-wide request rate limit via AsyncLimiter
- Automatic retry with exponential backoff for task submission on
  transient errors (429, 5xx, timeouts, connection errors) via tenacity
- Proper error classification (retriable vs non-retriable)

Status fetches are NOT retried here: the task poller decides how many
failed checks it tolerates, and needs the HTTP status to do so.

Wire format:
    POST {base}/task        {"model": "kling", "task_type": ..., "input": {...}}
    GET  {base}/task/{id}

Usage:
    client = PiAPIClient(api_key)
    raw = await client.create_video_task(prompt, image_url, duration=5)
    task_id = extract_task_id(raw)
    status = await client.get_task(task_id)
    await client.close()
"""

from typing import Any

import httpx
from aiolimiter import AsyncLimiter
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from cgi_pipeline.config import get_piapi_base_url
from cgi_pipeline.constants import (
    KLING_ASPECT_RATIO,
    KLING_CFG_SCALE,
    KLING_DEFAULT_NEGATIVE_PROMPT,
    KLING_MODE,
)
from cgi_pipeline.utils.logging import get_logger

log = get_logger(__name__)

RETRIABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


class PiAPIError(Exception):
    """Raised for PiAPI HTTP errors that are not retried.

    Attributes:
        status_code: HTTP status returned by PiAPI.
        response_body: Raw response text (truncated) for debugging.
    """

    def __init__(self, message: str, response: httpx.Response):
        self.message = message
        self.status_code = response.status_code
        self.response_body = response.text[:500]
        super().__init__(f"{message} - Status: {response.status_code}")


def is_retriable_error(exception: BaseException) -> bool:
    """True for 429/5xx responses and network-level failures."""
    if isinstance(exception, httpx.HTTPStatusError):
        return exception.response.status_code in RETRIABLE_STATUS_CODES
    return isinstance(exception, httpx.TransportError)


def _decode_body(response: httpx.Response) -> Any:
    # Some gateway versions answer with text/plain JSON; task-id extraction
    # handles string bodies, so fall back to the raw text.
    try:
        return response.json()
    except ValueError:
        return response.text


class PiAPIClient:
    """PiAPI task gateway client.

    Attributes:
        base_url: Gateway base URL (e.g. https://api.piapi.ai/api/v1)
        client: Async HTTP client carrying the X-API-Key header
        rate_limiter: Shared request limiter for this client
    """

    def __init__(
        self,
        api_key: str,
        base_url: str | None = None,
        timeout: float = 30.0,
        max_rate: float = 5,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or get_piapi_base_url()).rstrip("/")
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"X-API-Key": api_key, "Content-Type": "application/json"},
            timeout=timeout,
            transport=transport,
        )
        self.rate_limiter = AsyncLimiter(max_rate=max_rate, time_period=1)

    @retry(
        retry=retry_if_exception(is_retriable_error),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _submit(self, payload: dict[str, Any]) -> Any:
        async with self.rate_limiter:
            response = await self.client.post("/task", json=payload)

        if response.status_code >= 400 and response.status_code not in RETRIABLE_STATUS_CODES:
            raise PiAPIError(f"Task submission rejected ({payload.get('task_type')})", response)

        response.raise_for_status()
        log.debug("piapi_task_submitted", task_type=payload.get("task_type"))
        return _decode_body(response)

    async def create_video_task(
        self,
        prompt: str,
        image_url: str,
        duration: int = 5,
        negative_prompt: str | None = None,
    ) -> Any:
        """Submit an image-to-video task.

        Args:
            prompt: Motion instruction, already shortened to the provider limit
            image_url: Public http(s) URL of the seed image
            duration: Clip length in seconds
            negative_prompt: Defaults to the standard deformation guard

        Returns:
            Raw response body (dict, or str when the gateway returns text)

        Raises:
            ValueError: If image_url is not an http(s) URL
            PiAPIError: On non-retriable HTTP errors
            httpx.HTTPError: When retries are exhausted
        """
        if not image_url.startswith(("http://", "https://")):
            raise ValueError(f"image_url must be an http(s) URL, got {image_url[:50]!r}")

        payload = {
            "model": "kling",
            "task_type": "video_generation",
            "input": {
                "prompt": prompt,
                "image_url": image_url,
                "duration": duration,
                "aspect_ratio": KLING_ASPECT_RATIO,
                "mode": KLING_MODE,
                "cfg_scale": KLING_CFG_SCALE,
                "negative_prompt": negative_prompt or KLING_DEFAULT_NEGATIVE_PROMPT,
            },
        }
        return await self._submit(payload)

    async def create_sound_task(self, origin_task_id: str) -> Any:
        """Submit a sound task that adds audio to a finished video task."""
        payload = {
            "model": "kling",
            "task_type": "sound",
            "input": {"origin_task_id": origin_task_id},
        }
        return await self._submit(payload)

    async def get_task(self, task_id: str) -> Any:
        """Fetch the current state of a task (single request, no retry).

        Raises:
            PiAPIError: On any non-2xx response (status_code is kept)
            httpx.TransportError: On network failures
        """
        async with self.rate_limiter:
            response = await self.client.get(f"/task/{task_id}")

        if response.status_code >= 400:
            raise PiAPIError(f"Task status check failed for {task_id}", response)
        return _decode_body(response)

    async def close(self) -> None:
        """Close HTTP client connection."""
        await self.client.aclose()
