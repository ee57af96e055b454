"""Gemini (Generative Language REST API) client.

Thin async wrapper over models/{model}:generateContent used for prompt
enhancement, image generation and scene-video motion analysis.

Media inputs are referenced by URL; the client downloads them and sends
them inline as base64, which is what the REST endpoint accepts without a
separate file upload step.

Architecture Pattern:
    - httpx.AsyncClient with AsyncLimiter rate limiting
    - tenacity retry on 429/5xx/network errors (3 attempts, exponential backoff)
    - GeminiError for responses that carry no usable content
"""

import base64
from collections.abc import Sequence
from typing import Any

import httpx
from aiolimiter import AsyncLimiter
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from cgi_pipeline.clients.piapi import is_retriable_error
from cgi_pipeline.config import get_gemini_base_url, get_gemini_image_model, get_gemini_text_model
from cgi_pipeline.utils.logging import get_logger

log = get_logger(__name__)

MAX_INLINE_MEDIA_BYTES = 20 * 1024 * 1024  # request size cap for inline data


class GeminiError(Exception):
    """Raised when Gemini answers without the expected text or image part."""

    pass


class GeminiClient:
    """Gemini REST client.

    Attributes:
        text_model: Model used for text answers (prompt enhancement, analysis)
        image_model: Model used for image output
    """

    def __init__(
        self,
        api_key: str,
        base_url: str | None = None,
        text_model: str | None = None,
        image_model: str | None = None,
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.base_url = (base_url or get_gemini_base_url()).rstrip("/")
        self.text_model = text_model or get_gemini_text_model()
        self.image_model = image_model or get_gemini_image_model()
        self.client = httpx.AsyncClient(timeout=timeout, transport=transport)
        self.rate_limiter = AsyncLimiter(max_rate=10, time_period=1)

    async def fetch_inline_part(self, url: str) -> dict[str, Any]:
        """Download a media URL and wrap it as an inlineData part."""
        response = await self.client.get(url, follow_redirects=True)
        response.raise_for_status()

        content = response.content
        if len(content) > MAX_INLINE_MEDIA_BYTES:
            raise GeminiError(f"Media too large to inline ({len(content)} bytes): {url}")

        mime_type = response.headers.get("content-type", "application/octet-stream").split(";")[0]
        return {
            "inlineData": {
                "mimeType": mime_type,
                "data": base64.b64encode(content).decode("ascii"),
            }
        }

    @retry(
        retry=retry_if_exception(is_retriable_error),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _generate_content(
        self,
        model: str,
        parts: list[dict[str, Any]],
        generation_config: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"contents": [{"role": "user", "parts": parts}]}
        if generation_config:
            body["generationConfig"] = generation_config

        async with self.rate_limiter:
            response = await self.client.post(
                f"{self.base_url}/models/{model}:generateContent",
                params={"key": self.api_key},
                json=body,
            )
        response.raise_for_status()
        return response.json()  # type: ignore[no-any-return]

    async def _build_parts(self, prompt: str, media_urls: Sequence[str]) -> list[dict[str, Any]]:
        parts = [await self.fetch_inline_part(url) for url in media_urls if url]
        parts.append({"text": prompt})
        return parts

    @staticmethod
    def _response_parts(payload: dict[str, Any]) -> list[dict[str, Any]]:
        candidates = payload.get("candidates") or []
        if not candidates:
            reason = (payload.get("promptFeedback") or {}).get("blockReason")
            raise GeminiError(f"Gemini returned no candidates (block reason: {reason})")
        return (candidates[0].get("content") or {}).get("parts") or []

    async def generate_text(self, prompt: str, media_urls: Sequence[str] = ()) -> str:
        """Ask the text model; returns the concatenated text parts."""
        payload = await self._generate_content(
            self.text_model, await self._build_parts(prompt, media_urls)
        )
        text = "".join(part.get("text", "") for part in self._response_parts(payload)).strip()
        if not text:
            raise GeminiError("Gemini returned an empty text response")
        return text

    async def generate_image(self, prompt: str, media_urls: Sequence[str] = ()) -> bytes:
        """Ask the image model; returns the first image part's bytes."""
        payload = await self._generate_content(
            self.image_model,
            await self._build_parts(prompt, media_urls),
            generation_config={"responseModalities": ["TEXT", "IMAGE"]},
        )
        for part in self._response_parts(payload):
            inline = part.get("inlineData") or part.get("inline_data")
            if inline and inline.get("data"):
                return base64.b64decode(inline["data"])
        raise GeminiError("Gemini response contained no image data")

    async def close(self) -> None:
        """Close HTTP client connection."""
        await self.client.aclose()
