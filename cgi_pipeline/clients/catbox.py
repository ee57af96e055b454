"""Catbox.moe image upload client.

Kling only accepts publicly reachable seed images, and Gemini returns the
generated image as raw bytes. catbox.moe turns those bytes into a public URL
without authentication.

Architecture Pattern:
    Simple HTTP client wrapper - no retry logic (the image stage fails and
    the project is marked failed; the user retries with a new job)
    Async-only interface using httpx.AsyncClient

Usage:
    from cgi_pipeline.clients.catbox import CatboxClient

    client = CatboxClient()
    url = await client.upload_bytes(png_bytes, "project_42.png")
    await client.close()
"""

import httpx

from cgi_pipeline.utils.logging import get_logger

log = get_logger(__name__)

MAX_UPLOAD_BYTES = 200 * 1024 * 1024  # catbox.moe hard limit


class CatboxClient:
    """Client for uploading images to catbox.moe for public hosting.

    Attributes:
        base_url: catbox.moe API endpoint for file uploads
        client: Async HTTP client for making requests
    """

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.base_url = "https://catbox.moe/user/api.php"
        self.client = httpx.AsyncClient(timeout=30.0, transport=transport)

    async def upload_bytes(self, content: bytes, filename: str) -> str:
        """Upload image bytes and return the public URL.

        Args:
            content: Encoded image (PNG, JPEG, ...)
            filename: Name reported to catbox; its extension is kept in the URL

        Returns:
            Public catbox URL (e.g., "https://files.catbox.moe/abc123.png")

        Raises:
            ValueError: If content is empty/too large, or catbox answers
                with something that is not a URL
            httpx.HTTPStatusError: If catbox.moe returns HTTP error
        """
        if not content:
            raise ValueError(f"Image content is empty: {filename}")
        if len(content) > MAX_UPLOAD_BYTES:
            raise ValueError(f"Image too large ({len(content)} bytes): {filename}")

        response = await self.client.post(
            self.base_url,
            data={"reqtype": "fileupload"},
            files={"fileToUpload": (filename, content)},
        )
        response.raise_for_status()

        url = response.text.strip()
        # catbox reports some failures as 200 with a plain-text message
        if not url.startswith(("http://", "https://")):
            raise ValueError(f"Unexpected catbox response: {url[:200]}")

        log.info("catbox_upload_success", filename=filename, url=url, size_bytes=len(content))
        return url

    async def close(self) -> None:
        """Close HTTP client connection."""
        await self.client.aclose()
