"""Tests for CatboxClient.

This module tests the catbox.moe upload client that publishes generated
images so Kling can fetch them as video seeds.

Test Coverage:
- Successful byte upload
- Upload failure scenarios (HTTP errors, plain-text error bodies)
- Content validation (empty, oversized)
"""

from unittest.mock import AsyncMock, Mock, patch

import httpx
import pytest

from cgi_pipeline.clients.catbox import MAX_UPLOAD_BYTES, CatboxClient


class TestCatboxClient:
    """Test suite for CatboxClient."""

    @pytest.fixture
    def client(self):
        """Create CatboxClient instance."""
        return CatboxClient()

    @pytest.mark.asyncio
    async def test_upload_bytes_success(self, client):
        """Test successful upload returns the public URL."""
        expected_url = "https://files.catbox.moe/abc123.png"

        with patch.object(client.client, "post", new_callable=AsyncMock) as mock_post:
            mock_response = Mock()
            mock_response.text = expected_url + "\n"
            mock_response.raise_for_status = Mock()
            mock_post.return_value = mock_response

            result_url = await client.upload_bytes(b"png-bytes", "project_7.png")

            assert result_url == expected_url
            mock_post.assert_called_once()
            call_args = mock_post.call_args
            assert call_args.args[0] == client.base_url
            assert call_args.kwargs["data"] == {"reqtype": "fileupload"}
            assert call_args.kwargs["files"] == {"fileToUpload": ("project_7.png", b"png-bytes")}

    @pytest.mark.asyncio
    async def test_upload_bytes_http_error(self, client):
        """Test upload fails when catbox.moe returns HTTP error."""
        with patch.object(client.client, "post", new_callable=AsyncMock) as mock_post:
            mock_response = Mock()
            mock_response.raise_for_status.side_effect = httpx.HTTPStatusError(
                "500 Internal Server Error",
                request=Mock(),
                response=Mock(status_code=500),
            )
            mock_post.return_value = mock_response

            with pytest.raises(httpx.HTTPStatusError):
                await client.upload_bytes(b"png-bytes", "project_7.png")

    @pytest.mark.asyncio
    async def test_upload_bytes_rejects_non_url_body(self):
        """Test a 200 with an error message instead of a URL is an error."""
        transport = httpx.MockTransport(lambda request: httpx.Response(200, text="No file uploaded"))
        client = CatboxClient(transport=transport)

        with pytest.raises(ValueError, match="Unexpected catbox response"):
            await client.upload_bytes(b"png-bytes", "project_7.png")

        await client.close()

    @pytest.mark.asyncio
    async def test_upload_bytes_sends_multipart(self):
        """Test the request actually goes out as multipart form data."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["content_type"] = request.headers["content-type"]
            seen["body"] = request.content
            return httpx.Response(200, text="https://files.catbox.moe/xyz.png")

        client = CatboxClient(transport=httpx.MockTransport(handler))

        url = await client.upload_bytes(b"\x89PNG-data", "project_9.png")

        assert url == "https://files.catbox.moe/xyz.png"
        assert seen["content_type"].startswith("multipart/form-data")
        assert b'name="reqtype"' in seen["body"]
        assert b'filename="project_9.png"' in seen["body"]
        await client.close()

    @pytest.mark.asyncio
    async def test_upload_empty_content(self, client):
        """Test upload fails fast on empty content."""
        with pytest.raises(ValueError, match="empty"):
            await client.upload_bytes(b"", "project_7.png")

    @pytest.mark.asyncio
    async def test_upload_oversized_content(self, client):
        """Test upload fails fast above the catbox size limit."""
        with pytest.raises(ValueError, match="too large"):
            await client.upload_bytes(b"x" * (MAX_UPLOAD_BYTES + 1), "huge.png")

    @pytest.mark.asyncio
    async def test_close_client(self, client):
        """Test client cleanup."""
        with patch.object(client.client, "aclose", new_callable=AsyncMock) as mock_close:
            await client.close()
            mock_close.assert_called_once()
