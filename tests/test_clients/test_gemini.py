"""Tests for GeminiClient.

A single MockTransport serves both the media downloads and the
generateContent calls, routed by host.
"""

import base64
import json

import httpx
import pytest

from cgi_pipeline.clients.gemini import GeminiClient, GeminiError

GEMINI_HOST = "gemini.test"
PNG_BYTES = b"\x89PNG\r\n\x1a\nimage"


def _text_payload(*texts: str) -> dict:
    return {"candidates": [{"content": {"parts": [{"text": t} for t in texts]}}]}


class FakeGemini:
    """Records generateContent bodies and answers with a canned payload."""

    def __init__(self, payload: dict):
        self.payload = payload
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == GEMINI_HOST:
            self.requests.append(request)
            return httpx.Response(200, json=self.payload)
        return httpx.Response(200, content=PNG_BYTES, headers={"content-type": "image/png"})

    def body(self, index: int = 0) -> dict:
        return json.loads(self.requests[index].content)


def _client(fake: FakeGemini) -> GeminiClient:
    return GeminiClient(
        "g-key",
        base_url=f"https://{GEMINI_HOST}/v1beta",
        text_model="text-model",
        image_model="image-model",
        transport=httpx.MockTransport(fake),
    )


class TestGenerateText:
    """Tests for text generation."""

    @pytest.mark.asyncio
    async def test_joins_text_parts(self):
        fake = FakeGemini(_text_payload("Walnut table ", "in warm light"))
        client = _client(fake)

        text = await client.generate_text("Describe the shot")
        await client.close()

        assert text == "Walnut table in warm light"
        request = fake.requests[0]
        assert request.url.path == "/v1beta/models/text-model:generateContent"
        assert request.url.params["key"] == "g-key"
        assert fake.body()["contents"][0]["parts"] == [{"text": "Describe the shot"}]

    @pytest.mark.asyncio
    async def test_media_sent_inline_before_prompt(self):
        fake = FakeGemini(_text_payload("ok"))
        client = _client(fake)

        await client.generate_text("Describe", media_urls=["https://cdn.example.com/p.png"])
        await client.close()

        parts = fake.body()["contents"][0]["parts"]
        assert parts[0] == {
            "inlineData": {
                "mimeType": "image/png",
                "data": base64.b64encode(PNG_BYTES).decode("ascii"),
            }
        }
        assert parts[1] == {"text": "Describe"}

    @pytest.mark.asyncio
    async def test_no_candidates_raises(self):
        fake = FakeGemini({"promptFeedback": {"blockReason": "SAFETY"}})
        client = _client(fake)

        with pytest.raises(GeminiError, match="SAFETY"):
            await client.generate_text("Describe")
        await client.close()

    @pytest.mark.asyncio
    async def test_empty_text_raises(self):
        client = _client(FakeGemini(_text_payload("   ")))

        with pytest.raises(GeminiError, match="empty"):
            await client.generate_text("Describe")
        await client.close()

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(400, json={"error": {"message": "bad model"}})

        client = GeminiClient(
            "g-key", base_url=f"https://{GEMINI_HOST}/v1beta", transport=httpx.MockTransport(handler)
        )
        with pytest.raises(httpx.HTTPStatusError):
            await client.generate_text("Describe")
        await client.close()

        assert len(calls) == 1


class TestGenerateImage:
    """Tests for image generation."""

    @pytest.mark.asyncio
    async def test_decodes_inline_image(self):
        payload = {
            "candidates": [
                {
                    "content": {
                        "parts": [
                            {"text": "Here you go"},
                            {
                                "inlineData": {
                                    "mimeType": "image/png",
                                    "data": base64.b64encode(b"generated").decode("ascii"),
                                }
                            },
                        ]
                    }
                }
            ]
        }
        fake = FakeGemini(payload)
        client = _client(fake)

        image = await client.generate_image("Compose", media_urls=["https://cdn.example.com/p.png"])
        await client.close()

        assert image == b"generated"
        assert fake.requests[0].url.path == "/v1beta/models/image-model:generateContent"
        assert fake.body()["generationConfig"] == {"responseModalities": ["TEXT", "IMAGE"]}

    @pytest.mark.asyncio
    async def test_snake_case_inline_data(self):
        payload = {
            "candidates": [
                {"content": {"parts": [{"inline_data": {"data": base64.b64encode(b"x").decode()}}]}}
            ]
        }
        client = _client(FakeGemini(payload))

        assert await client.generate_image("Compose") == b"x"
        await client.close()

    @pytest.mark.asyncio
    async def test_text_only_answer_raises(self):
        client = _client(FakeGemini(_text_payload("I cannot draw that")))

        with pytest.raises(GeminiError, match="no image data"):
            await client.generate_image("Compose")
        await client.close()
