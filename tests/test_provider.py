"""Tests for GeminiProvider request building and error classification."""

import asyncio
import base64
import json

import httpx
import pytest

from chat_relay.providers.gemini import GeminiProvider
from chat_relay.types import (
    AttachmentSegment,
    DEFAULT_SAFETY_SETTINGS,
    ModelConfig,
    TerminalUpstreamError,
    TextSegment,
    TransientUpstreamError,
)

MODEL = ModelConfig(
    model="gemini-2.5-pro",
    system_prompt="You are Veo.",
    safety_settings=DEFAULT_SAFETY_SETTINGS,
    google_search=True,
)


def make_provider(handler) -> tuple[GeminiProvider, list[httpx.Request]]:
    seen: list[httpx.Request] = []

    def record(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(record))
    return GeminiProvider(client=client), seen


def ok(parts, finish="STOP") -> httpx.Response:
    return httpx.Response(200, json={
        "candidates": [{"content": {"role": "model", "parts": parts}, "finishReason": finish}],
        "usageMetadata": {"promptTokenCount": 12, "candidatesTokenCount": 5},
    })


class TestPayload:
    def test_build_payload(self):
        provider = GeminiProvider()
        body = provider.build_payload(
            [AttachmentSegment(data="AAAA", mime_type="image/png"), TextSegment(text="hello")],
            MODEL,
        )
        assert body["contents"] == [{
            "role": "user",
            "parts": [
                {"inlineData": {"mimeType": "image/png", "data": "AAAA"}},
                {"text": "hello"},
            ],
        }]
        assert body["system_instruction"] == {"parts": [{"text": "You are Veo."}]}
        assert body["generationConfig"] == {"responseModalities": ["TEXT"]}
        assert body["tools"] == [{"google_search": {}}]
        assert body["safetySettings"][0]["threshold"] == "BLOCK_NONE"

    def test_minimal_payload(self):
        body = GeminiProvider().build_payload(
            [TextSegment(text="draw")],
            ModelConfig(model="gemini-2.0-flash-exp-image-generation", response_modalities=["TEXT", "IMAGE"]),
        )
        assert "system_instruction" not in body
        assert "tools" not in body
        assert "safetySettings" not in body
        assert body["generationConfig"]["responseModalities"] == ["TEXT", "IMAGE"]

    def test_url(self):
        provider = GeminiProvider(base_url="https://example.test/v1beta/models/")
        assert provider.get_url("gemini-2.5-pro") == "https://example.test/v1beta/models/gemini-2.5-pro:generateContent"


class TestInvoke:
    @pytest.mark.asyncio
    async def test_text_response(self):
        provider, seen = make_provider(lambda r: ok([{"text": "Hello "}, {"text": "there"}]))
        response = await provider.invoke("secret-key", [TextSegment(text="hi")], MODEL)
        assert response.text == "Hello there"
        assert response.attachment is None
        assert response.usage["promptTokenCount"] == 12
        assert seen[0].headers["x-goog-api-key"] == "secret-key"
        assert seen[0].url.path.endswith("/gemini-2.5-pro:generateContent")
        assert json.loads(seen[0].content)["contents"][0]["parts"] == [{"text": "hi"}]

    @pytest.mark.asyncio
    async def test_image_response(self):
        encoded = base64.b64encode(b"png-bytes").decode()
        provider, _ = make_provider(lambda r: ok([
            {"text": "Here you go"},
            {"inlineData": {"mimeType": "image/png", "data": encoded}},
        ]))
        response = await provider.invoke("k", [TextSegment(text="draw")], MODEL)
        assert response.text == "Here you go"
        assert response.attachment.data == b"png-bytes"
        assert response.attachment.mime_type == "image/png"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 403, 429, 500, 503])
    async def test_retryable_statuses(self, status):
        provider, _ = make_provider(lambda r: httpx.Response(status, text="nope"))
        with pytest.raises(TransientUpstreamError) as exc:
            await provider.invoke("k", [TextSegment(text="hi")], MODEL)
        assert exc.value.status_code == status
        assert exc.value.provider == "gemini"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [400, 404])
    async def test_terminal_statuses(self, status):
        provider, _ = make_provider(lambda r: httpx.Response(status, text="bad request"))
        with pytest.raises(TerminalUpstreamError) as exc:
            await provider.invoke("k", [TextSegment(text="hi")], MODEL)
        assert not exc.value.content_blocked

    @pytest.mark.asyncio
    async def test_network_error_is_transient(self):
        def fail(request):
            raise httpx.ConnectError("connection refused", request=request)

        provider, _ = make_provider(fail)
        with pytest.raises(TransientUpstreamError):
            await provider.invoke("k", [TextSegment(text="hi")], MODEL)

    @pytest.mark.asyncio
    async def test_usage_belongs_to_each_response(self):
        def handler(request):
            key = request.headers["x-goog-api-key"]
            return httpx.Response(200, json={
                "candidates": [{"content": {"parts": [{"text": key}]}, "finishReason": "STOP"}],
                "usageMetadata": {"promptTokenCount": len(key)},
            })

        provider, _ = make_provider(handler)
        responses = await asyncio.gather(*(
            provider.invoke("k" * n, [TextSegment(text="hi")], MODEL) for n in range(1, 6)
        ))
        assert [(r.text, r.usage["promptTokenCount"]) for r in responses] == [
            ("k" * n, n) for n in range(1, 6)
        ]
        assert not hasattr(provider, "last_usage")

    def test_missing_usage_is_empty(self):
        response = GeminiProvider().parse_response({
            "candidates": [{"content": {"parts": [{"text": "hi"}]}}],
        })
        assert response.usage == {}

    @pytest.mark.asyncio
    async def test_invalid_json_is_transient(self):
        provider, _ = make_provider(lambda r: httpx.Response(200, text="<html>"))
        with pytest.raises(TransientUpstreamError):
            await provider.invoke("k", [TextSegment(text="hi")], MODEL)


class TestParseResponse:
    def test_prompt_blocked(self):
        with pytest.raises(TerminalUpstreamError) as exc:
            GeminiProvider().parse_response({"promptFeedback": {"blockReason": "SAFETY"}})
        assert exc.value.content_blocked

    def test_no_candidates_is_transient(self):
        with pytest.raises(TransientUpstreamError):
            GeminiProvider().parse_response({"candidates": []})

    @pytest.mark.parametrize("reason", [
        "SAFETY", "PROHIBITED_CONTENT", "BLOCKLIST", "SPII", "IMAGE_SAFETY", "RECITATION",
    ])
    def test_safety_finish_without_content(self, reason):
        with pytest.raises(TerminalUpstreamError) as exc:
            GeminiProvider().parse_response({"candidates": [{"finishReason": reason}]})
        assert exc.value.content_blocked

    def test_safety_finish_with_text_is_returned(self):
        response = GeminiProvider().parse_response({
            "candidates": [{"content": {"parts": [{"text": "partial"}]}, "finishReason": "SAFETY"}],
        })
        assert response.text == "partial"

    def test_snake_case_inline_data(self):
        encoded = base64.b64encode(b"jpg").decode()
        response = GeminiProvider().parse_response({
            "candidates": [{"content": {"parts": [{"inline_data": {"mime_type": "image/jpeg", "data": encoded}}]}}],
        })
        assert response.attachment.mime_type == "image/jpeg"
        assert response.attachment.data == b"jpg"
