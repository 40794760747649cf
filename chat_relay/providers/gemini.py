"""GeminiProvider: calls the Gemini generateContent REST API via httpx (no SDK dependency)."""

from __future__ import annotations

import base64
import binascii

import httpx

from ..types import (
    AttachmentPayload,
    AttachmentSegment,
    ContextSegment,
    ModelConfig,
    TerminalUpstreamError,
    TextSegment,
    TransientUpstreamError,
    UpstreamResponse,
)

API_BASE = "https://generativelanguage.googleapis.com/v1beta/models"
PROVIDER = "gemini"

# finishReason values meaning the content itself was refused
BLOCKED_FINISH_REASONS = {
    "SAFETY",
    "PROHIBITED_CONTENT",
    "BLOCKLIST",
    "SPII",
    "IMAGE_SAFETY",
    "RECITATION",
}


class GeminiProvider:
    """Upstream model using Google's Gemini API directly via httpx.

    Errors are classified for the orchestrator: anything another credential
    might fix (quota, server trouble, bad key, network) is transient;
    rejected input and blocked content are terminal.
    """

    def __init__(
        self,
        base_url: str = API_BASE,
        timeout: float = 120.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    def get_url(self, model: str) -> str:
        return f"{self.base_url}/{model}:generateContent"

    def build_payload(self, segments: list[ContextSegment], model_config: ModelConfig) -> dict:
        parts: list[dict] = []
        for seg in segments:
            if isinstance(seg, AttachmentSegment):
                parts.append({"inlineData": {"mimeType": seg.mime_type, "data": seg.data}})
            elif isinstance(seg, TextSegment):
                parts.append({"text": seg.text})

        body: dict = {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": {
                "responseModalities": list(model_config.response_modalities),
            },
        }
        if model_config.system_prompt:
            body["system_instruction"] = {"parts": [{"text": model_config.system_prompt}]}
        if model_config.safety_settings:
            body["safetySettings"] = model_config.safety_settings
        if model_config.google_search:
            body["tools"] = [{"google_search": {}}]
        return body

    async def invoke(
        self,
        credential: str,
        segments: list[ContextSegment],
        model_config: ModelConfig,
    ) -> UpstreamResponse:
        url = self.get_url(model_config.model)
        headers = {
            "Content-Type": "application/json",
            "x-goog-api-key": credential,
        }
        payload = self.build_payload(segments, model_config)

        try:
            if self._client is not None:
                response = await self._client.post(url, headers=headers, json=payload)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(url, headers=headers, json=payload)
        except httpx.HTTPError as e:
            raise TransientUpstreamError(f"HTTP error: {e}", provider=PROVIDER) from e

        if response.status_code != 200:
            raise self._status_error(response)

        try:
            data = response.json()
        except ValueError as e:
            raise TransientUpstreamError(
                f"Invalid JSON in response: {e}", provider=PROVIDER, status_code=200,
            ) from e
        return self.parse_response(data)

    @staticmethod
    def _status_error(response: httpx.Response) -> Exception:
        status = response.status_code
        message = f"HTTP {status}: {response.text}"
        # 401/403: this key is bad or revoked, the next one may not be
        if status in (401, 403, 408, 429) or status >= 500:
            return TransientUpstreamError(message, provider=PROVIDER, status_code=status)
        return TerminalUpstreamError(message, provider=PROVIDER, status_code=status)

    def parse_response(self, data: dict) -> UpstreamResponse:
        feedback = data.get("promptFeedback") or {}
        if feedback.get("blockReason"):
            raise TerminalUpstreamError(
                f"Prompt blocked: {feedback['blockReason']}",
                provider=PROVIDER,
                content_blocked=True,
            )

        candidates = data.get("candidates") or []
        if not candidates:
            raise TransientUpstreamError("Invalid response structure: no candidates", provider=PROVIDER)

        candidate = candidates[0]
        parts = (candidate.get("content") or {}).get("parts") or []
        text_parts: list[str] = []
        attachment: AttachmentPayload | None = None
        for part in parts:
            inline = part.get("inlineData") or part.get("inline_data")
            if inline and attachment is None:
                attachment = self._decode_inline(inline)
            elif "text" in part:
                text_parts.append(part["text"])

        reason = candidate.get("finishReason", "STOP")
        if reason in BLOCKED_FINISH_REASONS and not text_parts and attachment is None:
            raise TerminalUpstreamError(
                f"Response blocked: {reason}",
                provider=PROVIDER,
                content_blocked=True,
            )

        return UpstreamResponse(
            text="".join(text_parts),
            attachment=attachment,
            usage=dict(data.get("usageMetadata") or {}),
        )

    @staticmethod
    def _decode_inline(inline: dict) -> AttachmentPayload:
        mime_type = inline.get("mimeType") or inline.get("mime_type") or "application/octet-stream"
        try:
            raw = base64.b64decode(inline.get("data", ""), validate=True)
        except (binascii.Error, ValueError) as e:
            raise TransientUpstreamError(f"Undecodable inline data: {e}", provider=PROVIDER) from e
        return AttachmentPayload(data=raw, mime_type=mime_type)
