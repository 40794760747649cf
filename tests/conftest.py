"""Shared fixtures for chat-relay tests."""

from __future__ import annotations

import tempfile
from pathlib import Path

import pytest

from chat_relay.config import load_config
from chat_relay.core.credential_pool import CredentialPool, MemoryCredentialBackend
from chat_relay.storage.helpers import IdGenerator
from chat_relay.storage.memory import MemoryAttachmentStore, MemoryTurnStore
from chat_relay.types import (
    AttachmentPayload,
    ChatRelayConfig,
    InboundMessage,
    UpstreamResponse,
)

CHAT_ID = "628123456@s.whatsapp.net"
PNG_BYTES = b"\x89PNG\r\n\x1a\nfake-image-bytes"


@pytest.fixture
def tmp_store_dir():
    with tempfile.TemporaryDirectory() as d:
        yield Path(d)


class StepClock:
    """Deterministic clock for IdGenerator: advances 1ms per call."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        self.now += 0.001
        return self.now


@pytest.fixture
def id_generator() -> IdGenerator:
    return IdGenerator(clock=StepClock())


@pytest.fixture
def turn_store() -> MemoryTurnStore:
    return MemoryTurnStore()


@pytest.fixture
def attachment_store(id_generator) -> MemoryAttachmentStore:
    return MemoryAttachmentStore(id_generator=id_generator)


def make_pool(*keys: str, service: str = "keygemini") -> CredentialPool:
    pool = CredentialPool(MemoryCredentialBackend({service: list(keys)} if keys else None))
    pool.load()
    return pool


@pytest.fixture
def pool() -> CredentialPool:
    return make_pool("key-aaaa-1111", "key-bbbb-2222")


@pytest.fixture
def relay_config(tmp_store_dir) -> ChatRelayConfig:
    return load_config(config_dict={
        "storage": {"backend": "memory"},
        "orchestrator": {"retry_backoff": 0},
        "upstream": {"system_prompt_path": str(tmp_store_dir / "system.txt")},
    })


async def no_sleep(seconds: float) -> None:
    return None


class FakeTransport:
    """Records everything sent; status handles are sequential ints."""

    def __init__(self, attachment: AttachmentPayload | None = None, fail_download: bool = False) -> None:
        self.texts: list[tuple[str, str]] = []
        self.images: list[tuple[str, bytes, str, str]] = []
        self.events: list[tuple] = []
        self.active_status: set[int] = set()
        self.attachment = attachment or AttachmentPayload(data=PNG_BYTES, mime_type="image/png")
        self.fail_download = fail_download
        self._next = 0

    async def send_text(self, chat_id: str, text: str) -> None:
        self.texts.append((chat_id, text))
        self.events.append(("text", text))

    async def send_image(self, chat_id: str, data: bytes, mime_type: str, caption: str = "") -> None:
        self.images.append((chat_id, data, mime_type, caption))
        self.events.append(("image", caption))

    async def send_status(self, chat_id: str, text: str) -> int:
        self._next += 1
        self.active_status.add(self._next)
        self.events.append(("status", text))
        return self._next

    async def edit_status(self, chat_id: str, handle: int, text: str) -> None:
        self.events.append(("edit_status", text))

    async def delete_status(self, chat_id: str, handle: int) -> None:
        self.active_status.discard(handle)
        self.events.append(("delete_status", handle))

    async def download_attachment(self, message: InboundMessage) -> AttachmentPayload:
        if self.fail_download:
            raise OSError("media download failed")
        return self.attachment


class ScriptedUpstream:
    """Fake UpstreamModel replaying a script of responses and exceptions.

    The last entry repeats once the script is exhausted.
    """

    def __init__(self, *script) -> None:
        self.script = list(script) or [UpstreamResponse(text="ok")]
        self.calls: list[dict] = []

    async def invoke(self, credential, segments, model_config) -> UpstreamResponse:
        self.calls.append({
            "credential": credential,
            "segments": list(segments),
            "model_config": model_config,
        })
        index = min(len(self.calls) - 1, len(self.script) - 1)
        step = self.script[index]
        if isinstance(step, Exception):
            raise step
        return step

    @property
    def credentials_used(self) -> list[str]:
        return [c["credential"] for c in self.calls]


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()
