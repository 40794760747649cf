"""ChatRelay: wires config, credential pool, stores, provider and transport together."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from .config import load_config, load_system_prompt
from .core.assembler import ContextAssembler
from .core.credential_pool import CredentialPool, JsonFileCredentialBackend, mask_credential
from .core.orchestrator import RequestOrchestrator
from .core.status import StatusMessage
from .core.store import AttachmentStore, TurnStore
from .providers.gemini import GeminiProvider
from .storage.filesystem import FilesystemAttachmentStore, FilesystemTurnStore
from .storage.helpers import IdGenerator
from .storage.memory import MemoryAttachmentStore, MemoryTurnStore
from .types import (
    AttachmentPayload,
    ChatRelayConfig,
    ClearResult,
    InboundMessage,
    InputError,
    MessagingTransport,
    ModelConfig,
    RelayRequest,
    RequestOutcome,
    RequestState,
    StorageError,
    TrackConfig,
    UpstreamModel,
)

logger = logging.getLogger(__name__)


class ChatRelay:
    """Entry point for inbound chat messages.

    Usage:
        relay = ChatRelay(config_path="./chat-relay.yaml", transport=transport)
        outcome = await relay.handle(InboundMessage(chat_id="628123@s.whatsapp.net", text="hi"))

    Any collaborator can be injected; the rest are built from config.
    """

    def __init__(
        self,
        config_path: str | Path | None = None,
        config: ChatRelayConfig | None = None,
        transport: MessagingTransport | None = None,
        upstream: UpstreamModel | None = None,
        pool: CredentialPool | None = None,
        turn_store: TurnStore | None = None,
        attachment_store: AttachmentStore | None = None,
        sleep=asyncio.sleep,
    ) -> None:
        self.config = config or load_config(config_path)
        if transport is None:
            from .transports.console import ConsoleTransport
            transport = ConsoleTransport()
        self.transport = transport

        self._init_pool(pool)
        self._init_stores(turn_store, attachment_store)
        self._init_upstream(upstream)
        self._init_system_prompt()
        self._assembler = ContextAssembler(self.turn_store, self.attachment_store)
        self._orchestrator = RequestOrchestrator(
            pool=self.pool,
            turn_store=self.turn_store,
            attachment_store=self.attachment_store,
            upstream=self.upstream,
            transport=self.transport,
            config=self.config.orchestrator,
            assembler=self._assembler,
            sleep=sleep,
        )

    def _init_pool(self, pool: CredentialPool | None) -> None:
        if pool is None:
            pool = CredentialPool(JsonFileCredentialBackend(self.config.credentials.path))
            pool.load()
        self.pool = pool

    def _init_stores(self, turn_store: TurnStore | None, attachment_store: AttachmentStore | None) -> None:
        storage = self.config.storage
        ids = IdGenerator()
        if storage.backend == "memory":
            self.turn_store = turn_store or MemoryTurnStore()
            self.attachment_store = attachment_store or MemoryAttachmentStore(id_generator=ids)
            return
        self.turn_store = turn_store or FilesystemTurnStore(
            root=storage.root,
            legacy_root=storage.legacy_root or None,
            default_track=self.config.default_track,
        )
        self.attachment_store = attachment_store or FilesystemAttachmentStore(
            root=storage.root,
            default_track=self.config.default_track,
            id_generator=ids,
        )

    def _init_upstream(self, upstream: UpstreamModel | None) -> None:
        if upstream is None:
            upstream = GeminiProvider(
                base_url=self.config.upstream.base_url,
                timeout=self.config.upstream.timeout,
            )
        self.upstream = upstream

    def _init_system_prompt(self) -> None:
        self.system_prompt = ""
        if any(t.use_system_prompt for t in self.config.tracks.values()):
            self.system_prompt = load_system_prompt(self.config.upstream.system_prompt_path)

    @property
    def service(self) -> str:
        return self.config.credentials.service

    def get_track(self, track: str | None = None) -> TrackConfig:
        name = track or self.config.default_track
        try:
            return self.config.tracks[name]
        except KeyError:
            raise InputError(f"Unknown track: {name}") from None

    def model_config_for(self, track: TrackConfig) -> ModelConfig:
        return ModelConfig(
            model=track.model,
            response_modalities=list(track.response_modalities),
            system_prompt=self.system_prompt if track.use_system_prompt else "",
            safety_settings=[dict(s) for s in self.config.upstream.safety_settings],
            google_search=track.google_search,
        )

    async def handle(self, message: InboundMessage, track: str | None = None) -> RequestOutcome:
        """Serve one inbound message on ``track`` and deliver the reply."""
        track_config = self.get_track(track)
        status = StatusMessage(self.transport, message.chat_id)
        await status.show(
            track_config.attachment_status_text if message.has_attachment else track_config.status_text
        )

        attachment: AttachmentPayload | None = None
        if message.has_attachment:
            try:
                attachment = await self.transport.download_attachment(message)
            except Exception as e:
                logger.error("Error downloading attachment from %s: %s", message.chat_id, e)
                await status.clear()
                user_message = self.config.orchestrator.attachment_failure_message
                try:
                    await self.transport.send_text(message.chat_id, user_message)
                except Exception as send_error:
                    logger.error("Error delivering reply to %s: %s", message.chat_id, send_error)
                return RequestOutcome(
                    state=RequestState.FAILED, errors=[str(e)], user_message=user_message,
                )

        request = RelayRequest(
            chat_id=message.chat_id,
            track=track_config,
            model_config=self.model_config_for(track_config),
            service=self.service,
            text=message.text or "",
            sender=message.sender or message.chat_id,
            attachment=attachment,
        )
        return await self._orchestrator.run(request, status)

    def clear_history(self, identity: str, tracks: list[str] | None = None) -> dict[str, ClearResult]:
        """Delete turns and attachments for ``identity`` on each track (all tracks by default)."""
        results: dict[str, ClearResult] = {}
        for name in tracks or list(self.config.tracks):
            result = ClearResult()
            try:
                result.history_cleared = self.turn_store.clear(identity, name)
            except StorageError as e:
                logger.error("Error clearing %s history for %s: %s", name, identity, e)
            result.attachments_removed = self.attachment_store.clear(identity, name)
            if result.history_cleared or result.attachments_removed:
                logger.info(
                    "Cleared %s history for %s (%d attachment(s))",
                    name, identity, result.attachments_removed,
                )
            results[name] = result
        return results

    def history(self, identity: str, track: str | None = None, limit: int | None = None):
        track_config = self.get_track(track)
        return self.turn_store.tail(identity, track_config.name, limit or track_config.history_window)

    def add_credential(self, credential: str, service: str | None = None) -> bool:
        return self.pool.add(service or self.service, credential)

    def remove_credential(self, credential: str, service: str | None = None) -> bool:
        return self.pool.remove(service or self.service, credential)

    def list_credentials(self, masked: bool = True) -> dict[str, list[str]]:
        snapshot = self.pool.snapshot()
        if not masked:
            return snapshot
        return {service: [mask_credential(k) for k in keys] for service, keys in snapshot.items()}
