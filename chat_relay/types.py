"""All dataclasses, Protocols, and error types for chat-relay."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol, Union, runtime_checkable


# ---------------------------------------------------------------------------
# Turns
# ---------------------------------------------------------------------------

class Role:
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class Turn:
    """One immutable entry in a (identity, track) history log."""
    role: str  # "user" or "assistant"
    content: str  # may embed an attachment reference token
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    sender: str = ""  # originator address

    @property
    def speaker(self) -> str:
        return "User" if self.role == Role.USER else "Assistant"


# ---------------------------------------------------------------------------
# Attachments
# ---------------------------------------------------------------------------

@dataclass
class AttachmentPayload:
    """Raw attachment bytes as received from the transport or the model."""
    data: bytes
    mime_type: str


@dataclass
class SavedAttachment:
    id: str
    path: str
    mime_type: str


@dataclass
class LoadedAttachment:
    id: str
    data: str  # base64
    mime_type: str


# ---------------------------------------------------------------------------
# Context segments
# ---------------------------------------------------------------------------

@dataclass
class TextSegment:
    text: str


@dataclass
class AttachmentSegment:
    data: str  # base64
    mime_type: str
    attachment_id: str = ""


ContextSegment = Union[TextSegment, AttachmentSegment]


@dataclass
class AssembledContext:
    segments: list[ContextSegment] = field(default_factory=list)
    attachment_count: int = 0
    history_turns: int = 0
    truncated: bool = False  # attachment cap reached, some references skipped
    stale_references: list[str] = field(default_factory=list)  # ids that failed to resolve

    @property
    def text(self) -> str:
        """The narrative text segment (always last)."""
        for seg in reversed(self.segments):
            if isinstance(seg, TextSegment):
                return seg.text
        return ""


# ---------------------------------------------------------------------------
# Upstream
# ---------------------------------------------------------------------------

@dataclass
class ModelConfig:
    model: str
    response_modalities: list[str] = field(default_factory=lambda: ["TEXT"])
    system_prompt: str = ""
    safety_settings: list[dict] = field(default_factory=list)
    google_search: bool = False


@dataclass
class UpstreamResponse:
    text: str = ""
    attachment: AttachmentPayload | None = None
    usage: dict = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

@dataclass
class InboundMessage:
    """A message delivered by the transport."""
    chat_id: str
    sender: str = ""
    text: str = ""
    has_attachment: bool = False
    raw: Any = None  # transport-specific handle used for downloads


@dataclass
class RelayRequest:
    """Everything the orchestrator needs to serve one inbound message."""
    chat_id: str
    track: TrackConfig
    model_config: ModelConfig
    service: str
    text: str = ""
    sender: str = ""
    attachment: AttachmentPayload | None = None


class RequestState(str, Enum):
    PREPARING = "preparing"
    CALLING = "calling"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class RequestOutcome:
    state: RequestState
    attempts: int = 0
    errors: list[str] = field(default_factory=list)
    response_text: str = ""
    attachment_id: str = ""
    user_message: str = ""  # the single user-facing message on failure

    @property
    def succeeded(self) -> bool:
        return self.state == RequestState.SUCCEEDED


@dataclass
class ClearResult:
    history_cleared: bool = False
    attachments_removed: int = 0


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class ChatRelayError(Exception):
    pass


class InputError(ChatRelayError):
    """The request carries nothing actionable. Never retried."""


class UpstreamError(ChatRelayError):
    def __init__(self, message: str, provider: str = "", status_code: int | None = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class TransientUpstreamError(UpstreamError):
    """Rate limit, timeout, or availability problem. Another credential may work."""


class TerminalUpstreamError(UpstreamError):
    """The upstream permanently rejected the request. Retrying will not help."""

    def __init__(
        self,
        message: str,
        provider: str = "",
        status_code: int | None = None,
        user_message: str | None = None,
        content_blocked: bool = False,
    ):
        super().__init__(message, provider=provider, status_code=status_code)
        self.user_message = user_message
        self.content_blocked = content_blocked


class StorageError(ChatRelayError):
    pass


class TurnStoreError(StorageError):
    pass


class AttachmentStorageError(StorageError):
    pass


class CredentialStoreError(StorageError):
    pass


# ---------------------------------------------------------------------------
# Collaborator protocols
# ---------------------------------------------------------------------------

@runtime_checkable
class UpstreamModel(Protocol):
    async def invoke(
        self,
        credential: str,
        segments: list[ContextSegment],
        model_config: ModelConfig,
    ) -> UpstreamResponse: ...


@runtime_checkable
class MessagingTransport(Protocol):
    async def send_text(self, chat_id: str, text: str) -> None: ...

    async def send_image(
        self, chat_id: str, data: bytes, mime_type: str, caption: str = "",
    ) -> None: ...

    async def send_status(self, chat_id: str, text: str) -> Any: ...

    async def edit_status(self, chat_id: str, handle: Any, text: str) -> None: ...

    async def delete_status(self, chat_id: str, handle: Any) -> None: ...

    async def download_attachment(self, message: InboundMessage) -> AttachmentPayload: ...


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

DEFAULT_SAFETY_SETTINGS: list[dict] = [
    {"category": "HARM_CATEGORY_HARASSMENT", "threshold": "BLOCK_NONE"},
    {"category": "HARM_CATEGORY_HATE_SPEECH", "threshold": "BLOCK_NONE"},
    {"category": "HARM_CATEGORY_SEXUALLY_EXPLICIT", "threshold": "BLOCK_NONE"},
    {"category": "HARM_CATEGORY_DANGEROUS_CONTENT", "threshold": "BLOCK_NONE"},
    {"category": "HARM_CATEGORY_CIVIC_INTEGRITY", "threshold": "BLOCK_NONE"},
]


@dataclass
class TrackConfig:
    """Per-track conversation mode: history window, references, model."""
    name: str = "chat"
    model: str = "gemini-2.5-pro"
    history_window: int = 30
    max_attachments: int = 10
    upload_label: str = "IMAGE ATTACHED"  # token label for user uploads
    result_label: str = ""  # token label for model-produced attachments ("" = text only)
    response_modalities: list[str] = field(default_factory=lambda: ["TEXT"])
    use_system_prompt: bool = True
    google_search: bool = False
    status_text: str = "Thinking..."
    attachment_status_text: str = "Analyzing image..."
    default_attachment_prompt: str = "Describe what you see in this image."
    request_prefix: str = ""
    attachment_request_prefix: str = ""
    new_message_label: str = "User's new message: "
    result_caption: str = ""
    blocked_message: str = "The request was blocked by the content filter."

    @property
    def produces_attachments(self) -> bool:
        return bool(self.result_label)


def default_tracks() -> dict[str, TrackConfig]:
    return {
        "chat": TrackConfig(google_search=True),
        "image_gen": TrackConfig(
            name="image_gen",
            model="gemini-2.0-flash-exp-image-generation",
            upload_label="UPLOADED IMAGE",
            result_label="GENERATED IMAGE",
            response_modalities=["TEXT", "IMAGE"],
            use_system_prompt=False,
            status_text="Generating image...",
            attachment_status_text="Generating image...",
            default_attachment_prompt="Generate a new image based on this reference image.",
            request_prefix="Please generate an image based on: ",
            attachment_request_prefix=(
                "Please generate a new image based on this uploaded image "
                "and the description: "
            ),
            new_message_label="",
            result_caption="Here's your generated image",
            blocked_message="Image generation was blocked by the content filter.",
        ),
    }


@dataclass
class CredentialsConfig:
    path: str = "key.json"
    service: str = "keygemini"


@dataclass
class StorageConfig:
    root: str = "history"
    legacy_root: str = "HISTORY"
    backend: str = "filesystem"  # "filesystem" or "memory"


@dataclass
class OrchestratorConfig:
    max_retries: int = 10
    retry_backoff: float = 1.0  # seconds between attempts
    call_timeout: float = 180.0
    retry_status: str = "ERROR, RETRYING... PLEASE WAIT"
    failure_message: str = "AI error, please contact the administrator."
    attachment_failure_message: str = "Failed to process the uploaded image. Please try again."
    empty_input_message: str = "Please send a message or an image."


@dataclass
class UpstreamConfig:
    provider: str = "gemini"
    base_url: str = "https://generativelanguage.googleapis.com/v1beta/models"
    timeout: float = 120.0
    system_prompt_path: str = "system.txt"
    safety_settings: list[dict] = field(default_factory=lambda: [dict(s) for s in DEFAULT_SAFETY_SETTINGS])


@dataclass
class ChatRelayConfig:
    version: str = "1.0"
    default_track: str = "chat"
    credentials: CredentialsConfig = field(default_factory=CredentialsConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    upstream: UpstreamConfig = field(default_factory=UpstreamConfig)
    tracks: dict[str, TrackConfig] = field(default_factory=default_tracks)
