"""chat-relay: messaging-to-Gemini relay with rotating API keys and per-user history."""

from .config import load_config
from .engine import ChatRelay
from .types import (
    ChatRelayConfig,
    InboundMessage,
    RequestOutcome,
    RequestState,
    TrackConfig,
    Turn,
)

__version__ = "0.1.0"

__all__ = [
    "ChatRelay",
    "load_config",
    "ChatRelayConfig",
    "InboundMessage",
    "RequestOutcome",
    "RequestState",
    "TrackConfig",
    "Turn",
]
