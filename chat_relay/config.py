"""Configuration loading, validation, and defaults."""

from __future__ import annotations

import json
import logging
from dataclasses import fields, replace
from pathlib import Path
from typing import Any

import yaml

from .types import (
    ChatRelayConfig,
    CredentialsConfig,
    OrchestratorConfig,
    StorageConfig,
    TrackConfig,
    UpstreamConfig,
    default_tracks,
)

logger = logging.getLogger(__name__)

CONFIG_FILENAMES = [
    "chat-relay.yaml",
    "chat-relay.yml",
    "chat-relay.json",
]

KNOWN_PROVIDERS = {"gemini"}

DEFAULT_SYSTEM_PROMPT = (
    "You are a friendly and helpful AI assistant named Veo. You provide concise, "
    "accurate, and helpful responses. You are polite and respectful. If you don't "
    "know the answer to something, you'll admit it rather than making up "
    "information. You should avoid controversial topics and follow ethical guidelines."
)
FALLBACK_SYSTEM_PROMPT = (
    "You are a friendly and helpful AI assistant named Veo. You provide concise, "
    "accurate, and helpful responses."
)


def _discover_config() -> Path | None:
    """Search CWD then parent dirs up to home for a config file."""
    cwd = Path.cwd()
    home = Path.home()
    search = cwd
    while True:
        for name in CONFIG_FILENAMES:
            candidate = search / name
            if candidate.is_file():
                return candidate
        if search == home or search == search.parent:
            break
        search = search.parent
    return None


def _pick(cls, raw: dict[str, Any]) -> dict[str, Any]:
    """Keep only keys that are fields of dataclass ``cls``."""
    names = {f.name for f in fields(cls)}
    unknown = set(raw) - names
    if unknown:
        logger.warning("Ignoring unknown %s keys: %s", cls.__name__, ", ".join(sorted(unknown)))
    return {k: v for k, v in raw.items() if k in names}


def _parse_tracks(raw: dict[str, Any]) -> dict[str, TrackConfig]:
    tracks = default_tracks()
    for name, traw in raw.items():
        traw = traw if isinstance(traw, dict) else {}
        base = tracks.get(name, TrackConfig(name=name))
        overrides = _pick(TrackConfig, traw)
        overrides["name"] = name
        tracks[name] = replace(base, **overrides)
    return tracks


def _build_config(raw: dict[str, Any]) -> ChatRelayConfig:
    """Build a ChatRelayConfig from a raw dict."""
    credentials = CredentialsConfig(**_pick(CredentialsConfig, raw.get("credentials") or {}))
    storage = StorageConfig(**_pick(StorageConfig, raw.get("storage") or {}))
    orchestrator = OrchestratorConfig(**_pick(OrchestratorConfig, raw.get("orchestrator") or {}))
    upstream = UpstreamConfig(**_pick(UpstreamConfig, raw.get("upstream") or {}))

    return ChatRelayConfig(
        version=str(raw.get("version", "1.0")),
        default_track=raw.get("default_track", "chat"),
        credentials=credentials,
        storage=storage,
        orchestrator=orchestrator,
        upstream=upstream,
        tracks=_parse_tracks(raw.get("tracks") or {}),
    )


def validate_config(config: ChatRelayConfig) -> list[str]:
    """Validate a config. Returns list of error strings (empty = valid)."""
    errors: list[str] = []

    orch = config.orchestrator
    if orch.max_retries < 1:
        errors.append("orchestrator.max_retries must be >= 1")
    if orch.retry_backoff < 0:
        errors.append("orchestrator.retry_backoff must be >= 0")
    if orch.call_timeout <= 0:
        errors.append("orchestrator.call_timeout must be > 0")

    if config.default_track not in config.tracks:
        errors.append(f"Default track '{config.default_track}' not found in tracks section")

    for name, track in config.tracks.items():
        if track.history_window < 1:
            errors.append(f"tracks.{name}.history_window must be >= 1")
        if track.max_attachments < 1:
            errors.append(f"tracks.{name}.max_attachments must be >= 1")
        if not track.model:
            errors.append(f"tracks.{name}.model must be set")
        if not track.upload_label:
            errors.append(f"tracks.{name}.upload_label must be set")

    if config.upstream.provider not in KNOWN_PROVIDERS:
        errors.append(
            f"Unknown upstream provider '{config.upstream.provider}'. "
            f"Use one of: {', '.join(sorted(KNOWN_PROVIDERS))}"
        )

    if config.storage.backend not in ("filesystem", "memory"):
        errors.append(f"Unknown storage backend '{config.storage.backend}'")

    return errors


def load_config(
    config_path: str | Path | None = None,
    config_dict: dict | None = None,
) -> ChatRelayConfig:
    """Load config from dict, explicit path, or auto-discover."""
    if config_dict is not None:
        return _build_config(config_dict)

    if config_path is not None:
        path = Path(config_path)
    else:
        path = _discover_config()

    if path is None:
        # Return defaults
        return _build_config({})

    if not path.is_file():
        raise FileNotFoundError(f"Config file not found: {path}")

    text = path.read_text()
    if path.suffix == ".json":
        raw = json.loads(text)
    else:
        raw = yaml.safe_load(text) or {}

    return _build_config(raw)


def load_system_prompt(path: str | Path) -> str:
    """Read the system prompt, creating the file with the default prompt if missing."""
    path = Path(path)
    try:
        if path.is_file():
            logger.info("Loaded custom system prompt from %s", path)
            return path.read_text()
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(DEFAULT_SYSTEM_PROMPT)
        logger.info("Created %s with default system prompt", path)
        return DEFAULT_SYSTEM_PROMPT
    except OSError as e:
        logger.error("Error loading system prompt: %s", e)
        return FALLBACK_SYSTEM_PROMPT
