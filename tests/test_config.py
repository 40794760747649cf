"""Tests for config loading, validation and the system prompt file."""

import json

import pytest
import yaml

from chat_relay.config import (
    DEFAULT_SYSTEM_PROMPT,
    load_config,
    load_system_prompt,
    validate_config,
)


class TestLoadConfig:
    def test_defaults(self):
        config = load_config(config_dict={})
        assert config.credentials.path == "key.json"
        assert config.credentials.service == "keygemini"
        assert config.storage.root == "history"
        assert config.storage.legacy_root == "HISTORY"
        assert config.orchestrator.max_retries == 10
        assert config.orchestrator.retry_status == "ERROR, RETRYING... PLEASE WAIT"
        assert set(config.tracks) == {"chat", "image_gen"}
        assert config.tracks["chat"].history_window == 30
        assert config.tracks["chat"].max_attachments == 10
        assert config.tracks["chat"].google_search
        assert config.tracks["image_gen"].response_modalities == ["TEXT", "IMAGE"]
        assert validate_config(config) == []

    def test_yaml_file(self, tmp_path):
        path = tmp_path / "chat-relay.yaml"
        path.write_text(yaml.safe_dump({
            "credentials": {"path": "keys/pool.json", "service": "gemini"},
            "orchestrator": {"max_retries": 4, "retry_backoff": 0.5},
            "tracks": {"chat": {"history_window": 12, "model": "gemini-2.5-flash"}},
        }))
        config = load_config(path)
        assert config.credentials.service == "gemini"
        assert config.orchestrator.max_retries == 4
        assert config.tracks["chat"].history_window == 12
        assert config.tracks["chat"].model == "gemini-2.5-flash"
        # untouched defaults survive a partial override
        assert config.tracks["chat"].upload_label == "IMAGE ATTACHED"
        assert config.tracks["image_gen"].result_label == "GENERATED IMAGE"

    def test_json_file(self, tmp_path):
        path = tmp_path / "chat-relay.json"
        path.write_text(json.dumps({"storage": {"root": "data"}}))
        assert load_config(path).storage.root == "data"

    def test_new_track(self):
        config = load_config(config_dict={
            "tracks": {"vision": {"model": "gemini-2.5-flash", "upload_label": "PHOTO"}},
        })
        assert config.tracks["vision"].name == "vision"
        assert config.tracks["vision"].upload_label == "PHOTO"
        assert "chat" in config.tracks

    def test_track_name_key_ignored(self):
        config = load_config(config_dict={"tracks": {"chat": {"name": "other"}}})
        assert config.tracks["chat"].name == "chat"

    def test_unknown_keys_ignored(self):
        config = load_config(config_dict={"orchestrator": {"max_retries": 2, "bogus": True}})
        assert config.orchestrator.max_retries == 2

    def test_missing_explicit_path(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.yaml")

    def test_discovery_from_cwd(self, tmp_path, monkeypatch):
        (tmp_path / "chat-relay.yml").write_text("default_track: image_gen\n")
        nested = tmp_path / "a" / "b"
        nested.mkdir(parents=True)
        monkeypatch.chdir(nested)
        monkeypatch.setenv("HOME", str(tmp_path))
        assert load_config().default_track == "image_gen"


class TestValidateConfig:
    def test_invalid_values(self):
        config = load_config(config_dict={
            "default_track": "missing",
            "orchestrator": {"max_retries": 0, "retry_backoff": -1, "call_timeout": 0},
            "upstream": {"provider": "openai"},
            "storage": {"backend": "sqlite"},
            "tracks": {"chat": {"history_window": 0, "max_attachments": 0}},
        })
        errors = validate_config(config)
        assert any("max_retries" in e for e in errors)
        assert any("retry_backoff" in e for e in errors)
        assert any("call_timeout" in e for e in errors)
        assert any("Default track 'missing'" in e for e in errors)
        assert any("tracks.chat.history_window" in e for e in errors)
        assert any("tracks.chat.max_attachments" in e for e in errors)
        assert any("openai" in e for e in errors)
        assert any("sqlite" in e for e in errors)


class TestSystemPrompt:
    def test_creates_default_when_missing(self, tmp_path):
        path = tmp_path / "system.txt"
        assert load_system_prompt(path) == DEFAULT_SYSTEM_PROMPT
        assert path.read_text() == DEFAULT_SYSTEM_PROMPT

    def test_reads_existing(self, tmp_path):
        path = tmp_path / "system.txt"
        path.write_text("Be brief.")
        assert load_system_prompt(path) == "Be brief."

    def test_unreadable_falls_back(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("a file, not a directory")
        prompt = load_system_prompt(blocker / "system.txt")
        assert prompt
        assert prompt != DEFAULT_SYSTEM_PROMPT
