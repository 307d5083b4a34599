"""Tests for configuration schema and loading.

Covers:
- Defaults match the chat core constants
- camelCase / snake_case keys
- Validation of delays, reply pool and welcome text
- Environment variable overrides
- load_config / save_config file handling
"""

from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from bluechat.chat.conversation import DEFAULT_NAMESPACE
from bluechat.chat.responder import DEFAULT_REPLIES
from bluechat.chat.session import DEFAULT_WELCOME_TEXT
from bluechat.config import ChatConfig, load_config, save_config
from bluechat.config.schema import ResponderConfig, SessionConfig


class TestDefaults:

    def test_defaults(self):
        cfg = ChatConfig()
        assert cfg.session.welcome_delay == 1.0
        assert cfg.session.welcome_text == DEFAULT_WELCOME_TEXT
        assert cfg.responder.min_delay == 1.0
        assert cfg.responder.max_delay == 3.0
        assert tuple(cfg.responder.replies) == DEFAULT_REPLIES
        assert cfg.responder.deliver_after_disconnect is True
        assert cfg.session.deliver_after_disconnect is True
        assert cfg.discovery.refresh_on_rediscovery is False
        assert cfg.storage.namespace == DEFAULT_NAMESPACE
        assert cfg.smart_reply.model == "gpt-4o"
        assert cfg.smart_reply.max_suggestions == 3
        assert cfg.api.port == 8765

    def test_data_path_expands_user(self):
        cfg = ChatConfig()
        assert "~" not in str(cfg.storage.data_path)


class TestAliases:

    def test_camel_case_keys(self):
        cfg = ChatConfig.model_validate({
            "session": {"welcomeDelay": 0.5, "deliverAfterDisconnect": False},
            "responder": {"minDelay": 0.1, "maxDelay": 0.2, "deliverAfterDisconnect": False},
            "smart_reply": {"maxSuggestions": 5},
        })
        assert cfg.session.welcome_delay == 0.5
        assert cfg.responder.max_delay == 0.2
        assert cfg.responder.deliver_after_disconnect is False
        assert cfg.session.deliver_after_disconnect is False
        assert cfg.smart_reply.max_suggestions == 5

    def test_snake_case_keys(self):
        cfg = ChatConfig.model_validate({"discovery": {"refresh_on_rediscovery": True}})
        assert cfg.discovery.refresh_on_rediscovery is True


class TestValidation:

    def test_negative_welcome_delay(self):
        with pytest.raises(ValidationError):
            SessionConfig(welcome_delay=-1)

    def test_blank_welcome_text(self):
        with pytest.raises(ValidationError):
            SessionConfig(welcome_text="   ")

    def test_inverted_delay_range(self):
        with pytest.raises(ValidationError):
            ResponderConfig(min_delay=5.0, max_delay=1.0)

    def test_blank_reply_pool(self):
        with pytest.raises(ValidationError):
            ResponderConfig(replies=["", "  "])


class TestEnvironment:

    def test_nested_env_override(self, monkeypatch):
        monkeypatch.setenv("BLUECHAT_SMART_REPLY__MODEL", "anthropic/claude-3-haiku")
        monkeypatch.setenv("BLUECHAT_API__PORT", "9000")
        cfg = ChatConfig()
        assert cfg.smart_reply.model == "anthropic/claude-3-haiku"
        assert cfg.api.port == 9000


class TestLoader:

    def test_missing_file_gives_defaults(self, tmp_path):
        cfg = load_config(tmp_path / "absent.json")
        assert cfg.api.port == 8765

    def test_save_then_load(self, tmp_path):
        path = tmp_path / "sub" / "config.json"
        cfg = ChatConfig()
        cfg.responder.seed = 123
        cfg.storage.data_dir = str(tmp_path / "data")
        save_config(cfg, path)

        raw = json.loads(path.read_text())
        assert raw["smart_reply"]["maxSuggestions"] == 3
        assert raw["responder"]["seed"] == 123

        loaded = load_config(path)
        assert loaded.responder.seed == 123
        assert loaded.storage.data_dir == str(tmp_path / "data")

    def test_corrupt_file_gives_defaults(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{broken")
        assert load_config(path).responder.min_delay == 1.0

    def test_invalid_values_give_defaults(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"responder": {"minDelay": 9, "maxDelay": 1}}))
        assert load_config(path).responder.max_delay == 3.0
