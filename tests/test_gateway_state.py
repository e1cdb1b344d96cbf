#!/usr/bin/env python3
"""
Gateway configuration and token resolution tests.

Run with: python -m pytest tests/test_gateway_state.py -v
"""

import json
import stat

from conftest import write_config
from gateway_state import GatewayState
from wrapper_config import WrapperConfig


class TestConfigured:
    """Test the 'configured' predicate."""

    def test_unconfigured(self, config):
        state = GatewayState(config)
        assert state.is_configured() is False
        assert state.config_mtime() is None
        assert state.read_config() is None

    def test_configured_when_file_exists(self, config):
        write_config(config)
        state = GatewayState(config)
        assert state.is_configured() is True
        assert state.config_mtime() is not None

    def test_delete_config(self, config):
        write_config(config)
        state = GatewayState(config)
        state.delete_config()
        assert state.is_configured() is False
        # Idempotent
        state.delete_config()

    def test_unparseable_config_reads_as_none(self, config):
        config.config_path.parent.mkdir(parents=True)
        config.config_path.write_text("{not json")
        state = GatewayState(config)
        assert state.is_configured() is True
        assert state.read_config() is None


class TestTokenResolution:
    """Test the token priority chain."""

    def test_override_wins(self, config):
        write_config(config, "from-config")
        config.token_path.write_text("from-file")
        config.gateway_token_override = "from-env"

        assert GatewayState(config).resolve_token() == "from-env"

    def test_config_before_legacy_file(self, config):
        write_config(config, "from-config")
        config.token_path.write_text("from-file")

        assert GatewayState(config).resolve_token() == "from-config"

    def test_legacy_file(self, config):
        config.state_dir.mkdir(parents=True)
        config.token_path.write_text("from-file\n")

        assert GatewayState(config).resolve_token() == "from-file"

    def test_blank_config_token_falls_through(self, config):
        write_config(config, "   ")
        config.token_path.write_text("from-file")

        assert GatewayState(config).resolve_token() == "from-file"

    def test_generated_and_persisted(self, config):
        """Test a fresh token is 64 hex chars and written with mode 0600."""
        state = GatewayState(config)
        token = state.resolve_token()

        assert len(token) == 64
        int(token, 16)
        assert config.token_path.read_text() == token
        assert stat.S_IMODE(config.token_path.stat().st_mode) == 0o600

        # Stable across resolutions
        assert GatewayState(config).resolve_token() == token

    def test_persist_failure_still_returns_token(self, tmp_path):
        """Test an unwritable state dir does not fail resolution."""
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        config = WrapperConfig(local_root=tmp_path, state_dir=blocker / "state")

        token = GatewayState(config).resolve_token()
        assert len(token) == 64

    def test_unexpected_config_shapes_fall_through(self, config):
        """Test non-object gateway/auth levels fall back to the legacy file."""
        config.state_dir.mkdir(parents=True)
        config.token_path.write_text("from-file")
        state = GatewayState(config)

        for shape in (
            {"gateway": "legacy-string"},
            {"gateway": {"auth": "token"}},
            {"gateway": {"auth": {"token": 1234}}},
            {"gateway": None},
            ["not", "an", "object"],
        ):
            config.config_path.write_text(json.dumps(shape))
            assert state.resolve_token() == "from-file", shape

    def test_token_prefix(self, config):
        state = GatewayState(config)
        assert state.token_prefix() is None
        write_config(config, "abcdefghijklmnop")
        state.resolve_token()
        assert state.current_token == "abcdefghijklmnop"
        assert state.token_prefix() == "abcdefgh..."
