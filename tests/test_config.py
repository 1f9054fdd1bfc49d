"""
Tests for configuration loading and validation.
"""

import pytest
import yaml

from craftgate.core.config import (
    DEFAULT_EXECUTABLES,
    DEFAULT_SEARCH_PATH,
    Config,
    WhitelistEntryConfig,
)
from craftgate.core.exceptions import ConfigError


class TestConfig:
    """Test configuration loading."""

    def test_default_config(self):
        """Test default configuration values."""
        config = Config()

        assert [e.name for e in config.whitelist.entries] == DEFAULT_EXECUTABLES
        assert config.whitelist.search_path == DEFAULT_SEARCH_PATH
        assert config.whitelist.allow_absolute_paths is True
        assert config.execution.max_output_bytes == 1024 * 1024
        assert config.sandbox.memory_limit_bytes == 256 * 1024 * 1024
        assert config.sandbox.start_method == "spawn"
        assert config.audit.ledger_path is None
        assert config.audit.fsync is True
        assert config.log_level == "INFO"
        assert config.validate() == []

    def test_from_dict(self):
        """Test configuration from dictionary."""
        config = Config.from_dict({
            "whitelist": {
                "entries": [
                    "pacman",
                    {"name": "systemctl", "allowed_flags": "--now|--user"},
                    {"name": "mytool", "path": "/opt/mytool/bin/mytool", "aliases": ["/usr/local/bin/mytool"]},
                ],
                "allow_absolute_paths": False,
            },
            "execution": {"max_output_bytes": 4096},
            "sandbox": {"timeout_seconds": 5.0},
            "audit": {"ledger_path": "/var/lib/craftgate/ledger.jsonl"},
            "log_level": "DEBUG",
            "json_logs": False,
        })

        assert config.whitelist.entries[0] == WhitelistEntryConfig(name="pacman")
        assert config.whitelist.entries[1].allowed_flags == "--now|--user"
        assert config.whitelist.entries[2].aliases == ["/usr/local/bin/mytool"]
        assert config.whitelist.allow_absolute_paths is False
        assert config.whitelist.search_path == DEFAULT_SEARCH_PATH
        assert config.execution.max_output_bytes == 4096
        assert config.sandbox.timeout_seconds == 5.0
        assert config.sandbox.memory_limit_bytes == 256 * 1024 * 1024
        assert config.audit.ledger_path == "/var/lib/craftgate/ledger.jsonl"
        assert config.log_level == "DEBUG"
        assert config.json_logs is False

    def test_from_file(self, tmp_path):
        """Test configuration from a YAML file."""
        path = tmp_path / "craftgate.yaml"
        path.write_text(yaml.safe_dump({
            "whitelist": {"entries": ["pacman", "paru"]},
            "sandbox": {"memory_limit_bytes": 1048576},
        }))

        config = Config.from_file(str(path))

        assert [e.name for e in config.whitelist.entries] == ["pacman", "paru"]
        assert config.sandbox.memory_limit_bytes == 1048576

    def test_empty_file(self, tmp_path):
        """Test an empty file yields defaults."""
        path = tmp_path / "craftgate.yaml"
        path.write_text("")
        assert Config.from_file(str(path)).to_dict() == Config().to_dict()

    def test_missing_file(self, tmp_path):
        """Test a missing configuration file."""
        with pytest.raises(FileNotFoundError):
            Config.from_file(str(tmp_path / "missing.yaml"))

    def test_non_mapping_root(self, tmp_path):
        """Test a YAML document that is not a mapping."""
        path = tmp_path / "craftgate.yaml"
        path.write_text("- pacman\n- paru\n")
        with pytest.raises(ConfigError):
            Config.from_file(str(path))

    def test_round_trip(self):
        """Test to_dict output loads back to the same configuration."""
        config = Config.from_dict({
            "whitelist": {"entries": [{"name": "pacman", "allowed_flags": "-S"}]},
            "audit": {"keyring_path": "/etc/craftgate/keyring.json"},
        })
        assert Config.from_dict(config.to_dict()).to_dict() == config.to_dict()


class TestConfigValidation:
    """Test configuration validation."""

    def test_duplicate_names(self):
        """Test duplicate whitelist entries."""
        config = Config.from_dict({"whitelist": {"entries": ["pacman", "pacman"]}})
        assert any("duplicate" in e for e in config.validate())

    @pytest.mark.parametrize(
        "data",
        [
            {"whitelist": {"entries": ["bin/pacman"]}},
            {"whitelist": {"entries": [{"name": "pacman", "path": "usr/bin/pacman"}]}},
            {"execution": {"max_output_bytes": 0}},
            {"execution": {"timeout_seconds": -1}},
            {"sandbox": {"memory_limit_bytes": 0}},
            {"sandbox": {"timeout_seconds": 0}},
            {"sandbox": {"start_method": "thread"}},
            {"sandbox": {"poll_interval_seconds": 0}},
            {"log_level": "LOUD"},
        ],
    )
    def test_invalid_values(self, data):
        """Test each rejected setting."""
        assert len(Config.from_dict(data).validate()) == 1

    def test_no_execution_timeout(self):
        """Test the execution timeout can be disabled."""
        config = Config.from_dict({"execution": {"timeout_seconds": None}})
        assert config.validate() == []

    def test_persistent_ledger_requires_key(self):
        """Test a ledger file needs a signing key that outlives the process."""
        errors = Config.from_dict({"audit": {"ledger_path": "/var/lib/craftgate/ledger.jsonl"}}).validate()
        assert len(errors) == 1
        assert "signing_key_path" in errors[0]

        config = Config.from_dict({
            "audit": {
                "ledger_path": "/var/lib/craftgate/ledger.jsonl",
                "signing_key_path": "/etc/craftgate/ledger.key",
            },
        })
        assert config.validate() == []
