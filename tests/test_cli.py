"""
Tests for the command-line interface and logging setup.
"""

import base64
import json
import logging
import logging.handlers
import runpy
import sys
from pathlib import Path

import pytest
import yaml

from craftgate import __version__
from craftgate.cli import main
from craftgate.core.config import Config
from craftgate.integrity import SigningKey, TrustedKeySet, load_signing_key
from craftgate.observability import JSONFormatter, setup_logging, setup_logging_from_config

KEYRING_SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "generate_keyring.py"


@pytest.fixture(autouse=True)
def restore_root_logger():
    """setup_logging replaces root handlers; put the originals back."""
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def config_file(tmp_path):
    """Configuration with a persistent key, keyring and ledger."""
    signing_key = SigningKey.generate("cli-key")
    key_path = tmp_path / "cli-key.key"
    key_path.write_bytes(base64.b64encode(signing_key.private_bytes()))
    keyring_path = tmp_path / "keyring.json"
    TrustedKeySet([signing_key.trusted_key()]).save(keyring_path)

    path = tmp_path / "craftgate.yaml"
    path.write_text(yaml.safe_dump({
        "whitelist": {"entries": [{"name": "pacman", "path": "/usr/bin/pacman"}]},
        "audit": {
            "ledger_path": str(tmp_path / "ledger.jsonl"),
            "fsync": False,
            "signing_key_path": str(key_path),
            "signing_key_id": "cli-key",
            "keyring_path": str(keyring_path),
        },
        "log_level": "WARNING",
    }))
    return path


class TestCLI:
    """Test CLI commands."""

    def test_version(self, capsys):
        """Test version output."""
        assert main(["version"]) == 0
        assert __version__ in capsys.readouterr().out

    def test_no_command(self, capsys):
        """Test running without a command."""
        assert main([]) == 1

    def test_check(self, config_file, capsys):
        """Test validating a command."""
        assert main(["-c", str(config_file), "check", "pacman -S neovim"]) == 0
        output = json.loads(capsys.readouterr().out)
        assert output["valid"] is True
        assert output["argv"] == ["pacman", "-S", "neovim"]

    def test_check_rejected(self, config_file, capsys):
        """Test validating an injection attempt."""
        assert main(["-c", str(config_file), "check", "pacman -S neovim; reboot"]) == 1
        output = json.loads(capsys.readouterr().out)
        assert output["reason"] == "DISALLOWED_METACHARACTER"

    def test_run_dry_run_and_audit(self, config_file, capsys):
        """Test running commands and querying the ledger afterwards."""
        assert main(["-c", str(config_file), "run", "--dry-run", "pacman -S neovim"]) == 0
        assert main(["-c", str(config_file), "run", "rm -rf /"]) == 1
        capsys.readouterr()

        assert main(["-c", str(config_file), "verify-ledger"]) == 0
        assert json.loads(capsys.readouterr().out)["records_checked"] == 2

        assert main(["-c", str(config_file), "audit", "--failures"]) == 0
        failures = json.loads(capsys.readouterr().out)
        assert len(failures) == 1
        assert failures[0]["event"]["command"] == "rm -rf /"

    def test_audit_export(self, config_file, tmp_path, capsys):
        """Test exporting the ledger."""
        main(["-c", str(config_file), "run", "--dry-run", "pacman -Q"])
        export = tmp_path / "export.json"

        assert main(["-c", str(config_file), "audit", "--export", str(export)]) == 0
        assert len(json.loads(export.read_text())) == 1

    def test_sign_and_verify_file(self, config_file, tmp_path, capsys):
        """Test detached file signatures from the CLI."""
        target = tmp_path / "module.yaml"
        target.write_text("name: base\n")

        assert main(["-c", str(config_file), "sign-file", str(target)]) == 0
        assert main(["-c", str(config_file), "verify-file", str(target)]) == 0

        target.write_text("name: evil\n")
        assert main(["-c", str(config_file), "verify-file", str(target)]) == 2

    def test_missing_config(self, tmp_path, capsys):
        """Test a configuration file that does not exist."""
        assert main(["-c", str(tmp_path / "missing.yaml"), "check", "pacman"]) == 1
        assert "Failed to load config" in capsys.readouterr().err

    def test_invalid_config(self, tmp_path, capsys):
        """Test a configuration that fails validation."""
        path = tmp_path / "craftgate.yaml"
        path.write_text(yaml.safe_dump({"sandbox": {"start_method": "thread"}}))

        assert main(["-c", str(path), "check", "pacman"]) == 1
        assert "Config error" in capsys.readouterr().err


class TestLogging:
    """Test structured logging setup."""

    def test_json_formatter(self):
        """Test JSON log lines carry context fields."""
        record = logging.LogRecord(
            "craftgate.gateway", logging.INFO, __file__, 10, "Executed %s", ("pacman",), None
        )
        record.record_id = "abc"

        data = json.loads(JSONFormatter().format(record))

        assert data["message"] == "Executed pacman"
        assert data["level"] == "INFO"
        assert data["logger"] == "craftgate.gateway"
        assert data["record_id"] == "abc"
        assert "command" not in data

    def test_setup_logging(self, tmp_path):
        """Test handlers installed by setup_logging."""
        log_file = tmp_path / "craftgate.log"
        setup_logging("DEBUG", json_format=False, log_file=str(log_file))

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 2
        assert root.handlers[0].stream is sys.stderr
        assert isinstance(root.handlers[1], logging.handlers.WatchedFileHandler)
        assert not isinstance(root.handlers[0].formatter, JSONFormatter)

    def test_setup_logging_from_config(self):
        """Test logging configured from a Config."""
        setup_logging_from_config(Config.from_dict({"log_level": "ERROR"}))

        root = logging.getLogger()
        assert root.level == logging.ERROR
        assert isinstance(root.handlers[0].formatter, JSONFormatter)

    def test_ledger_id_on_log_records(self, gate, caplog):
        """Test command log lines carry the ledger record they describe."""
        with caplog.at_level(logging.INFO, logger="craftgate.gateway"):
            report = gate.submit("pacman -Q", dry_run=True)

        record = [r for r in caplog.records if r.name == "craftgate.gateway"][-1]
        assert record.record_id == report.record_id
        assert record.command == "pacman -Q"

        data = json.loads(JSONFormatter().format(record))
        assert data["record_id"] == report.record_id
        assert data["command"] == "pacman -Q"


class TestKeyringScript:
    """Test the keyring management script."""

    def _run(self, monkeypatch, *args):
        script = runpy.run_path(str(KEYRING_SCRIPT))
        monkeypatch.setattr(sys, "argv", ["generate_keyring.py", *args])
        return script["main"]()

    def test_generate_and_revoke(self, tmp_path, monkeypatch, capsys):
        """Test generating a key, refusing duplicates, and revoking it."""
        assert self._run(monkeypatch, "--key-id", "ops", "--output-dir", str(tmp_path)) == 0

        key_path = tmp_path / "ops.key"
        assert key_path.stat().st_mode & 0o777 == 0o600
        signing_key = load_signing_key("ops", key_file=key_path)
        keyring = TrustedKeySet.load(tmp_path / "keyring.json")
        assert keyring.get("ops").public_key == signing_key.public_bytes()

        assert self._run(monkeypatch, "--key-id", "ops", "--output-dir", str(tmp_path)) == 1

        assert self._run(monkeypatch, "--output-dir", str(tmp_path), "--revoke", "ops") == 0
        assert TrustedKeySet.load(tmp_path / "keyring.json").get("ops").revoked

    def test_revoke_unknown(self, tmp_path, monkeypatch, capsys):
        """Test revoking a key that is not in the keyring."""
        assert self._run(monkeypatch, "--output-dir", str(tmp_path), "--revoke", "nobody") == 1
