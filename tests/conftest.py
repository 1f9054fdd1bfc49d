"""
CraftGate - Test Configuration

Shared fixtures: signing keys, ledgers, whitelists and a configured engine.
"""

import os
import re
import sys
from pathlib import Path

import pytest

from craftgate.audit import AuditLedger
from craftgate.core.config import Config
from craftgate.core.engine import CraftGate
from craftgate.integrity import IntegritySigner, SigningKey, TrustedKeySet
from craftgate.validation import CommandValidator, Whitelist, WhitelistEntry

# Interpreter used as a deterministic whitelisted executable in live tests.
PYTHON = os.path.realpath(sys.executable)


def build_python_command(code: str, *args: str) -> str:
    """Command string running PYTHON -c code, single-quoted."""
    parts = [f"'{PYTHON}'", "-c", f"'{code}'"]
    parts.extend(f"'{a}'" for a in args)
    return " ".join(parts)


@pytest.fixture
def python_command():
    """Builder for commands that run the test interpreter."""
    return build_python_command


@pytest.fixture
def sample_ed25519_keypair():
    """Fixture providing a sample Ed25519 signing key and its public half."""
    signing_key = SigningKey.generate("test-key-001")
    return {
        "signing_key": signing_key,
        "trusted_key": signing_key.trusted_key(description="test"),
        "private_bytes": signing_key.private_bytes(),
        "public_bytes": signing_key.public_bytes(),
    }


@pytest.fixture
def signing_key(sample_ed25519_keypair) -> SigningKey:
    return sample_ed25519_keypair["signing_key"]


@pytest.fixture
def trusted_keys(sample_ed25519_keypair) -> TrustedKeySet:
    return TrustedKeySet([sample_ed25519_keypair["trusted_key"]])


@pytest.fixture
def signer(trusted_keys, signing_key) -> IntegritySigner:
    return IntegritySigner(trusted_keys, signing_key)


@pytest.fixture
def ledger(signer) -> AuditLedger:
    """In-memory ledger."""
    return AuditLedger(signer)


@pytest.fixture
def ledger_path(tmp_path) -> Path:
    return tmp_path / "ledger.jsonl"


@pytest.fixture
def whitelist() -> Whitelist:
    """Whitelist with fixed paths, independent of the host system."""
    return Whitelist([
        WhitelistEntry(name="pacman", paths=("/usr/bin/pacman",)),
        WhitelistEntry(name="paru", paths=("/usr/bin/paru",)),
        WhitelistEntry(
            name="systemctl",
            paths=("/usr/bin/systemctl", "/bin/systemctl"),
            allowed_flags=re.compile(r"--(now|user|quiet|no-pager)|-q"),
        ),
        WhitelistEntry(name="ghost", paths=("/nonexistent/craftgate/ghost",)),
        WhitelistEntry(name="python", paths=(PYTHON,)),
    ])


@pytest.fixture
def validator(whitelist) -> CommandValidator:
    return CommandValidator(whitelist)


@pytest.fixture
def config(tmp_path) -> Config:
    config = Config()
    config.audit.ledger_path = str(tmp_path / "gate-ledger.jsonl")
    config.audit.fsync = False
    config.sandbox.poll_interval_seconds = 0.01
    config.sandbox.timeout_seconds = 20.0
    config.execution.timeout_seconds = 20.0
    return config


@pytest.fixture
def gate(config, whitelist, signing_key) -> CraftGate:
    return CraftGate(config, signing_key=signing_key, whitelist=whitelist)
