"""
CraftGate Configuration Management

Centralized configuration for the validator, gateway, sandbox and ledger.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .exceptions import ConfigError


# Executables the configuration tool is allowed to drive out of the box.
DEFAULT_EXECUTABLES = [
    "systemctl",
    "usermod",
    "useradd",
    "userdel",
    "groupmod",
    "groupadd",
    "groupdel",
    "sysctl",
    "udevadm",
    "locale-gen",
    "hwclock",
    "timedatectl",
    "pacman",
    "paru",
    "yay",
]

DEFAULT_SEARCH_PATH = ["/usr/bin", "/usr/sbin", "/bin", "/sbin"]


@dataclass
class WhitelistEntryConfig:
    """A single whitelisted executable."""
    name: str
    path: Optional[str] = None
    aliases: List[str] = field(default_factory=list)
    allowed_flags: Optional[str] = None


@dataclass
class WhitelistConfig:
    """Executable whitelist configuration."""
    entries: List[WhitelistEntryConfig] = field(default_factory=lambda: [
        WhitelistEntryConfig(name=name) for name in DEFAULT_EXECUTABLES
    ])
    search_path: List[str] = field(default_factory=lambda: list(DEFAULT_SEARCH_PATH))
    allow_absolute_paths: bool = True


@dataclass
class ExecutionConfig:
    """Process execution configuration."""
    max_output_bytes: int = 1024 * 1024
    timeout_seconds: Optional[float] = 600.0
    environment: Dict[str, str] = field(default_factory=lambda: {
        "PATH": "/usr/bin:/usr/sbin:/bin:/sbin",
        "LC_ALL": "C",
    })


@dataclass
class SandboxConfig:
    """Hook script sandbox configuration."""
    memory_limit_bytes: int = 256 * 1024 * 1024
    timeout_seconds: float = 30.0
    start_method: str = "spawn"
    poll_interval_seconds: float = 0.02


@dataclass
class AuditConfig:
    """Audit ledger configuration."""
    ledger_path: Optional[str] = None
    fsync: bool = True
    signing_key_path: Optional[str] = None
    signing_key_id: str = "craftgate-local"
    keyring_path: Optional[str] = None


@dataclass
class Config:
    """
    Main configuration class for CraftGate.

    Aggregates all subsystem configurations.
    """
    whitelist: WhitelistConfig = field(default_factory=WhitelistConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    sandbox: SandboxConfig = field(default_factory=SandboxConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)

    # Operational settings
    log_level: str = "INFO"
    json_logs: bool = True

    @classmethod
    def from_file(cls, config_path: str) -> "Config":
        """
        Load configuration from a YAML file.

        Args:
            config_path: Path to configuration YAML file

        Returns:
            Populated Config object

        Raises:
            FileNotFoundError: If the file does not exist
            ConfigError: If the file is not a YAML mapping
        """
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(path) as f:
            data = yaml.safe_load(f)

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigError(
                "Configuration root must be a mapping", path=str(path)
            )

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        """
        Create configuration from dictionary.

        Args:
            data: Configuration dictionary

        Returns:
            Populated Config object
        """
        config = cls()

        if "whitelist" in data:
            wl_data = dict(data["whitelist"])
            if "entries" in wl_data:
                wl_data["entries"] = [
                    WhitelistEntryConfig(name=e) if isinstance(e, str)
                    else WhitelistEntryConfig(**e)
                    for e in wl_data["entries"]
                ]
            config.whitelist = WhitelistConfig(**wl_data)
        if "execution" in data:
            config.execution = ExecutionConfig(**data["execution"])
        if "sandbox" in data:
            config.sandbox = SandboxConfig(**data["sandbox"])
        if "audit" in data:
            config.audit = AuditConfig(**data["audit"])

        if "log_level" in data:
            config.log_level = data["log_level"]
        if "json_logs" in data:
            config.json_logs = data["json_logs"]

        return config

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return {
            "whitelist": {
                "entries": [
                    {
                        "name": entry.name,
                        "path": entry.path,
                        "aliases": list(entry.aliases),
                        "allowed_flags": entry.allowed_flags,
                    }
                    for entry in self.whitelist.entries
                ],
                "search_path": list(self.whitelist.search_path),
                "allow_absolute_paths": self.whitelist.allow_absolute_paths,
            },
            "execution": {
                "max_output_bytes": self.execution.max_output_bytes,
                "timeout_seconds": self.execution.timeout_seconds,
                "environment": dict(self.execution.environment),
            },
            "sandbox": {
                "memory_limit_bytes": self.sandbox.memory_limit_bytes,
                "timeout_seconds": self.sandbox.timeout_seconds,
                "start_method": self.sandbox.start_method,
                "poll_interval_seconds": self.sandbox.poll_interval_seconds,
            },
            "audit": {
                "ledger_path": self.audit.ledger_path,
                "fsync": self.audit.fsync,
                "signing_key_path": self.audit.signing_key_path,
                "signing_key_id": self.audit.signing_key_id,
                "keyring_path": self.audit.keyring_path,
            },
            "log_level": self.log_level,
            "json_logs": self.json_logs,
        }

    def validate(self) -> List[str]:
        """
        Validate configuration.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        names = [entry.name for entry in self.whitelist.entries]
        if len(names) != len(set(names)):
            errors.append("Whitelist contains duplicate executable names")
        for entry in self.whitelist.entries:
            if not entry.name or "/" in entry.name:
                errors.append(f"Invalid whitelist executable name: {entry.name!r}")
            if entry.path is not None and not entry.path.startswith("/"):
                errors.append(f"Whitelist path must be absolute: {entry.path}")

        if self.execution.max_output_bytes <= 0:
            errors.append("Execution output limit must be positive")
        if self.execution.timeout_seconds is not None and self.execution.timeout_seconds <= 0:
            errors.append("Execution timeout must be positive")

        if self.sandbox.memory_limit_bytes <= 0:
            errors.append("Sandbox memory limit must be positive")
        if self.sandbox.timeout_seconds <= 0:
            errors.append("Sandbox timeout must be positive")
        if self.sandbox.start_method not in ("spawn", "forkserver", "fork"):
            errors.append(f"Unknown sandbox start method: {self.sandbox.start_method}")
        if self.sandbox.poll_interval_seconds <= 0:
            errors.append("Sandbox poll interval must be positive")

        if self.audit.ledger_path and not self.audit.signing_key_path:
            errors.append("A persistent ledger_path requires audit.signing_key_path")

        if self.log_level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            errors.append(f"Unknown log level: {self.log_level}")

        return errors
