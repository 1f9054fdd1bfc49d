"""
CraftGate - Command Trust Boundary for Declarative System Configuration

Validates every requested shell command against an executable whitelist,
executes approved commands without a shell, runs hook scripts in a
resource-limited sandbox, and records each decision in a signed,
hash-chained audit ledger.

Version: 1.0.0
"""

__version__ = "1.0.0"
__author__ = "CraftGate Team"

from .core import CraftGate
from .core.config import Config
from .core.exceptions import (
    CraftGateError,
    ValidationError,
    ExecutionError,
    SandboxError,
    IntegrityError,
)

__all__ = [
    "CraftGate",
    "Config",
    "CraftGateError",
    "ValidationError",
    "ExecutionError",
    "SandboxError",
    "IntegrityError",
]
