"""
CraftGate Core Module

Configuration, error taxonomy and the request-path engine.
"""

from .config import Config
from .exceptions import (
    CraftGateError,
    ConfigError,
    ValidationError,
    ExecutionError,
    SandboxError,
    IntegrityError,
)
from .engine import CraftGate, CommandReport, ModuleReport, RequestState

__all__ = [
    "CraftGate",
    "CommandReport",
    "ModuleReport",
    "RequestState",
    "Config",
    "CraftGateError",
    "ConfigError",
    "ValidationError",
    "ExecutionError",
    "SandboxError",
    "IntegrityError",
]
