"""
CraftGate Sandbox Policy

Resource limits, capability model and static screening for hook scripts.
"""

import ast
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple

from ..core.config import SandboxConfig
from ..core.exceptions import CapabilityViolationError, SandboxError


class Capability(Enum):
    """Capabilities a hook script never has."""
    PROCESS_SPAWN = "process_spawn"
    RAW_FILESYSTEM = "raw_filesystem"
    NETWORK = "network"
    DYNAMIC_LOADING = "dynamic_loading"


# Always disabled; a policy can add to this set but never remove from it.
MANDATORY_DISABLED: FrozenSet[Capability] = frozenset(Capability)


@dataclass(frozen=True)
class SandboxPolicy:
    """
    Limits for one hook invocation.

    memory_limit_bytes bounds memory growth of the hook process above its
    baseline once the interpreter is ready. timeout_seconds is wall-clock
    time from the first script instruction.
    """
    memory_limit_bytes: int = 256 * 1024 * 1024
    timeout_seconds: float = 30.0
    disabled_capabilities: FrozenSet[Capability] = field(default=MANDATORY_DISABLED)

    def __post_init__(self):
        if isinstance(self.memory_limit_bytes, bool) or not isinstance(self.memory_limit_bytes, int):
            raise SandboxError("memory_limit_bytes must be an integer", code="SANDBOX_POLICY_INVALID")
        if self.memory_limit_bytes <= 0:
            raise SandboxError("memory_limit_bytes must be positive", code="SANDBOX_POLICY_INVALID")
        if isinstance(self.timeout_seconds, bool) or not isinstance(self.timeout_seconds, (int, float)):
            raise SandboxError("timeout_seconds must be a number", code="SANDBOX_POLICY_INVALID")
        if self.timeout_seconds <= 0:
            raise SandboxError("timeout_seconds must be positive", code="SANDBOX_POLICY_INVALID")
        object.__setattr__(
            self,
            "disabled_capabilities",
            frozenset(Capability(c) for c in self.disabled_capabilities) | MANDATORY_DISABLED,
        )

    @classmethod
    def from_config(cls, config: SandboxConfig) -> "SandboxPolicy":
        return cls(
            memory_limit_bytes=config.memory_limit_bytes,
            timeout_seconds=config.timeout_seconds,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "memory_limit_bytes": self.memory_limit_bytes,
            "timeout_seconds": self.timeout_seconds,
            "disabled_capabilities": sorted(c.value for c in self.disabled_capabilities),
        }


# Audit event prefixes, most specific first.
_EVENT_CAPABILITIES: Tuple[Tuple[Tuple[str, ...], Capability], ...] = (
    (
        ("subprocess.", "os.exec", "os.spawn", "os.fork", "os.posix_spawn",
         "os.system", "os.kill", "os.killpg", "pty.", "os.startfile"),
        Capability.PROCESS_SPAWN,
    ),
    (
        ("socket.", "ssl.", "http.", "urllib.", "ftplib.", "smtplib.",
         "imaplib.", "poplib.", "nntplib.", "telnetlib.", "webbrowser."),
        Capability.NETWORK,
    ),
    (
        ("import", "ctypes.", "cpython.", "compile", "exec", "marshal.",
         "pickle.", "code.__new__", "function.__new__"),
        Capability.DYNAMIC_LOADING,
    ),
    (
        ("open", "os.", "shutil.", "glob.", "tempfile.", "fcntl.", "mmap.",
         "sqlite3."),
        Capability.RAW_FILESYSTEM,
    ),
)


def classify_event(event: str) -> Optional[Capability]:
    """Map a runtime audit event to the capability it exercises."""
    for prefixes, capability in _EVENT_CAPABILITIES:
        if event.startswith(prefixes):
            return capability
    return None


# Names that are never available; referencing one is rejected up front.
FORBIDDEN_NAMES = {
    "open": Capability.RAW_FILESYSTEM,
    "exec": Capability.DYNAMIC_LOADING,
    "eval": Capability.DYNAMIC_LOADING,
    "compile": Capability.DYNAMIC_LOADING,
    "getattr": None,
    "setattr": None,
    "delattr": None,
    "globals": None,
    "locals": None,
    "vars": None,
    "breakpoint": None,
    "input": None,
    "memoryview": None,
}

FORBIDDEN_ATTRIBUTES = frozenset({
    "gi_frame", "gi_code", "cr_frame", "cr_code", "ag_frame", "ag_code",
    "f_globals", "f_locals", "f_builtins", "f_back", "f_code",
    "tb_frame", "tb_next", "co_code", "mro",
})


def _violation(message: str, node: ast.AST, capability: Optional[Capability], event: str) -> CapabilityViolationError:
    line = getattr(node, "lineno", None)
    where = f" (line {line})" if line else ""
    return CapabilityViolationError(
        f"{message}{where}",
        capability=capability.value if capability else None,
        event=event,
    )


def screen_script(source: str) -> ast.Module:
    """
    Statically screen a hook script before it runs.

    Args:
        source: Python source of the hook

    Returns:
        Parsed module

    Raises:
        SyntaxError: If the script does not parse
        CapabilityViolationError: On imports, dunder access, forbidden
            names or attributes, or bare except clauses
    """
    tree = ast.parse(source, filename="<hook>", mode="exec")

    for node in ast.walk(tree):
        if isinstance(node, (ast.Import, ast.ImportFrom)):
            raise _violation("Import statements are not allowed", node, Capability.DYNAMIC_LOADING, "import")
        if isinstance(node, ast.Name):
            if node.id.startswith("__"):
                raise _violation(f"Access to {node.id} is not allowed", node, None, "dunder_name")
            if node.id in FORBIDDEN_NAMES:
                raise _violation(
                    f"Use of {node.id} is not allowed", node, FORBIDDEN_NAMES[node.id], node.id
                )
        elif isinstance(node, ast.Attribute):
            if node.attr.startswith("__") or node.attr in FORBIDDEN_ATTRIBUTES:
                raise _violation(f"Access to attribute {node.attr} is not allowed", node, None, "attribute")
        elif isinstance(node, ast.ExceptHandler) and node.type is None:
            raise _violation("Bare except clauses are not allowed", node, None, "bare_except")
        elif isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)) and node.name.startswith("__"):
            raise _violation(f"Definition of {node.name} is not allowed", node, None, "dunder_name")
        elif isinstance(node, ast.arg) and node.arg.startswith("__"):
            raise _violation(f"Parameter {node.arg} is not allowed", node, None, "dunder_name")
        elif isinstance(node, ast.keyword) and node.arg and node.arg.startswith("__"):
            raise _violation(f"Keyword {node.arg} is not allowed", node, None, "dunder_name")

    return tree

