"""
CraftGate Exception Hierarchy

Structured exceptions for command validation, execution, sandboxing and
integrity enforcement.
"""

from typing import Any, Dict, List, Optional


class CraftGateError(Exception):
    """Base exception for all CraftGate errors."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or "CRAFTGATE_ERROR"
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class ConfigError(CraftGateError):
    """Raised for invalid configuration or keyring files."""

    def __init__(
        self,
        message: str,
        path: Optional[str] = None,
        errors: Optional[List[str]] = None,
    ):
        super().__init__(
            message,
            code="CONFIG_INVALID",
            details={"path": path, "errors": errors or []},
        )
        self.path = path
        self.errors = errors or []


# Validation


class ValidationError(CraftGateError):
    """Raised when a command is rejected by the validator."""

    reason = "VALIDATION_FAILED"

    def __init__(
        self,
        message: str,
        command: Optional[str] = None,
        **details: Any,
    ):
        super().__init__(
            message,
            code=self.reason,
            details={"command": command, **details},
        )
        self.command = command


class EmptyCommandError(ValidationError):
    """Raised for empty or whitespace-only input."""

    reason = "EMPTY_COMMAND"


class MalformedQuotingError(ValidationError):
    """Raised for unbalanced quotes or disallowed escapes inside quotes."""

    reason = "MALFORMED_QUOTING"


class DisallowedMetacharacterError(ValidationError):
    """Raised when a shell metacharacter appears outside quotes."""

    reason = "DISALLOWED_METACHARACTER"

    def __init__(
        self,
        message: str,
        command: Optional[str] = None,
        character: Optional[str] = None,
        position: Optional[int] = None,
    ):
        super().__init__(
            message, command=command, character=character, position=position
        )
        self.character = character
        self.position = position


class UnknownExecutableError(ValidationError):
    """Raised when the executable is not on the whitelist."""

    reason = "UNKNOWN_EXECUTABLE"

    def __init__(
        self,
        message: str,
        command: Optional[str] = None,
        executable: Optional[str] = None,
    ):
        super().__init__(message, command=command, executable=executable)
        self.executable = executable


class DisallowedArgumentError(ValidationError):
    """Raised when an argument fails the whitelist entry's argument rules."""

    reason = "DISALLOWED_ARGUMENT"

    def __init__(
        self,
        message: str,
        command: Optional[str] = None,
        argument: Optional[str] = None,
    ):
        super().__init__(message, command=command, argument=argument)
        self.argument = argument


# Execution


class ExecutionError(CraftGateError):
    """Base class for execution failures."""

    def __init__(
        self,
        message: str,
        code: str = "EXECUTION_FAILED",
        argv: Optional[List[str]] = None,
        **details: Any,
    ):
        super().__init__(message, code=code, details={"argv": argv, **details})
        self.argv = argv


class SpawnFailedError(ExecutionError):
    """Raised when the process could not be started."""

    def __init__(self, message: str, argv: Optional[List[str]] = None, errno: Optional[int] = None):
        super().__init__(message, code="SPAWN_FAILED", argv=argv, errno=errno)
        self.errno = errno


class NonZeroExitError(ExecutionError):
    """Raised when a command exited with a non-zero status."""

    def __init__(self, message: str, argv: Optional[List[str]] = None, exit_code: Optional[int] = None):
        super().__init__(message, code="NON_ZERO_EXIT", argv=argv, exit_code=exit_code)
        self.exit_code = exit_code


class OutputTruncatedError(ExecutionError):
    """Raised when captured output exceeded the configured bound."""

    def __init__(self, message: str, argv: Optional[List[str]] = None, limit: Optional[int] = None):
        super().__init__(message, code="OUTPUT_TRUNCATED", argv=argv, limit=limit)
        self.limit = limit


class ArgvReusedError(ExecutionError):
    """Raised when an already executed Argv is submitted again."""

    def __init__(self, message: str, argv: Optional[List[str]] = None):
        super().__init__(message, code="ARGV_CONSUMED", argv=argv)


# Sandbox


class SandboxError(CraftGateError):
    """Base class for sandbox enforcement failures."""

    def __init__(
        self,
        message: str,
        code: str = "SANDBOX_ERROR",
        **details: Any,
    ):
        super().__init__(message, code=code, details=details)


class SandboxLimitExceededError(SandboxError):
    """Raised when a hook exceeds its memory ceiling."""

    def __init__(self, message: str, limit_bytes: Optional[int] = None, observed_bytes: Optional[int] = None):
        super().__init__(
            message,
            code="SANDBOX_LIMIT_EXCEEDED",
            limit_bytes=limit_bytes,
            observed_bytes=observed_bytes,
        )
        self.limit_bytes = limit_bytes
        self.observed_bytes = observed_bytes


class SandboxTimeoutError(SandboxError):
    """Raised when a hook exceeds its wall-clock timeout."""

    def __init__(self, message: str, timeout_seconds: float, elapsed_seconds: float):
        super().__init__(
            message,
            code="SANDBOX_TIMEOUT",
            timeout_seconds=timeout_seconds,
            elapsed_seconds=elapsed_seconds,
        )
        self.timeout_seconds = timeout_seconds
        self.elapsed_seconds = elapsed_seconds


class CapabilityViolationError(SandboxError):
    """Raised when a hook attempts a disabled capability."""

    def __init__(self, message: str, capability: Optional[str] = None, event: Optional[str] = None):
        super().__init__(
            message,
            code="CAPABILITY_VIOLATION",
            capability=capability,
            event=event,
        )
        self.capability = capability
        self.event = event


# Integrity


class IntegrityError(CraftGateError):
    """Base class for signature and ledger integrity failures."""

    def __init__(
        self,
        message: str,
        code: str = "INTEGRITY_ERROR",
        key_id: Optional[str] = None,
        **details: Any,
    ):
        super().__init__(message, code=code, details={"key_id": key_id, **details})
        self.key_id = key_id


class SignatureInvalidError(IntegrityError):
    """Raised when a signature does not verify."""

    def __init__(self, message: str, key_id: Optional[str] = None, **details: Any):
        super().__init__(message, code="SIGNATURE_INVALID", key_id=key_id, **details)


class UnknownKeyError(IntegrityError):
    """Raised when the signing key is not in the trusted key set."""

    def __init__(self, message: str, key_id: Optional[str] = None, **details: Any):
        super().__init__(message, code="UNKNOWN_KEY", key_id=key_id, **details)


class KeyRevokedError(IntegrityError):
    """Raised when the signing key has been revoked."""

    def __init__(self, message: str, key_id: Optional[str] = None, **details: Any):
        super().__init__(message, code="KEY_REVOKED", key_id=key_id, **details)


class ChainBrokenError(IntegrityError):
    """Raised when the audit hash chain fails verification."""

    def __init__(
        self,
        message: str,
        index: Optional[int] = None,
        reason: Optional[str] = None,
    ):
        super().__init__(message, code="CHAIN_BROKEN", index=index, reason=reason)
        self.index = index
        self.reason = reason
