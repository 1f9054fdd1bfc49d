"""
CraftGate - Hook Script Sandbox

Runs untrusted hook scripts with:
- A dedicated, killable child process per invocation
- Memory ceiling (kernel address-space limit plus RSS sampling)
- Preemptive wall-clock timeout enforced from the supervising process
- Static screening and a runtime audit guard denying process spawn,
  raw filesystem, network and dynamic loading
- An explicit allow-list of host functions; run_command re-enters the
  validated command path
"""

import json
import logging
import multiprocessing
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import psutil

from ..audit import AuditLedger, AuditOutcome
from ..core.config import SandboxConfig
from ..core.exceptions import (
    CapabilityViolationError,
    CraftGateError,
    IntegrityError,
    SandboxError,
    SandboxLimitExceededError,
    SandboxTimeoutError,
)
from ..integrity import compute_hash
from ._runner import run_hook_child
from .policy import (
    Capability,
    MANDATORY_DISABLED,
    SandboxPolicy,
    classify_event,
    screen_script,
)

logger = logging.getLogger(__name__)
hook_logger = logging.getLogger("craftgate.hooks")

STARTUP_TIMEOUT_SECONDS = 30.0

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class HookStatus(Enum):
    """Terminal state of a hook invocation."""
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    LIMIT_EXCEEDED = "limit_exceeded"
    CAPABILITY_VIOLATION = "capability_violation"
    CRASHED = "crashed"


@dataclass(frozen=True)
class HookContext:
    """
    Read-only context handed to a hook and to host functions.

    deadline is the supervisor's monotonic clock value at which the hook
    is killed; it is set only while a host function runs.
    """
    hook_point: Optional[str] = None
    module: Optional[str] = None
    dry_run: bool = False
    deadline: Optional[float] = None

    def remaining_seconds(self) -> Optional[float]:
        """Seconds left before the hook timeout, or None outside a hook run."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hook_point": self.hook_point,
            "module": self.module,
            "dry_run": self.dry_run,
        }


# Host functions receive the invocation context followed by the script's arguments.
HostFunction = Callable[..., Any]


@dataclass
class HookResult:
    """Result of a hook that ran to completion or failed on its own error."""
    status: HookStatus
    script_hash: str
    duration_ms: int = 0
    error: Optional[str] = None
    logs: List[str] = field(default_factory=list)
    host_calls: List[Dict[str, Any]] = field(default_factory=list)
    peak_memory_bytes: int = 0
    record_id: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status is HookStatus.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "script_hash": self.script_hash,
            "duration_ms": self.duration_ms,
            "error": self.error,
            "logs": list(self.logs),
            "host_calls": list(self.host_calls),
            "peak_memory_bytes": self.peak_memory_bytes,
            "record_id": self.record_id,
        }


class _Supervision:
    """Per-invocation state kept by the supervisor."""

    def __init__(self, script_hash: str):
        self.script_hash = script_hash
        self.ready_at: Optional[float] = None
        self.baseline_rss = 0
        self.peak_growth = 0
        self.logs: List[str] = []
        self.host_calls: List[Dict[str, Any]] = []

    def elapsed(self) -> float:
        return time.monotonic() - self.ready_at if self.ready_at is not None else 0.0


class ScriptSandbox:
    """
    Executes hook scripts under a SandboxPolicy.

    host_functions is the complete allow-list of callables a script may
    reach; "log" is always present. Each host function is called in the
    supervising process as fn(context, *args, **kwargs).
    """

    def __init__(
        self,
        ledger: AuditLedger,
        host_functions: Optional[Dict[str, HostFunction]] = None,
        config: Optional[SandboxConfig] = None,
    ):
        self.ledger = ledger
        self.config = config or SandboxConfig()
        self.default_policy = SandboxPolicy.from_config(self.config)
        self._context = multiprocessing.get_context(self.config.start_method)

        functions: Dict[str, HostFunction] = {"log": self._host_log}
        for name, fn in (host_functions or {}).items():
            if not name.isidentifier() or name.startswith("_"):
                raise ValueError(f"Invalid host function name: {name!r}")
            functions[name] = fn
        self._host_functions = functions

    @property
    def host_function_names(self) -> List[str]:
        return sorted(self._host_functions)

    def run(
        self,
        script_source: str,
        policy: Optional[SandboxPolicy] = None,
        context: Optional[HookContext] = None,
    ) -> HookResult:
        """
        Run a hook script.

        Args:
            script_source: Python source of the hook
            policy: Limits for this invocation; defaults to configuration
            context: Hook point, module name and dry-run flag

        Returns:
            HookResult with status COMPLETED or FAILED

        Raises:
            SandboxTimeoutError: Wall-clock timeout exceeded
            SandboxLimitExceededError: Memory ceiling exceeded
            CapabilityViolationError: Disabled capability attempted
            SandboxError: Hook process failed to start or died
            IntegrityError: The ledger cannot record the hook; nothing runs
        """
        policy = policy or self.default_policy
        context = context or HookContext()
        script_hash = compute_hash(script_source)
        state = _Supervision(script_hash)

        self.ledger.ensure_writable()

        try:
            screen_script(script_source)
        except (SyntaxError, ValueError) as e:
            result = HookResult(
                status=HookStatus.FAILED,
                script_hash=script_hash,
                error=f"SyntaxError: {e}",
            )
            result.record_id = self._record(result.status, policy, context, state, error=result.error)
            logger.warning(f"Hook rejected with syntax error: {e}")
            return result
        except (MemoryError, RecursionError) as e:
            result = HookResult(
                status=HookStatus.FAILED,
                script_hash=script_hash,
                error=f"{type(e).__name__}: script too deeply nested to compile",
            )
            result.record_id = self._record(
                result.status, policy, context, state, error=result.error, code="SCRIPT_TOO_COMPLEX"
            )
            logger.warning(f"Hook rejected: {result.error}")
            return result
        except CapabilityViolationError as e:
            self._record(HookStatus.CAPABILITY_VIOLATION, policy, context, state, error=e.message, code=e.code)
            logger.error(f"Hook capability violation (static): {e.message}")
            raise

        parent_conn, child_conn = self._context.Pipe(duplex=True)
        process = self._context.Process(
            target=run_hook_child,
            args=(
                child_conn,
                script_source,
                policy.to_dict(),
                self.host_function_names,
                context.to_dict(),
            ),
            daemon=True,
        )

        started = time.monotonic()
        process.start()
        child_conn.close()
        try:
            result = self._supervise(process, parent_conn, policy, context, state)
        except SandboxError as e:
            record_id = self._record(_status_for(e), policy, context, state, error=e.message, code=e.code)
            logger.error(
                f"Hook aborted: {e.message}",
                extra={
                    "record_id": record_id,
                    "module_name": context.module,
                    "hook_point": context.hook_point,
                },
            )
            raise
        except IntegrityError as e:
            logger.critical(f"Hook aborted, ledger refused a record: {e.message}")
            raise
        except Exception as e:
            self._kill(process)
            logger.error(f"Hook supervision failed: {type(e).__name__}: {e}")
            self._record(
                HookStatus.CRASHED, policy, context, state,
                error=f"{type(e).__name__}: {e}", code="SANDBOX_CRASHED",
            )
            raise
        finally:
            self._terminate(process)
            parent_conn.close()

        result.record_id = self._record(result.status, policy, context, state, error=result.error)
        logger.info(
            f"Hook finished status={result.status.value} duration={result.duration_ms}ms "
            f"total={int((time.monotonic() - started) * 1000)}ms",
            extra={
                "record_id": result.record_id,
                "module_name": context.module,
                "hook_point": context.hook_point,
            },
        )
        return result

    def _supervise(
        self,
        process,
        conn,
        policy: SandboxPolicy,
        context: HookContext,
        state: _Supervision,
    ) -> HookResult:
        poll_interval = self.config.poll_interval_seconds
        startup_deadline = time.monotonic() + STARTUP_TIMEOUT_SECONDS
        monitor: Optional[psutil.Process] = None

        while True:
            if state.ready_at is None:
                if time.monotonic() > startup_deadline:
                    self._kill(process)
                    raise SandboxError(
                        "Hook process did not become ready",
                        code="SANDBOX_START_FAILED",
                    )
                wait = poll_interval
            else:
                elapsed = state.elapsed()
                if elapsed >= policy.timeout_seconds:
                    self._kill(process)
                    raise SandboxTimeoutError(
                        f"Hook exceeded {policy.timeout_seconds}s timeout",
                        timeout_seconds=policy.timeout_seconds,
                        elapsed_seconds=round(state.elapsed(), 3),
                    )
                self._check_memory(process, monitor, policy, state)
                wait = min(poll_interval, policy.timeout_seconds - elapsed)

            if conn.poll(wait):
                try:
                    message = json.loads(conn.recv_bytes().decode("utf-8"))
                except EOFError:
                    raise self._crash_error(process, state)

                kind = message.get("type")
                if kind == "ready":
                    monitor = self._monitor(process)
                    state.baseline_rss = self._rss(monitor)
                    state.ready_at = time.monotonic()
                    if message.get("address_space_limit") is None:
                        logger.warning("Address-space limit unavailable; relying on RSS sampling")
                elif kind == "call":
                    deadline = state.ready_at + policy.timeout_seconds
                    self._dispatch(conn, message, replace(context, deadline=deadline), state)
                elif kind == "violation":
                    self._kill(process)
                    capability = message.get("capability")
                    raise CapabilityViolationError(
                        f"Hook attempted disabled capability "
                        f"{capability or 'runtime introspection'} ({message.get('event')})",
                        capability=capability,
                        event=message.get("event"),
                    )
                elif kind == "memory":
                    self._kill(process)
                    raise SandboxLimitExceededError(
                        f"Hook exceeded memory limit of {policy.memory_limit_bytes} bytes",
                        limit_bytes=policy.memory_limit_bytes,
                        observed_bytes=state.peak_growth,
                    )
                elif kind == "setup_failed":
                    self._kill(process)
                    raise SandboxError(
                        f"Hook process setup failed: {message.get('error')}",
                        code="SANDBOX_START_FAILED",
                    )
                elif kind == "result":
                    status = HookStatus(message["status"])
                    return HookResult(
                        status=status,
                        script_hash=state.script_hash,
                        duration_ms=int(state.elapsed() * 1000),
                        error=message.get("error"),
                        logs=state.logs,
                        host_calls=state.host_calls,
                        peak_memory_bytes=state.peak_growth,
                    )
                else:
                    self._kill(process)
                    raise CapabilityViolationError(
                        f"Unexpected message from hook process: {kind!r}",
                        event="protocol",
                    )
            elif not process.is_alive() and not conn.poll():
                raise self._crash_error(process, state)

    def _dispatch(
        self,
        conn,
        message: Dict[str, Any],
        context: HookContext,
        state: _Supervision,
    ) -> None:
        op = message.get("op")
        fn = self._host_functions.get(op)
        if fn is None:
            raise CapabilityViolationError(
                f"Host function not allowed: {op!r}", event=f"host.{op}"
            )

        args = message.get("args") or []
        kwargs = message.get("kwargs") or {}
        try:
            value = fn(context, *args, **kwargs)
            reply = {"ok": True, "value": value}
            state.host_calls.append({"op": op, "ok": True})
        except IntegrityError:
            raise
        except CraftGateError as e:
            reply = {"ok": False, "error": e.to_dict()}
            state.host_calls.append({"op": op, "ok": False, "error": e.code})
        except (TypeError, ValueError) as e:
            reply = {"ok": False, "error": {"error": "HOST_CALL_INVALID", "message": str(e)}}
            state.host_calls.append({"op": op, "ok": False, "error": "HOST_CALL_INVALID"})

        if op == "log" and reply["ok"]:
            state.logs.append(str(args[0]) if args else "")
        conn.send_bytes(json.dumps(reply).encode("utf-8"))

    def _host_log(self, context: HookContext, message: Any, level: str = "info") -> None:
        if level not in LOG_LEVELS:
            raise ValueError(f"Unknown log level: {level}")
        hook_logger.log(
            LOG_LEVELS[level],
            f"[{context.module or '-'}:{context.hook_point or '-'}] {message}",
        )

    def _check_memory(
        self,
        process,
        monitor: Optional[psutil.Process],
        policy: SandboxPolicy,
        state: _Supervision,
    ) -> None:
        growth = self._rss(monitor) - state.baseline_rss
        state.peak_growth = max(state.peak_growth, growth)
        if growth > policy.memory_limit_bytes:
            self._kill(process)
            raise SandboxLimitExceededError(
                f"Hook exceeded memory limit of {policy.memory_limit_bytes} bytes",
                limit_bytes=policy.memory_limit_bytes,
                observed_bytes=growth,
            )

    def _crash_error(self, process, state: _Supervision) -> SandboxError:
        process.join(timeout=1.0)
        return SandboxError(
            f"Hook process exited without a result (exit code {process.exitcode})",
            code="SANDBOX_CRASHED",
            exit_code=process.exitcode,
            elapsed_seconds=round(state.elapsed(), 3),
        )

    @staticmethod
    def _monitor(process) -> Optional[psutil.Process]:
        try:
            return psutil.Process(process.pid)
        except psutil.NoSuchProcess:
            return None

    @staticmethod
    def _rss(monitor: Optional[psutil.Process]) -> int:
        if monitor is None:
            return 0
        try:
            return monitor.memory_info().rss
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return 0

    @staticmethod
    def _kill(process) -> None:
        if process.is_alive():
            process.kill()
        process.join(timeout=5.0)

    def _terminate(self, process) -> None:
        if process.is_alive():
            self._kill(process)
        else:
            process.join(timeout=1.0)

    def _record(
        self,
        status: HookStatus,
        policy: SandboxPolicy,
        context: HookContext,
        state: _Supervision,
        error: Optional[str] = None,
        code: Optional[str] = None,
    ) -> str:
        if status is HookStatus.COMPLETED:
            outcome = AuditOutcome.SUCCESS
        elif status is HookStatus.CAPABILITY_VIOLATION:
            outcome = AuditOutcome.VIOLATION
        else:
            outcome = AuditOutcome.FAILURE

        return self.ledger.append({
            "event_type": "hook",
            "hook_point": context.hook_point,
            "module": context.module,
            "dry_run": context.dry_run,
            "script_sha256": state.script_hash,
            "status": status.value,
            "outcome": outcome.value,
            "error": error,
            "error_code": code,
            "policy": policy.to_dict(),
            "duration_ms": int(state.elapsed() * 1000),
            "peak_memory_bytes": state.peak_growth,
            "host_calls": len(state.host_calls),
        })


def _status_for(error: SandboxError) -> HookStatus:
    if isinstance(error, SandboxTimeoutError):
        return HookStatus.TIMEOUT
    if isinstance(error, SandboxLimitExceededError):
        return HookStatus.LIMIT_EXCEEDED
    if isinstance(error, CapabilityViolationError):
        return HookStatus.CAPABILITY_VIOLATION
    return HookStatus.CRASHED


__all__ = [
    "Capability",
    "HookContext",
    "HookResult",
    "HookStatus",
    "MANDATORY_DISABLED",
    "SandboxPolicy",
    "ScriptSandbox",
    "classify_event",
    "screen_script",
]
