"""
CraftGate - Execution Gateway

The only code path that creates processes for validated commands.

Accepts validator-issued Argv objects only, never raw strings. Each Argv
runs at most once, directly via execve (no shell), against the canonical
executable path approved by the validator. Every call writes exactly one
ledger entry, whether the command ran, was simulated, or failed to spawn.
"""

import hashlib
import logging
import subprocess
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import IO, Any, Dict, List, Optional

from ..audit import AuditLedger, AuditOutcome
from ..core.config import ExecutionConfig
from ..core.exceptions import (
    ArgvReusedError,
    NonZeroExitError,
    OutputTruncatedError,
    SpawnFailedError,
)
from ..validation import Argv, Verdict

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 65536


class ExecutionState(Enum):
    """Final state of an execution request."""
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    SIMULATED = "simulated"
    SPAWN_FAILED = "spawn_failed"
    REFUSED = "refused"


@dataclass
class ExecutionOutcome:
    """Result of executing (or simulating) a validated command."""
    argv: List[str]
    executable: str
    dry_run: bool
    state: ExecutionState
    exit_code: Optional[int]
    stdout: str = ""
    stderr: str = ""
    stdout_truncated: bool = False
    stderr_truncated: bool = False
    max_output_bytes: int = 0
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    duration_ms: int = 0
    record_id: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.state in (ExecutionState.COMPLETED, ExecutionState.SIMULATED) and self.exit_code == 0

    @property
    def truncated(self) -> bool:
        return self.stdout_truncated or self.stderr_truncated

    @property
    def timed_out(self) -> bool:
        return self.state is ExecutionState.TIMEOUT

    def raise_for_status(self, allow_truncated: bool = True) -> "ExecutionOutcome":
        """
        Raise if the command did not succeed.

        Args:
            allow_truncated: Accept outcomes whose output was truncated

        Returns:
            self, for chaining

        Raises:
            NonZeroExitError: Non-zero exit or timeout
            OutputTruncatedError: Output exceeded the bound and allow_truncated is False
        """
        if not self.succeeded:
            raise NonZeroExitError(
                f"Command failed ({self.state.value}, exit code {self.exit_code}): {self.argv[0]}",
                argv=self.argv,
                exit_code=self.exit_code,
            )
        if self.truncated and not allow_truncated:
            raise OutputTruncatedError(
                f"Output of {self.argv[0]} exceeded {self.max_output_bytes} bytes",
                argv=self.argv,
                limit=self.max_output_bytes,
            )
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "argv": self.argv,
            "executable": self.executable,
            "dry_run": self.dry_run,
            "state": self.state.value,
            "exit_code": self.exit_code,
            "stdout_length": len(self.stdout),
            "stderr_length": len(self.stderr),
            "stdout_truncated": self.stdout_truncated,
            "stderr_truncated": self.stderr_truncated,
            "started_at": self.started_at.isoformat(),
            "duration_ms": self.duration_ms,
            "record_id": self.record_id,
        }


def _sha256(text: str) -> str:
    return f"sha256:{hashlib.sha256(text.encode('utf-8')).hexdigest()}"


def command_event(
    command: str,
    dry_run: bool,
    verdict: Verdict,
    outcome: Optional[ExecutionOutcome] = None,
    audit_outcome: Optional[AuditOutcome] = None,
    reason: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Ledger event for one command request.

    Live, dry-run and rejected requests share the same structure so that
    records differ only in their values.
    """
    if audit_outcome is None:
        if outcome is None:
            audit_outcome = AuditOutcome.REJECTED
        elif outcome.state is ExecutionState.SIMULATED:
            audit_outcome = AuditOutcome.SIMULATED
        elif outcome.succeeded:
            audit_outcome = AuditOutcome.SUCCESS
        else:
            audit_outcome = AuditOutcome.FAILURE

    return {
        "event_type": "command",
        "command": command,
        "argv": verdict.argv.to_list() if verdict.argv is not None else None,
        "executable": verdict.argv.executable if verdict.argv is not None else None,
        "verdict": "valid" if verdict.valid else "rejected",
        "reason": reason or (verdict.reason.value if verdict.reason else None),
        "dry_run": dry_run,
        "mode": "dry_run" if dry_run else "live",
        "outcome": audit_outcome.value,
        "state": outcome.state.value if outcome else None,
        "exit_code": outcome.exit_code if outcome else None,
        "stdout_sha256": _sha256(outcome.stdout) if outcome else None,
        "stderr_sha256": _sha256(outcome.stderr) if outcome else None,
        "stdout_truncated": outcome.stdout_truncated if outcome else False,
        "stderr_truncated": outcome.stderr_truncated if outcome else False,
        "duration_ms": outcome.duration_ms if outcome else 0,
    }


class _BoundedReader(threading.Thread):
    """Drains a pipe, keeping at most limit bytes."""

    def __init__(self, stream: IO[bytes], limit: int):
        super().__init__(daemon=True)
        self.stream = stream
        self.limit = limit
        self.buffer = bytearray()
        self.truncated = False

    def run(self) -> None:
        try:
            while True:
                chunk = self.stream.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                room = self.limit - len(self.buffer)
                if len(chunk) > room:
                    self.truncated = True
                    chunk = chunk[:max(room, 0)]
                self.buffer.extend(chunk)
        finally:
            self.stream.close()

    def text(self) -> str:
        return self.buffer.decode("utf-8", errors="replace")


class ExecutionGateway:
    """
    Executes validated commands.

    Holds no shell and no string-based spawn path: the only input it
    accepts is an Argv minted by CommandValidator.
    """

    def __init__(self, ledger: AuditLedger, config: Optional[ExecutionConfig] = None):
        self.ledger = ledger
        self.config = config or ExecutionConfig()

    def execute(
        self,
        argv: Argv,
        dry_run: bool = False,
        timeout: Optional[float] = None,
    ) -> ExecutionOutcome:
        """
        Execute or simulate a validated command.

        Args:
            argv: Validator-issued argument vector
            dry_run: Simulate without creating a process
            timeout: Seconds before the process is killed; defaults to config

        Returns:
            ExecutionOutcome, with record_id of its ledger entry

        Raises:
            TypeError: If argv was not issued by the validator
            ArgvReusedError: If argv has already been executed
            SpawnFailedError: If the process could not be created
            IntegrityError: If the ledger cannot record the outcome; nothing runs
        """
        if not isinstance(argv, Argv):
            raise TypeError("ExecutionGateway accepts validator-issued Argv only")

        self.ledger.ensure_writable()

        verdict = Verdict(command=argv.command, argv=argv)

        if not argv.consume():
            self.ledger.append(command_event(
                argv.command, dry_run, verdict,
                audit_outcome=AuditOutcome.REJECTED,
                reason="ARGV_CONSUMED",
            ))
            logger.warning(f"Refused re-execution of consumed argv: {argv.to_list()}")
            raise ArgvReusedError("Argv has already been executed", argv=argv.to_list())

        if dry_run:
            outcome = ExecutionOutcome(
                argv=argv.to_list(),
                executable=argv.executable,
                dry_run=True,
                state=ExecutionState.SIMULATED,
                exit_code=0,
                max_output_bytes=self.config.max_output_bytes,
            )
            outcome.record_id = self.ledger.append(command_event(argv.command, True, verdict, outcome))
            logger.info(
                f"Dry run: {argv.to_list()}",
                extra={"record_id": outcome.record_id, "command": argv.command},
            )
            return outcome

        try:
            outcome = self._spawn(argv, timeout if timeout is not None else self.config.timeout_seconds)
        except OSError as e:
            failed = ExecutionOutcome(
                argv=argv.to_list(),
                executable=argv.executable,
                dry_run=False,
                state=ExecutionState.SPAWN_FAILED,
                exit_code=None,
                stderr=str(e),
                max_output_bytes=self.config.max_output_bytes,
            )
            record_id = self.ledger.append(command_event(argv.command, False, verdict, failed))
            logger.error(
                f"Failed to spawn {argv.executable}: {e}",
                extra={"record_id": record_id, "command": argv.command},
            )
            raise SpawnFailedError(
                f"Failed to spawn {argv.executable}: {e.strerror or e}",
                argv=argv.to_list(),
                errno=e.errno,
            ) from e

        outcome.record_id = self.ledger.append(command_event(argv.command, False, verdict, outcome))
        logger.info(
            f"Executed {argv[0]} state={outcome.state.value} "
            f"exit_code={outcome.exit_code} duration={outcome.duration_ms}ms",
            extra={"record_id": outcome.record_id, "command": argv.command},
        )
        return outcome

    def _spawn(self, argv: Argv, timeout: Optional[float]) -> ExecutionOutcome:
        limit = self.config.max_output_bytes
        started_at = datetime.now(timezone.utc)
        start = time.monotonic()

        process = subprocess.Popen(
            argv.to_list(),
            executable=argv.executable,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            env=dict(self.config.environment),
            shell=False,
            close_fds=True,
        )

        stdout_reader = _BoundedReader(process.stdout, limit)
        stderr_reader = _BoundedReader(process.stderr, limit)
        stdout_reader.start()
        stderr_reader.start()

        state = ExecutionState.COMPLETED
        try:
            process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()
            state = ExecutionState.TIMEOUT
            logger.warning(f"Command timed out after {timeout}s: {argv[0]}")

        stdout_reader.join()
        stderr_reader.join()

        exit_code = process.returncode
        if state is ExecutionState.COMPLETED and exit_code != 0:
            state = ExecutionState.FAILED

        return ExecutionOutcome(
            argv=argv.to_list(),
            executable=argv.executable,
            dry_run=False,
            state=state,
            exit_code=exit_code,
            stdout=stdout_reader.text(),
            stderr=stderr_reader.text(),
            stdout_truncated=stdout_reader.truncated,
            stderr_truncated=stderr_reader.truncated,
            max_output_bytes=limit,
            started_at=started_at,
            duration_ms=int((time.monotonic() - start) * 1000),
        )


__all__ = [
    "ExecutionGateway",
    "ExecutionOutcome",
    "ExecutionState",
    "command_event",
]
