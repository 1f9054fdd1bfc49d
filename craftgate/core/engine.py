"""
CraftGate Core Engine

Wires the validator, execution gateway, hook sandbox, signer and ledger
into one request path.

Every command, whether requested by a module declaration or by a hook
script, goes through submit():

    Received -> Validated | Rejected -> Executed | Simulated | Skipped -> Logged

Logged is reached exactly once per request.
"""

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from ..audit import AuditLedger, ChainResult
from ..gateway import ExecutionGateway, ExecutionOutcome, ExecutionState, command_event
from ..integrity import IntegritySigner, SigningKey, TrustedKeySet, load_signing_key
from ..sandbox import HookContext, HookResult, SandboxPolicy, ScriptSandbox
from ..validation import Argv, CommandValidator, Verdict, Whitelist
from .config import Config
from .exceptions import ConfigError, ExecutionError, SandboxError

logger = logging.getLogger(__name__)


class RequestState(Enum):
    """States a command request passes through."""
    RECEIVED = "received"
    VALIDATED = "validated"
    REJECTED = "rejected"
    EXECUTED = "executed"
    SIMULATED = "simulated"
    SKIPPED = "skipped"
    LOGGED = "logged"


@dataclass
class CommandReport:
    """What happened to one submitted command."""
    command: str
    dry_run: bool
    verdict: Verdict
    outcome: Optional[ExecutionOutcome] = None
    states: List[RequestState] = field(default_factory=lambda: [RequestState.RECEIVED])
    record_id: Optional[str] = None

    @property
    def state(self) -> RequestState:
        return self.states[-1]

    @property
    def succeeded(self) -> bool:
        return self.outcome is not None and self.outcome.succeeded

    def to_dict(self) -> Dict[str, Any]:
        outcome = self.outcome
        return {
            "command": self.command,
            "dry_run": self.dry_run,
            "valid": self.verdict.valid,
            "reason": self.verdict.reason.value if self.verdict.reason else None,
            "message": self.verdict.message,
            "argv": outcome.argv if outcome else None,
            "state": outcome.state.value if outcome else None,
            "exit_code": outcome.exit_code if outcome else None,
            "stdout": outcome.stdout if outcome else "",
            "stderr": outcome.stderr if outcome else "",
            "truncated": outcome.truncated if outcome else False,
            "succeeded": self.succeeded,
            "record_id": self.record_id,
            "states": [s.value for s in self.states],
        }


@dataclass
class ModuleReport:
    """Result of running one module: pre-hook, commands, post-hook."""
    module: str
    dry_run: bool
    pre_hook: Optional[HookResult] = None
    commands: List[CommandReport] = field(default_factory=list)
    post_hook: Optional[HookResult] = None
    error: Optional[Dict[str, Any]] = None

    @property
    def succeeded(self) -> bool:
        if self.error is not None:
            return False
        hooks_ok = all(h.succeeded for h in (self.pre_hook, self.post_hook) if h is not None)
        return hooks_ok and all(c.succeeded for c in self.commands)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "module": self.module,
            "dry_run": self.dry_run,
            "succeeded": self.succeeded,
            "pre_hook": self.pre_hook.to_dict() if self.pre_hook else None,
            "commands": [c.to_dict() for c in self.commands],
            "post_hook": self.post_hook.to_dict() if self.post_hook else None,
            "error": self.error,
        }


def _has_records(path: str) -> bool:
    return os.path.exists(path) and os.path.getsize(path) > 0


class CraftGate:
    """
    Trust boundary of the configuration tool.

    Coordinates:
    - CommandValidator (whitelist and grammar)
    - ExecutionGateway (only process creation path)
    - ScriptSandbox (hook scripts)
    - IntegritySigner and AuditLedger (signed hash chain)
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        signing_key: Optional[SigningKey] = None,
        trusted_keys: Optional[TrustedKeySet] = None,
        whitelist: Optional[Whitelist] = None,
    ):
        """
        Initialize CraftGate.

        Args:
            config: Configuration object. Uses defaults if not provided.
            signing_key: Ledger signing key. Loaded from configuration, or
                generated for this process when none is configured.
            trusted_keys: Trusted key set. Loaded from the configured
                keyring, or seeded with the signing key.
            whitelist: Executable whitelist. Built from configuration
                when not provided.
        """
        self.config = config or Config()
        audit = self.config.audit

        keyring_configured = trusted_keys is not None or bool(audit.keyring_path)
        if trusted_keys is None:
            trusted_keys = (
                TrustedKeySet.load(audit.keyring_path) if audit.keyring_path else TrustedKeySet()
            )

        if signing_key is None:
            if audit.signing_key_path:
                signing_key = load_signing_key(audit.signing_key_id, key_file=audit.signing_key_path)
            else:
                if audit.ledger_path and _has_records(audit.ledger_path):
                    raise ConfigError(
                        f"Ledger {audit.ledger_path} has records; configure "
                        f"audit.signing_key_path to extend it",
                        path=audit.ledger_path,
                    )
                signing_key = SigningKey.generate(audit.signing_key_id)
                logger.warning(
                    f"No signing key configured; using ephemeral key {signing_key.key_id}"
                )

        if not keyring_configured and signing_key.key_id not in trusted_keys:
            trusted_keys.add(signing_key.trusted_key(description="local ledger key"))

        self.signer = IntegritySigner(trusted_keys, signing_key)
        self.ledger = AuditLedger(self.signer, path=audit.ledger_path, fsync=audit.fsync)
        self.validator = CommandValidator(
            whitelist if whitelist is not None else Whitelist.from_config(self.config.whitelist)
        )
        self.gateway = ExecutionGateway(self.ledger, self.config.execution)
        self.sandbox = ScriptSandbox(
            self.ledger,
            host_functions={"run_command": self._host_run_command},
            config=self.config.sandbox,
        )

        logger.info(
            f"CraftGate initialized: {len(self.validator.whitelist)} whitelisted executables, "
            f"{len(trusted_keys)} trusted keys, ledger={audit.ledger_path or 'memory'}"
        )

    @property
    def trusted_keys(self) -> TrustedKeySet:
        return self.signer.trusted_keys

    # Component operations

    def validate(self, command: str, dry_run: bool = False) -> Verdict:
        """Validate a command without executing or logging it."""
        return self.validator.validate(command, dry_run)

    def execute(self, argv: Argv, dry_run: bool = False) -> ExecutionOutcome:
        """Execute a validator-issued Argv."""
        return self.gateway.execute(argv, dry_run)

    def run_hook(
        self,
        script: str,
        policy: Optional[SandboxPolicy] = None,
        dry_run: bool = False,
        hook_point: Optional[str] = None,
        module: Optional[str] = None,
    ) -> HookResult:
        """Run a hook script in the sandbox."""
        context = HookContext(hook_point=hook_point, module=module, dry_run=dry_run)
        return self.sandbox.run(script, policy, context)

    def append_audit(self, event: Dict[str, Any]) -> str:
        """Append a caller-defined event to the ledger."""
        return self.ledger.append(event)

    def verify_chain(self) -> ChainResult:
        """Verify the whole ledger."""
        return self.ledger.verify_chain()

    def update_whitelist(self, whitelist: Whitelist) -> None:
        """Replace the executable whitelist (administrative operation)."""
        previous = self.validator.update_whitelist(whitelist)
        self.ledger.append({
            "event_type": "whitelist_update",
            "outcome": "success",
            "previous": previous.names,
            "current": whitelist.names,
        })
        logger.warning(f"Whitelist replaced: {previous.names} -> {whitelist.names}")

    def revoke_key(self, key_id: str) -> None:
        """Revoke a trusted key; effective for the next verification."""
        self.trusted_keys.revoke(key_id)

    # Request path

    def submit(
        self,
        command: str,
        dry_run: bool = False,
        timeout: Optional[float] = None,
    ) -> CommandReport:
        """
        Validate and, when valid, execute or simulate a command.

        Args:
            command: Raw command string
            dry_run: Simulate instead of executing
            timeout: Seconds before the process is killed; defaults to config

        Returns:
            CommandReport; rejected commands are reported, not raised

        Raises:
            ExecutionError: If a valid command could not be spawned
        """
        verdict = self.validator.validate(command, dry_run)
        report = CommandReport(command=command, dry_run=dry_run, verdict=verdict)

        if not verdict.valid:
            report.states.append(RequestState.REJECTED)
            report.states.append(RequestState.SKIPPED)
            report.record_id = self.ledger.append(command_event(command, dry_run, verdict))
            report.states.append(RequestState.LOGGED)
            logger.warning(
                f"Command rejected ({verdict.reason.value}): {verdict.message}",
                extra={"record_id": report.record_id, "command": command},
            )
            return report

        report.states.append(RequestState.VALIDATED)
        outcome = self.gateway.execute(verdict.argv, dry_run, timeout=timeout)
        report.outcome = outcome
        report.record_id = outcome.record_id
        report.states.append(
            RequestState.SIMULATED if outcome.state is ExecutionState.SIMULATED
            else RequestState.EXECUTED
        )
        report.states.append(RequestState.LOGGED)
        return report

    def run_module(
        self,
        module: str,
        commands: Sequence[str],
        pre_hook: Optional[str] = None,
        post_hook: Optional[str] = None,
        dry_run: bool = False,
        policy: Optional[SandboxPolicy] = None,
        stop_on_failure: bool = True,
    ) -> ModuleReport:
        """
        Run one module: pre-hook, then commands, then post-hook, in order.

        Execution and sandbox errors end the module and are recorded in the
        report; integrity errors propagate.

        Args:
            module: Module name
            commands: Command strings, run in order
            pre_hook: Optional hook script run before the commands
            post_hook: Optional hook script run after the commands
            dry_run: Simulate commands; hooks see dry_run=True
            policy: Sandbox policy for both hooks
            stop_on_failure: Stop at the first failed step

        Returns:
            ModuleReport
        """
        report = ModuleReport(module=module, dry_run=dry_run)
        try:
            if pre_hook is not None:
                report.pre_hook = self.run_hook(
                    pre_hook, policy, dry_run=dry_run, hook_point="pre_module", module=module
                )
                if stop_on_failure and not report.pre_hook.succeeded:
                    return report

            for command in commands:
                command_report = self.submit(command, dry_run)
                report.commands.append(command_report)
                if stop_on_failure and not command_report.succeeded:
                    return report

            if post_hook is not None:
                report.post_hook = self.run_hook(
                    post_hook, policy, dry_run=dry_run, hook_point="post_module", module=module
                )
        except (ExecutionError, SandboxError) as e:
            report.error = e.to_dict()
            logger.error(f"Module {module} aborted: {e.message}")

        return report

    def _host_run_command(self, context: HookContext, command: str) -> Dict[str, Any]:
        if not isinstance(command, str):
            raise TypeError("run_command expects a command string")

        # Commands started by a hook die no later than the hook itself.
        timeout = self.config.execution.timeout_seconds
        remaining = context.remaining_seconds()
        if remaining is not None:
            timeout = remaining if timeout is None else min(timeout, remaining)
        return self.submit(command, dry_run=context.dry_run, timeout=timeout).to_dict()


__all__ = [
    "CommandReport",
    "CraftGate",
    "ModuleReport",
    "RequestState",
]
