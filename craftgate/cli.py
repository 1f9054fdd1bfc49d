"""
CraftGate CLI

Operator command-line interface: check and run commands through the
trust boundary, run hooks, and inspect or verify the audit ledger.
"""

import argparse
import json
import sys
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import yaml

from .core import CraftGate, Config
from .core.exceptions import CraftGateError
from .observability import setup_logging
from .sandbox import SandboxPolicy


def load_config(config_path: Optional[str]) -> Config:
    """Load configuration from file or use defaults."""
    if config_path:
        return Config.from_file(config_path)
    return Config()


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser."""
    parser = argparse.ArgumentParser(
        prog="craftgate",
        description="CraftGate - command trust boundary for system configuration",
    )

    parser.add_argument(
        "-c", "--config",
        help="Path to configuration file",
        default=None,
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose output",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Logging level (overrides configuration)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    check_parser = subparsers.add_parser("check", help="Validate a command without running it")
    check_parser.add_argument("cmdline", help="Command string")

    run_parser = subparsers.add_parser("run", help="Validate and run a command")
    run_parser.add_argument("cmdline", help="Command string")
    run_parser.add_argument("--dry-run", action="store_true", help="Simulate only")

    hook_parser = subparsers.add_parser("hook", help="Run a hook script in the sandbox")
    hook_parser.add_argument("script", type=Path, help="Hook script file")
    hook_parser.add_argument("--dry-run", action="store_true", help="Simulate commands")
    hook_parser.add_argument("--timeout", type=float, default=None, help="Timeout in seconds")
    hook_parser.add_argument("--memory", type=int, default=None, help="Memory limit in bytes")
    hook_parser.add_argument("--module", default=None, help="Module name passed to the hook")

    subparsers.add_parser("verify-ledger", help="Verify the audit ledger chain")

    audit_parser = subparsers.add_parser("audit", help="Query the audit ledger")
    audit_parser.add_argument("--event-type", default=None, help="Filter by event type")
    audit_parser.add_argument("--outcome", default=None, help="Filter by outcome")
    audit_parser.add_argument("--actor", default=None, help="Filter by acting user")
    audit_parser.add_argument("--since", default=None, help="ISO-8601 start time")
    audit_parser.add_argument("--failures", action="store_true", help="Only failed records")
    audit_parser.add_argument("--limit", type=int, default=None, help="Most recent N records")
    audit_parser.add_argument("--export", type=Path, default=None, help="Export records to a JSON file")

    sign_parser = subparsers.add_parser("sign-file", help="Write a detached signature for a file")
    sign_parser.add_argument("path", type=Path)

    verify_parser = subparsers.add_parser("verify-file", help="Verify a file's detached signature")
    verify_parser.add_argument("path", type=Path)

    subparsers.add_parser("version", help="Show version")

    return parser


def cmd_check(args: argparse.Namespace, gate: CraftGate) -> int:
    """Validate a command."""
    verdict = gate.validate(args.cmdline)
    print(json.dumps(verdict.to_dict(), indent=2))
    return 0 if verdict.valid else 1


def cmd_run(args: argparse.Namespace, gate: CraftGate) -> int:
    """Validate and run a command."""
    report = gate.submit(args.cmdline, dry_run=args.dry_run)
    print(json.dumps(report.to_dict(), indent=2))
    return 0 if report.succeeded else 1


def cmd_hook(args: argparse.Namespace, gate: CraftGate) -> int:
    """Run a hook script."""
    default = gate.sandbox.default_policy
    policy = SandboxPolicy(
        memory_limit_bytes=args.memory or default.memory_limit_bytes,
        timeout_seconds=args.timeout or default.timeout_seconds,
    )
    result = gate.run_hook(
        args.script.read_text(),
        policy,
        dry_run=args.dry_run,
        hook_point="manual",
        module=args.module,
    )
    print(json.dumps(result.to_dict(), indent=2))
    return 0 if result.succeeded else 1


def cmd_verify_ledger(args: argparse.Namespace, gate: CraftGate) -> int:
    """Verify the audit ledger."""
    result = gate.verify_chain()
    print(json.dumps(result.to_dict(), indent=2))
    return 0 if result.ok else 1


def cmd_audit(args: argparse.Namespace, gate: CraftGate) -> int:
    """Query the audit ledger."""
    if args.export:
        count = gate.ledger.export_json(args.export)
        print(f"Exported {count} records to {args.export}")
        return 0

    if args.failures:
        records = gate.ledger.failed_records()
    else:
        records = gate.ledger.records(
            since=datetime.fromisoformat(args.since) if args.since else None,
            event_type=args.event_type,
            outcome=args.outcome,
            actor=args.actor,
            limit=args.limit,
        )

    output: List[dict] = [
        {"index": r.index, "record_id": r.record_id, "timestamp": r.timestamp, "event": r.event}
        for r in records
    ]
    print(json.dumps(output, indent=2))
    return 0


def cmd_sign_file(args: argparse.Namespace, gate: CraftGate) -> int:
    """Sign a file."""
    sig_path = gate.signer.sign_file(args.path)
    print(f"Signature written to: {sig_path}")
    return 0


def cmd_verify_file(args: argparse.Namespace, gate: CraftGate) -> int:
    """Verify a file's signature."""
    key_id = gate.signer.verify_file(args.path)
    print(f"OK: {args.path} signed by {key_id}")
    return 0


def cmd_version() -> int:
    """Show version."""
    from . import __version__
    print(f"CraftGate v{__version__}")
    return 0


COMMANDS = {
    "check": cmd_check,
    "run": cmd_run,
    "hook": cmd_hook,
    "verify-ledger": cmd_verify_ledger,
    "audit": cmd_audit,
    "sign-file": cmd_sign_file,
    "verify-file": cmd_verify_file,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command == "version":
        return cmd_version()
    if args.command not in COMMANDS:
        print("No command specified. Use --help for usage.")
        return 1

    try:
        config = load_config(args.config)
    except (OSError, TypeError, yaml.YAMLError, CraftGateError) as e:
        print(f"Failed to load config: {e}", file=sys.stderr)
        return 1

    log_level = "DEBUG" if args.verbose else (args.log_level or config.log_level)
    setup_logging(log_level, json_format=config.json_logs)

    errors = config.validate()
    if errors:
        for error in errors:
            print(f"Config error: {error}", file=sys.stderr)
        return 1

    try:
        gate = CraftGate(config)
        return COMMANDS[args.command](args, gate)
    except CraftGateError as e:
        print(json.dumps(e.to_dict(), indent=2), file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
