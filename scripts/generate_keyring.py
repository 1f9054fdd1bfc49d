#!/usr/bin/env python3
"""
Ledger Keyring Management Script

Generates Ed25519 ledger signing keys and maintains the trusted keyring.
Creates:
- <output-dir>/<key-id>.key (base64 raw private key, mode 0600)
- <output-dir>/keyring.json (trusted public keys)

Usage:
    python scripts/generate_keyring.py --key-id <id> [--output-dir <path>]
    python scripts/generate_keyring.py --keyring <path> --revoke <id>
"""

import argparse
import base64
import os
import sys
from pathlib import Path

from craftgate.core.exceptions import CraftGateError
from craftgate.integrity import SigningKey, TrustedKeySet


def write_private_key(signing_key: SigningKey, key_path: Path) -> None:
    """Write the private key as base64 with owner-only permissions."""
    encoded = base64.b64encode(signing_key.private_bytes())
    fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(encoded + b"\n")


def load_or_create_keyring(keyring_path: Path) -> TrustedKeySet:
    """Load an existing keyring or start an empty one."""
    if keyring_path.exists():
        return TrustedKeySet.load(keyring_path)
    return TrustedKeySet()


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Generate ledger signing keys and maintain the trusted keyring"
    )
    parser.add_argument(
        "--key-id",
        type=str,
        default="craftgate-local",
        help="Identifier for the new signing key",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=Path("keys"),
        help="Directory for the private key and keyring (default: ./keys)",
    )
    parser.add_argument(
        "--keyring",
        type=Path,
        help="Keyring path (default: <output-dir>/keyring.json)",
    )
    parser.add_argument(
        "--description",
        type=str,
        default="",
        help="Description stored with the public key",
    )
    parser.add_argument(
        "--revoke",
        type=str,
        metavar="KEY_ID",
        help="Revoke KEY_ID in the keyring instead of generating a key",
    )

    args = parser.parse_args()
    keyring_path = args.keyring or (args.output_dir / "keyring.json")

    try:
        keyring = load_or_create_keyring(keyring_path)
    except CraftGateError as e:
        print(f"ERROR: Failed to load keyring: {e}", file=sys.stderr)
        return 1

    if args.revoke:
        try:
            keyring.revoke(args.revoke)
        except CraftGateError as e:
            print(f"ERROR: {e}", file=sys.stderr)
            return 1
        keyring.save(keyring_path)
        print(f"Revoked key {args.revoke} in {keyring_path}")
        return 0

    if args.key_id in keyring:
        print(f"ERROR: Key {args.key_id} already exists in {keyring_path}", file=sys.stderr)
        return 1

    args.output_dir.mkdir(parents=True, exist_ok=True)
    key_path = args.output_dir / f"{args.key_id}.key"

    print(f"Generating signing key: {args.key_id}")
    signing_key = SigningKey.generate(args.key_id)

    try:
        write_private_key(signing_key, key_path)
    except FileExistsError:
        print(f"ERROR: Refusing to overwrite {key_path}", file=sys.stderr)
        return 1
    print(f"  - Private key written to: {key_path}")

    keyring.add(signing_key.trusted_key(description=args.description))
    keyring.save(keyring_path)
    print(f"  - Keyring updated: {keyring_path} ({len(keyring)} keys)")

    public_b64 = base64.b64encode(signing_key.public_bytes()).decode("ascii")
    print(f"  - Public key (base64): {public_b64}")
    print("")
    print("Configure the ledger with:")
    print("  audit:")
    print(f"    signing_key_path: {key_path}")
    print(f"    signing_key_id: {args.key_id}")
    print(f"    keyring_path: {keyring_path}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
