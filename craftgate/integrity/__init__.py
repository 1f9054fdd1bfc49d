"""
CraftGate - Cryptographic Integrity Module

Provides Ed25519 signing and verification for:
- Audit ledger records
- Detached signatures over configuration files

Implements:
- Trusted key set with revocation, checked on every verification
- Keyring persistence (JSON, schema validated)
- Signing key loading from raw, base64 or PEM key files
"""

import base64
import binascii
import dataclasses
import hashlib
import json
import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

import jsonschema
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from ..core.exceptions import (
    ConfigError,
    KeyRevokedError,
    SignatureInvalidError,
    UnknownKeyError,
)

logger = logging.getLogger(__name__)

SIGNATURE_ALGORITHM = "Ed25519"
SIGNATURE_SUFFIX = ".sig"
SIGNING_KEY_ENV = "CRAFTGATE_SIGNING_KEY_B64"

KEYRING_SCHEMA = {
    "type": "object",
    "required": ["trusted_keys"],
    "properties": {
        "trusted_keys": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["key_id", "public_key"],
                "properties": {
                    "key_id": {"type": "string", "minLength": 1},
                    "public_key": {"type": "string", "minLength": 1},
                    "revoked": {"type": "boolean"},
                    "valid_from": {"type": ["string", "null"]},
                    "valid_to": {"type": ["string", "null"]},
                    "description": {"type": "string"},
                },
            },
        },
    },
}

Payload = Union[bytes, str, Dict[str, Any]]


def canonical_json(data: Any) -> bytes:
    """Canonical JSON encoding used for every signed or hashed structure."""
    return json.dumps(
        data, sort_keys=True, separators=(",", ":"), ensure_ascii=False
    ).encode("utf-8")


def _as_bytes(payload: Payload) -> bytes:
    if isinstance(payload, dict):
        return canonical_json(payload)
    if isinstance(payload, str):
        return payload.encode("utf-8")
    return bytes(payload)


def compute_hash(data: Payload) -> str:
    """
    Compute SHA-256 of data.

    Returns:
        Hash string with algorithm prefix
    """
    return f"sha256:{hashlib.sha256(_as_bytes(data)).hexdigest()}"


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class VerifyStatus(Enum):
    """Result of a signature verification."""
    VALID = "valid"
    INVALID = "invalid"
    UNKNOWN_KEY = "unknown_key"
    REVOKED = "revoked"


@dataclass(frozen=True)
class TrustedKey:
    """Public key material trusted for verification."""
    key_id: str
    public_key: bytes
    revoked: bool = False
    valid_from: Optional[datetime] = None
    valid_to: Optional[datetime] = None
    description: str = ""

    def is_current(self, now: Optional[datetime] = None) -> bool:
        """Check the validity window."""
        now = now or datetime.now(timezone.utc)
        if self.valid_from and now < self.valid_from:
            return False
        if self.valid_to and now > self.valid_to:
            return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key_id": self.key_id,
            "public_key": base64.b64encode(self.public_key).decode("ascii"),
            "revoked": self.revoked,
            "valid_from": self.valid_from.isoformat() if self.valid_from else None,
            "valid_to": self.valid_to.isoformat() if self.valid_to else None,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TrustedKey":
        public_key = base64.b64decode(data["public_key"], validate=True)
        # Fails early on malformed key material
        Ed25519PublicKey.from_public_bytes(public_key)
        return cls(
            key_id=data["key_id"],
            public_key=public_key,
            revoked=data.get("revoked", False),
            valid_from=_parse_time(data.get("valid_from")),
            valid_to=_parse_time(data.get("valid_to")),
            description=data.get("description", ""),
        )


class TrustedKeySet:
    """
    Set of trusted verification keys.

    Readers always see an immutable snapshot. add() and revoke() build a
    new snapshot and swap it in under a lock, so a revocation is visible to
    the very next verification.
    """

    def __init__(self, keys: Iterable[TrustedKey] = ()):
        self._keys: Mapping[str, TrustedKey] = MappingProxyType(
            {key.key_id: key for key in keys}
        )
        self._lock = threading.Lock()

    def get(self, key_id: str) -> Optional[TrustedKey]:
        return self._keys.get(key_id)

    def snapshot(self) -> Mapping[str, TrustedKey]:
        return self._keys

    @property
    def key_ids(self) -> List[str]:
        return sorted(self._keys)

    def add(self, key: TrustedKey) -> None:
        """Add or replace a trusted key."""
        with self._lock:
            keys = dict(self._keys)
            keys[key.key_id] = key
            self._keys = MappingProxyType(keys)
        logger.info(f"Trusted key added: {key.key_id}")

    def revoke(self, key_id: str) -> TrustedKey:
        """
        Revoke a trusted key.

        Args:
            key_id: Key to revoke

        Returns:
            The revoked key entry

        Raises:
            UnknownKeyError: If the key is not in the set
        """
        with self._lock:
            current = self._keys.get(key_id)
            if current is None:
                raise UnknownKeyError(f"Cannot revoke unknown key: {key_id}", key_id=key_id)
            revoked = dataclasses.replace(current, revoked=True)
            keys = dict(self._keys)
            keys[key_id] = revoked
            self._keys = MappingProxyType(keys)
        logger.warning(f"Trusted key revoked: {key_id}", extra={"key_id": key_id})
        return revoked

    @classmethod
    def load(cls, path: Union[str, Path]) -> "TrustedKeySet":
        """
        Load a keyring file.

        Raises:
            ConfigError: If the file is missing, not JSON, or fails the schema
        """
        path = Path(path)
        if not path.is_file():
            raise ConfigError(f"Keyring not found: {path}", path=str(path))

        try:
            with open(path, "r") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Keyring is not valid JSON: {e}", path=str(path))

        try:
            jsonschema.validate(data, KEYRING_SCHEMA)
        except jsonschema.ValidationError as e:
            raise ConfigError(
                f"Keyring schema validation failed: {e.message}",
                path=str(path),
                errors=[e.message],
            )

        keys = []
        for entry in data["trusted_keys"]:
            try:
                keys.append(TrustedKey.from_dict(entry))
            except (binascii.Error, ValueError) as e:
                raise ConfigError(
                    f"Invalid key material for {entry['key_id']}: {e}",
                    path=str(path),
                )

        logger.info(f"Loaded {len(keys)} trusted keys from {path}")
        return cls(keys)

    def save(self, path: Union[str, Path]) -> None:
        """Write the keyring file."""
        data = {"trusted_keys": [self._keys[k].to_dict() for k in self.key_ids]}
        with open(path, "w") as f:
            json.dump(data, f, indent=2)

    def __contains__(self, key_id: str) -> bool:
        return key_id in self._keys

    def __len__(self) -> int:
        return len(self._keys)


@dataclass(frozen=True)
class SigningKey:
    """Private Ed25519 key with its identifier."""
    key_id: str
    private_key: Ed25519PrivateKey

    @classmethod
    def generate(cls, key_id: str) -> "SigningKey":
        return cls(key_id=key_id, private_key=Ed25519PrivateKey.generate())

    def public_bytes(self) -> bytes:
        return self.private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )

    def private_bytes(self) -> bytes:
        return self.private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        )

    def trusted_key(self, description: str = "") -> TrustedKey:
        """Public half as a TrustedKey entry."""
        return TrustedKey(
            key_id=self.key_id,
            public_key=self.public_bytes(),
            valid_from=datetime.now(timezone.utc),
            description=description,
        )


def _key_from_b64(key_id: str, value: str, source: str) -> SigningKey:
    try:
        raw = base64.b64decode(value.strip(), validate=True)
        return SigningKey(key_id, Ed25519PrivateKey.from_private_bytes(raw))
    except (binascii.Error, ValueError) as e:
        raise ConfigError(f"Unreadable signing key from {source}: {e}", path=source)


def load_signing_key(
    key_id: str,
    key_file: Optional[Union[str, Path]] = None,
    key_b64: Optional[str] = None,
) -> SigningKey:
    """
    Load an Ed25519 private key.

    Accepts raw 32 byte keys, base64 of the raw key, or unencrypted PEM.
    Falls back to the CRAFTGATE_SIGNING_KEY_B64 environment variable.

    Raises:
        ConfigError: If no key is available or it is not an Ed25519 key
    """
    if key_b64:
        return _key_from_b64(key_id, key_b64, "key_b64")

    if key_file:
        with open(key_file, "rb") as f:
            key_data = f.read()

        if len(key_data) == 32:
            return SigningKey(key_id, Ed25519PrivateKey.from_private_bytes(key_data))

        try:
            decoded = base64.b64decode(key_data.strip(), validate=True)
        except binascii.Error:
            decoded = b""
        if len(decoded) == 32:
            return SigningKey(key_id, Ed25519PrivateKey.from_private_bytes(decoded))

        try:
            private_key = serialization.load_pem_private_key(key_data, password=None)
        except ValueError as e:
            raise ConfigError(f"Unreadable signing key: {e}", path=str(key_file))
        if not isinstance(private_key, Ed25519PrivateKey):
            raise ConfigError("Signing key is not Ed25519", path=str(key_file))
        return SigningKey(key_id, private_key)

    env_key = os.environ.get(SIGNING_KEY_ENV)
    if env_key:
        return _key_from_b64(key_id, env_key, SIGNING_KEY_ENV)

    raise ConfigError(
        f"No signing key provided. Set a key file or {SIGNING_KEY_ENV}"
    )


class IntegritySigner:
    """
    Ed25519 signer and verifier.

    sign() and verify() are usable without an instance; an instance binds
    the active signing key and trusted key set for ledger and file use.
    """

    def __init__(self, trusted_keys: TrustedKeySet, signing_key: Optional[SigningKey] = None):
        self.trusted_keys = trusted_keys
        self.signing_key = signing_key

    @staticmethod
    def sign(payload: Payload, key: SigningKey) -> bytes:
        """
        Sign payload.

        Args:
            payload: Bytes, text, or a dict (signed as canonical JSON)
            key: Signing key

        Returns:
            Raw 64 byte signature
        """
        return key.private_key.sign(_as_bytes(payload))

    @staticmethod
    def verify(
        payload: Payload,
        signature: Union[bytes, str],
        key_id: str,
        trusted_keys: TrustedKeySet,
    ) -> VerifyStatus:
        """
        Verify a signature against the trusted key set.

        Revocation and the validity window are checked on every call.

        Args:
            payload: Signed data
            signature: Raw signature bytes or base64 text
            key_id: Claimed signer
            trusted_keys: Key set to verify against

        Returns:
            VerifyStatus
        """
        key = trusted_keys.get(key_id)
        if key is None:
            return VerifyStatus.UNKNOWN_KEY
        if key.revoked or not key.is_current():
            return VerifyStatus.REVOKED

        if isinstance(signature, str):
            try:
                signature = base64.b64decode(signature, validate=True)
            except binascii.Error:
                return VerifyStatus.INVALID

        try:
            public_key = Ed25519PublicKey.from_public_bytes(key.public_key)
            public_key.verify(signature, _as_bytes(payload))
        except InvalidSignature:
            return VerifyStatus.INVALID
        except ValueError as e:
            logger.error(f"Unusable public key {key_id}: {e}")
            return VerifyStatus.INVALID
        return VerifyStatus.VALID

    @property
    def key_id(self) -> Optional[str]:
        return self.signing_key.key_id if self.signing_key else None

    def sign_with_active_key(self, payload: Payload) -> bytes:
        if self.signing_key is None:
            raise UnknownKeyError("No active signing key configured")
        return self.sign(payload, self.signing_key)

    def check(self, payload: Payload, signature: Union[bytes, str], key_id: str) -> None:
        """
        Verify and raise on anything but VALID.

        Raises:
            UnknownKeyError, KeyRevokedError, SignatureInvalidError
        """
        status = self.verify(payload, signature, key_id, self.trusted_keys)
        if status is VerifyStatus.UNKNOWN_KEY:
            raise UnknownKeyError(f"Signature by unknown key: {key_id}", key_id=key_id)
        if status is VerifyStatus.REVOKED:
            raise KeyRevokedError(f"Signature by revoked key: {key_id}", key_id=key_id)
        if status is VerifyStatus.INVALID:
            raise SignatureInvalidError("Signature verification failed", key_id=key_id)

    def sign_file(self, path: Union[str, Path]) -> Path:
        """
        Write a detached signature next to a file.

        Returns:
            Path of the signature file
        """
        path = Path(path)
        data = path.read_bytes()
        signature = self.sign_with_active_key(data)
        sig_path = path.with_name(path.name + SIGNATURE_SUFFIX)
        envelope = {
            "algorithm": SIGNATURE_ALGORITHM,
            "key_id": self.signing_key.key_id,
            "sha256": compute_hash(data),
            "signature": base64.b64encode(signature).decode("ascii"),
            "signed_at": datetime.now(timezone.utc).isoformat(),
        }
        with open(sig_path, "w") as f:
            json.dump(envelope, f, indent=2)
        logger.info(f"Signed {path} with key {self.signing_key.key_id}")
        return sig_path

    def verify_file(self, path: Union[str, Path]) -> str:
        """
        Verify a file against its detached signature.

        Returns:
            Key id of the signer

        Raises:
            SignatureInvalidError: Missing, unreadable or failing signature
            UnknownKeyError: Signer not trusted
            KeyRevokedError: Signer revoked
        """
        path = Path(path)
        sig_path = path.with_name(path.name + SIGNATURE_SUFFIX)
        if not sig_path.is_file():
            raise SignatureInvalidError(f"Missing signature for {path}", path=str(path))

        try:
            with open(sig_path, "r") as f:
                envelope = json.load(f)
            key_id = envelope["key_id"]
            signature = envelope["signature"]
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            raise SignatureInvalidError(f"Malformed signature file {sig_path}: {e}", path=str(path))

        if envelope.get("algorithm", SIGNATURE_ALGORITHM) != SIGNATURE_ALGORITHM:
            raise SignatureInvalidError(
                f"Unsupported signature algorithm: {envelope.get('algorithm')}",
                key_id=key_id,
                path=str(path),
            )

        self.check(path.read_bytes(), signature, key_id)
        logger.info(f"Verified {path} signed by {key_id}")
        return key_id


__all__ = [
    "IntegritySigner",
    "KEYRING_SCHEMA",
    "SigningKey",
    "TrustedKey",
    "TrustedKeySet",
    "VerifyStatus",
    "canonical_json",
    "compute_hash",
    "load_signing_key",
]
