"""
CraftGate - Audit Ledger

Append-only, tamper-evident record of every decision the core makes:
- Hash chain linking each record to its predecessor
- Ed25519 signature over (payload, previous hash, timestamp)
- JSON-lines persistence, one record per line
- Fail-closed: once verification fails, appends are refused
"""

import base64
import json
import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union
from uuid import uuid4

from ..core.exceptions import ChainBrokenError, KeyRevokedError, UnknownKeyError
from ..integrity import (
    IntegritySigner,
    VerifyStatus,
    canonical_json,
    compute_hash,
)

logger = logging.getLogger(__name__)

GENESIS_HASH = compute_hash(b"CRAFTGATE_LEDGER_GENESIS_V1").replace("sha256:", "genesis:")


class AuditOutcome(Enum):
    """Outcome recorded for an audited decision."""
    SUCCESS = "success"
    FAILURE = "failure"
    REJECTED = "rejected"
    SIMULATED = "simulated"
    VIOLATION = "violation"


FAILED_OUTCOMES = frozenset({
    AuditOutcome.FAILURE.value,
    AuditOutcome.REJECTED.value,
    AuditOutcome.VIOLATION.value,
})


def default_actor() -> str:
    """Name of the user the process acts for."""
    return os.environ.get("USER") or os.environ.get("LOGNAME") or "unknown"


@dataclass(frozen=True)
class SignedRecord:
    """One ledger record. Never mutated once created."""
    index: int
    record_id: str
    timestamp: str
    payload: str
    prev_hash: str
    key_id: str
    signature: str
    record_hash: str

    @property
    def event(self) -> Dict[str, Any]:
        return json.loads(self.payload)

    @property
    def event_type(self) -> Optional[str]:
        return self.event.get("event_type")

    @property
    def outcome(self) -> Optional[str]:
        return self.event.get("outcome")

    @property
    def created_at(self) -> datetime:
        return datetime.fromisoformat(self.timestamp)

    def signing_bytes(self) -> bytes:
        return signing_bytes(self.payload, self.prev_hash, self.timestamp)

    def compute_record_hash(self) -> str:
        return compute_hash({
            "index": self.index,
            "record_id": self.record_id,
            "timestamp": self.timestamp,
            "payload": self.payload,
            "prev_hash": self.prev_hash,
            "key_id": self.key_id,
            "signature": self.signature,
        })

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "record_id": self.record_id,
            "timestamp": self.timestamp,
            "payload": self.payload,
            "prev_hash": self.prev_hash,
            "key_id": self.key_id,
            "signature": self.signature,
            "record_hash": self.record_hash,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SignedRecord":
        return cls(
            index=data["index"],
            record_id=data["record_id"],
            timestamp=data["timestamp"],
            payload=data["payload"],
            prev_hash=data["prev_hash"],
            key_id=data["key_id"],
            signature=data["signature"],
            record_hash=data["record_hash"],
        )


def signing_bytes(payload: str, prev_hash: str, timestamp: str) -> bytes:
    """Bytes covered by a record signature."""
    return canonical_json({
        "payload": payload,
        "prev_hash": prev_hash,
        "timestamp": timestamp,
    })


@dataclass(frozen=True)
class ChainResult:
    """Result of walking the ledger."""
    ok: bool
    records_checked: int
    first_divergence: Optional[int] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "records_checked": self.records_checked,
            "first_divergence": self.first_divergence,
            "reason": self.reason,
        }


class AuditLedger:
    """
    Hash-chained, signed, append-only ledger.

    Appends are serialized by a lock so the chain is a total order even
    when independent modules log concurrently. There are no update or
    delete operations.
    """

    def __init__(
        self,
        signer: IntegritySigner,
        path: Optional[Union[str, Path]] = None,
        fsync: bool = True,
    ):
        """
        Initialize ledger.

        Args:
            signer: Signer holding the active key and trusted key set
            path: Optional JSON-lines file; existing records are loaded
            fsync: fsync the file after every append
        """
        self.signer = signer
        self.path = Path(path) if path else None
        self.fsync = fsync
        self._records: List[SignedRecord] = []
        self._by_id: Dict[str, SignedRecord] = {}
        self._lock = threading.Lock()
        self._trust_lost = False

        if self.path and self.path.exists():
            self._load()

    def _load(self) -> None:
        with open(self.path, "rb") as f:
            for line_number, raw in enumerate(f):
                try:
                    line = raw.decode("utf-8")
                    if not line.strip():
                        continue
                    record = SignedRecord.from_dict(json.loads(line))
                except (UnicodeDecodeError, json.JSONDecodeError, KeyError, TypeError) as e:
                    self._trust_lost = True
                    logger.critical(f"Unreadable ledger line {line_number} in {self.path}: {e}")
                    raise ChainBrokenError(
                        f"Unreadable ledger record at line {line_number}",
                        index=line_number,
                        reason="unreadable record",
                    )
                self._records.append(record)
                self._by_id[record.record_id] = record
        logger.info(f"Loaded {len(self._records)} ledger records from {self.path}")

    @property
    def head_hash(self) -> str:
        """Hash the next record will link to."""
        return self._records[-1].record_hash if self._records else GENESIS_HASH

    @property
    def trust_lost(self) -> bool:
        return self._trust_lost

    def ensure_writable(self) -> None:
        """
        Check that the next append would be accepted.

        Raises:
            ChainBrokenError: If the ledger has lost trust
            UnknownKeyError: If the active key is not trusted
            KeyRevokedError: If the active key has been revoked
        """
        with self._lock:
            self._check_writable()

    def append(self, event: Dict[str, Any]) -> str:
        """
        Append an event.

        Args:
            event: JSON-serializable event; must carry an event_type.
                The acting user is added when absent.

        Returns:
            Record id

        Raises:
            ChainBrokenError: If the ledger has lost trust
            UnknownKeyError: If the active key is not trusted
            KeyRevokedError: If the active key has been revoked
        """
        if not isinstance(event.get("event_type"), str):
            raise ValueError("Ledger events require a string event_type")

        event = dict(event)
        event.setdefault("actor", default_actor())
        payload = canonical_json(event).decode("utf-8")

        with self._lock:
            self._check_writable()

            timestamp = datetime.now(timezone.utc).isoformat()
            prev_hash = self.head_hash
            signature = self.signer.sign_with_active_key(
                signing_bytes(payload, prev_hash, timestamp)
            )
            unsigned = SignedRecord(
                index=len(self._records),
                record_id=str(uuid4()),
                timestamp=timestamp,
                payload=payload,
                prev_hash=prev_hash,
                key_id=self.signer.key_id,
                signature=base64.b64encode(signature).decode("ascii"),
                record_hash="",
            )
            record = SignedRecord(
                **{**unsigned.to_dict(), "record_hash": unsigned.compute_record_hash()}
            )

            if self.path:
                self._write(record)
            self._records.append(record)
            self._by_id[record.record_id] = record

        logger.debug(
            f"Ledger append #{record.index} {event['event_type']}",
            extra={"record_id": record.record_id, "key_id": record.key_id},
        )
        return record.record_id

    def _check_writable(self) -> None:
        if self._trust_lost:
            raise ChainBrokenError(
                "Ledger trust lost; refusing to append",
                reason="trust lost",
            )
        self._check_active_key()

    def _check_active_key(self) -> None:
        key_id = self.signer.key_id
        trusted = self.signer.trusted_keys.get(key_id) if key_id else None
        if trusted is None:
            raise UnknownKeyError(f"Active signing key is not trusted: {key_id}", key_id=key_id)
        if trusted.revoked:
            raise KeyRevokedError(f"Active signing key is revoked: {key_id}", key_id=key_id)

    def _write(self, record: SignedRecord) -> None:
        line = json.dumps(record.to_dict(), sort_keys=True, separators=(",", ":"))
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(line + "\n")
            f.flush()
            if self.fsync:
                os.fsync(f.fileno())

    def verify_chain(self) -> ChainResult:
        """
        Walk every record, recomputing hashes and signatures.

        A failure is a trust-loss event: further appends are refused.

        Returns:
            ChainResult with the index of the first divergence, if any
        """
        with self._lock:
            records = list(self._records)

        prev_hash = GENESIS_HASH
        for position, record in enumerate(records):
            reason = self._check_record(position, record, prev_hash)
            if reason:
                with self._lock:
                    self._trust_lost = True
                logger.critical(
                    f"Ledger verification failed at record {position}: {reason}"
                )
                return ChainResult(
                    ok=False,
                    records_checked=position,
                    first_divergence=position,
                    reason=reason,
                )
            prev_hash = record.record_hash

        logger.info(f"Ledger verified: {len(records)} records")
        return ChainResult(ok=True, records_checked=len(records))

    def _check_record(self, position: int, record: SignedRecord, prev_hash: str) -> Optional[str]:
        if record.index != position:
            return f"index {record.index} out of sequence"
        if record.prev_hash != prev_hash:
            return "previous hash mismatch"
        if record.compute_record_hash() != record.record_hash:
            return "record hash mismatch"
        status = IntegritySigner.verify(
            record.signing_bytes(),
            record.signature,
            record.key_id,
            self.signer.trusted_keys,
        )
        if status is not VerifyStatus.VALID:
            return f"signature {status.value}"
        return None

    # Queries

    def get(self, record_id: str) -> Optional[SignedRecord]:
        return self._by_id.get(record_id)

    def records(
        self,
        since: Optional[datetime] = None,
        event_type: Optional[str] = None,
        outcome: Optional[str] = None,
        actor: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[SignedRecord]:
        """
        Query records, oldest first.

        Args:
            since: Only records at or after this time
            event_type: Filter on event_type
            outcome: Filter on outcome
            actor: Filter on acting user
            limit: Keep only the most recent N matches

        Returns:
            Matching records
        """
        with self._lock:
            snapshot = list(self._records)

        if since is not None and since.tzinfo is None:
            since = since.replace(tzinfo=timezone.utc)

        matches = []
        for record in snapshot:
            event = record.event
            if since is not None and record.created_at < since:
                continue
            if event_type is not None and event.get("event_type") != event_type:
                continue
            if outcome is not None and event.get("outcome") != outcome:
                continue
            if actor is not None and event.get("actor") != actor:
                continue
            matches.append(record)

        if limit is not None:
            matches = matches[-limit:] if limit > 0 else []
        return matches

    def failed_records(self) -> List[SignedRecord]:
        """Records whose outcome is a failure, rejection or violation."""
        return [r for r in self.records() if r.outcome in FAILED_OUTCOMES]

    def export_json(self, path: Union[str, Path]) -> int:
        """
        Export records with decoded events as a JSON array.

        Returns:
            Number of records exported
        """
        records = self.records()
        data = [{**r.to_dict(), "event": r.event} for r in records]
        with open(path, "w") as f:
            json.dump(data, f, indent=2)
        logger.info(f"Exported {len(records)} ledger records to {path}")
        return len(records)

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[SignedRecord]:
        return iter(self.records())


__all__ = [
    "AuditLedger",
    "AuditOutcome",
    "ChainResult",
    "GENESIS_HASH",
    "SignedRecord",
    "default_actor",
    "signing_bytes",
]
