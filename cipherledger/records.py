# FILE: cipherledger/records.py
from __future__ import annotations

import json
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .errors import CipherLedgerError, error_kind
from .schemas import RecordFields


# ---------------------------------------------------------------------------
# Core types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Record:
    """
    A user-submitted item as seen by this client.

    `plain_tag` is derived from the label length and travels in the clear
    next to the ciphertext. It is a display/indexing aid with no
    confidentiality guarantee and must never be read as the decrypted value.

    `decrypted_value` is meaningful only when `verified` is True; zero is a
    valid decrypted value. Use `cleartext()` instead of comparing with 0.
    """

    id: str
    label: str
    encrypted_value: bytes
    plain_tag: int
    created_at: int
    creator: str
    verified: bool = False
    decrypted_value: int = 0
    optimistic: bool = False

    @classmethod
    def from_fields(cls, record_id: str, fields: RecordFields, encrypted_value: bytes = b"") -> "Record":
        """Authoritative Record from a ledger read."""
        return cls(
            id=record_id,
            label=fields.label,
            encrypted_value=bytes(encrypted_value),
            plain_tag=fields.plain_tag,
            created_at=fields.created_at,
            creator=fields.creator,
            verified=fields.verified,
            decrypted_value=fields.decrypted_value if fields.verified else 0,
        )

    def cleartext(self) -> Optional[int]:
        return self.decrypted_value if self.verified else None

    def merged_over(self, previous: Optional["Record"]) -> "Record":
        """
        Return self as the authoritative copy, keeping `verified` monotonic
        with respect to `previous` (a stale ledger read never un-verifies).
        """
        if previous is None or self.id != previous.id:
            return self
        if previous.verified and not self.verified:
            return replace(self, verified=True, decrypted_value=previous.decrypted_value)
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "encrypted_value": "0x" + self.encrypted_value.hex(),
            "plain_tag": self.plain_tag,
            "created_at": self.created_at,
            "creator": self.creator,
            "verified": self.verified,
            "decrypted_value": self.cleartext(),
            "optimistic": self.optimistic,
        }


@dataclass(frozen=True)
class SubmissionRequest:
    label: str
    plain_tag: int
    recipient: str


@dataclass(frozen=True)
class VerificationRequest:
    record_id: str


class StatusPhase(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class StatusEvent:
    phase: StatusPhase
    message: str
    ts: float = field(default_factory=time.time)

    @classmethod
    def pending(cls, message: str) -> "StatusEvent":
        return cls(StatusPhase.PENDING, message)

    @classmethod
    def success(cls, message: str) -> "StatusEvent":
        return cls(StatusPhase.SUCCESS, message)

    @classmethod
    def error(cls, message: str) -> "StatusEvent":
        return cls(StatusPhase.ERROR, message)


@dataclass(frozen=True)
class ReconciledState:
    """
    Result of one refresh: records in discovery order plus aggregates.

    Equality ignores `refreshed_at` so two refreshes over an unchanged
    ledger compare equal.
    """

    records: Tuple[Record, ...] = ()
    total: int = 0
    verified: int = 0
    active: int = 0
    skipped: Tuple[str, ...] = ()
    refreshed_at: float = field(default=0.0, compare=False)

    def stats(self) -> Dict[str, int]:
        return {"total": self.total, "verified": self.verified, "active": self.active}

    def get(self, record_id: str) -> Optional[Record]:
        for rec in self.records:
            if rec.id == record_id:
                return rec
        return None


# ---------------------------------------------------------------------------
# Operation results
# ---------------------------------------------------------------------------


@dataclass
class OperationResult:
    """
    Normalized outcome for a single submit / verify run.
    """

    action: str
    ok: bool
    started_at: float
    finished_at: float
    record: Optional[Record] = None
    error: Optional[CipherLedgerError] = None
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def duration_ms(self) -> float:
        return max(0.0, (self.finished_at - self.started_at) * 1000.0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "ok": self.ok,
            "record": self.record.to_dict() if self.record else None,
            "error_kind": error_kind(self.error) if self.error else None,
            "message": self.message,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration_ms": self.duration_ms(),
            "details": self.details,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, sort_keys=True)
