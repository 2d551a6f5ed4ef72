# FILE: cipherledger/errors.py
from __future__ import annotations

"""
Error taxonomy for the submission / verification / reconciliation core.

Backends raise these (or raw transport exceptions); pipeline boundaries run
everything through `classify()` and show users only `user_message()` text.
Raw transport error strings never reach a StatusEvent.
"""

import asyncio
from typing import Optional

import httpx


class CipherLedgerError(Exception):
    """Base error for cipherledger."""


class UserRejected(CipherLedgerError):
    """The account holder declined the signature / approval prompt."""


class TransportFailure(CipherLedgerError):
    """Network / RPC unreachable, timed out, or the contract call failed."""


class TxError(TransportFailure):
    """A transaction was mined but reverted, or never confirmed."""


class ServiceUnavailable(CipherLedgerError):
    """Encryption or decryption service not ready."""


class EncryptionUnavailable(ServiceUnavailable):
    pass


class DecryptionUnavailable(ServiceUnavailable):
    pass


class PartialDataFailure(CipherLedgerError):
    """One record's fields could not be read during reconciliation."""

    def __init__(self, record_id: str, cause: Optional[BaseException] = None):
        super().__init__(f"record {record_id!r} unreadable")
        self.record_id = record_id
        self.cause = cause


class RefreshError(CipherLedgerError):
    """The record enumeration call failed; the whole refresh is void."""


class InvalidInput(CipherLedgerError):
    """A caller precondition was not met; nothing was sent."""


class SingleUseViolation(CipherLedgerError):
    """A single-use attestation callback was invoked more than once."""


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

# Substrings wallets / signers use when the holder declines (lowercased).
_REJECTION_MARKERS = (
    "user rejected",
    "user denied",
    "rejected",
    "action_rejected",
    "denied transaction",
)

# EIP-1193 "user rejected request".
_REJECTION_CODES = {4001, "4001", "ACTION_REJECTED"}


def _looks_rejected(exc: BaseException) -> bool:
    code = getattr(exc, "code", None)
    if code in _REJECTION_CODES:
        return True
    text = str(exc).lower()
    return any(marker in text for marker in _REJECTION_MARKERS)


def classify(exc: BaseException) -> CipherLedgerError:
    """
    Map any exception raised below a pipeline boundary onto the taxonomy.

    Already-classified errors pass through. Timeouts and transport errors
    become TransportFailure; anything mentioning a rejected signature
    becomes UserRejected; everything else is a TransportFailure too, since
    from the caller's point of view it is a "network/contract error".
    """
    if isinstance(exc, CipherLedgerError):
        return exc
    if _looks_rejected(exc):
        err: CipherLedgerError = UserRejected("signature rejected")
    elif isinstance(exc, asyncio.TimeoutError):
        err = TransportFailure("remote call timed out")
    elif isinstance(exc, httpx.TimeoutException):
        err = TransportFailure("remote call timed out")
    elif isinstance(exc, httpx.HTTPError):
        err = TransportFailure(f"transport error: {type(exc).__name__}")
    else:
        err = TransportFailure(f"unexpected failure: {type(exc).__name__}")
    err.__cause__ = exc
    return err


# ---------------------------------------------------------------------------
# User-safe messages
# ---------------------------------------------------------------------------

MSG_REJECTED = "Transaction rejected"
MSG_SUBMIT_FAILED = "Submission failed"
MSG_DECRYPT_FAILED = "Decryption failed"
MSG_REFRESH_FAILED = "Could not load records"
MSG_UNAVAILABLE = "Encryption service not ready, try again shortly"
MSG_DECRYPTION_UNAVAILABLE = "Decryption service not ready, try again shortly"
MSG_NOTHING_TO_SUBMIT = "Nothing to submit"
MSG_UNKNOWN_RECORD = "Unknown record"

_GENERIC_BY_ACTION = {
    "submit": MSG_SUBMIT_FAILED,
    "verify": MSG_DECRYPT_FAILED,
    "refresh": MSG_REFRESH_FAILED,
    "check_availability": MSG_UNAVAILABLE,
}

_MESSAGE_BY_TYPE = (
    (UserRejected, MSG_REJECTED),
    (DecryptionUnavailable, MSG_DECRYPTION_UNAVAILABLE),
    (ServiceUnavailable, MSG_UNAVAILABLE),
)


def user_message(err: BaseException, action: str) -> str:
    """
    Return one of the fixed, human-readable messages for `err`.
    """
    for cls, msg in _MESSAGE_BY_TYPE:
        if isinstance(err, cls):
            return msg
    if isinstance(err, InvalidInput):
        return MSG_UNKNOWN_RECORD if action == "verify" else MSG_NOTHING_TO_SUBMIT
    return _GENERIC_BY_ACTION.get(action, MSG_SUBMIT_FAILED)


def error_kind(err: BaseException) -> str:
    """Low-cardinality label for metrics and logs."""
    if isinstance(err, UserRejected):
        return "user_rejected"
    if isinstance(err, ServiceUnavailable):
        return "service_unavailable"
    if isinstance(err, InvalidInput):
        return "invalid_input"
    if isinstance(err, TxError):
        return "tx_reverted"
    if isinstance(err, TransportFailure):
        return "transport"
    if isinstance(err, PartialDataFailure):
        return "partial_data"
    return "other"
