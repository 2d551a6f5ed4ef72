# FILE: cipherledger/verification.py
from __future__ import annotations

"""
Verified decryption, single-flight per record id.

A record is decrypted at most once per session run: concurrent calls for
the same id are coalesced onto the run already in flight and receive its
result, and a record the ledger reports as verified short-circuits before
the decryption service is contacted.

The ledger write that carries the attestation is handed to the decryption
service as a single-use callable that knows only the record id and the
write-capable ledger.
"""

import asyncio
import logging
import time
from typing import Optional

from prometheus_client import Counter, Histogram

from .crypto import AttestationSubmitter
from .errors import (
    CipherLedgerError,
    InvalidInput,
    MSG_UNKNOWN_RECORD,
    SingleUseViolation,
    classify,
    error_kind,
    user_message,
)
from .ledger import LedgerClient, TxHandle
from .logging import bind, log_operation, unbind
from .records import OperationResult, Record, VerificationRequest
from .reconcile import ReconciliationLoop
from .session import ClientSession

logger = logging.getLogger(__name__)

_VERIFICATIONS = Counter(
    "cipherledger_verifications_total",
    "Verification runs",
    labelnames=("outcome", "error_kind"),
)

_VERIFY_LATENCY = Histogram(
    "cipherledger_verification_latency_seconds",
    "End-to-end verification latency (seconds)",
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60, 180),
)

MSG_ALREADY_VERIFIED = "Already verified on-ledger"
MSG_DECRYPTING = "Decrypting record..."
MSG_SUBMITTING = "Submitting verification..."
MSG_VERIFIED = "Record decrypted and verified"


def attestation_submitter(ledger: LedgerClient, record_id: str) -> AttestationSubmitter:
    """
    Build the callable the decryption service invokes with
    (clear_values_encoded, decryption_proof). It submits one attestation
    transaction and refuses any further invocation.
    """
    used = False

    async def submit(clear_values_encoded: bytes, proof: bytes) -> TxHandle:
        nonlocal used
        if used:
            raise SingleUseViolation(f"attestation for {record_id!r} already submitted")
        used = True
        return await ledger.submit_verification(record_id, clear_values_encoded, proof)

    return submit


class VerificationProtocol:
    def __init__(self, session: ClientSession, reconciler: ReconciliationLoop) -> None:
        self._session = session
        self._reconciler = reconciler

    async def verify(self, record_id: str) -> OperationResult:
        s = self._session

        running = s.inflight(record_id)
        if running is not None:
            _VERIFICATIONS.labels("coalesced", "none").inc()
            return await asyncio.shield(running)

        if not record_id:
            return self._failed(time.time(), InvalidInput(MSG_UNKNOWN_RECORD), record_id)

        # claimed before the first await
        fut = s.claim(record_id)
        try:
            result = await self._run(VerificationRequest(record_id=record_id))
        except BaseException:
            fut.cancel()
            raise
        else:
            fut.set_result(result)
            return result
        finally:
            s.release(record_id)

    def _ok(
        self,
        started: float,
        record: Record,
        message: str,
        *,
        outcome: str,
        tx_hash: Optional[str] = None,
    ) -> OperationResult:
        finished = time.time()
        _VERIFICATIONS.labels(outcome, "none").inc()
        _VERIFY_LATENCY.observe(finished - started)
        record_id = record.id
        log_operation(
            logger,
            action="verify",
            outcome=outcome,
            record_id=record_id,
            latency_ms=(finished - started) * 1000.0,
            message="verification finished",
            extra={"tx_hash": tx_hash},
        )
        details = {"record_id": record_id, "already_verified": outcome == "already_verified"}
        if tx_hash:
            details["tx_hash"] = tx_hash
        return OperationResult(
            action="verify",
            ok=True,
            started_at=started,
            finished_at=finished,
            record=record,
            message=message,
            details=details,
        )

    def _failed(self, started: float, err: CipherLedgerError, record_id: str) -> OperationResult:
        msg = user_message(err, "verify")
        self._session.notifier.error(msg)
        kind = error_kind(err)
        _VERIFICATIONS.labels("failed", kind).inc()
        finished = time.time()
        log_operation(
            logger,
            action="verify",
            outcome="failed",
            record_id=record_id or None,
            latency_ms=(finished - started) * 1000.0,
            error_kind=kind,
            message="verification failed",
            level=logging.WARNING,
        )
        return OperationResult(
            action="verify",
            ok=False,
            started_at=started,
            finished_at=finished,
            error=err,
            message=msg,
            details={"record_id": record_id},
        )

    async def _run(self, req: VerificationRequest) -> OperationResult:
        s = self._session
        record_id = req.record_id
        started = time.time()
        bind(action="verify", record_id=record_id)
        try:
            fields = await s.call(s.ledger.get_record(record_id))
            previous = s.get(record_id)

            if fields.verified:
                if previous is not None:
                    handle = previous.encrypted_value
                else:
                    handle = await s.call(s.ledger.get_encrypted_handle(record_id))
                record = s.upsert(Record.from_fields(record_id, fields, handle))
                s.notifier.success(MSG_ALREADY_VERIFIED)
                self._reconciler.schedule()
                return self._ok(started, record, MSG_ALREADY_VERIFIED, outcome="already_verified")

            handle = await s.call(s.ledger.get_encrypted_handle(record_id))
            s.upsert(Record.from_fields(record_id, fields, handle))
            context = await s.call(s.ledger.context_address())

            s.notifier.pending(MSG_DECRYPTING)
            tx = await s.call(
                s.decryption.request_verified_decryption(
                    [handle],
                    context,
                    attestation_submitter(s.ledger, record_id),
                )
            )
            bind(tx_hash=tx.tx_hash)

            s.notifier.pending(MSG_SUBMITTING)
            await s.call(tx.await_confirmation(), timeout_s=s.settings.confirmation_timeout_s)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            err = classify(e)
            logger.debug("verification aborted", exc_info=True)
            return self._failed(started, err, record_id)
        finally:
            unbind("action", "record_id", "tx_hash")

        # The attestation is confirmed; read the accepted value back.
        try:
            confirmed = await s.call(s.ledger.get_record(record_id))
        except Exception:
            logger.warning("verified value read-back failed", extra={"record_id": record_id}, exc_info=True)
            confirmed = None

        if confirmed is not None and confirmed.verified:
            record = s.mark_verified(record_id, confirmed.decrypted_value)
            if record is None:
                record = s.upsert(Record.from_fields(record_id, confirmed, handle))
        else:
            record = s.get(record_id) or s.upsert(Record.from_fields(record_id, fields, handle))
        s.notifier.success(MSG_VERIFIED)
        self._reconciler.schedule()
        return self._ok(started, record, MSG_VERIFIED, outcome="ok", tx_hash=tx.tx_hash)
