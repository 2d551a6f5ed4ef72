# FILE: cipherledger/submission.py
from __future__ import annotations

"""
Submission pipeline: encrypt -> submit -> confirm -> merge.

Each run ends in exactly one success or error status event. A failed run
leaves no Record behind: the optimistic copy is staged when the network
accepts the transaction and becomes visible only after confirmation.
"""

import asyncio
import logging
import secrets
import time
from typing import Callable

from prometheus_client import Counter, Histogram

from .errors import CipherLedgerError, InvalidInput, MSG_NOTHING_TO_SUBMIT, classify, error_kind, user_message
from .logging import bind, log_operation, unbind
from .records import OperationResult, Record, SubmissionRequest
from .reconcile import ReconciliationLoop
from .session import ClientSession

logger = logging.getLogger(__name__)

_SUBMISSIONS = Counter(
    "cipherledger_submissions_total",
    "Submission pipeline runs",
    labelnames=("outcome", "error_kind"),
)

_SUBMIT_LATENCY = Histogram(
    "cipherledger_submission_latency_seconds",
    "End-to-end submission latency (seconds)",
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60, 180),
)

MSG_ENCRYPTING = "Encrypting record..."
MSG_STORING = "Storing encrypted record..."
MSG_STORED = "Record stored"


def plain_tag_for(label: str, modulus: int = 1000) -> int:
    """
    Public numeric tag derived from the label's length.

    The tag travels next to the ciphertext in the clear. It carries no
    confidentiality guarantee and must not be treated as protected data.
    """
    return len(label) % max(1, int(modulus))


def new_record_id(prefix: str, *, clock: Callable[[], float] = time.time) -> str:
    """`<prefix><unix millis>-<6 hex>`; the suffix separates same-millisecond ids."""
    return f"{prefix}{int(clock() * 1000)}-{secrets.token_hex(3)}"


class SubmissionPipeline:
    def __init__(
        self,
        session: ClientSession,
        reconciler: ReconciliationLoop,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._session = session
        self._reconciler = reconciler
        self._clock = clock

    def _failed(self, started: float, err: CipherLedgerError, record_id: str = "") -> OperationResult:
        s = self._session
        msg = user_message(err, "submit")
        s.notifier.error(msg)
        kind = error_kind(err)
        _SUBMISSIONS.labels("failed", kind).inc()
        finished = time.time()
        log_operation(
            logger,
            action="submit",
            outcome="failed",
            record_id=record_id or None,
            latency_ms=(finished - started) * 1000.0,
            error_kind=kind,
            message="submission failed",
            level=logging.WARNING,
        )
        return OperationResult(
            action="submit",
            ok=False,
            started_at=started,
            finished_at=finished,
            error=err,
            message=msg,
            details={"record_id": record_id} if record_id else {},
        )

    async def submit(self, label: str, recipient: str) -> OperationResult:
        s = self._session
        started = time.time()

        if not label or not label.strip() or not recipient:
            return self._failed(started, InvalidInput(MSG_NOTHING_TO_SUBMIT))

        req = SubmissionRequest(
            label=label,
            plain_tag=plain_tag_for(label, s.settings.plain_tag_modulus),
            recipient=recipient,
        )
        record_id = new_record_id(s.settings.record_id_prefix, clock=self._clock)
        bind(action="submit", record_id=record_id)
        try:
            s.notifier.pending(MSG_ENCRYPTING)
            if not s.encryption.initialized:
                await s.call(s.encryption.initialize())
            context = await s.call(s.ledger.context_address())
            encrypted = await s.call(s.encryption.encrypt(context, req.recipient, req.plain_tag))

            tx = await s.call(
                s.ledger.create_record(
                    record_id,
                    req.label,
                    encrypted.ciphertext,
                    encrypted.proof,
                    req.plain_tag,
                    0,
                    s.settings.record_category,
                )
            )
            s.stage(
                Record(
                    id=record_id,
                    label=req.label,
                    encrypted_value=encrypted.ciphertext,
                    plain_tag=req.plain_tag,
                    created_at=int(self._clock()),
                    creator=s.ledger.account,
                    optimistic=True,
                )
            )
            bind(tx_hash=tx.tx_hash)

            s.notifier.pending(MSG_STORING)
            await s.call(tx.await_confirmation(), timeout_s=s.settings.confirmation_timeout_s)
        except asyncio.CancelledError:
            s.discard(record_id)
            raise
        except Exception as e:
            s.discard(record_id)
            err = classify(e)
            logger.debug("submission aborted", exc_info=True)
            return self._failed(started, err, record_id)
        finally:
            unbind("action", "record_id", "tx_hash")

        record = s.promote(record_id)
        s.record_submission(req.label)
        s.notifier.success(MSG_STORED)
        self._reconciler.schedule()

        finished = time.time()
        _SUBMISSIONS.labels("ok", "none").inc()
        _SUBMIT_LATENCY.observe(finished - started)
        log_operation(
            logger,
            action="submit",
            outcome="ok",
            record_id=record_id,
            latency_ms=(finished - started) * 1000.0,
            message="submission confirmed",
            extra={"plain_tag": req.plain_tag, "tx_hash": tx.tx_hash},
        )
        return OperationResult(
            action="submit",
            ok=True,
            started_at=started,
            finished_at=finished,
            record=record,
            message=MSG_STORED,
            details={"record_id": record_id, "tx_hash": tx.tx_hash},
        )
