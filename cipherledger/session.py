# FILE: cipherledger/session.py
from __future__ import annotations

"""
ClientSession: the one object that owns a client's mutable state.

  - the visible Record set (ordered by discovery, keyed by id)
  - optimistic Records staged while their transaction is unconfirmed
  - the in-flight verification map (single-flight per record id)
  - the labels submitted successfully in this session
  - the StatusNotifier
  - background tasks spawned after writes

Pipelines receive the session explicitly; there are no module-level
singletons. Everything here runs on one event loop.
"""

import asyncio
import logging
from dataclasses import replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, TypeVar

from .config import Settings
from .crypto import DecryptionService, EncryptionProvider
from .errors import TransportFailure
from .ledger import LedgerClient
from .records import OperationResult, ReconciledState, Record
from .status import StatusNotifier

logger = logging.getLogger(__name__)

T = TypeVar("T")

StateSubscriber = Callable[[ReconciledState], None]


class ClientSession:
    def __init__(
        self,
        settings: Settings,
        *,
        ledger: LedgerClient,
        encryption: EncryptionProvider,
        decryption: DecryptionService,
        notifier: Optional[StatusNotifier] = None,
    ) -> None:
        self.settings = settings
        self.ledger = ledger
        self.encryption = encryption
        self.decryption = decryption
        self.notifier = notifier or StatusNotifier(
            success_clear_s=settings.status_success_clear_s,
            error_clear_s=settings.status_error_clear_s,
        )

        self._records: Dict[str, Record] = {}
        self._staged: Dict[str, Record] = {}
        # record_id -> sequence number of its last promote or upsert
        self._touched_seq: Dict[str, int] = {}
        self._seq = 0

        self._inflight: Dict[str, "asyncio.Future[OperationResult]"] = {}
        self._history: List[str] = []

        self._refresh_gen = 0
        self._applied_gen = 0
        self._state = ReconciledState()
        self._state_subscribers: List[StateSubscriber] = []

        self._tasks: Set["asyncio.Task[Any]"] = set()

    # ------------------------------------------------------------------
    # Remote call bounds
    # ------------------------------------------------------------------

    async def call(self, aw: Awaitable[T], *, timeout_s: Optional[float] = None) -> T:
        """Await one remote call, bounded by the configured timeout."""
        limit = self.settings.remote_call_timeout_s if timeout_s is None else timeout_s
        try:
            return await asyncio.wait_for(aw, timeout=limit)
        except asyncio.TimeoutError as e:
            raise TransportFailure(f"remote call exceeded {limit:g}s") from e

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def records(self) -> List[Record]:
        return list(self._records.values())

    def get(self, record_id: str) -> Optional[Record]:
        return self._records.get(record_id)

    @property
    def state(self) -> ReconciledState:
        return self._state

    def stage(self, record: Record) -> None:
        """Hold an optimistic Record whose transaction is not yet confirmed."""
        self._staged[record.id] = replace(record, optimistic=True, verified=False, decrypted_value=0)

    def promote(self, record_id: str) -> Optional[Record]:
        """Make a staged Record visible after its transaction confirmed."""
        rec = self._staged.pop(record_id, None)
        if rec is None:
            return None
        if record_id in self._records:
            # ledger view already arrived through a refresh; it wins
            return self._records[record_id]
        self._seq += 1
        self._touched_seq[record_id] = self._seq
        self._records[record_id] = rec
        return rec

    def discard(self, record_id: str) -> None:
        self._staged.pop(record_id, None)

    def upsert(self, record: Record) -> Record:
        """Merge an authoritative Record by id; `verified` never regresses."""
        merged = record.merged_over(self._records.get(record.id))
        self._records[record.id] = merged
        self._seq += 1
        self._touched_seq[record.id] = self._seq
        return merged

    def mark_verified(self, record_id: str, decrypted_value: int) -> Optional[Record]:
        rec = self._records.get(record_id)
        if rec is None:
            return None
        updated = replace(rec, verified=True, decrypted_value=int(decrypted_value))
        self._records[record_id] = updated
        return updated

    # ------------------------------------------------------------------
    # Reconciliation apply (generation-guarded)
    # ------------------------------------------------------------------

    def begin_refresh(self) -> Tuple[int, int]:
        """Token for one refresh: (generation, optimistic sequence at start)."""
        self._refresh_gen += 1
        return self._refresh_gen, self._seq

    def apply(self, state: ReconciledState, token: Tuple[int, int]) -> bool:
        """
        Replace the visible set with the ledger view in `state`.

        Discarded when a refresh that started later has already applied.
        Records absent from the ledger view are kept when they were made
        visible or re-read after this refresh started, or while a
        verification for them is in flight.
        """
        gen, seq_at_start = token
        if gen <= self._applied_gen:
            logger.debug("stale refresh discarded", extra={"generation": gen, "applied": self._applied_gen})
            return False
        self._applied_gen = gen

        previous = self._records
        fresh: Dict[str, Record] = {}
        for rec in state.records:
            fresh[rec.id] = rec.merged_over(previous.get(rec.id))

        kept_seq: Dict[str, int] = {}
        for rid, rec in previous.items():
            if rid in fresh:
                continue
            seq = self._touched_seq.get(rid, 0)
            if seq > seq_at_start or rid in self._inflight:
                fresh[rid] = rec
                kept_seq[rid] = seq

        self._records = fresh
        self._touched_seq = kept_seq
        self._state = state
        self._notify_state(state)
        return True

    def subscribe_state(self, callback: StateSubscriber) -> Callable[[], None]:
        self._state_subscribers.append(callback)

        def _unsubscribe() -> None:
            try:
                self._state_subscribers.remove(callback)
            except ValueError:
                pass

        return _unsubscribe

    def _notify_state(self, state: ReconciledState) -> None:
        for cb in list(self._state_subscribers):
            try:
                cb(state)
            except Exception:
                logger.warning("state subscriber failed", exc_info=True)

    # ------------------------------------------------------------------
    # In-flight verifications
    # ------------------------------------------------------------------

    def inflight(self, record_id: str) -> Optional["asyncio.Future[OperationResult]"]:
        return self._inflight.get(record_id)

    def claim(self, record_id: str) -> "asyncio.Future[OperationResult]":
        """Mark `record_id` in flight. Must be called before any suspension point."""
        if record_id in self._inflight:
            raise RuntimeError(f"verification already in flight for {record_id!r}")
        fut: "asyncio.Future[OperationResult]" = asyncio.get_running_loop().create_future()
        self._inflight[record_id] = fut
        return fut

    def release(self, record_id: str) -> None:
        self._inflight.pop(record_id, None)

    def inflight_ids(self) -> List[str]:
        return list(self._inflight)

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def record_submission(self, label: str) -> None:
        self._history.append(label)

    def history(self) -> List[str]:
        return list(self._history)

    # ------------------------------------------------------------------
    # Background tasks
    # ------------------------------------------------------------------

    def spawn(self, coro: Awaitable[Any], *, name: str) -> "asyncio.Task[Any]":
        """Run `coro` in the background; its failure is logged, never dropped."""
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)

        def _done(t: "asyncio.Task[Any]") -> None:
            self._tasks.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.warning(
                    "background task failed",
                    extra={"task": name, "error": type(exc).__name__},
                    exc_info=(type(exc), exc, exc.__traceback__),
                )

        task.add_done_callback(_done)
        return task

    async def drain(self) -> None:
        """Wait for background tasks spawned so far (tests / shutdown)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        for t in list(self._tasks):
            t.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self.notifier.close()
