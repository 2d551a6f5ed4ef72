# FILE: cipherledger/reconcile.py
from __future__ import annotations

"""
Reconciliation: rebuild the authoritative Record set from the ledger and
derive the aggregate counts.

Only the enumeration call is fatal. A record whose fields cannot be read
is logged, counted, listed in `skipped` and left out of that refresh.
"""

import asyncio
import logging
import time
from typing import Callable, List, Optional, Union

from prometheus_client import Counter, Histogram

from .errors import PartialDataFailure, RefreshError, classify, error_kind
from .logging import log_operation
from .records import ReconciledState, Record
from .session import ClientSession

logger = logging.getLogger(__name__)

_REFRESHES = Counter(
    "cipherledger_refresh_total",
    "Reconciliation runs",
    labelnames=("outcome",),
)

_SKIPPED = Counter(
    "cipherledger_refresh_skipped_records_total",
    "Records left out of a refresh because their fields could not be read",
)

_REFRESH_LATENCY = Histogram(
    "cipherledger_refresh_latency_seconds",
    "Reconciliation latency (seconds)",
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30),
)


class ReconciliationLoop:
    def __init__(self, session: ClientSession, *, clock: Callable[[], float] = time.time) -> None:
        self._session = session
        self._clock = clock
        self._task: Optional["asyncio.Task[None]"] = None
        self._stopping: Optional[asyncio.Event] = None

    async def _fetch(self, record_id: str) -> Union[Record, PartialDataFailure]:
        s = self._session
        try:
            fields = await s.call(s.ledger.get_record(record_id))
            handle = await s.call(s.ledger.get_encrypted_handle(record_id))
        except Exception as e:
            return PartialDataFailure(record_id, classify(e))
        return Record.from_fields(record_id, fields, handle)

    def summarize(self, records: List[Record], skipped: List[str]) -> ReconciledState:
        now = self._clock()
        window = self._session.settings.active_window_s
        return ReconciledState(
            records=tuple(records),
            total=len(records),
            verified=sum(1 for r in records if r.verified),
            active=sum(1 for r in records if now - r.created_at < window),
            skipped=tuple(skipped),
            refreshed_at=now,
        )

    async def refresh(self) -> ReconciledState:
        """
        Read every record from the ledger and apply the result to the session.

        Raises RefreshError when the record ids cannot be enumerated.
        """
        s = self._session
        token = s.begin_refresh()
        t0 = time.perf_counter()

        try:
            ids = await s.call(s.ledger.list_record_ids())
        except Exception as e:
            err = classify(e)
            _REFRESHES.labels("failed").inc()
            log_operation(
                logger,
                action="refresh",
                outcome="failed",
                latency_ms=(time.perf_counter() - t0) * 1000.0,
                error_kind=error_kind(err),
                message="refresh failed",
                level=logging.WARNING,
            )
            raise RefreshError("record enumeration failed") from err

        # a slot is taken outside the timed call
        slots = asyncio.Semaphore(s.settings.refresh_concurrency)

        async def _bounded(rid: str) -> Union[Record, PartialDataFailure]:
            async with slots:
                return await self._fetch(rid)

        results = await asyncio.gather(*(_bounded(rid) for rid in ids))

        records: List[Record] = []
        skipped: List[str] = []
        for res in results:
            if isinstance(res, PartialDataFailure):
                skipped.append(res.record_id)
                _SKIPPED.inc()
                logger.warning(
                    "record skipped",
                    extra={
                        "record_id": res.record_id,
                        "error_kind": error_kind(res.cause) if res.cause else "other",
                    },
                )
                continue
            records.append(res)

        state = self.summarize(records, skipped)
        applied = s.apply(state, token)

        elapsed = time.perf_counter() - t0
        _REFRESH_LATENCY.observe(elapsed)
        _REFRESHES.labels("ok" if applied else "stale").inc()
        log_operation(
            logger,
            action="refresh",
            outcome="ok" if applied else "stale",
            latency_ms=elapsed * 1000.0,
            message="refresh",
            extra={"total": state.total, "verified": state.verified, "skipped": len(skipped)},
        )
        return state

    def schedule(self, delay_s: Optional[float] = None) -> "asyncio.Task[ReconciledState]":
        """Spawn a refresh after `delay_s` (post-write refresh)."""
        delay = self._session.settings.post_write_refresh_delay_s if delay_s is None else delay_s

        async def _later() -> ReconciledState:
            if delay > 0:
                await asyncio.sleep(delay)
            return await self.refresh()

        return self._session.spawn(_later(), name="refresh")

    # ------------------------------------------------------------------
    # Periodic loop
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, interval_s: Optional[float] = None) -> bool:
        """Refresh every `interval_s` seconds in the background; 0 disables."""
        interval = self._session.settings.refresh_interval_s if interval_s is None else float(interval_s)
        if interval <= 0 or self.running:
            return False
        self._stopping = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(self._run(interval, self._stopping))
        return True

    async def _run(self, interval: float, stopping: asyncio.Event) -> None:
        while not stopping.is_set():
            try:
                await self.refresh()
            except RefreshError:
                # already logged; the next tick tries again
                pass
            except Exception:
                logger.exception("periodic refresh crashed")
            try:
                await asyncio.wait_for(stopping.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    async def stop(self) -> None:
        if self._stopping is not None:
            self._stopping.set()
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
