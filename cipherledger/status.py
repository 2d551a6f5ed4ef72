# FILE: cipherledger/status.py
from __future__ import annotations

"""
Single-slot status channel.

Holds at most one StatusEvent. A new event replaces the previous one and
cancels its scheduled clear. Success and error events clear themselves
after a fixed delay; pending events stay until replaced.
"""

import asyncio
import logging
from typing import Callable, List, Optional

from prometheus_client import Counter

from .records import StatusEvent, StatusPhase

logger = logging.getLogger(__name__)

_STATUS_EVENTS = Counter(
    "cipherledger_status_events_total",
    "Status events emitted",
    labelnames=("phase",),
)

StatusSubscriber = Callable[[Optional[StatusEvent]], None]


class StatusNotifier:
    def __init__(self, *, success_clear_s: float = 2.0, error_clear_s: float = 3.0) -> None:
        self._success_clear_s = float(success_clear_s)
        self._error_clear_s = float(error_clear_s)
        self._current: Optional[StatusEvent] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._subscribers: List[StatusSubscriber] = []

    @property
    def current(self) -> Optional[StatusEvent]:
        return self._current

    def subscribe(self, callback: StatusSubscriber) -> Callable[[], None]:
        """Register `callback`; returns a function that unregisters it."""
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            try:
                self._subscribers.remove(callback)
            except ValueError:
                pass

        return _unsubscribe

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _clear_delay(self, phase: StatusPhase) -> Optional[float]:
        if phase is StatusPhase.SUCCESS:
            return self._success_clear_s
        if phase is StatusPhase.ERROR:
            return self._error_clear_s
        return None

    def emit(self, event: StatusEvent) -> None:
        self._cancel_timer()
        self._current = event
        _STATUS_EVENTS.labels(event.phase.value).inc()

        delay = self._clear_delay(event.phase)
        if delay is not None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                loop = None
            if loop is not None:
                self._timer = loop.call_later(delay, self._expire, event)
        self._notify(event)

    def pending(self, message: str) -> None:
        self.emit(StatusEvent.pending(message))

    def success(self, message: str) -> None:
        self.emit(StatusEvent.success(message))

    def error(self, message: str) -> None:
        self.emit(StatusEvent.error(message))

    def clear(self) -> None:
        self._cancel_timer()
        if self._current is None:
            return
        self._current = None
        self._notify(None)

    def close(self) -> None:
        self._cancel_timer()

    def _expire(self, event: StatusEvent) -> None:
        # only the event that scheduled this timer may clear the slot
        if self._current is event:
            self._timer = None
            self._current = None
            self._notify(None)

    def _notify(self, event: Optional[StatusEvent]) -> None:
        for cb in list(self._subscribers):
            try:
                cb(event)
            except Exception:
                logger.warning("status subscriber failed", exc_info=True)
