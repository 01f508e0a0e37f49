"""In-process change feed.

Observers (list screens, notifiers, tests) subscribe a callback and get one
event per committed change::

    feed = ChangeFeed()
    unsubscribe = feed.subscribe(print)
    ...
    unsubscribe()

Events are published by :mod:`ledger_pipeline.api` after the unit of work
commits, never from inside a transaction. A failing callback is logged and
does not affect other subscribers or the operation that published.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass

from .logging_setup import get_logger
from .models import PendingStatus

_logger = get_logger("ledger_pipeline.events")


@dataclass(frozen=True, slots=True)
class TransactionSaved:
    transaction_id: int
    source: str  # "direct", "confirm" or "auto_save"


@dataclass(frozen=True, slots=True)
class PendingQueued:
    pending_id: int


@dataclass(frozen=True, slots=True)
class PendingResolved:
    pending_id: int
    status: PendingStatus
    transaction_id: int | None = None


type ChangeEvent = TransactionSaved | PendingQueued | PendingResolved
type Listener = Callable[[ChangeEvent], None]


class ChangeFeed:
    """Thread-safe subscribe/notify registry."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                try:
                    self._listeners.remove(listener)
                except ValueError:
                    pass

        return _unsubscribe

    def publish(self, event: ChangeEvent) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                _logger.exception("Change listener %r failed on %r", listener, event)

    def __len__(self) -> int:
        with self._lock:
            return len(self._listeners)


# Default feed used by ``ledger_pipeline.api`` when none is passed in.
default_feed = ChangeFeed()


__all__ = [
    "ChangeEvent",
    "ChangeFeed",
    "Listener",
    "PendingQueued",
    "PendingResolved",
    "TransactionSaved",
    "default_feed",
]
