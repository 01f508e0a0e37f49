"""Exception taxonomy for ``ledger_pipeline``.

Expected outcomes (duplicate, blocked by a rule, stale pending transition) are
result values, not exceptions; see :mod:`ledger_pipeline.models`. The classes
here cover the remaining cases.
"""

from __future__ import annotations


class LedgerError(Exception):
    """Base class for errors raised by this package."""


class ValidationError(LedgerError, ValueError):
    """Invalid caller input, rejected before anything is written."""


class StaleStateError(LedgerError):
    """A pending entry was no longer ``PENDING`` when a transition was tried.

    Raised internally to unwind a unit of work; callers receive a
    :class:`~ledger_pipeline.models.Stale` value instead.
    """

    def __init__(self, pending_id: int, status: str | None) -> None:
        super().__init__(f"pending transaction {pending_id} is {status or 'missing'}")
        self.pending_id = pending_id
        self.status = status


class PersistenceError(LedgerError):
    """Storage failed in a place where no result variant can carry it."""


__all__ = ["LedgerError", "PersistenceError", "StaleStateError", "ValidationError"]
