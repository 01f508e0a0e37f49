"""Environment-driven settings for ``ledger_pipeline``.

Every knob is a plain environment variable (optionally loaded from a local
``.env`` by the CLI). Helpers here parse them leniently: malformed values fall
back to the documented default rather than failing at import time.

Variables
---------
- ``LEDGER_LOG_LEVEL``: logging level name or number (default INFO).
- ``LEDGER_PENDING_TTL_HOURS``: hours a queued transaction waits for the user
  before the expiry sweep may auto-save it (default 24).
- ``LEDGER_SWEEP_WORKERS``: worker threads used by the expiry sweep and batch
  processing (default 1, capped at 16).
- ``LEDGER_DEFAULT_CURRENCY``: currency assumed when the parser omits one
  (default ``INR``).
"""

from __future__ import annotations

import os
from datetime import timedelta

DEFAULT_PENDING_TTL_HOURS = 24
DEFAULT_CURRENCY = "INR"
_MAX_WORKERS = 16


def env_log_level() -> str | None:
    val = os.getenv("LEDGER_LOG_LEVEL")
    return val.strip() if val and val.strip() else None


def pending_ttl() -> timedelta:
    """Return the pending-entry lifetime (``expires_at - created_at``)."""

    raw = os.getenv("LEDGER_PENDING_TTL_HOURS")
    try:
        hours = float(raw) if raw else DEFAULT_PENDING_TTL_HOURS
    except ValueError:
        hours = DEFAULT_PENDING_TTL_HOURS
    if hours <= 0:
        hours = DEFAULT_PENDING_TTL_HOURS
    return timedelta(hours=hours)


def resolve_workers(n_items: int, requested: int | None = None) -> int:
    """Resolve a worker count for ``n_items`` units of work.

    Honors an explicit ``requested`` value, then ``LEDGER_SWEEP_WORKERS``;
    caps to ``n_items`` and to 16, and ensures a minimum of 1.
    """

    workers = requested
    if workers is None:
        env_workers = os.getenv("LEDGER_SWEEP_WORKERS")
        try:
            workers = int(env_workers) if env_workers else 1
        except ValueError:
            workers = 1
    return max(1, min(workers, max(n_items, 1), _MAX_WORKERS))


def default_currency() -> str:
    val = (os.getenv("LEDGER_DEFAULT_CURRENCY") or "").strip().upper()
    return val if len(val) == 3 else DEFAULT_CURRENCY


__all__ = [
    "DEFAULT_CURRENCY",
    "DEFAULT_PENDING_TTL_HOURS",
    "default_currency",
    "env_log_level",
    "pending_ttl",
    "resolve_workers",
]
