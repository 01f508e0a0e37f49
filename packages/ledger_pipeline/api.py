"""Public entry points for host applications and the CLI.

The functions in :mod:`ledger_pipeline.processor` and
:mod:`ledger_pipeline.pending` take a caller-owned ``Session``. The wrappers
here own the unit of work instead: each opens a :func:`db.client.session_scope`,
commits, and only then publishes change events on the feed (the module-level
:data:`ledger_pipeline.events.default_feed` unless one is passed in).
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timedelta
from decimal import Decimal

from db.client import scope_factory, session_scope
from db.models.ledger import LedgerTransaction, PendingTransaction
from sqlalchemy import select

from . import balances, cashback, pending, processor
from .config import resolve_workers
from .events import ChangeFeed, PendingQueued, PendingResolved, TransactionSaved, default_feed
from .logging_setup import get_logger
from .models import (
    ParsedTransaction,
    PendingEdits,
    PendingStatus,
    ProcessConfig,
    ProcessResult,
    ProcessSuccess,
    Processed,
    Queued,
    QueueResult,
    RetroactiveResult,
    SweepReport,
    TransitionResult,
)
from .workers import run_bucketed

_logger = get_logger("ledger_pipeline.api")


def _publish_transition(feed: ChangeFeed, outcome: TransitionResult, source: str) -> None:
    if not isinstance(outcome, Processed) or outcome.status is PendingStatus.PENDING:
        return
    tx_id = None
    result = outcome.result
    if isinstance(result, ProcessSuccess):
        tx_id = result.transaction_id
        feed.publish(TransactionSaved(tx_id, source))
    elif result is not None:
        tx_id = getattr(result, "existing_transaction_id", None)
    feed.publish(PendingResolved(outcome.pending_id, outcome.status, tx_id))


def process_transaction(
    parsed: ParsedTransaction,
    *,
    config: ProcessConfig | None = None,
    database_url: str | None = None,
    feed: ChangeFeed | None = None,
) -> ProcessResult:
    """Save a freshly parsed transaction straight into the ledger."""

    with session_scope(database_url=database_url) as session:
        result = processor.save_parsed(session, parsed, config=config)
    if isinstance(result, ProcessSuccess):
        (feed or default_feed).publish(TransactionSaved(result.transaction_id, "direct"))
    return result


def process_batch(
    items: Iterable[ParsedTransaction],
    *,
    config: ProcessConfig | None = None,
    database_url: str | None = None,
    concurrency: int | None = None,
    feed: ChangeFeed | None = None,
) -> list[ProcessResult]:
    """Save many parsed transactions, one unit of work each.

    Transactions of the same account run sequentially; different accounts run
    concurrently on up to ``concurrency`` workers. Results keep input order.
    """

    batch = list(items)
    if not batch:
        return []
    _logger.debug("Processing batch of %d transactions", len(batch))

    def _one(parsed: ParsedTransaction) -> ProcessResult:
        return process_transaction(parsed, config=config, database_url=database_url, feed=feed)

    return run_bucketed(
        batch,
        _one,
        key=lambda p: (p.bank_name.strip().lower(), p.account_last4 or ""),
        concurrency=resolve_workers(len(batch), concurrency),
    )


def queue_transaction(
    parsed: ParsedTransaction,
    *,
    ttl: timedelta | None = None,
    now: datetime | None = None,
    database_url: str | None = None,
    feed: ChangeFeed | None = None,
) -> QueueResult:
    """Queue a parsed transaction for user confirmation."""

    with session_scope(database_url=database_url) as session:
        result = pending.queue_pending(session, parsed, now=now, ttl=ttl)
    if isinstance(result, Queued):
        (feed or default_feed).publish(PendingQueued(result.pending_id))
    return result


def confirm(
    pending_id: int,
    *,
    edits: PendingEdits | None = None,
    custom_cashback_percent: Decimal | None = None,
    database_url: str | None = None,
    feed: ChangeFeed | None = None,
) -> TransitionResult:
    with session_scope(database_url=database_url) as session:
        outcome = pending.confirm_pending(
            session, pending_id, edits=edits, custom_cashback_percent=custom_cashback_percent
        )
    _publish_transition(feed or default_feed, outcome, "confirm")
    return outcome


def reject(
    pending_id: int, *, database_url: str | None = None, feed: ChangeFeed | None = None
) -> TransitionResult:
    with session_scope(database_url=database_url) as session:
        outcome = pending.reject_pending(session, pending_id)
    _publish_transition(feed or default_feed, outcome, "reject")
    return outcome


def run_expiry_sweep(
    *,
    now: datetime | None = None,
    concurrency: int | None = None,
    database_url: str | None = None,
    feed: ChangeFeed | None = None,
) -> SweepReport:
    """Auto-save expired pending entries and announce what was resolved."""

    report = pending.sweep_expired(
        scope_factory(database_url=database_url), now=now, concurrency=concurrency
    )
    _publish_report(
        feed or default_feed, report, PendingStatus.AUTO_SAVED, "auto_save", database_url
    )
    return report


def confirm_all(
    *,
    concurrency: int | None = None,
    database_url: str | None = None,
    feed: ChangeFeed | None = None,
) -> SweepReport:
    """Confirm every open pending entry without edits."""

    report = pending.confirm_all_pending(
        scope_factory(database_url=database_url), concurrency=concurrency
    )
    _publish_report(feed or default_feed, report, PendingStatus.CONFIRMED, "confirm", database_url)
    return report


def _publish_report(
    feed: ChangeFeed,
    report: SweepReport,
    saved_status: PendingStatus,
    source: str,
    database_url: str | None,
) -> None:
    if not report.pending_ids:
        return
    with session_scope(database_url=database_url) as session:
        rows = session.execute(
            select(
                PendingTransaction.id, PendingTransaction.status, PendingTransaction.transaction_id
            )
            .where(PendingTransaction.id.in_(report.pending_ids))
            .order_by(PendingTransaction.id)
        ).all()
    for pending_id, status, tx_id in rows:
        if status == saved_status.value and tx_id is not None:
            feed.publish(TransactionSaved(tx_id, source))
        feed.publish(PendingResolved(pending_id, PendingStatus(status), tx_id))


def set_account_cashback(
    bank_name: str,
    account_last4: str,
    percent: Decimal,
    *,
    apply_retroactive: bool = False,
    database_url: str | None = None,
) -> RetroactiveResult | None:
    """Change an account's default cashback; optionally amend past expenses."""

    with session_scope(database_url=database_url) as session:
        return balances.set_default_cashback(
            session, bank_name, account_last4, percent, apply_retroactive=apply_retroactive
        )


def apply_retroactive_cashback(
    bank_name: str, account_last4: str, percent: Decimal, *, database_url: str | None = None
) -> RetroactiveResult:
    with session_scope(database_url=database_url) as session:
        return cashback.apply_retroactive_cashback(session, bank_name, account_last4, percent)


def get_transaction(
    transaction_id: int, *, database_url: str | None = None
) -> LedgerTransaction | None:
    """Load one ledger row (detached; attributes stay readable)."""

    with session_scope(database_url=database_url) as session:
        return session.get(LedgerTransaction, transaction_id)


def cleanup_processed(
    *, older_than: timedelta = pending.CLEANUP_AGE, database_url: str | None = None
) -> int:
    with session_scope(database_url=database_url) as session:
        return pending.cleanup_processed(session, older_than=older_than)


__all__ = [
    "apply_retroactive_cashback",
    "cleanup_processed",
    "confirm",
    "confirm_all",
    "get_transaction",
    "process_batch",
    "process_transaction",
    "queue_transaction",
    "reject",
    "run_expiry_sweep",
    "set_account_cashback",
]
