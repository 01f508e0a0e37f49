"""Pending transaction queue and its state machine.

States::

    PENDING -> CONFIRMED | REJECTED | AUTO_SAVED    (terminal)

Every transition starts with a compare-and-set::

    UPDATE pending_transactions SET status = :target
     WHERE id = :id AND status = 'PENDING'

inside a SAVEPOINT, followed (for confirm and auto-save) by the processor in
the same unit of work. Whoever loses a race sees zero updated rows and gets a
:class:`~ledger_pipeline.models.Stale` result, so each entry reaches exactly
one terminal state and yields at most one ledger row.

Outcome mapping after a successful claim:

- ``ProcessSuccess`` / ``ProcessDuplicate``: the claimed status stays and the
  ledger id is stored on the entry.
- ``ProcessBlocked``: the entry ends ``REJECTED``.
- ``ProcessError``: the claim is rolled back; the entry stays ``PENDING``.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Callable
from contextlib import AbstractContextManager
from datetime import datetime, timedelta
from decimal import Decimal

from db.models.ledger import PendingTransaction
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .categorize import lookup_category
from .config import pending_ttl, resolve_workers
from .errors import PersistenceError, StaleStateError
from .logging_setup import get_logger
from .models import (
    ParsedTransaction,
    PendingEdits,
    PendingStatus,
    ProcessBlocked,
    ProcessConfig,
    ProcessDuplicate,
    ProcessError,
    ProcessSuccess,
    Processed,
    QueueDuplicate,
    Queued,
    QueueResult,
    Stale,
    SweepReport,
    TransactionDraft,
    TransactionType,
    TransitionResult,
)
from .normalizers import ensure_utc, to_decimal_2, utcnow
from .processor import (
    REASON_DELETED,
    REASON_EXISTS,
    REASON_PENDING,
    draft_from_parsed,
    find_by_hash,
    process_and_save,
)
from .workers import run_bucketed

_logger = get_logger("ledger_pipeline.pending")

REASON_REVIEWED = "Previously reviewed"

CLEANUP_AGE = timedelta(days=7)


class _ProcessingFailed(Exception):
    """Unwinds the claim savepoint when the processor reports an error."""

    def __init__(self, result: ProcessError) -> None:
        super().__init__(result.message)
        self.result = result


# ---------------------------------------------------------------------------
# Queueing
# ---------------------------------------------------------------------------


def _find_pending_by_hash(session: Session, dedup_hash: str) -> PendingTransaction | None:
    return session.execute(
        select(PendingTransaction).where(PendingTransaction.dedup_hash == dedup_hash)
    ).scalar_one_or_none()


def _queue_duplicate(session: Session, dedup_hash: str) -> QueueDuplicate | None:
    existing = find_by_hash(session, dedup_hash)
    if existing is not None:
        reason = REASON_DELETED if existing.is_deleted else REASON_EXISTS
        return QueueDuplicate(reason, existing_transaction_id=existing.id)
    queued = _find_pending_by_hash(session, dedup_hash)
    if queued is not None:
        still_open = queued.status == PendingStatus.PENDING.value
        return QueueDuplicate(
            REASON_PENDING if still_open else REASON_REVIEWED,
            existing_transaction_id=queued.transaction_id,
            pending_id=queued.id,
        )
    return None


def queue_pending(
    session: Session,
    parsed: ParsedTransaction,
    *,
    now: datetime | None = None,
    ttl: timedelta | None = None,
) -> QueueResult:
    """Queue ``parsed`` for user review; it expires after ``ttl``.

    Returns :class:`Queued` or, when the same notification is already in the
    ledger or the queue, :class:`QueueDuplicate`. The caller owns the
    transaction.
    """

    draft = draft_from_parsed(parsed)
    dup = _queue_duplicate(session, draft.dedup_hash)
    if dup is not None:
        _logger.debug("Not queueing %s: %s", draft.dedup_hash[:12], dup.reason)
        return dup

    created = ensure_utc(now) if now is not None else utcnow()
    expires = created + (ttl if ttl is not None else pending_ttl())
    row = PendingTransaction(
        amount=draft.amount,
        currency=draft.currency,
        merchant=draft.merchant,
        category=lookup_category(session, draft.merchant) or draft.category,
        transaction_type=draft.transaction_type.value,
        occurred_at=draft.occurred_at,
        source_text=draft.source_text,
        bank_name=draft.bank_name,
        account_last4=draft.account_last4,
        balance_after=draft.balance_after,
        dedup_hash=draft.dedup_hash,
        status=PendingStatus.PENDING.value,
        created_at=created,
        expires_at=expires,
    )
    try:
        with session.begin_nested():
            session.add(row)
    except IntegrityError:
        dup = _queue_duplicate(session, draft.dedup_hash)
        if dup is None:
            raise
        return dup
    _logger.info("Queued pending transaction %s (expires %s)", row.id, expires.isoformat())
    return Queued(pending_id=row.id, expires_at=expires)


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


def draft_from_pending(
    pending: PendingTransaction, edits: PendingEdits | None = None
) -> TransactionDraft:
    """Draft for a pending entry with the user's edits applied."""

    e = edits or PendingEdits()
    return TransactionDraft(
        amount=to_decimal_2(e.amount if e.amount is not None else pending.amount),
        currency=pending.currency,
        merchant=e.merchant or pending.merchant,
        category=e.category or pending.category,
        transaction_type=e.transaction_type or TransactionType(pending.transaction_type),
        occurred_at=ensure_utc(e.occurred_at or pending.occurred_at),
        dedup_hash=pending.dedup_hash,
        bank_name=pending.bank_name,
        account_last4=pending.account_last4,
        balance_after=pending.balance_after,
        description=e.description if e.description is not None else pending.description,
        source_text=pending.source_text,
    )


def _current_status(session: Session, pending_id: int) -> PendingStatus | None:
    raw = session.execute(
        select(PendingTransaction.status).where(PendingTransaction.id == pending_id)
    ).scalar_one_or_none()
    return PendingStatus(raw) if raw is not None else None


def _claim(
    session: Session,
    pending_id: int,
    target: PendingStatus,
    *,
    now: datetime,
    require_expired: bool,
) -> PendingTransaction:
    stmt = (
        update(PendingTransaction)
        .where(
            PendingTransaction.id == pending_id,
            PendingTransaction.status == PendingStatus.PENDING.value,
        )
        .values(status=target.value, resolved_at=now)
        .execution_options(synchronize_session=False)
    )
    if require_expired:
        stmt = stmt.where(PendingTransaction.expires_at <= now)
    if session.execute(stmt).rowcount != 1:
        raise StaleStateError(pending_id, _current_status(session, pending_id))
    return session.execute(
        select(PendingTransaction)
        .where(PendingTransaction.id == pending_id)
        .execution_options(populate_existing=True)
    ).scalar_one()


def _transition(
    session: Session,
    pending_id: int,
    target: PendingStatus,
    *,
    now: datetime | None,
    edits: PendingEdits | None = None,
    base_config: ProcessConfig | None = None,
    require_expired: bool = False,
) -> TransitionResult:
    ts = ensure_utc(now) if now is not None else utcnow()
    try:
        with session.begin_nested():
            pending = _claim(session, pending_id, target, now=ts, require_expired=require_expired)
            if target is PendingStatus.REJECTED:
                _logger.info("Pending transaction %s rejected", pending_id)
                return Processed(pending_id, target)

            draft = draft_from_pending(pending, edits)
            edited_category = edits is not None and edits.category is not None
            cfg = dataclasses.replace(
                base_config or ProcessConfig(),
                skip_duplicate_check=True,
                preserve_user_category=edited_category and draft.category != pending.category,
            )
            result = process_and_save(
                session,
                draft,
                source_text=pending.source_text,
                pending_origin=pending,
                config=cfg,
            )
            match result:
                case ProcessSuccess(transaction_id=tx_id) | ProcessDuplicate(
                    existing_transaction_id=tx_id
                ):
                    pending.transaction_id = tx_id
                    status = target
                case ProcessBlocked():
                    pending.status = PendingStatus.REJECTED.value
                    status = PendingStatus.REJECTED
                case ProcessError():
                    raise _ProcessingFailed(result)
            _logger.info("Pending transaction %s -> %s", pending_id, status.value)
            return Processed(pending_id, status, result)
    except StaleStateError as exc:
        _logger.warning(
            "Stale %s for pending transaction %s (status %s)",
            target.value.lower(),
            pending_id,
            exc.status or "missing",
        )
        return Stale(pending_id, PendingStatus(exc.status) if exc.status else None)
    except _ProcessingFailed as exc:
        _logger.warning("Pending transaction %s left PENDING: %s", pending_id, exc.result.message)
        return Processed(pending_id, PendingStatus.PENDING, exc.result)


def confirm_pending(
    session: Session,
    pending_id: int,
    *,
    edits: PendingEdits | None = None,
    custom_cashback_percent: Decimal | None = None,
    now: datetime | None = None,
) -> TransitionResult:
    """User confirmation: ``PENDING -> CONFIRMED`` then save to the ledger.

    ``custom_cashback_percent`` applies to this transaction only; a
    non-positive value raises :class:`~ledger_pipeline.errors.ValidationError`
    before anything is written.
    """

    base = ProcessConfig(custom_cashback_percent=custom_cashback_percent)
    return _transition(
        session, pending_id, PendingStatus.CONFIRMED, now=now, edits=edits, base_config=base
    )


def reject_pending(
    session: Session, pending_id: int, *, now: datetime | None = None
) -> TransitionResult:
    """``PENDING -> REJECTED``; no ledger row is ever created."""

    return _transition(session, pending_id, PendingStatus.REJECTED, now=now)


def auto_save_pending(
    session: Session, pending_id: int, *, now: datetime | None = None
) -> TransitionResult:
    """Expiry path: ``PENDING -> AUTO_SAVED`` for an entry past ``expires_at``."""

    return _transition(
        session, pending_id, PendingStatus.AUTO_SAVED, now=now, require_expired=True
    )


# ---------------------------------------------------------------------------
# Bulk resolution: expiry sweep and confirm-all
# ---------------------------------------------------------------------------


def _open_entries(session: Session, *, expired_by: datetime | None) -> list[tuple[int, str]]:
    stmt = select(PendingTransaction.id, PendingTransaction.dedup_hash).where(
        PendingTransaction.status == PendingStatus.PENDING.value
    )
    if expired_by is not None:
        stmt = stmt.where(PendingTransaction.expires_at <= expired_by).order_by(
            PendingTransaction.expires_at, PendingTransaction.id
        )
    else:
        stmt = stmt.order_by(PendingTransaction.created_at, PendingTransaction.id)
    return [(r[0], r[1]) for r in session.execute(stmt).all()]


def _resolve_each(
    scope_factory: Callable[[], AbstractContextManager[Session]],
    entries: list[tuple[int, str]],
    transition: Callable[[Session, int], TransitionResult],
    *,
    label: str,
    concurrency: int | None,
) -> SweepReport:
    report = SweepReport(examined=len(entries))
    if not entries:
        return report

    def _one(item: tuple[int, str]) -> TransitionResult | None:
        pending_id = item[0]
        try:
            with scope_factory() as session:
                return transition(session, pending_id)
        except Exception:
            _logger.exception("%s of pending transaction %s failed", label, pending_id)
            return None

    outcomes = run_bucketed(
        entries,
        _one,
        key=lambda item: item[1],
        concurrency=resolve_workers(len(entries), concurrency),
    )
    for (pending_id, _hash), outcome in zip(entries, outcomes, strict=True):
        match outcome:
            case Stale():
                report.stale += 1
            case Processed(result=ProcessSuccess()):
                report.saved += 1
                report.pending_ids.append(pending_id)
            case Processed(result=ProcessDuplicate()):
                report.duplicates += 1
                report.pending_ids.append(pending_id)
            case Processed(result=ProcessBlocked()):
                report.blocked += 1
                report.pending_ids.append(pending_id)
            case _:
                report.failed += 1
    _logger.info(
        "%s: %d examined, %d saved, %d blocked, %d duplicates, %d stale, %d failed",
        label,
        report.examined,
        report.saved,
        report.blocked,
        report.duplicates,
        report.stale,
        report.failed,
    )
    return report


def sweep_expired(
    scope_factory: Callable[[], AbstractContextManager[Session]],
    *,
    now: datetime | None = None,
    concurrency: int | None = None,
) -> SweepReport:
    """Auto-save every expired ``PENDING`` entry.

    Each entry gets its own transaction from ``scope_factory`` (for example
    :func:`db.client.scope_factory`). Failures are logged and counted; one bad
    entry never stops the sweep.
    """

    ts = ensure_utc(now) if now is not None else utcnow()
    try:
        with scope_factory() as session:
            expired = _open_entries(session, expired_by=ts)
    except SQLAlchemyError as exc:
        raise PersistenceError("could not list expired pending transactions") from exc

    return _resolve_each(
        scope_factory,
        expired,
        lambda session, pending_id: auto_save_pending(session, pending_id, now=ts),
        label="Auto-save",
        concurrency=concurrency,
    )


def confirm_all_pending(
    scope_factory: Callable[[], AbstractContextManager[Session]],
    *,
    now: datetime | None = None,
    concurrency: int | None = None,
) -> SweepReport:
    """Confirm every ``PENDING`` entry as queued, expired or not.

    Same unit-of-work and failure handling as :func:`sweep_expired`; each
    entry goes through :func:`confirm_pending`, so one that a concurrent
    reject or sweep resolves first is counted as stale.
    """

    ts = ensure_utc(now) if now is not None else utcnow()
    try:
        with scope_factory() as session:
            open_entries = _open_entries(session, expired_by=None)
    except SQLAlchemyError as exc:
        raise PersistenceError("could not list pending transactions") from exc

    return _resolve_each(
        scope_factory,
        open_entries,
        lambda session, pending_id: confirm_pending(session, pending_id, now=ts),
        label="Confirm-all",
        concurrency=concurrency,
    )


# ---------------------------------------------------------------------------
# Reads and housekeeping
# ---------------------------------------------------------------------------


def get_pending(session: Session, pending_id: int) -> PendingTransaction | None:
    return session.get(PendingTransaction, pending_id)


def list_pending(
    session: Session,
    *,
    status: PendingStatus | None = PendingStatus.PENDING,
    limit: int | None = None,
) -> list[PendingTransaction]:
    """Entries with ``status`` (all entries when ``None``), oldest first."""

    stmt = select(PendingTransaction).order_by(
        PendingTransaction.created_at, PendingTransaction.id
    )
    if status is not None:
        stmt = stmt.where(PendingTransaction.status == status.value)
    if limit is not None:
        stmt = stmt.limit(limit)
    return list(session.execute(stmt).scalars().all())


def count_pending(session: Session, *, status: PendingStatus = PendingStatus.PENDING) -> int:
    return int(
        session.execute(
            select(func.count())
            .select_from(PendingTransaction)
            .where(PendingTransaction.status == status.value)
        ).scalar_one()
    )


def cleanup_processed(
    session: Session, *, older_than: timedelta = CLEANUP_AGE, now: datetime | None = None
) -> int:
    """Delete resolved entries created before ``now - older_than``."""

    cutoff = (ensure_utc(now) if now is not None else utcnow()) - older_than
    result = session.execute(
        delete(PendingTransaction)
        .where(
            PendingTransaction.status != PendingStatus.PENDING.value,
            PendingTransaction.created_at < cutoff,
        )
        .execution_options(synchronize_session=False)
    )
    deleted = result.rowcount or 0
    if deleted:
        _logger.info("Removed %d resolved pending transactions", deleted)
    return deleted


__all__ = [
    "CLEANUP_AGE",
    "REASON_REVIEWED",
    "auto_save_pending",
    "cleanup_processed",
    "confirm_all_pending",
    "confirm_pending",
    "count_pending",
    "draft_from_pending",
    "get_pending",
    "list_pending",
    "queue_pending",
    "reject_pending",
    "sweep_expired",
]
