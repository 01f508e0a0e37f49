"""Transaction processing pipeline.

Every entry path (direct save, user confirmation, expiry auto-save) funnels
through :func:`process_and_save`, which runs these steps in order:

1. duplicate check (skippable)
2. merchant-mapping categorization (unless the user's category is preserved)
3. block rules
4. transform rules
5. subscription matching
6. cashback
7. insert the ledger row
8. balance snapshot (pending-origin only)
9. rule-application audit rows

Steps 2-9 run inside one SAVEPOINT: either all of their writes land in the
caller's transaction or none do. The caller owns the outer transaction and
commits it.
"""

from __future__ import annotations

from db.models.ledger import LedgerTransaction, PendingTransaction
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .balances import record_balance_from_pending
from .cashback import calculate_cashback, compute_cashback_amount
from .categorize import default_category, lookup_category
from .logging_setup import get_logger
from .models import (
    CashbackCalculated,
    ParsedTransaction,
    PendingStatus,
    ProcessBlocked,
    ProcessConfig,
    ProcessDuplicate,
    ProcessError,
    ProcessResult,
    ProcessSuccess,
    TransactionDraft,
    TransactionType,
)
from .normalizers import compute_dedup_hash, normalize_merchant_name, to_decimal_2, utcnow
from .rules import evaluate_rules, find_blocking_rule, load_active_rules, record_applications
from .subscriptions import load_active_subscriptions, match_subscription

_logger = get_logger("ledger_pipeline.processor")

REASON_EXISTS = "Already exists"
REASON_DELETED = "Previously deleted"
REASON_PENDING = "Already pending review"


def draft_from_parsed(parsed: ParsedTransaction) -> TransactionDraft:
    """Build the initial draft for a freshly parsed transaction."""

    merchant = normalize_merchant_name(parsed.merchant)
    return TransactionDraft(
        amount=to_decimal_2(parsed.amount),
        currency=parsed.currency,
        merchant=merchant,
        category=default_category(merchant, parsed.transaction_type),
        transaction_type=parsed.transaction_type,
        occurred_at=parsed.timestamp,
        dedup_hash=compute_dedup_hash(parsed),
        bank_name=parsed.bank_name,
        account_last4=parsed.account_last4,
        balance_after=to_decimal_2(parsed.balance_after),
        source_text=parsed.source_text,
    )


def find_by_hash(session: Session, dedup_hash: str) -> LedgerTransaction | None:
    """Ledger row with ``dedup_hash``, soft-deleted rows included."""

    return session.execute(
        select(LedgerTransaction).where(LedgerTransaction.dedup_hash == dedup_hash)
    ).scalar_one_or_none()


def check_duplicate(
    session: Session, dedup_hash: str, *, include_pending: bool = True
) -> ProcessDuplicate | None:
    existing = find_by_hash(session, dedup_hash)
    if existing is not None:
        reason = REASON_DELETED if existing.is_deleted else REASON_EXISTS
        return ProcessDuplicate(existing.id, reason)
    if include_pending:
        pending_id = session.execute(
            select(PendingTransaction.id).where(
                PendingTransaction.dedup_hash == dedup_hash,
                PendingTransaction.status == PendingStatus.PENDING.value,
            )
        ).scalar_one_or_none()
        if pending_id is not None:
            return ProcessDuplicate(None, REASON_PENDING, pending_id=pending_id)
    return None


def _to_row(draft: TransactionDraft) -> LedgerTransaction:
    now = utcnow()
    return LedgerTransaction(
        amount=draft.amount,
        currency=draft.currency,
        merchant=draft.merchant,
        category=draft.category,
        transaction_type=draft.transaction_type.value,
        occurred_at=draft.occurred_at,
        description=draft.description,
        source_text=draft.source_text,
        bank_name=draft.bank_name,
        account_last4=draft.account_last4,
        balance_after=draft.balance_after,
        dedup_hash=draft.dedup_hash,
        cashback_percent=draft.cashback_percent,
        cashback_amount=draft.cashback_amount,
        subscription_id=draft.subscription_id,
        is_recurring=draft.is_recurring,
        is_deleted=False,
        created_at=now,
        updated_at=now,
    )


def _apply_cashback(
    session: Session, draft: TransactionDraft, cfg: ProcessConfig
) -> TransactionDraft:
    if draft.transaction_type is not TransactionType.EXPENSE:
        return draft
    custom = cfg.custom_cashback_percent
    if custom is not None:
        # One-off rate for this record only; history is never touched here.
        return draft.with_changes(
            cashback_percent=custom,
            cashback_amount=compute_cashback_amount(draft.amount, custom),
        )
    result = calculate_cashback(session, draft)
    if isinstance(result, CashbackCalculated):
        return draft.with_changes(cashback_percent=result.percent, cashback_amount=result.amount)
    return draft


def _run_pipeline(
    session: Session,
    draft: TransactionDraft,
    source_text: str | None,
    pending_origin: PendingTransaction | None,
    cfg: ProcessConfig,
) -> ProcessResult:
    if not cfg.preserve_user_category:
        mapped = lookup_category(session, draft.merchant)
        if mapped:
            draft = draft.with_changes(category=mapped)

    rules = load_active_rules(session)
    blocker = find_blocking_rule(draft, source_text, rules)
    if blocker is not None:
        _logger.info("Transaction %s blocked by rule %r", draft.dedup_hash[:12], blocker.name)
        return ProcessBlocked(blocker.name, f"Blocked by rule '{blocker.name}'")
    draft, applied = evaluate_rules(draft, source_text, rules)

    sub = match_subscription(draft, load_active_subscriptions(session))
    if sub is not None:
        draft = draft.with_changes(subscription_id=sub.id, is_recurring=True)

    draft = _apply_cashback(session, draft, cfg)

    row = _to_row(draft)
    session.add(row)
    session.flush()

    if pending_origin is not None:
        record_balance_from_pending(session, pending_origin, row.id)
    record_applications(session, row.id, applied)
    session.flush()

    _logger.info(
        "Saved transaction %s (%s %s %s, %s)",
        row.id,
        draft.transaction_type.value,
        draft.amount,
        draft.currency,
        draft.category,
    )
    return ProcessSuccess(
        transaction_id=row.id,
        cashback_amount=draft.cashback_amount,
        subscription_matched=sub is not None,
        rules_applied=tuple(a.rule_name for a in applied),
    )


def process_and_save(
    session: Session,
    draft: TransactionDraft,
    *,
    source_text: str | None = None,
    pending_origin: PendingTransaction | None = None,
    config: ProcessConfig | None = None,
) -> ProcessResult:
    """Run the pipeline for ``draft`` inside the caller's transaction.

    Parameters
    ----------
    session:
        Open session; the caller commits (or rolls back) afterwards.
    draft:
        The transaction to save.
    source_text:
        Raw notification text matched by ``source_text`` rule predicates.
        Defaults to ``draft.source_text``.
    pending_origin:
        The pending entry being resolved, when there is one. Enables the
        balance snapshot step and restricts the duplicate check to the
        ledger.
    config:
        :class:`ProcessConfig` flags.

    Returns
    -------
    ProcessResult
        ``ProcessSuccess``, ``ProcessBlocked``, ``ProcessDuplicate`` or
        ``ProcessError``. Nothing is raised for expected outcomes.
    """

    cfg = config or ProcessConfig()
    text = source_text if source_text is not None else draft.source_text
    try:
        if not cfg.skip_duplicate_check:
            dup = check_duplicate(
                session, draft.dedup_hash, include_pending=pending_origin is None
            )
            if dup is not None:
                _logger.debug("Duplicate %s: %s", draft.dedup_hash[:12], dup.reason)
                return dup
        with session.begin_nested():
            return _run_pipeline(session, draft, text, pending_origin, cfg)
    except IntegrityError as exc:
        existing = find_by_hash(session, draft.dedup_hash)
        if existing is not None:
            _logger.debug("Insert raced with transaction %s", existing.id)
            return ProcessDuplicate(existing.id, REASON_EXISTS)
        _logger.exception("Integrity error while saving %s", draft.dedup_hash[:12])
        return ProcessError(f"integrity error: {exc.orig}")
    except Exception as exc:
        _logger.exception("Failed to process transaction %s", draft.dedup_hash[:12])
        return ProcessError(str(exc) or exc.__class__.__name__)


def save_parsed(
    session: Session, parsed: ParsedTransaction, *, config: ProcessConfig | None = None
) -> ProcessResult:
    """Direct-save entry point for a freshly parsed transaction."""

    return process_and_save(
        session, draft_from_parsed(parsed), source_text=parsed.source_text, config=config
    )


__all__ = [
    "REASON_DELETED",
    "REASON_EXISTS",
    "REASON_PENDING",
    "check_duplicate",
    "draft_from_parsed",
    "find_by_hash",
    "process_and_save",
    "save_parsed",
]
