"""Cashback computation and the explicit retroactive bulk update.

Only ``EXPENSE`` transactions earn cashback. The processor uses
:func:`calculate_cashback` for the account default and
:func:`compute_cashback_amount` for a one-off custom rate;
:func:`apply_retroactive_cashback` is reached only from an explicit
default-rate change (see :func:`ledger_pipeline.balances.set_default_cashback`).
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

from db.models.ledger import LedgerTransaction
from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from .balances import default_cashback_percent
from .logging_setup import get_logger
from .models import (
    CashbackCalculated,
    CashbackNotApplicable,
    CashbackResult,
    InvalidPercent,
    NoCashbackConfigured,
    RetroactiveResult,
    RetroactiveSuccess,
    TransactionDraft,
    TransactionType,
)
from .normalizers import utcnow

_logger = get_logger("ledger_pipeline.cashback")

_CENT = Decimal("0.01")
_HUNDRED = Decimal(100)


def compute_cashback_amount(amount: Decimal, percent: Decimal) -> Decimal:
    """``amount * percent / 100`` rounded half-up to cents."""

    return (Decimal(str(amount)) * Decimal(str(percent)) / _HUNDRED).quantize(
        _CENT, rounding=ROUND_HALF_UP
    )


def calculate_cashback(session: Session, draft: TransactionDraft) -> CashbackResult:
    """Resolve the account's default cashback for ``draft``."""

    if draft.transaction_type is not TransactionType.EXPENSE:
        return CashbackNotApplicable(
            f"{draft.transaction_type.value} transactions earn no cashback"
        )
    pct = default_cashback_percent(session, draft.bank_name, draft.account_last4)
    if pct is None or pct <= 0:
        return NoCashbackConfigured()
    return CashbackCalculated(percent=pct, amount=compute_cashback_amount(draft.amount, pct))


def _eligible_rows(bank_name: str, account_last4: str):
    return (
        LedgerTransaction.is_deleted.is_(False),
        LedgerTransaction.transaction_type == TransactionType.EXPENSE.value,
        func.lower(LedgerTransaction.bank_name) == bank_name.strip().lower(),
        LedgerTransaction.account_last4 == account_last4.strip(),
        or_(LedgerTransaction.cashback_amount.is_(None), LedgerTransaction.cashback_amount == 0),
    )


def apply_retroactive_cashback(
    session: Session, bank_name: str, account_last4: str, percent: Decimal
) -> RetroactiveResult:
    """Give ``percent`` cashback to the account's past expenses that have none.

    Touches only non-deleted ``EXPENSE`` rows of exactly this account (bank
    compared case-insensitively) whose cashback amount is NULL or zero. The
    caller owns the transaction. Rows whose cashback rounds to zero are left
    alone and not counted.
    """

    try:
        pct = Decimal(str(percent))
    except ArithmeticError:
        return InvalidPercent(None)
    if not pct.is_finite() or pct <= 0:
        return InvalidPercent(pct)
    if not bank_name.strip() or not account_last4.strip():
        return RetroactiveSuccess(0)

    # Per-row rounding in Python keeps ROUND_HALF_UP semantics on every backend.
    rows = session.execute(
        select(LedgerTransaction.id, LedgerTransaction.amount).where(
            *_eligible_rows(bank_name, account_last4)
        )
    ).all()
    now = utcnow()
    updated = 0
    for row_id, amount in rows:
        earned = compute_cashback_amount(amount, pct)
        if earned == 0:
            # Rounds to nothing; the row stays without cashback.
            continue
        result = session.execute(
            update(LedgerTransaction)
            .where(LedgerTransaction.id == row_id, *_eligible_rows(bank_name, account_last4))
            .values(cashback_percent=pct, cashback_amount=earned, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        updated += result.rowcount or 0
    _logger.info(
        "Retroactive cashback %s%% applied to %d transactions of %s %s",
        pct,
        updated,
        bank_name,
        account_last4,
    )
    return RetroactiveSuccess(updated)


__all__ = [
    "apply_retroactive_cashback",
    "calculate_cashback",
    "compute_cashback_amount",
]
