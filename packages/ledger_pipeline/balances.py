"""Account balance history.

Snapshots are append-only and keyed by bank (case-insensitive) and last-4.
Two notions of "latest" apply:

- The balance is read from the snapshot with the greatest
  ``(timestamp, id)``, the bank's own view of when the balance was true.
- Account settings (credit limit, default cashback, credit-card flag,
  currency) are read from the most recently inserted snapshot. Transaction
  snapshots carry the bank's event time, which may sit ahead of the wall
  clock, so a settings change must not be ordered behind them.

Every new snapshot carries unset settings forward from the most recently
inserted one.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import StrEnum

from db.models.ledger import AccountBalance, PendingTransaction
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .errors import ValidationError
from .logging_setup import get_logger
from .models import InvalidPercent, RetroactiveResult
from .normalizers import ensure_utc, to_decimal_2, utcnow

_logger = get_logger("ledger_pipeline.balances")

SOURCE_TEXT_LIMIT = 500


class BalanceSource(StrEnum):
    TRANSACTION = "TRANSACTION"
    MANUAL = "MANUAL"
    SETTINGS = "SETTINGS"


def _account_snapshots(bank_name: str, account_last4: str):
    return select(AccountBalance).where(
        func.lower(AccountBalance.bank_name) == bank_name.strip().lower(),
        AccountBalance.account_last4 == account_last4.strip(),
    )


def latest_snapshot(session: Session, bank_name: str, account_last4: str) -> AccountBalance | None:
    stmt = (
        _account_snapshots(bank_name, account_last4)
        .order_by(AccountBalance.timestamp.desc(), AccountBalance.id.desc())
        .limit(1)
    )
    return session.execute(stmt).scalars().first()


def current_settings(
    session: Session, bank_name: str, account_last4: str
) -> AccountBalance | None:
    """The most recently inserted snapshot; it holds the account's settings."""

    stmt = _account_snapshots(bank_name, account_last4).order_by(AccountBalance.id.desc()).limit(1)
    return session.execute(stmt).scalars().first()


def default_cashback_percent(
    session: Session, bank_name: str | None, account_last4: str | None
) -> Decimal | None:
    """Configured default cashback rate for the account, if any."""

    if not bank_name or not account_last4:
        return None
    snap = current_settings(session, bank_name, account_last4)
    if snap is None or snap.default_cashback_percent is None:
        return None
    return Decimal(str(snap.default_cashback_percent))


def append_snapshot(
    session: Session,
    *,
    bank_name: str,
    account_last4: str,
    balance: Decimal | None = None,
    timestamp: datetime | None = None,
    source_type: BalanceSource = BalanceSource.MANUAL,
    source_text: str | None = None,
    transaction_id: int | None = None,
    currency: str | None = None,
    credit_limit: Decimal | None = None,
    default_cashback_percent: Decimal | None = None,
    is_credit_card: bool | None = None,
) -> AccountBalance:
    """Append a snapshot; unset settings carry forward from the newest row.

    ``balance`` may only be omitted when a previous snapshot exists.
    """

    bank = bank_name.strip()
    last4 = account_last4.strip()
    if not bank or not last4:
        raise ValidationError("bank_name and account_last4 are required")

    prev = current_settings(session, bank, last4)
    if balance is None:
        latest = latest_snapshot(session, bank, last4)
        if latest is None:
            raise ValidationError(f"no balance recorded yet for {bank} {last4}")
        balance = Decimal(str(latest.balance))

    row = AccountBalance(
        bank_name=bank,
        account_last4=last4,
        balance=to_decimal_2(balance),
        credit_limit=(
            credit_limit if credit_limit is not None else getattr(prev, "credit_limit", None)
        ),
        default_cashback_percent=(
            default_cashback_percent
            if default_cashback_percent is not None
            else getattr(prev, "default_cashback_percent", None)
        ),
        is_credit_card=(
            is_credit_card
            if is_credit_card is not None
            else bool(getattr(prev, "is_credit_card", False))
        ),
        currency=currency or getattr(prev, "currency", None) or "INR",
        timestamp=ensure_utc(timestamp) if timestamp is not None else utcnow(),
        transaction_id=transaction_id,
        source_type=source_type.value,
        source_text=source_text[:SOURCE_TEXT_LIMIT] if source_text else None,
        created_at=utcnow(),
    )
    session.add(row)
    session.flush()
    return row


def record_balance_from_pending(
    session: Session, pending: PendingTransaction, transaction_id: int
) -> AccountBalance | None:
    """Record the balance captured on ``pending`` after its ledger save.

    Uses the pending entry's own ``balance_after`` and timestamp; nothing is
    recomputed. Returns ``None`` when the entry lacks account or balance data.
    """

    if pending.balance_after is None or not pending.bank_name or not pending.account_last4:
        return None
    snap = append_snapshot(
        session,
        bank_name=pending.bank_name,
        account_last4=pending.account_last4,
        balance=Decimal(str(pending.balance_after)),
        timestamp=pending.occurred_at,
        source_type=BalanceSource.TRANSACTION,
        source_text=pending.source_text,
        transaction_id=transaction_id,
        currency=pending.currency,
    )
    _logger.debug(
        "Balance for %s %s set to %s from pending %s",
        pending.bank_name,
        pending.account_last4,
        snap.balance,
        pending.id,
    )
    return snap


def set_default_cashback(
    session: Session,
    bank_name: str,
    account_last4: str,
    percent: Decimal,
    *,
    apply_retroactive: bool = False,
) -> RetroactiveResult | None:
    """Change an account's default cashback rate.

    Appends a ``SETTINGS`` snapshot. Past expenses are only amended when
    ``apply_retroactive`` is set, in which case the retroactive result is
    returned. A non-positive percent yields :class:`InvalidPercent` and
    writes nothing.
    """

    from .cashback import apply_retroactive_cashback

    pct = Decimal(str(percent))
    if not pct.is_finite() or pct <= 0:
        return InvalidPercent(pct)
    # A settings change on an account with no history starts it at zero.
    has_history = current_settings(session, bank_name, account_last4) is not None
    append_snapshot(
        session,
        bank_name=bank_name,
        account_last4=account_last4,
        balance=None if has_history else Decimal("0"),
        source_type=BalanceSource.SETTINGS,
        default_cashback_percent=pct,
    )
    _logger.info("Default cashback for %s %s set to %s%%", bank_name, account_last4, pct)
    if not apply_retroactive:
        return None
    return apply_retroactive_cashback(session, bank_name, account_last4, pct)


__all__ = [
    "BalanceSource",
    "SOURCE_TEXT_LIMIT",
    "append_snapshot",
    "current_settings",
    "default_cashback_percent",
    "latest_snapshot",
    "record_balance_from_pending",
    "set_default_cashback",
]
