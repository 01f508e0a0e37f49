from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select, update

from db.client import session_scope
from db.models.ledger import AccountBalance, LedgerTransaction
from ledger_pipeline import api
from ledger_pipeline.balances import (
    BalanceSource,
    append_snapshot,
    default_cashback_percent,
    latest_snapshot,
    set_default_cashback,
)
from ledger_pipeline.cashback import (
    apply_retroactive_cashback,
    calculate_cashback,
    compute_cashback_amount,
)
from ledger_pipeline.errors import ValidationError
from ledger_pipeline.models import (
    CashbackCalculated,
    CashbackNotApplicable,
    InvalidPercent,
    NoCashbackConfigured,
    ProcessSuccess,
    Queued,
    RetroactiveSuccess,
)
from ledger_pipeline.normalizers import utcnow
from ledger_pipeline.processor import draft_from_parsed
from tests.helpers.db import BASE_TIME, make_parsed


def _save(db_url: str, minutes: int = 0, **overrides) -> int:
    parsed = make_parsed(timestamp=BASE_TIME + timedelta(minutes=minutes), **overrides)
    result = api.process_transaction(parsed, database_url=db_url)
    assert isinstance(result, ProcessSuccess)
    return result.transaction_id


@pytest.mark.parametrize(
    ("amount", "percent", "expected"),
    [
        ("500", "2", "10.00"),
        ("333.33", "1.5", "5.00"),
        ("0.50", "1", "0.01"),
        ("1249.99", "0.25", "3.12"),
    ],
)
def test_compute_cashback_amount_rounds_half_up(amount: str, percent: str, expected: str):
    assert compute_cashback_amount(Decimal(amount), Decimal(percent)) == Decimal(expected)


def test_calculate_cashback_variants(db_url: str):
    expense = draft_from_parsed(make_parsed())
    income = draft_from_parsed(make_parsed(transaction_type="INCOME"))
    with session_scope(database_url=db_url) as session:
        assert isinstance(calculate_cashback(session, income), CashbackNotApplicable)
        assert calculate_cashback(session, expense) == NoCashbackConfigured()
        set_default_cashback(session, "HDFC", "1234", Decimal("2"))
        assert calculate_cashback(session, expense) == CashbackCalculated(
            Decimal("2"), Decimal("10.00")
        )


def test_default_cashback_applied_on_save(db_url: str):
    api.set_account_cashback("hdfc", "1234", Decimal("2"), database_url=db_url)

    tx_id = _save(db_url)
    other_id = _save(db_url, minutes=1, account_last4="9999")
    income_id = _save(db_url, minutes=2, transaction_type="INCOME", merchant="ACME Salary")

    row = api.get_transaction(tx_id, database_url=db_url)
    assert row is not None
    assert row.cashback_percent == Decimal("2")
    assert row.cashback_amount == Decimal("10.00")
    assert api.get_transaction(other_id, database_url=db_url).cashback_amount is None
    assert api.get_transaction(income_id, database_url=db_url).cashback_amount is None


# -------------------------
# Retroactive update
# -------------------------


def test_retroactive_cashback_touches_only_eligible_rows(db_url: str):
    a = _save(db_url, 0)
    b = _save(db_url, 1, amount=Decimal("200"))
    income = _save(db_url, 2, transaction_type="INCOME", merchant="Refund")
    other_account = _save(db_url, 3, account_last4="9999")
    deleted = _save(db_url, 4)
    has_cashback = _save(db_url, 5)
    with session_scope(database_url=db_url) as session:
        session.execute(
            update(LedgerTransaction)
            .where(LedgerTransaction.id == deleted)
            .values(is_deleted=True)
        )
        session.execute(
            update(LedgerTransaction)
            .where(LedgerTransaction.id == has_cashback)
            .values(cashback_percent=Decimal("1"), cashback_amount=Decimal("5"))
        )

    result = api.set_account_cashback(
        "HDFC", "1234", Decimal("2"), apply_retroactive=True, database_url=db_url
    )
    assert result == RetroactiveSuccess(2)

    def cb(tx_id: int) -> Decimal | None:
        return api.get_transaction(tx_id, database_url=db_url).cashback_amount

    assert cb(a) == Decimal("10.00")
    assert cb(b) == Decimal("4.00")
    assert cb(income) is None
    assert cb(other_account) is None
    assert cb(deleted) is None
    assert cb(has_cashback) == Decimal("5.00")

    # Nothing left to amend.
    again = api.apply_retroactive_cashback("HDFC", "1234", Decimal("3"), database_url=db_url)
    assert again == RetroactiveSuccess(0)


def test_rate_change_without_retroactive_leaves_history(db_url: str):
    tx_id = _save(db_url)
    assert api.set_account_cashback("HDFC", "1234", Decimal("2"), database_url=db_url) is None
    assert api.get_transaction(tx_id, database_url=db_url).cashback_amount is None


def test_invalid_percent_writes_nothing(db_url: str):
    assert api.set_account_cashback("HDFC", "1234", Decimal("0"), database_url=db_url) == (
        InvalidPercent(Decimal("0"))
    )
    with session_scope(database_url=db_url) as session:
        assert latest_snapshot(session, "HDFC", "1234") is None
        assert isinstance(
            apply_retroactive_cashback(session, "HDFC", "1234", Decimal("-1")), InvalidPercent
        )


# -------------------------
# Balance history
# -------------------------


def test_snapshots_carry_forward_settings(db_url: str):
    with session_scope(database_url=db_url) as session:
        append_snapshot(
            session,
            bank_name="HDFC",
            account_last4="1234",
            balance=Decimal("1000"),
            timestamp=BASE_TIME,
            credit_limit=Decimal("50000"),
            is_credit_card=True,
        )
        set_default_cashback(session, "hdfc", "1234", Decimal("1.5"))
        append_snapshot(
            session,
            bank_name="HDFC",
            account_last4="1234",
            balance=Decimal("750"),
            source_type=BalanceSource.TRANSACTION,
        )
    with session_scope(database_url=db_url) as session:
        snap = latest_snapshot(session, "Hdfc", "1234")
        assert snap is not None
        assert snap.balance == Decimal("750.00")
        assert snap.credit_limit == Decimal("50000.00")
        assert snap.is_credit_card is True
        assert default_cashback_percent(session, "HDFC", "1234") == Decimal("1.50")
        sources = session.execute(
            select(AccountBalance.source_type).order_by(AccountBalance.id)
        ).scalars().all()
    assert sources == ["MANUAL", "SETTINGS", "TRANSACTION"]


def test_settings_on_new_account_start_at_zero(db_url: str):
    with session_scope(database_url=db_url) as session:
        set_default_cashback(session, "SBI", "0001", Decimal("1"))
        snap = latest_snapshot(session, "SBI", "0001")
        assert snap is not None
        assert snap.balance == Decimal("0.00")
        with pytest.raises(ValidationError):
            append_snapshot(session, bank_name="ICICI", account_last4="7777")



def test_retroactive_skips_amounts_that_round_to_zero(db_url: str):
    tiny = _save(db_url, amount=Decimal("0.10"))
    regular = _save(db_url, 1)

    result = api.apply_retroactive_cashback("HDFC", "1234", Decimal("1"), database_url=db_url)
    assert result == RetroactiveSuccess(1)

    row = api.get_transaction(tiny, database_url=db_url)
    assert row.cashback_percent is None
    assert row.cashback_amount is None
    assert api.get_transaction(regular, database_url=db_url).cashback_amount == Decimal("5.00")
    again = api.apply_retroactive_cashback("HDFC", "1234", Decimal("1"), database_url=db_url)
    assert again == RetroactiveSuccess(0)


def test_rate_change_applies_after_future_dated_balance(db_url: str):
    api.set_account_cashback("HDFC", "1234", Decimal("2"), database_url=db_url)
    # Bank time ahead of the wall clock, as with local time read as UTC.
    ahead = utcnow() + timedelta(hours=5, minutes=25)
    first = api.queue_transaction(make_parsed(timestamp=ahead), database_url=db_url)
    assert isinstance(first, Queued)
    assert api.confirm(first.pending_id, database_url=db_url).result.cashback_amount == (
        Decimal("10.00")
    )

    api.set_account_cashback("HDFC", "1234", Decimal("5"), database_url=db_url)
    direct = api.process_transaction(
        make_parsed(timestamp=ahead + timedelta(minutes=1)), database_url=db_url
    )
    assert direct.cashback_amount == Decimal("25.00")

    second = api.queue_transaction(
        make_parsed(timestamp=ahead + timedelta(minutes=2), balance_after=Decimal("9000")),
        database_url=db_url,
    )
    api.confirm(second.pending_id, database_url=db_url)
    with session_scope(database_url=db_url) as session:
        snap = latest_snapshot(session, "HDFC", "1234")
        assert snap.source_type == "TRANSACTION"
        assert snap.balance == Decimal("9000.00")
        assert snap.default_cashback_percent == Decimal("5")
        assert default_cashback_percent(session, "HDFC", "1234") == Decimal("5")
