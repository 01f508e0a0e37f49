from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import update

from db.client import session_scope
from db.models.ledger import LedgerTransaction
from ledger_pipeline import api
from ledger_pipeline.categorize import set_merchant_category
from ledger_pipeline.models import (
    ProcessBlocked,
    ProcessConfig,
    ProcessDuplicate,
    ProcessError,
    ProcessSuccess,
    Queued,
)
from ledger_pipeline.processor import (
    REASON_DELETED,
    REASON_EXISTS,
    REASON_PENDING,
    draft_from_parsed,
    process_and_save,
    save_parsed,
)
from ledger_pipeline.rules import create_rule, list_rule_applications
from tests.helpers.db import BASE_TIME, add_subscription, ledger_count, ledger_rows, make_parsed


def test_direct_save_persists_normalized_row(db_url: str):
    parsed = make_parsed(merchant="AMAZON PAY", currency="inr")
    result = api.process_transaction(parsed, database_url=db_url)

    assert isinstance(result, ProcessSuccess)
    assert result.cashback_amount is None
    assert result.subscription_matched is False
    with session_scope(database_url=db_url) as session:
        (row,) = ledger_rows(session)
        assert row.id == result.transaction_id
        assert row.merchant == "Amazon Pay"
        assert row.category == "Shopping"
        assert row.transaction_type == "EXPENSE"
        assert row.amount == Decimal("500.00")
        assert row.currency == "INR"
        assert row.balance_after == Decimal("9500.00")
        assert row.is_deleted is False
        assert row.dedup_hash == draft_from_parsed(parsed).dedup_hash


# -------------------------
# Duplicates
# -------------------------


def test_second_save_is_duplicate(db_url: str):
    first = api.process_transaction(make_parsed(), database_url=db_url)
    assert isinstance(first, ProcessSuccess)
    # Same notification seen again a few seconds later.
    again = api.process_transaction(
        make_parsed(timestamp=BASE_TIME + timedelta(seconds=20)), database_url=db_url
    )
    assert again == ProcessDuplicate(first.transaction_id, REASON_EXISTS)
    with session_scope(database_url=db_url) as session:
        assert ledger_count(session) == 1


def test_deleted_row_still_suppresses_reimport(db_url: str):
    first = api.process_transaction(make_parsed(), database_url=db_url)
    with session_scope(database_url=db_url) as session:
        session.execute(
            update(LedgerTransaction)
            .where(LedgerTransaction.id == first.transaction_id)
            .values(is_deleted=True)
        )
    again = api.process_transaction(make_parsed(), database_url=db_url)
    assert again == ProcessDuplicate(first.transaction_id, REASON_DELETED)


def test_queued_notification_is_duplicate_for_direct_save(db_url: str):
    queued = api.queue_transaction(make_parsed(), now=BASE_TIME, database_url=db_url)
    assert isinstance(queued, Queued)
    result = api.process_transaction(make_parsed(), database_url=db_url)
    assert result == ProcessDuplicate(None, REASON_PENDING, pending_id=queued.pending_id)


def test_unique_hash_backs_up_skipped_duplicate_check(db_url: str):
    first = api.process_transaction(make_parsed(), database_url=db_url)
    with session_scope(database_url=db_url) as session:
        result = save_parsed(
            session, make_parsed(), config=ProcessConfig(skip_duplicate_check=True)
        )
        assert result == ProcessDuplicate(first.transaction_id, REASON_EXISTS)
        assert ledger_count(session) == 1


# -------------------------
# Categorization and rules
# -------------------------


def test_merchant_mapping_and_preserved_category(db_url: str):
    with session_scope(database_url=db_url) as session:
        set_merchant_category(session, merchant="Amazon", category="Electronics")

    mapped = api.process_transaction(make_parsed(), database_url=db_url)
    with session_scope(database_url=db_url) as session:
        draft = draft_from_parsed(make_parsed(source_text="gift order")).with_changes(
            category="Gifts"
        )
        kept = process_and_save(
            session, draft, config=ProcessConfig(preserve_user_category=True)
        )
    assert api.get_transaction(mapped.transaction_id, database_url=db_url).category == (
        "Electronics"
    )
    assert api.get_transaction(kept.transaction_id, database_url=db_url).category == "Gifts"


def test_block_rule_prevents_insert(db_url: str):
    with session_scope(database_url=db_url) as session:
        create_rule(
            session,
            name="Ignore OTP messages",
            conditions=[{"field": "source_text", "operator": "regex", "value": r"\bOTP\b"}],
            action_type="BLOCK",
        )
    result = api.process_transaction(
        make_parsed(source_text="OTP 123456 for Rs.500 at AMAZON"), database_url=db_url
    )
    assert result == ProcessBlocked("Ignore OTP messages", "Blocked by rule 'Ignore OTP messages'")
    with session_scope(database_url=db_url) as session:
        assert ledger_count(session) == 0


def test_transform_rule_is_applied_and_audited(db_url: str):
    with session_scope(database_url=db_url) as session:
        create_rule(
            session,
            name="Big Amazon orders",
            conditions=[
                {"field": "merchant", "operator": "contains", "value": "amazon"},
                {"field": "amount", "operator": "gt", "value": 100},
            ],
            action_type="SET_FIELD",
            action_field="category",
            action_value="Electronics",
        )
    result = api.process_transaction(make_parsed(), database_url=db_url)
    assert isinstance(result, ProcessSuccess)
    assert result.rules_applied == ("Big Amazon orders",)

    with session_scope(database_url=db_url) as session:
        (row,) = ledger_rows(session)
        assert row.category == "Electronics"
        (audit,) = list_rule_applications(session, transaction_id=row.id)
        assert audit.rule_name == "Big Amazon orders"
        assert audit.fields_modified == {"category": {"old": "Shopping", "new": "Electronics"}}


def test_matching_rule_is_audited_even_without_changes(db_url: str):
    with session_scope(database_url=db_url) as session:
        create_rule(
            session,
            name="Amazon is shopping",
            conditions=[{"field": "merchant", "operator": "contains", "value": "amazon"}],
            action_type="SET_FIELD",
            action_field="category",
            action_value="Shopping",
        )
    result = api.process_transaction(make_parsed(), database_url=db_url)
    assert result.rules_applied == ("Amazon is shopping",)

    with session_scope(database_url=db_url) as session:
        (audit,) = list_rule_applications(session, transaction_id=result.transaction_id)
        assert audit.rule_name == "Amazon is shopping"
        assert audit.fields_modified == {}


# -------------------------
# Subscriptions
# -------------------------


@pytest.mark.parametrize(
    ("amount", "tolerance", "category", "expected"),
    [
        ("649", None, None, True),
        ("699", None, None, True),  # within 10%
        ("750", None, None, False),
        ("655", "10", None, True),
        ("660", "10", None, False),
        ("649", None, "entertainment", True),
        ("649", None, "Bills & Utilities", False),
    ],
)
def test_subscription_matching(
    db_url: str, amount: str, tolerance: str | None, category: str | None, expected: bool
):
    with session_scope(database_url=db_url) as session:
        sub = add_subscription(
            session,
            amount_tolerance=Decimal(tolerance) if tolerance else None,
            category=category,
        )
        sub_id = sub.id
    result = api.process_transaction(
        make_parsed(merchant="NETFLIX.COM", amount=Decimal(amount)), database_url=db_url
    )
    assert isinstance(result, ProcessSuccess)
    assert result.subscription_matched is expected
    row = api.get_transaction(result.transaction_id, database_url=db_url)
    assert row.is_recurring is expected
    assert row.subscription_id == (sub_id if expected else None)
    assert row.amount == Decimal(amount)


def test_lowest_subscription_id_wins_and_inactive_is_ignored(db_url: str):
    with session_scope(database_url=db_url) as session:
        inactive = add_subscription(session, name="Old plan", is_active=False)
        first = add_subscription(session, name="Netflix")
        add_subscription(session, name="Netflix duplicate")
        first_id, inactive_id = first.id, inactive.id
    result = api.process_transaction(make_parsed(merchant="Netflix"), database_url=db_url)
    row = api.get_transaction(result.transaction_id, database_url=db_url)
    assert row.subscription_id == first_id != inactive_id


# -------------------------
# Atomicity
# -------------------------


def test_failure_after_insert_rolls_back_everything(
    db_url: str, monkeypatch: pytest.MonkeyPatch
):
    with session_scope(database_url=db_url) as session:
        create_rule(
            session,
            name="Recategorize",
            conditions=[{"field": "merchant", "operator": "contains", "value": "amazon"}],
            action_type="SET_FIELD",
            action_field="category",
            action_value="Online",
        )

    def _boom(*_args, **_kwargs):
        raise RuntimeError("audit table unavailable")

    with monkeypatch.context() as mp:
        mp.setattr("ledger_pipeline.processor.record_applications", _boom)
        result = api.process_transaction(make_parsed(), database_url=db_url)

    assert result == ProcessError("audit table unavailable")
    with session_scope(database_url=db_url) as session:
        assert ledger_count(session) == 0
        assert list_rule_applications(session) == []

    retry = api.process_transaction(make_parsed(), database_url=db_url)
    assert isinstance(retry, ProcessSuccess)


# -------------------------
# Batches
# -------------------------


def test_batch_keeps_order_and_reports_in_batch_duplicates(db_url: str):
    items = [
        make_parsed(),
        make_parsed(account_last4="5678", timestamp=BASE_TIME + timedelta(minutes=1)),
        make_parsed(),
        make_parsed(bank_name="ICICI", timestamp=BASE_TIME + timedelta(minutes=2)),
    ]
    results = api.process_batch(items, database_url=db_url, concurrency=3)

    assert [type(r) for r in results] == [
        ProcessSuccess,
        ProcessSuccess,
        ProcessDuplicate,
        ProcessSuccess,
    ]
    assert results[2].existing_transaction_id == results[0].transaction_id
    with session_scope(database_url=db_url) as session:
        assert ledger_count(session) == 3
    assert api.process_batch([], database_url=db_url) == []
