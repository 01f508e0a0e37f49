# ruff: noqa: I001
"""Ledger core tables.

Revision ID: 0001_ledger_core
Revises: None
Create Date: 2026-10-18
"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op


# revision identifiers, used by Alembic.
revision: str = "0001_ledger_core"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_PK = sa.BigInteger().with_variant(sa.Integer(), "sqlite")
_TX_TYPES_CHECK = "transaction_type in ('INCOME','EXPENSE','TRANSFER')"


def _id() -> sa.Column:
    return sa.Column("id", _PK, primary_key=True, autoincrement=True)


def _ts(name: str, *, default: bool = True, nullable: bool = False) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=nullable,
        server_default=sa.text("CURRENT_TIMESTAMP") if default else None,
    )


def _flag(name: str, value: bool) -> sa.Column:
    return sa.Column(
        name, sa.Boolean(), nullable=False, server_default=sa.true() if value else sa.false()
    )


def _transaction_columns() -> list[sa.Column]:
    # Shared by ledger_transactions and pending_transactions.
    return [
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default=sa.text("'INR'")),
        sa.Column("merchant", sa.Text(), nullable=False),
        sa.Column("category", sa.String(), nullable=False),
        sa.Column("transaction_type", sa.String(), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("source_text", sa.Text(), nullable=True),
        sa.Column("bank_name", sa.String(), nullable=True),
        sa.Column("account_last4", sa.String(8), nullable=True),
        sa.Column("balance_after", sa.Numeric(18, 2), nullable=True),
        sa.Column("dedup_hash", sa.String(128), nullable=False, unique=True),
    ]


def upgrade() -> None:
    op.create_table(
        "subscriptions",
        _id(),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("merchant_pattern", sa.Text(), nullable=False),
        sa.Column("expected_amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("amount_tolerance", sa.Numeric(18, 2), nullable=True),
        sa.Column("category", sa.String(), nullable=True),
        _flag("is_active", True),
        _ts("created_at"),
    )

    op.create_table(
        "ledger_transactions",
        _id(),
        *_transaction_columns(),
        sa.Column("cashback_percent", sa.Numeric(5, 2), nullable=True),
        sa.Column("cashback_amount", sa.Numeric(18, 2), nullable=True),
        sa.Column(
            "subscription_id",
            _PK,
            sa.ForeignKey("subscriptions.id", ondelete="SET NULL"),
            nullable=True,
        ),
        _flag("is_recurring", False),
        _flag("is_deleted", False),
        _ts("created_at"),
        _ts("updated_at"),
        sa.CheckConstraint(_TX_TYPES_CHECK, name="ck_ledger_tx_type"),
        sa.CheckConstraint(
            "cashback_percent IS NULL OR cashback_percent > 0",
            name="ck_ledger_tx_cashback_percent",
        ),
    )
    op.create_index("ix_ledger_tx_account", "ledger_transactions", ["bank_name", "account_last4"])
    op.create_index("ix_ledger_tx_occurred_at", "ledger_transactions", ["occurred_at"])
    op.create_index("ix_ledger_tx_category", "ledger_transactions", ["category"])

    op.create_table(
        "pending_transactions",
        _id(),
        *_transaction_columns(),
        sa.Column("status", sa.String(), nullable=False, server_default=sa.text("'PENDING'")),
        _ts("created_at", default=False),
        _ts("expires_at", default=False),
        _ts("resolved_at", default=False, nullable=True),
        sa.Column(
            "transaction_id",
            _PK,
            sa.ForeignKey("ledger_transactions.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.CheckConstraint(_TX_TYPES_CHECK, name="ck_pending_tx_type"),
        sa.CheckConstraint(
            "status in ('PENDING','CONFIRMED','REJECTED','AUTO_SAVED')",
            name="ck_pending_tx_status",
        ),
    )
    op.create_index(
        "ix_pending_tx_status_expires", "pending_transactions", ["status", "expires_at"]
    )

    op.create_table(
        "rules",
        _id(),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("priority", sa.Integer(), nullable=False, server_default=sa.text("100")),
        sa.Column("conditions", sa.JSON(), nullable=False),
        sa.Column("action_type", sa.String(), nullable=False),
        sa.Column("action_field", sa.String(), nullable=True),
        sa.Column("action_value", sa.Text(), nullable=True),
        sa.Column("transaction_type", sa.String(), nullable=True),
        _flag("is_active", True),
        _ts("created_at"),
        _ts("updated_at"),
        sa.CheckConstraint("action_type in ('BLOCK','SET_FIELD')", name="ck_rules_action_type"),
        sa.CheckConstraint(
            "action_type = 'BLOCK' OR "
            "action_field in ('category','merchant','transaction_type')",
            name="ck_rules_action_field",
        ),
    )

    op.create_table(
        "rule_applications",
        _id(),
        sa.Column(
            "rule_id", _PK, sa.ForeignKey("rules.id", ondelete="SET NULL"), nullable=True
        ),
        sa.Column("rule_name", sa.String(), nullable=False),
        sa.Column(
            "transaction_id",
            _PK,
            sa.ForeignKey("ledger_transactions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("fields_modified", sa.JSON(), nullable=False),
        _ts("applied_at", default=False),
    )
    op.create_index(
        "ix_rule_applications_transaction", "rule_applications", ["transaction_id"]
    )

    op.create_table(
        "merchant_mappings",
        _id(),
        sa.Column("merchant_name", sa.Text(), nullable=False),
        sa.Column("merchant_key", sa.Text(), nullable=False, unique=True),
        sa.Column("category", sa.String(), nullable=False),
        _ts("created_at"),
        _ts("updated_at"),
    )

    op.create_table(
        "account_balances",
        _id(),
        sa.Column("bank_name", sa.String(), nullable=False),
        sa.Column("account_last4", sa.String(8), nullable=False),
        sa.Column("balance", sa.Numeric(18, 2), nullable=False),
        sa.Column("credit_limit", sa.Numeric(18, 2), nullable=True),
        sa.Column("default_cashback_percent", sa.Numeric(5, 2), nullable=True),
        _flag("is_credit_card", False),
        sa.Column("currency", sa.String(3), nullable=False, server_default=sa.text("'INR'")),
        _ts("timestamp", default=False),
        sa.Column(
            "transaction_id",
            _PK,
            sa.ForeignKey("ledger_transactions.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "source_type", sa.String(), nullable=False, server_default=sa.text("'MANUAL'")
        ),
        sa.Column("source_text", sa.Text(), nullable=True),
        _ts("created_at"),
        sa.CheckConstraint(
            "source_type in ('TRANSACTION','MANUAL','SETTINGS')",
            name="ck_account_balances_source_type",
        ),
    )
    op.create_index(
        "ix_account_balances_account_ts",
        "account_balances",
        ["bank_name", "account_last4", "timestamp"],
    )


def downgrade() -> None:
    op.drop_index("ix_account_balances_account_ts", table_name="account_balances")
    op.drop_table("account_balances")
    op.drop_table("merchant_mappings")
    op.drop_index("ix_rule_applications_transaction", table_name="rule_applications")
    op.drop_table("rule_applications")
    op.drop_table("rules")
    op.drop_index("ix_pending_tx_status_expires", table_name="pending_transactions")
    op.drop_table("pending_transactions")
    op.drop_index("ix_ledger_tx_category", table_name="ledger_transactions")
    op.drop_index("ix_ledger_tx_occurred_at", table_name="ledger_transactions")
    op.drop_index("ix_ledger_tx_account", table_name="ledger_transactions")
    op.drop_table("ledger_transactions")
    op.drop_table("subscriptions")
