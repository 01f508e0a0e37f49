from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import expression as sa_expr

# SQLite only autoincrements ``INTEGER PRIMARY KEY`` (rowid) columns.
_PK = BigInteger().with_variant(Integer(), "sqlite")

_TX_TYPES_CHECK = "transaction_type in ('INCOME','EXPENSE','TRANSFER')"


class Base(DeclarativeBase):
    pass


# ---------------------------
# Reference: subscriptions
# ---------------------------


class Subscription(Base):
    __tablename__ = "subscriptions"

    id: Mapped[int] = mapped_column(_PK, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    # Case-insensitive substring matched against the normalized merchant.
    merchant_pattern: Mapped[str] = mapped_column(Text, nullable=False)
    expected_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    # Absolute window around ``expected_amount``. NULL means the default
    # relative tolerance applied by the matcher.
    amount_tolerance: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    category: Mapped[str | None] = mapped_column(String, nullable=True)
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=sa_expr.true()
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )


# ---------------------------
# Core: ledger_transactions
# ---------------------------


class LedgerTransaction(Base):
    __tablename__ = "ledger_transactions"

    id: Mapped[int] = mapped_column(_PK, primary_key=True, autoincrement=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, server_default=text("'INR'"))
    merchant: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String, nullable=False)
    transaction_type: Mapped[str] = mapped_column(String, nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    source_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    bank_name: Mapped[str | None] = mapped_column(String, nullable=True)
    account_last4: Mapped[str | None] = mapped_column(String(8), nullable=True)
    balance_after: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    # Unique across deleted rows too: a soft-deleted entry keeps suppressing
    # re-imports of the same notification.
    dedup_hash: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    cashback_percent: Mapped[Decimal | None] = mapped_column(Numeric(5, 2), nullable=True)
    cashback_amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    subscription_id: Mapped[int | None] = mapped_column(
        _PK, ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True
    )
    is_recurring: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=sa_expr.false()
    )
    is_deleted: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=sa_expr.false()
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )

    __table_args__ = (
        CheckConstraint(_TX_TYPES_CHECK, name="ck_ledger_tx_type"),
        CheckConstraint(
            "cashback_percent IS NULL OR cashback_percent > 0",
            name="ck_ledger_tx_cashback_percent",
        ),
        Index("ix_ledger_tx_account", "bank_name", "account_last4"),
        Index("ix_ledger_tx_occurred_at", "occurred_at"),
        Index("ix_ledger_tx_category", "category"),
    )


# ---------------------------
# Queue: pending_transactions
# ---------------------------


class PendingTransaction(Base):
    __tablename__ = "pending_transactions"

    id: Mapped[int] = mapped_column(_PK, primary_key=True, autoincrement=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, server_default=text("'INR'"))
    merchant: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String, nullable=False)
    transaction_type: Mapped[str] = mapped_column(String, nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    source_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    bank_name: Mapped[str | None] = mapped_column(String, nullable=True)
    account_last4: Mapped[str | None] = mapped_column(String(8), nullable=True)
    balance_after: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    dedup_hash: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    status: Mapped[str] = mapped_column(
        String, nullable=False, server_default=text("'PENDING'")
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Ledger row created when the entry was confirmed or auto-saved.
    transaction_id: Mapped[int | None] = mapped_column(
        _PK, ForeignKey("ledger_transactions.id", ondelete="SET NULL"), nullable=True
    )

    __table_args__ = (
        CheckConstraint(_TX_TYPES_CHECK, name="ck_pending_tx_type"),
        CheckConstraint(
            "status in ('PENDING','CONFIRMED','REJECTED','AUTO_SAVED')",
            name="ck_pending_tx_status",
        ),
        Index("ix_pending_tx_status_expires", "status", "expires_at"),
    )


# ---------------------------
# Rules and their audit trail
# ---------------------------


class Rule(Base):
    __tablename__ = "rules"

    id: Mapped[int] = mapped_column(_PK, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("100"))
    # List of predicate objects; all must match.
    conditions: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False)
    action_type: Mapped[str] = mapped_column(String, nullable=False)
    action_field: Mapped[str | None] = mapped_column(String, nullable=True)
    action_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Restrict the rule to one transaction type; NULL applies to all.
    transaction_type: Mapped[str | None] = mapped_column(String, nullable=True)
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=sa_expr.true()
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )

    __table_args__ = (
        CheckConstraint("action_type in ('BLOCK','SET_FIELD')", name="ck_rules_action_type"),
        CheckConstraint(
            "action_type = 'BLOCK' OR "
            "action_field in ('category','merchant','transaction_type')",
            name="ck_rules_action_field",
        ),
    )


class RuleApplication(Base):
    __tablename__ = "rule_applications"

    id: Mapped[int] = mapped_column(_PK, primary_key=True, autoincrement=True)
    rule_id: Mapped[int | None] = mapped_column(
        _PK, ForeignKey("rules.id", ondelete="SET NULL"), nullable=True
    )
    # Denormalized so the trail survives rule renames and deletions.
    rule_name: Mapped[str] = mapped_column(String, nullable=False)
    transaction_id: Mapped[int] = mapped_column(
        _PK, ForeignKey("ledger_transactions.id", ondelete="CASCADE"), nullable=False
    )
    fields_modified: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    applied_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("ix_rule_applications_transaction", "transaction_id"),)


# ---------------------------
# Reference: merchant_mappings
# ---------------------------


class MerchantMapping(Base):
    __tablename__ = "merchant_mappings"

    id: Mapped[int] = mapped_column(_PK, primary_key=True, autoincrement=True)
    merchant_name: Mapped[str] = mapped_column(Text, nullable=False)
    # Casefolded, whitespace-collapsed form of ``merchant_name``.
    merchant_key: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    category: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )


# ---------------------------
# History: account_balances
# ---------------------------


class AccountBalance(Base):
    __tablename__ = "account_balances"

    id: Mapped[int] = mapped_column(_PK, primary_key=True, autoincrement=True)
    bank_name: Mapped[str] = mapped_column(String, nullable=False)
    account_last4: Mapped[str] = mapped_column(String(8), nullable=False)
    balance: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    credit_limit: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    default_cashback_percent: Mapped[Decimal | None] = mapped_column(
        Numeric(5, 2), nullable=True
    )
    is_credit_card: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=sa_expr.false()
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False, server_default=text("'INR'"))
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    transaction_id: Mapped[int | None] = mapped_column(
        _PK, ForeignKey("ledger_transactions.id", ondelete="SET NULL"), nullable=True
    )
    source_type: Mapped[str] = mapped_column(
        String, nullable=False, server_default=text("'MANUAL'")
    )
    source_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )

    __table_args__ = (
        CheckConstraint(
            "source_type in ('TRANSACTION','MANUAL','SETTINGS')",
            name="ck_account_balances_source_type",
        ),
        Index("ix_account_balances_account_ts", "bank_name", "account_last4", "timestamp"),
    )


__all__ = [
    "Base",
    "AccountBalance",
    "LedgerTransaction",
    "MerchantMapping",
    "PendingTransaction",
    "Rule",
    "RuleApplication",
    "Subscription",
]
