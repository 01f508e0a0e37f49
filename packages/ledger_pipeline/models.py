"""Data contracts for ``ledger_pipeline``.

Three groups live here:

- Inputs validated with pydantic (:class:`ParsedTransaction` from the
  notification parser, :class:`PendingEdits` from the confirmation UI).
- The in-flight :class:`TransactionDraft`, an immutable value the processor
  copies step by step (merchant mapping, rules, subscription, cashback)
  before it becomes a ``ledger_transactions`` row.
- Tagged result variants. Expected outcomes (duplicate, blocked, stale) are
  values that callers branch on; they are never raised.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .config import default_currency
from .errors import ValidationError

# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class TransactionType(StrEnum):
    INCOME = "INCOME"
    EXPENSE = "EXPENSE"
    TRANSFER = "TRANSFER"


class PendingStatus(StrEnum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    REJECTED = "REJECTED"
    AUTO_SAVED = "AUTO_SAVED"

    @property
    def is_terminal(self) -> bool:
        return self is not PendingStatus.PENDING


class RuleActionType(StrEnum):
    BLOCK = "BLOCK"
    SET_FIELD = "SET_FIELD"


def _as_utc(value: datetime) -> datetime:
    # Naive timestamps are taken to be UTC already.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------


class ParsedTransaction(BaseModel):
    """A transaction extracted from one bank notification.

    Produced by the (external) notification parser and consumed once. When
    the parser already computed a dedup hash it passes it as
    ``transaction_hash``; otherwise one is derived from the distinguishing
    fields (see :func:`ledger_pipeline.normalizers.compute_dedup_hash`).
    """

    model_config = ConfigDict(frozen=True, extra="forbid", str_strip_whitespace=True)

    amount: Decimal = Field(gt=0)
    currency: str = Field(default_factory=default_currency, min_length=3, max_length=3)
    merchant: str | None = None
    transaction_type: TransactionType
    timestamp: datetime
    bank_name: str = Field(min_length=1)
    account_last4: str | None = None
    source_text: str
    balance_after: Decimal | None = None
    transaction_hash: str | None = None

    @field_validator("timestamp")
    @classmethod
    def _timestamp_utc(cls, v: datetime) -> datetime:
        return _as_utc(v)

    @field_validator("currency")
    @classmethod
    def _currency_upper(cls, v: str) -> str:
        return v.upper()

    @field_validator("merchant", "account_last4", "transaction_hash")
    @classmethod
    def _blank_to_none(cls, v: str | None) -> str | None:
        return v if v else None


class PendingEdits(BaseModel):
    """User edits applied to a pending entry at confirmation time.

    Every field is optional; ``None`` keeps the queued value.
    """

    model_config = ConfigDict(frozen=True, extra="forbid", str_strip_whitespace=True)

    amount: Decimal | None = Field(default=None, gt=0)
    merchant: str | None = None
    category: str | None = None
    transaction_type: TransactionType | None = None
    occurred_at: datetime | None = None
    description: str | None = None

    @field_validator("occurred_at")
    @classmethod
    def _occurred_at_utc(cls, v: datetime | None) -> datetime | None:
        return _as_utc(v) if v is not None else None

    @field_validator("merchant", "category")
    @classmethod
    def _non_empty(cls, v: str | None) -> str | None:
        if v is not None and not v:
            raise ValueError("must be non-empty when provided")
        return v


# ---------------------------------------------------------------------------
# In-flight draft and processing options
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class TransactionDraft:
    """Transaction fields on their way into the ledger."""

    amount: Decimal
    currency: str
    merchant: str
    category: str
    transaction_type: TransactionType
    occurred_at: datetime
    dedup_hash: str
    bank_name: str | None = None
    account_last4: str | None = None
    balance_after: Decimal | None = None
    description: str | None = None
    source_text: str | None = None
    cashback_percent: Decimal | None = None
    cashback_amount: Decimal | None = None
    subscription_id: int | None = None
    is_recurring: bool = False

    def with_changes(self, **changes: Any) -> TransactionDraft:
        return dataclasses.replace(self, **changes)


@dataclass(frozen=True, slots=True)
class ProcessConfig:
    """Options for one run of the processing pipeline.

    Attributes
    ----------
    skip_duplicate_check:
        Skip the pre-insert hash lookup. The unique index still applies, so a
        conflicting insert is reported as a duplicate either way.
    preserve_user_category:
        Keep the draft's category instead of the merchant mapping.
    custom_cashback_percent:
        Cashback rate for this one transaction. Must be positive.
    """

    skip_duplicate_check: bool = False
    preserve_user_category: bool = False
    custom_cashback_percent: Decimal | None = None

    def __post_init__(self) -> None:
        pct = self.custom_cashback_percent
        if pct is None:
            return
        if isinstance(pct, bool) or not isinstance(pct, (Decimal, int, float, str)):
            raise ValidationError("custom_cashback_percent must be a number")
        try:
            value = Decimal(str(pct))
        except ArithmeticError as exc:
            raise ValidationError(f"invalid custom_cashback_percent: {pct!r}") from exc
        if not value.is_finite() or value <= 0:
            raise ValidationError("custom_cashback_percent must be greater than 0")
        object.__setattr__(self, "custom_cashback_percent", value)


# ---------------------------------------------------------------------------
# Results: processing pipeline
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ProcessSuccess:
    transaction_id: int
    cashback_amount: Decimal | None = None
    subscription_matched: bool = False
    rules_applied: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class ProcessBlocked:
    rule_name: str
    reason: str


@dataclass(frozen=True, slots=True)
class ProcessDuplicate:
    """The transaction already exists in the ledger or the pending queue.

    ``existing_transaction_id`` is ``None`` only when the match is a
    still-pending entry, identified by ``pending_id``.
    """

    existing_transaction_id: int | None
    reason: str
    pending_id: int | None = None


@dataclass(frozen=True, slots=True)
class ProcessError:
    message: str


type ProcessResult = ProcessSuccess | ProcessBlocked | ProcessDuplicate | ProcessError


# ---------------------------------------------------------------------------
# Results: cashback
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class CashbackCalculated:
    percent: Decimal
    amount: Decimal


@dataclass(frozen=True, slots=True)
class NoCashbackConfigured:
    pass


@dataclass(frozen=True, slots=True)
class CashbackNotApplicable:
    reason: str


type CashbackResult = CashbackCalculated | NoCashbackConfigured | CashbackNotApplicable


@dataclass(frozen=True, slots=True)
class RetroactiveSuccess:
    updated_count: int


@dataclass(frozen=True, slots=True)
class InvalidPercent:
    percent: Decimal | None = None


type RetroactiveResult = RetroactiveSuccess | InvalidPercent


# ---------------------------------------------------------------------------
# Results: pending queue and state machine
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Queued:
    pending_id: int
    expires_at: datetime


@dataclass(frozen=True, slots=True)
class QueueDuplicate:
    reason: str
    existing_transaction_id: int | None = None
    pending_id: int | None = None


type QueueResult = Queued | QueueDuplicate


@dataclass(frozen=True, slots=True)
class Processed:
    """A pending entry reached ``status``.

    ``result`` is the pipeline outcome for confirm/auto-save and ``None`` for
    a plain rejection.
    """

    pending_id: int
    status: PendingStatus
    result: ProcessResult | None = None


@dataclass(frozen=True, slots=True)
class Stale:
    """The entry was already terminal (or missing); nothing changed."""

    pending_id: int
    status: PendingStatus | None


type TransitionResult = Processed | Stale


@dataclass(slots=True)
class SweepReport:
    examined: int = 0
    saved: int = 0
    blocked: int = 0
    duplicates: int = 0
    stale: int = 0
    failed: int = 0
    pending_ids: list[int] = field(default_factory=list)


__all__ = [
    "CashbackCalculated",
    "CashbackNotApplicable",
    "CashbackResult",
    "InvalidPercent",
    "NoCashbackConfigured",
    "ParsedTransaction",
    "PendingEdits",
    "PendingStatus",
    "ProcessBlocked",
    "ProcessConfig",
    "ProcessDuplicate",
    "ProcessError",
    "ProcessResult",
    "ProcessSuccess",
    "Processed",
    "QueueDuplicate",
    "QueueResult",
    "Queued",
    "RetroactiveResult",
    "RetroactiveSuccess",
    "RuleActionType",
    "Stale",
    "SweepReport",
    "TransactionDraft",
    "TransactionType",
]
