"""Categorization: default categories and the merchant-to-category mapping.

Two layers decide a transaction's category before rules run:

1. :func:`default_category`: a keyword heuristic applied once, when a parsed
   notification is turned into a draft or a pending entry.
2. The user-maintained ``merchant_mappings`` table, consulted by the
   processor (step 2) unless the caller asks to preserve a user-chosen
   category.
"""

from __future__ import annotations

from db.models.ledger import MerchantMapping
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .logging_setup import get_logger
from .models import TransactionType
from .normalizers import merchant_key, utcnow

_logger = get_logger("ledger_pipeline.categorize")

DEFAULT_EXPENSE_CATEGORY = "Others"
DEFAULT_INCOME_CATEGORY = "Income"
DEFAULT_TRANSFER_CATEGORY = "Transfers"

# Ordered: the first keyword contained in the merchant key wins.
_INCOME_KEYWORDS: tuple[tuple[str, str], ...] = (
    ("salary", "Salary"),
    ("refund", "Refunds"),
    ("cashback", "Cashback"),
    ("interest", "Interest"),
    ("dividend", "Dividends"),
)

_EXPENSE_KEYWORDS: tuple[tuple[str, str], ...] = (
    ("swiggy", "Food & Dining"),
    ("zomato", "Food & Dining"),
    ("restaurant", "Food & Dining"),
    ("cafe", "Food & Dining"),
    ("amazon", "Shopping"),
    ("flipkart", "Shopping"),
    ("myntra", "Shopping"),
    ("uber", "Transportation"),
    ("ola", "Transportation"),
    ("irctc", "Travel"),
    ("makemytrip", "Travel"),
    ("netflix", "Entertainment"),
    ("spotify", "Entertainment"),
    ("hotstar", "Entertainment"),
    ("bigbasket", "Groceries"),
    ("blinkit", "Groceries"),
    ("zepto", "Groceries"),
    ("airtel", "Bills & Utilities"),
    ("jio", "Bills & Utilities"),
    ("electricity", "Bills & Utilities"),
    ("pharmacy", "Healthcare"),
    ("hospital", "Healthcare"),
    ("petrol", "Fuel"),
    ("fuel", "Fuel"),
)


def default_category(merchant: str | None, transaction_type: TransactionType) -> str:
    """Heuristic category for a freshly parsed transaction."""

    key = merchant_key(merchant)
    if transaction_type is TransactionType.INCOME:
        for kw, cat in _INCOME_KEYWORDS:
            if kw in key:
                return cat
        return DEFAULT_INCOME_CATEGORY
    if transaction_type is TransactionType.TRANSFER:
        return DEFAULT_TRANSFER_CATEGORY
    tokens = key.split()
    squashed = key.replace(" ", "")
    for kw, cat in _EXPENSE_KEYWORDS:
        # Short keywords must match a whole token ("ola" is not "motorola").
        if kw in tokens or (len(kw) >= 5 and kw in squashed):
            return cat
    return DEFAULT_EXPENSE_CATEGORY


def lookup_category(session: Session, merchant: str | None) -> str | None:
    """Return the mapped category for ``merchant`` or ``None``."""

    key = merchant_key(merchant)
    if not key:
        return None
    return session.execute(
        select(MerchantMapping.category).where(MerchantMapping.merchant_key == key)
    ).scalar_one_or_none()


def set_merchant_category(session: Session, *, merchant: str, category: str) -> MerchantMapping:
    """Create or update the mapping for ``merchant`` (idempotent).

    The caller owns the transaction. A concurrent insert of the same key is
    resolved by updating the row that won the race.
    """

    key = merchant_key(merchant)
    cat = " ".join(category.split())
    if not key:
        raise ValueError("merchant must be non-empty")
    if not cat:
        raise ValueError("category must be non-empty")

    existing = session.execute(
        select(MerchantMapping).where(MerchantMapping.merchant_key == key)
    ).scalar_one_or_none()
    if existing is None:
        row = MerchantMapping(merchant_name=merchant.strip(), merchant_key=key, category=cat)
        try:
            with session.begin_nested():
                session.add(row)
        except IntegrityError:
            existing = session.execute(
                select(MerchantMapping).where(MerchantMapping.merchant_key == key)
            ).scalar_one()
        else:
            _logger.debug("Added merchant mapping %r -> %r", key, cat)
            return row

    existing.category = cat
    existing.merchant_name = merchant.strip()
    existing.updated_at = utcnow()
    session.flush()
    _logger.debug("Updated merchant mapping %r -> %r", key, cat)
    return existing


__all__ = [
    "DEFAULT_EXPENSE_CATEGORY",
    "DEFAULT_INCOME_CATEGORY",
    "DEFAULT_TRANSFER_CATEGORY",
    "default_category",
    "lookup_category",
    "set_merchant_category",
]
