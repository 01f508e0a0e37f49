"""Recurring-payment detection.

A draft matches a subscription when all of these hold:

- the subscription is active;
- its ``merchant_pattern`` (normalized like merchant keys) is contained in the
  draft's merchant key;
- the amount is within ``amount_tolerance`` of ``expected_amount``, or within
  10% of it when no absolute tolerance is stored;
- the subscription has no category, or the same category as the draft
  (case-insensitive).

The lowest subscription id wins when several match. Matching never changes
the amount or the category.
"""

from __future__ import annotations

from collections.abc import Iterable
from decimal import Decimal

from db.models.ledger import Subscription
from sqlalchemy import select
from sqlalchemy.orm import Session

from .logging_setup import get_logger
from .models import TransactionDraft
from .normalizers import merchant_key

_logger = get_logger("ledger_pipeline.subscriptions")

DEFAULT_RELATIVE_TOLERANCE = Decimal("0.10")


def amount_within_tolerance(amount: Decimal, sub: Subscription) -> bool:
    expected = Decimal(str(sub.expected_amount))
    if sub.amount_tolerance is not None:
        window = abs(Decimal(str(sub.amount_tolerance)))
    else:
        window = abs(expected) * DEFAULT_RELATIVE_TOLERANCE
    return abs(amount - expected) <= window


def subscription_matches(draft: TransactionDraft, sub: Subscription) -> bool:
    pattern = merchant_key(sub.merchant_pattern)
    if not pattern or pattern not in merchant_key(draft.merchant):
        return False
    if not amount_within_tolerance(draft.amount, sub):
        return False
    if sub.category and sub.category.strip().casefold() != draft.category.strip().casefold():
        return False
    return True


def load_active_subscriptions(session: Session) -> list[Subscription]:
    stmt = select(Subscription).where(Subscription.is_active.is_(True)).order_by(Subscription.id)
    return list(session.execute(stmt).scalars().all())


def match_subscription(
    draft: TransactionDraft, subscriptions: Iterable[Subscription]
) -> Subscription | None:
    """Return the first subscription (by id) matching ``draft``, if any."""

    for sub in sorted(subscriptions, key=lambda s: s.id or 0):
        if sub.is_active is False:
            continue
        if subscription_matches(draft, sub):
            _logger.debug("Draft %s matched subscription %r", draft.dedup_hash[:12], sub.name)
            return sub
    return None


__all__ = [
    "DEFAULT_RELATIVE_TOLERANCE",
    "amount_within_tolerance",
    "load_active_subscriptions",
    "match_subscription",
    "subscription_matches",
]
