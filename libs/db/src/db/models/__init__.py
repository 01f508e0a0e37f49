"""Shared SQLAlchemy models registry for the workspace database.

Currently includes the ledger domain models used by ``ledger_pipeline``.
"""

from .ledger import (
    AccountBalance,
    Base,
    LedgerTransaction,
    MerchantMapping,
    PendingTransaction,
    Rule,
    RuleApplication,
    Subscription,
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
