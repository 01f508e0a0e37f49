"""Public interface for the ``ledger_pipeline`` package.

Turns parsed bank-notification transactions into ledger rows through one
pipeline shared by direct saves, user confirmations and expiry auto-saves.
This module only re-exports the stable import surface; the session-owning
entry points live in :mod:`ledger_pipeline.api`.
"""

from .models import (
    CashbackCalculated,
    CashbackNotApplicable,
    InvalidPercent,
    NoCashbackConfigured,
    ParsedTransaction,
    PendingEdits,
    PendingStatus,
    ProcessBlocked,
    ProcessConfig,
    ProcessDuplicate,
    ProcessError,
    ProcessSuccess,
    Processed,
    QueueDuplicate,
    Queued,
    RetroactiveSuccess,
    RuleActionType,
    Stale,
    SweepReport,
    TransactionDraft,
    TransactionType,
)
from .pending import (
    auto_save_pending,
    confirm_all_pending,
    confirm_pending,
    queue_pending,
    reject_pending,
    sweep_expired,
)
from .processor import process_and_save, save_parsed

__all__ = [
    # Pipeline and state machine
    "process_and_save",
    "save_parsed",
    "queue_pending",
    "confirm_pending",
    "confirm_all_pending",
    "reject_pending",
    "auto_save_pending",
    "sweep_expired",
    # Models / results
    "ParsedTransaction",
    "PendingEdits",
    "TransactionDraft",
    "ProcessConfig",
    "TransactionType",
    "PendingStatus",
    "RuleActionType",
    "ProcessSuccess",
    "ProcessBlocked",
    "ProcessDuplicate",
    "ProcessError",
    "CashbackCalculated",
    "NoCashbackConfigured",
    "CashbackNotApplicable",
    "RetroactiveSuccess",
    "InvalidPercent",
    "Queued",
    "QueueDuplicate",
    "Processed",
    "Stale",
    "SweepReport",
]
