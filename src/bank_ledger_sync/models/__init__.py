"""Data models for reconciliation."""

from .transaction import (
    Account,
    AccountKind,
    DuplicatePair,
    ExistingLedgerEntry,
    ReconciliationPlan,
    SettlementResult,
    SyncReport,
    TransactionRecord,
    TransactionType,
    TransferDetectionResult,
)
from .source import (
    ScrapedAccount,
    ScrapedTransaction,
    ScrapeResult,
    SourceAccountBatch,
    SourceUser,
)

__all__ = [
    "Account",
    "AccountKind",
    "DuplicatePair",
    "ExistingLedgerEntry",
    "ReconciliationPlan",
    "SettlementResult",
    "SyncReport",
    "TransactionRecord",
    "TransactionType",
    "TransferDetectionResult",
    "ScrapedAccount",
    "ScrapedTransaction",
    "ScrapeResult",
    "SourceAccountBatch",
    "SourceUser",
]
