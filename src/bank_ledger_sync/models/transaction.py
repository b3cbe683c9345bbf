"""Data models for ledger transactions, accounts and reconciliation results."""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Optional


class TransactionType(Enum):
    """Ledger transaction type. Direction is encoded here, never in the amount sign."""

    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    TRANSFER = "transfer"


class AccountKind(Enum):
    """Kind of a source account."""

    BANK = "bank"
    CREDIT_CARD = "credit-card"


@dataclass
class Account:
    """A source account mapped onto its ledger counterpart."""

    # Ledger-assigned identifier
    id: str

    kind: AccountKind

    # Source type the account was scraped with (e.g. "leumi", "isracard")
    type: str

    # Natural account number or name used to find it in the ledger
    number: str = ""

    @property
    def is_credit_card(self) -> bool:
        return self.kind is AccountKind.CREDIT_CARD


@dataclass
class TransactionRecord:
    """
    Canonical transaction representation shared by all reconciliation stages.

    Records coming from sources and records read back from the ledger are
    both turned into this model, so matching and planning never look at
    source or wire specific shapes.
    """

    type: Optional[TransactionType]
    date: Optional[date]

    # Always non-negative once normalized
    amount: Optional[Decimal]

    external_id: Optional[str]

    description: str = ""
    notes: Optional[str] = None
    source_account_id: Optional[str] = None
    destination_account_id: Optional[str] = None
    currency_code: Optional[str] = None
    category_name: Optional[str] = None
    internal_reference: Optional[str] = None
    tags: set[str] = field(default_factory=set)

    # Billing cycle date attributed by the card issuer
    process_date: Optional[date] = None

    # Set only for records read back from the ledger (backfill)
    ledger_id: Optional[str] = None

    @property
    def is_transfer(self) -> bool:
        return self.type is TransactionType.TRANSFER

    @property
    def is_deposit(self) -> bool:
        return self.type is TransactionType.DEPOSIT

    @property
    def is_withdrawal(self) -> bool:
        return self.type is TransactionType.WITHDRAWAL

    @property
    def signed_amount(self) -> Decimal:
        """Amount with the sign implied by the type (deposit positive, anything else negative)."""
        amount = self.amount or Decimal("0")
        return amount if self.is_deposit else -amount

    def missing_fields(self) -> list[str]:
        """Names of the fields required for transfer matching that are not set."""
        missing = []
        if self.date is None:
            missing.append("date")
        if self.type is None:
            missing.append("type")
        if self.amount is None:
            missing.append("amount")
        if not self.external_id:
            missing.append("external_id")
        return missing

    def to_ledger_payload(self) -> dict[str, Any]:
        """Render the record as a single ledger transaction split."""
        payload: dict[str, Any] = {
            "type": self.type.value if self.type else None,
            "date": self.date.isoformat() if self.date else None,
            "amount": str(self.amount) if self.amount is not None else None,
            "description": self.description or "(no description)",
            "notes": self.notes,
            "source_id": self.source_account_id,
            "destination_id": self.destination_account_id,
            "external_id": self.external_id,
            "currency_code": self.currency_code,
            "category_name": self.category_name,
            "internal_reference": self.internal_reference,
            "tags": sorted(self.tags) if self.tags else None,
            "process_date": self.process_date.isoformat() if self.process_date else None,
        }
        return {key: value for key, value in payload.items() if value is not None}


@dataclass
class ExistingLedgerEntry:
    """Read-only snapshot of a transaction already stored in the ledger."""

    id: str
    type: TransactionType
    external_id: str
    source_account_id: Optional[str] = None
    destination_account_id: Optional[str] = None
    description: str = ""
    date: Optional[date] = None
    amount: Optional[Decimal] = None
    notes: Optional[str] = None


@dataclass
class DuplicatePair:
    """A deposit/withdrawal pair already reconciled by an existing ledger transfer."""

    deposit: TransactionRecord
    withdrawal: TransactionRecord
    existing_transfer: TransactionRecord


@dataclass
class SettlementResult:
    """Outcome of a credit card settlement pass."""

    transfers: list[TransactionRecord] = field(default_factory=list)
    remaining: list[TransactionRecord] = field(default_factory=list)

    @property
    def all(self) -> list[TransactionRecord]:
        return self.transfers + self.remaining


@dataclass
class TransferDetectionResult:
    """Outcome of deposit/withdrawal pair matching."""

    transfers: list[TransactionRecord] = field(default_factory=list)
    duplicates_of_existing: list[DuplicatePair] = field(default_factory=list)
    remaining: list[TransactionRecord] = field(default_factory=list)

    # Transfer external id -> (withdrawal, deposit) it replaces
    legs: dict[str, tuple[TransactionRecord, TransactionRecord]] = field(default_factory=dict)

    @property
    def all(self) -> list[TransactionRecord]:
        return self.transfers + self.remaining


@dataclass
class ReconciliationPlan:
    """Diff between the classified records and the ledger snapshot."""

    to_create: list[TransactionRecord] = field(default_factory=list)
    to_type_update: list[TransactionRecord] = field(default_factory=list)
    to_add_destination: list[TransactionRecord] = field(default_factory=list)
    to_field_update: list[TransactionRecord] = field(default_factory=list)
    suppressed_duplicates: list[DuplicatePair] = field(default_factory=list)

    # Records dropped because an earlier record had the same external id
    duplicates_removed: int = 0
    # Records left out because they have no external id
    unidentified: int = 0

    @property
    def is_empty(self) -> bool:
        """True when applying the plan would not write anything."""
        return not (
            self.to_create
            or self.to_type_update
            or self.to_add_destination
            or self.to_field_update
            or self.suppressed_duplicates
        )


@dataclass
class SyncReport:
    """Counters produced by applying a plan."""

    created: int = 0
    updated: int = 0
    deleted: int = 0
    failed: int = 0
    failures: list[tuple[str, str, str]] = field(default_factory=list)

    def record_failure(self, action: str, external_id: Optional[str], error: Exception) -> None:
        self.failed += 1
        self.failures.append((action, external_id or "-", str(error)))
