"""Per-run state shared by the reconciliation stages."""

from dataclasses import dataclass, field
from decimal import Decimal


@dataclass
class RunContext:
    """
    Lookup caches for a single sync run.

    A new context is created for every run and dropped when the run ends, so
    nothing learned from the ledger in one run leaks into the next.
    """

    dry_run: bool = False

    # Merchant name -> expense account id
    merchant_accounts: dict[str, str] = field(default_factory=dict)

    # Billing cycle tag -> net settlement amount
    settlement_amounts: dict[str, Decimal] = field(default_factory=dict)

    # Account number -> account id, for accounts created during this run
    created_accounts: dict[str, str] = field(default_factory=dict)
