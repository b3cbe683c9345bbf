"""
Classification engine.
Turns normalized records into the transactions that belong in the ledger:
credit card settlements first, then deposit/withdrawal transfer pairs.
"""

from datetime import datetime
from typing import Optional
import logging

from ..config import SyncConfig
from ..context import RunContext
from ..ledger.accounts import AccountDirectory
from ..ledger.client import LedgerClient
from ..models.transaction import Account, DuplicatePair, TransactionRecord
from .settlement import CreditCardSettlementMatcher
from .transfers import TransferPairMatcher

logger = logging.getLogger(__name__)


class ReconciliationEngine:
    """
    Orchestrates the matching stages of a sync run.

    Settlement transfers are taken out before pair detection, so a card
    payment is never paired with an unrelated deposit.
    """

    def __init__(
        self,
        config: SyncConfig,
        ledger: LedgerClient,
        context: RunContext,
        accounts: dict[str, Account],
        directory: Optional[AccountDirectory] = None,
        date_tolerance: Optional[int] = None,
    ):
        """
        Initialize the engine.

        Args:
            config: Application configuration
            ledger: Ledger collaborator
            context: Per-run caches
            accounts: Account number -> account
            directory: Account directory for card lookups
            date_tolerance: Overrides the configured transfer date tolerance
        """
        self.config = config
        self.settlement = CreditCardSettlementMatcher(
            accounts, ledger, context, config.billing_cycle_rules, config.static_rules, directory
        )
        tolerance = config.transfer_date_tolerance if date_tolerance is None else date_tolerance
        self.transfers = TransferPairMatcher(date_tolerance=tolerance)

    async def classify(
        self,
        records: list[TransactionRecord],
        existing_transfers: list[TransactionRecord],
    ) -> tuple[list[TransactionRecord], list[DuplicatePair]]:
        """
        Classify records.

        Args:
            records: Normalized records of this run
            existing_transfers: Transfers already stored in the ledger

        Returns:
            Tuple of (records to reconcile, pairs duplicating existing transfers)
        """
        start_time = datetime.now()
        logger.info(f"Starting classification of {len(records)} transactions")

        settled = await self.settlement.run(records)

        if not self.config.auto_detect_transfers:
            logger.debug("Auto-detect transfers is disabled")
            return settled.all, []

        detected = self.transfers.detect(settled.remaining, existing_transfers)
        if detected.duplicates_of_existing:
            logger.info(
                f"Found {len(detected.duplicates_of_existing)} deposit/withdrawal pairs "
                f"duplicating existing transfers; they will not be imported"
            )

        classified = settled.transfers + detected.all
        elapsed = (datetime.now() - start_time).total_seconds()
        logger.info(
            f"Classification complete in {elapsed:.2f}s: "
            f"{len(settled.transfers)} card settlements, {len(detected.transfers)} transfers, "
            f"{len(detected.remaining)} other transactions"
        )
        return classified, detected.duplicates_of_existing
