"""
Credit card settlement matching.
Reclassifies bank withdrawals that pay off credit cards as transfers.
"""

from typing import Optional
import logging

from ..config import BillingCycleRule, StaticSettlementRule
from ..context import RunContext
from ..ledger.accounts import AccountDirectory
from ..ledger.client import LedgerClient
from ..models.transaction import Account, SettlementResult, TransactionRecord
from .strategies import (
    BillingCycleSettlement,
    ReferenceSettlement,
    SettlementPass,
    StaticRuleSettlement,
    billing_cycle_tag,
)

logger = logging.getLogger(__name__)


class CreditCardSettlementMatcher:
    """
    Runs the settlement passes in order: reference, billing cycle, static rules.

    Each pass only sees the records left over by the previous one.
    """

    def __init__(
        self,
        accounts: dict[str, Account],
        ledger: LedgerClient,
        context: RunContext,
        billing_rules: Optional[list[BillingCycleRule]] = None,
        static_rules: Optional[list[StaticSettlementRule]] = None,
        directory: Optional[AccountDirectory] = None,
    ):
        """
        Initialize the matcher.

        Args:
            accounts: Account number -> account
            ledger: Ledger collaborator, used for billing cycle lookups
            context: Per-run caches; its dry-run flag prevents account creation
            billing_rules: Billing cycle settlement rules
            static_rules: Static settlement rules
            directory: Account directory used to find or create card accounts
        """
        self.accounts = accounts
        self.ledger = ledger
        self.context = context
        self.billing_rules = billing_rules or []
        self.static_rules = static_rules or []
        self.directory = directory

    def card_account_ids(self) -> set[str]:
        return {a.id for a in self.accounts.values() if a.is_credit_card}

    def tag_billing_cycles(self, records: list[TransactionRecord]) -> dict[str, list[TransactionRecord]]:
        """
        Tag records touching a credit card with their billing cycle.

        The tag is `{accountId}_{processDate}`, using the source account, or
        the destination when there is no source.

        Returns:
            Billing cycle tag -> records of this batch carrying it
        """
        card_ids = self.card_account_ids()
        cycles: dict[str, list[TransactionRecord]] = {}
        for record in records:
            if record.process_date is None:
                continue
            if record.source_account_id not in card_ids and record.destination_account_id not in card_ids:
                continue
            account_id = record.source_account_id or record.destination_account_id
            tag = billing_cycle_tag(account_id, record.process_date)
            record.tags.add(tag)
            cycles.setdefault(tag, []).append(record)
        return cycles

    def passes(
        self, cycles: Optional[dict[str, list[TransactionRecord]]] = None
    ) -> list[SettlementPass]:
        passes: list[SettlementPass] = [ReferenceSettlement(self.accounts)]
        if self.billing_rules:
            passes.append(
                BillingCycleSettlement(
                    self.billing_rules, self.accounts, self.ledger, self.context, cycles
                )
            )
        if self.static_rules:
            passes.append(StaticRuleSettlement(self.static_rules, self.accounts, self.directory))
        return passes

    async def run(self, records: list[TransactionRecord]) -> SettlementResult:
        """
        Tag billing cycles and run every configured pass.

        Args:
            records: Normalized records

        Returns:
            Settlement transfers and the records left untouched
        """
        cycles = self.tag_billing_cycles(records)
        logger.debug(
            f"Tagged {sum(len(tagged) for tagged in cycles.values())} credit card "
            f"transactions with {len(cycles)} billing cycles"
        )

        result = SettlementResult(remaining=list(records))
        for settlement_pass in self.passes(cycles):
            pass_result = await settlement_pass.run(result.remaining)
            result.transfers.extend(pass_result.transfers)
            result.remaining = pass_result.remaining

        logger.info(
            f"Credit card settlement: {len(result.transfers)} transfers, "
            f"{len(result.remaining)} remaining"
        )
        return result
