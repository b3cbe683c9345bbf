"""
Settlement passes for credit card payments.
Each pass recognizes one way a bank withdrawal can pay off a credit card.
"""

from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional
import logging

import httpx

from ..config import BillingCycleRule, StaticSettlementRule
from ..context import RunContext
from ..identity import first_split, parse_ledger_amount
from ..ledger.accounts import AccountDirectory
from ..ledger.client import LedgerClient
from ..models.transaction import Account, SettlementResult, TransactionRecord, TransactionType
from ..utils.exceptions import LedgerError

logger = logging.getLogger(__name__)

AUTO_DETECTED_NOTE = "Credit Card Payment (auto-detected)"
CENT = Decimal("0.01")


def billing_cycle_tag(account_id: str, process_date) -> str:
    """Tag grouping a card's transactions of one billing cycle."""
    return f"{account_id}_{process_date.isoformat()}"


def as_transfer(record: TransactionRecord, card_account_id: str) -> TransactionRecord:
    """Copy of a withdrawal reclassified as a transfer to a card account."""
    return replace(
        record,
        type=TransactionType.TRANSFER,
        destination_account_id=card_account_id,
        tags=set(record.tags),
    )


class SettlementPass(ABC):
    """Abstract base class for settlement passes."""

    name: str = "settlement"

    @abstractmethod
    async def settle(self, record: TransactionRecord) -> Optional[TransactionRecord]:
        """
        Try to reclassify a record as a credit card settlement.

        Args:
            record: Candidate record

        Returns:
            The transfer replacing the record, or None to leave it untouched
        """
        pass

    async def run(self, records: list[TransactionRecord]) -> SettlementResult:
        """
        Apply the pass to every record, in order.

        Lookup failures only affect the record being settled; it is kept
        as-is in remaining. So is a record the pass would turn into a
        transfer from an account to itself.
        """
        result = SettlementResult()
        for record in records:
            if not record.is_withdrawal:
                result.remaining.append(record)
                continue
            try:
                transfer = await self.settle(record)
            except (LedgerError, httpx.HTTPError) as e:
                logger.warning(
                    f"{self.name} settlement lookup failed for {record.external_id}: {e}"
                )
                transfer = None

            if transfer is not None and transfer.destination_account_id == record.source_account_id:
                logger.debug(
                    f"{self.name} settlement of {record.external_id} points back at its own "
                    f"account {record.source_account_id}, skipping"
                )
                transfer = None

            if transfer is None:
                result.remaining.append(record)
            else:
                result.transfers.append(transfer)

        if result.transfers:
            logger.info(
                f"{self.name} settlement: converted {len(result.transfers)} of "
                f"{len(records)} transactions to transfers"
            )
        return result


class ReferenceSettlement(SettlementPass):
    """
    Withdrawals whose internal reference names a credit card.

    The reference is looked up as a full account number first, then by its
    last four digits. A suffix shared by several cards is ambiguous.
    """

    name = "Reference"

    def __init__(self, accounts: dict[str, Account]):
        """
        Initialize with the known accounts.

        Args:
            accounts: Account number -> account
        """
        self.by_number: dict[str, str] = {}
        self.by_suffix: dict[str, set[str]] = {}
        for number, account in accounts.items():
            if not account.is_credit_card:
                continue
            self.by_number[number] = account.id
            self.by_suffix.setdefault(number[-4:], set()).add(account.id)

    def resolve(self, reference: str) -> Optional[str]:
        if reference in self.by_number:
            return self.by_number[reference]
        candidates = self.by_suffix.get(reference[-4:], set())
        if len(candidates) == 1:
            return next(iter(candidates))
        if len(candidates) > 1:
            logger.debug(f"Reference {reference} matches {len(candidates)} credit cards, skipping")
        return None

    async def settle(self, record: TransactionRecord) -> Optional[TransactionRecord]:
        if not record.internal_reference:
            return None
        card_id = self.resolve(str(record.internal_reference))
        if card_id is None:
            return None

        transfer = as_transfer(record, card_id)
        transfer.description = record.description or "Credit card payment"
        transfer.notes = f"{record.notes}\n{AUTO_DETECTED_NOTE}" if record.notes else AUTO_DETECTED_NOTE
        logger.debug(
            f"Converted credit card payment {record.external_id} ({record.amount}) "
            f"from {record.source_account_id} to transfer into {card_id}"
        )
        return transfer


class BillingCycleSettlement(SettlementPass):
    """
    Withdrawals whose description is a card issuer's monthly charge.

    With the process-date method the paid card is the one whose billing
    cycle nets to the withdrawn amount; with the reference method the
    internal reference is the card's account number.
    """

    name = "Billing cycle"

    def __init__(
        self,
        rules: list[BillingCycleRule],
        accounts: dict[str, Account],
        ledger: LedgerClient,
        context: RunContext,
        cycles: Optional[dict[str, list[TransactionRecord]]] = None,
    ):
        """
        Initialize the pass.

        Args:
            rules: Billing cycle rules, keyed here by description
            accounts: Account number -> account
            ledger: Ledger collaborator for tagged transaction lookups
            context: Per-run caches
            cycles: Billing cycle tag -> records of the current batch, counted
                toward a cycle when the ledger does not hold them yet
        """
        self.rules = {rule.description: rule for rule in rules}
        self.accounts = accounts
        self.ledger = ledger
        self.context = context
        self.cycles = cycles or {}

    def card_ids(self, card_type: str) -> list[str]:
        return [
            account.id
            for account in self.accounts.values()
            if account.is_credit_card and account.type == card_type
        ]

    async def settle(self, record: TransactionRecord) -> Optional[TransactionRecord]:
        rule = self.rules.get(record.description)
        if rule is None:
            return None

        logger.debug(f"Found credit card transaction: {record.description}")
        if rule.method == "reference":
            card_id = self.by_reference(record)
        else:
            card_id = await self.by_process_date(record, self.card_ids(rule.credit_card))

        if card_id is None:
            logger.warning(
                f"Couldn't find credit card billing period for {record.description} "
                f"({record.external_id}, {rule.credit_card})"
            )
            return None
        return as_transfer(record, card_id)

    def by_reference(self, record: TransactionRecord) -> Optional[str]:
        account = self.accounts.get(str(record.internal_reference or ""))
        return account.id if account else None

    async def by_process_date(
        self, record: TransactionRecord, card_ids: list[str]
    ) -> Optional[str]:
        if record.process_date is None or not card_ids:
            return None

        if len(card_ids) == 1:
            net = await self.net_amount(card_ids[0], record.process_date)
            return None if net == 0 else card_ids[0]

        expected = record.signed_amount.quantize(CENT, rounding=ROUND_HALF_UP)
        for card_id in card_ids:
            if await self.net_amount(card_id, record.process_date) == expected:
                return card_id
        return None

    async def net_amount(self, card_id: str, process_date) -> Decimal:
        """
        Net amount of a card's billing cycle (deposits positive).

        Falls back to the previous day's tag when the cycle has no entries.
        """
        tag = billing_cycle_tag(card_id, process_date)
        if tag in self.context.settlement_amounts:
            return self.context.settlement_amounts[tag]

        net = await self.tagged_net(tag)
        if net is None:
            previous = billing_cycle_tag(card_id, process_date - timedelta(days=1))
            net = await self.tagged_net(previous)

        net = (net or Decimal("0")).quantize(CENT, rounding=ROUND_HALF_UP)
        self.context.settlement_amounts[tag] = net
        return net

    async def tagged_net(self, tag: str) -> Optional[Decimal]:
        """
        Sum a billing cycle tag over the ledger and the current batch.

        Batch records already stored in the ledger are counted once.

        Returns:
            The signed sum, or None when nothing carries the tag
        """
        groups = await self.ledger.get_transactions_by_tag(tag)
        pending = self.cycles.get(tag, [])
        if not groups and not pending:
            return None

        net = Decimal("0")
        stored: set[str] = set()
        for group in groups:
            split = first_split(group)
            if not split:
                continue
            if split.get("external_id"):
                stored.add(split["external_id"])
            amount = parse_ledger_amount(split.get("amount")) or Decimal("0")
            net += amount if split.get("type") == TransactionType.DEPOSIT.value else -amount

        for record in pending:
            if record.external_id and record.external_id in stored:
                continue
            net += record.signed_amount
        return net


class StaticRuleSettlement(SettlementPass):
    """
    Withdrawals matched by a fixed rule table.

    A rule names the description, the paying account and the card; an
    optional day-of-month range tells apart rules sharing the first two.
    """

    name = "Static rule"

    def __init__(
        self,
        rules: list[StaticSettlementRule],
        accounts: dict[str, Account],
        directory: Optional[AccountDirectory] = None,
    ):
        self.rules = rules
        self.accounts = accounts
        self.directory = directory
        self.by_id = {account.id: account for account in accounts.values()}

    def applicable_rules(self, record: TransactionRecord) -> list[StaticSettlementRule]:
        source = self.by_id.get(record.source_account_id or "")
        source_keys = {record.source_account_id}
        if source is not None:
            source_keys.add(source.number)

        return [
            rule
            for rule in self.rules
            if rule.description == record.description
            and rule.source_account in source_keys
            and record.date is not None
            and rule.covers_day(record.date.day)
        ]

    async def settle(self, record: TransactionRecord) -> Optional[TransactionRecord]:
        rules = self.applicable_rules(record)
        if not rules:
            return None
        if len(rules) > 1:
            logger.warning(
                f"{len(rules)} static settlement rules apply to {record.external_id} "
                f"({record.description}), leaving it unmatched"
            )
            return None

        card = await self.card_account(rules[0].credit_card)
        if card is None:
            return None
        return as_transfer(record, card.id)

    async def card_account(self, number: str) -> Optional[Account]:
        account = self.accounts.get(number)
        if account is not None:
            return account
        if self.directory is None:
            logger.warning(f"Credit card account {number} is unknown")
            return None
        account = await self.directory.ensure_credit_card(number)
        if account is not None:
            self.accounts[number] = account
            self.by_id[account.id] = account
        return account
