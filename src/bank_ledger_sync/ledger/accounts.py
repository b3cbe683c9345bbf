"""
Mapping between source accounts and ledger accounts.
Missing asset accounts and merchant expense accounts are created on demand.
"""

from collections import Counter
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Optional
import logging

from ..context import RunContext
from ..models.source import ScrapedAccount, SourceAccountBatch
from ..models.transaction import Account, AccountKind
from ..sources.normalizer import parse_source_date
from ..utils.exceptions import LedgerError
from .client import LedgerClient

logger = logging.getLogger(__name__)

ASSET = "asset"
EXPENSE = "expense"
CREDIT_CARD_ROLE = "ccAsset"
BANK_ROLE = "defaultAsset"


def monthly_payment_date(account: ScrapedAccount, today: Optional[date] = None) -> str:
    """
    Guess a card's monthly payment date from its most frequent processed day.

    Args:
        account: Scraped credit card account
        today: Reference date for month and year

    Returns:
        ISO date in the current month on the most common processed day
    """
    today = today or date.today()
    days = Counter(
        d.day for d in (parse_source_date(t.processed_date) for t in account.txns) if d
    )
    if not days:
        return today.isoformat()
    # Most common day; earliest day wins ties
    top_day = min(days, key=lambda day: (-days[day], day))
    try:
        return today.replace(day=top_day).isoformat()
    except ValueError:
        # Day does not exist this month (e.g. 31st in April)
        return today.isoformat()


def _attributes(resource: dict) -> dict:
    return resource.get("attributes") or {}


class AccountDirectory:
    """
    Resolves source accounts and merchants to ledger account ids.

    Lookups made during a run are remembered in the run's context.
    """

    def __init__(self, ledger: LedgerClient, context: RunContext):
        """
        Initialize the directory.

        Args:
            ledger: Ledger collaborator
            context: Per-run caches and flags
        """
        self.ledger = ledger
        self.context = context

    async def map_accounts(self, batches: list[SourceAccountBatch]) -> dict[str, Account]:
        """
        Map every scraped account onto a ledger account, creating missing ones.

        Args:
            batches: Scraped accounts with their users

        Returns:
            Account number -> ledger account
        """
        by_number = {b.account.account_number: b for b in batches}
        ledger_accounts = await self.ledger.get_accounts()

        accounts: dict[str, Account] = {}
        for resource in ledger_accounts:
            number = self._match_number(resource, by_number)
            if number is None:
                continue
            batch = by_number[number]
            accounts[number] = Account(
                id=str(resource["id"]),
                kind=AccountKind(batch.kind),
                type=batch.user.type,
                number=number,
            )

        missing = [number for number in by_number if number not in accounts]
        logger.debug(f"Matched {len(accounts)} accounts, missing: {missing}")
        if not missing:
            return accounts

        logger.info(f"Accounts are missing from the ledger, creating them: {missing}")
        for number in missing:
            batch = by_number[number]
            if self.context.dry_run:
                logger.info(f"DRY RUN - Would create account {number}")
                continue
            account_id = await self._create_asset_account(batch)
            if account_id is not None:
                accounts[number] = Account(
                    id=account_id,
                    kind=AccountKind(batch.kind),
                    type=batch.user.type,
                    number=number,
                )

        return accounts

    async def accounts_from_ledger(self) -> dict[str, Account]:
        """
        Build the account map from the ledger alone (no scrape available).

        Credit cards are asset accounts with the credit card role; the account
        name doubles as the type.
        """
        accounts: dict[str, Account] = {}
        for resource in await self.ledger.get_accounts():
            attributes = _attributes(resource)
            number = attributes.get("account_number") or attributes.get("name")
            if not number:
                continue
            is_card = (
                attributes.get("type") == ASSET
                and attributes.get("account_role") == CREDIT_CARD_ROLE
            )
            accounts[number] = Account(
                id=str(resource["id"]),
                kind=AccountKind.CREDIT_CARD if is_card else AccountKind.BANK,
                type=attributes.get("name") or "",
                number=number,
            )
        logger.debug(
            f"Built accounts map: {len(accounts)} accounts, "
            f"{sum(1 for a in accounts.values() if a.is_credit_card)} credit cards"
        )
        return accounts

    async def ensure_credit_card(self, number: str, card_type: str = "") -> Optional[Account]:
        """
        Find a credit card account by number or create it.

        Returns:
            The account, or None in dry-run mode when it does not exist yet
        """
        cached = self.context.created_accounts.get(number)
        if cached:
            return Account(id=cached, kind=AccountKind.CREDIT_CARD, type=card_type, number=number)

        existing = self._find(await self.ledger.get_accounts(), number)
        if existing is not None:
            self.context.created_accounts[number] = str(existing["id"])
            return Account(
                id=str(existing["id"]), kind=AccountKind.CREDIT_CARD, type=card_type, number=number
            )

        if self.context.dry_run:
            logger.info(f"DRY RUN - Would create credit card account {number}")
            return None

        resource = await self.ledger.create_account(
            {
                "name": number,
                "account_number": number,
                "type": ASSET,
                "account_role": CREDIT_CARD_ROLE,
                "credit_card_type": "monthlyFull",
                "monthly_payment_date": date.today().isoformat(),
            }
        )
        account_id = str(resource["id"])
        self.context.created_accounts[number] = account_id
        return Account(id=account_id, kind=AccountKind.CREDIT_CARD, type=card_type, number=number)

    async def resolve_merchant(self, merchant: str) -> Optional[str]:
        """
        Get or create the expense account of a merchant.

        Args:
            merchant: Merchant name as found in the transaction description

        Returns:
            Expense account id, or None when it could not be resolved
        """
        cached = self.context.merchant_accounts.get(merchant)
        if cached:
            return cached

        try:
            account_id = await self._find_expense_account(merchant)
            if account_id is not None:
                logger.debug(f"Found existing expense account for {merchant}: {account_id}")
                self.context.merchant_accounts[merchant] = account_id
                return account_id

            if self.context.dry_run:
                logger.info(f"DRY RUN - Would create expense account {merchant}")
                return None

            resource = await self.ledger.create_account({"name": merchant, "type": EXPENSE})
            account_id = str(resource["id"])
            logger.info(f"Created expense account {merchant}: {account_id}")
            self.context.merchant_accounts[merchant] = account_id
            return account_id

        except LedgerError as e:
            if e.status_code == 422:
                # Created concurrently by someone else; look once more
                try:
                    account_id = await self._find_expense_account(merchant)
                except LedgerError as retry_error:
                    logger.error(f"Failed to fetch expense account {merchant} after 422: {retry_error}")
                    account_id = None
                if account_id is not None:
                    self.context.merchant_accounts[merchant] = account_id
                    return account_id
            logger.error(f"Error getting or creating expense account {merchant}: {e}")
            return None

    async def log_balance_drift(self, batches: list[SourceAccountBatch]) -> int:
        """Warn about scraped accounts whose balance differs from the ledger's."""
        ledger_balances: dict[str, Optional[Decimal]] = {}
        for resource in await self.ledger.get_accounts():
            attributes = _attributes(resource)
            ledger_balances[attributes.get("account_number") or ""] = _to_decimal(
                attributes.get("current_balance")
            )

        drifted = 0
        for batch in batches:
            scraped = batch.account.balance
            if not scraped:
                continue
            ledger_balance = ledger_balances.get(batch.account.account_number)
            if ledger_balance is None or ledger_balance != scraped:
                drifted += 1
                logger.warning(
                    f"Non synced balance for {batch.account.account_number}: "
                    f"source {scraped}, ledger {ledger_balance}"
                )
        return drifted

    async def _create_asset_account(self, batch: SourceAccountBatch) -> Optional[str]:
        number = batch.account.account_number
        spec = {
            "name": number,
            "account_number": number,
            "type": ASSET,
            "account_role": BANK_ROLE if batch.kind == "bank" else CREDIT_CARD_ROLE,
        }
        if batch.kind != "bank":
            spec["credit_card_type"] = "monthlyFull"
            spec["monthly_payment_date"] = monthly_payment_date(batch.account)

        try:
            resource = await self.ledger.create_account(spec)
            return str(resource["id"])
        except LedgerError as e:
            if e.status_code != 422:
                raise
            logger.warning(f"Account {number} already exists in the ledger, fetching it")
            existing = self._find(await self.ledger.get_accounts(), number)
            if existing is None:
                logger.error(f"Account {number} exists in the ledger but could not be found")
                return None
            logger.info(f"Found existing account {number}: {existing['id']}")
            return str(existing["id"])

    async def _find_expense_account(self, merchant: str) -> Optional[str]:
        for resource in await self.ledger.get_accounts(EXPENSE):
            if _attributes(resource).get("name") == merchant:
                return str(resource["id"])
        return None

    @staticmethod
    def _match_number(resource: dict, by_number: dict) -> Optional[str]:
        """Match a ledger account by account number first, then by name."""
        attributes = _attributes(resource)
        account_number = attributes.get("account_number")
        if account_number and account_number in by_number:
            return account_number
        name = attributes.get("name")
        if name and name in by_number:
            return name
        return None

    @staticmethod
    def _find(resources: list[dict], number: str) -> Optional[dict]:
        for resource in resources:
            if _attributes(resource).get("account_number") == number:
                return resource
        for resource in resources:
            if _attributes(resource).get("name") == number:
                return resource
        return None


def _to_decimal(value) -> Optional[Decimal]:
    if value in (None, ""):
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None
