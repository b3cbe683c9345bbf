"""
Source transaction normalizer.
Converts scraped transactions into canonical transaction records.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Iterator, Optional
from zoneinfo import ZoneInfo
import logging

from ..identity import DEFAULT_STRATEGY, external_id_for
from ..models.source import ScrapedTransaction, SourceAccountBatch
from ..models.transaction import Account, TransactionRecord, TransactionType

logger = logging.getLogger(__name__)

COMPLETED_STATUS = "completed"
DEFAULT_TIMEZONE = "Asia/Jerusalem"


def parse_source_date(value: Optional[str], tz: Optional[ZoneInfo] = None) -> Optional[date]:
    """
    Parse a source timestamp into a calendar date.

    Timezone-aware timestamps are converted to the banks' zone first, since
    scrapers report local midnight as UTC (e.g. "2024-01-14T22:00:00.000Z").

    Args:
        value: ISO timestamp or date
        tz: Zone the dates are read in, Asia/Jerusalem when not given
    """
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        try:
            return date.fromisoformat(str(value)[:10])
        except ValueError:
            logger.warning(f"Could not parse source date: {value}")
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(tz or ZoneInfo(DEFAULT_TIMEZONE))
    return parsed.date()


class TransactionNormalizer:
    """
    Turns raw source transactions into TransactionRecords.

    Normalization is pure: it never talks to the ledger. Enriching
    withdrawals with merchant accounts happens afterwards.
    """

    def __init__(
        self,
        identify_method: Optional[dict[str, str]] = None,
        currency_symbol_map: Optional[dict[str, str]] = None,
        timezone: str = DEFAULT_TIMEZONE,
    ):
        """
        Initialize the normalizer.

        Args:
            identify_method: Source type -> external id strategy name
            currency_symbol_map: Currency symbol -> ISO code
            timezone: IANA zone source timestamps are read in
        """
        self.identify_method = identify_method or {}
        self.currency_symbol_map = currency_symbol_map or {}
        self.tz = ZoneInfo(timezone)

    def strategy_for(self, account: Account) -> str:
        return self.identify_method.get(account.type or "", DEFAULT_STRATEGY)

    def normalize(self, raw: ScrapedTransaction, account: Account) -> TransactionRecord:
        """
        Convert one raw transaction of an account into a record.

        Args:
            raw: Raw source transaction
            account: Ledger account owning the transaction

        Returns:
            Normalized transaction record

        Raises:
            UnknownIdentityStrategy: If the account type maps to an unknown strategy
        """
        is_deposit = raw.charged_amount > 0

        return TransactionRecord(
            type=TransactionType.DEPOSIT if is_deposit else TransactionType.WITHDRAWAL,
            date=parse_source_date(raw.date, self.tz),
            amount=abs(Decimal(raw.charged_amount)),
            external_id=external_id_for(raw.raw_fields(), self.strategy_for(account)),
            description=raw.description or "",
            notes=raw.memo or None,
            source_account_id=None if is_deposit else account.id,
            destination_account_id=account.id if is_deposit else None,
            currency_code=self.currency_code(raw),
            category_name=raw.category or None,
            internal_reference=raw.identifier,
            process_date=parse_source_date(raw.processed_date, self.tz),
        )

    def currency_code(self, raw: ScrapedTransaction) -> Optional[str]:
        """Normalize the charged (or original) currency symbol to its code."""
        currency = raw.charged_currency or raw.original_currency
        if not currency:
            return None
        return self.currency_symbol_map.get(currency, currency)

    def normalize_batches(
        self,
        batches: list[SourceAccountBatch],
        accounts: dict[str, Account],
    ) -> list[tuple[TransactionRecord, Account]]:
        """
        Normalize every importable transaction of the scraped accounts.

        Only completed, non-zero transactions of accounts known to the ledger
        are kept.

        Args:
            batches: Scraped accounts with their users
            accounts: Account number -> ledger account

        Returns:
            List of (record, owning account) tuples
        """
        normalized: list[tuple[TransactionRecord, Account]] = []
        skipped = 0

        for raw, account in self._importable(batches, accounts):
            normalized.append((self.normalize(raw, account), account))

        for batch in batches:
            if batch.account.account_number not in accounts:
                skipped += len(batch.account.txns)

        if skipped:
            logger.warning(f"Skipped {skipped} transactions of accounts missing from the ledger")
        logger.info(f"Normalized {len(normalized)} transactions")
        return normalized

    @staticmethod
    def _importable(
        batches: list[SourceAccountBatch], accounts: dict[str, Account]
    ) -> Iterator[tuple[ScrapedTransaction, Account]]:
        for batch in batches:
            account = accounts.get(batch.account.account_number)
            if account is None:
                continue
            for raw in batch.account.txns:
                if raw.status != COMPLETED_STATUS or not raw.charged_amount:
                    continue
                yield raw, account
