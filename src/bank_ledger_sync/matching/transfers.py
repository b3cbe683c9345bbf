"""
Transfer pair detection.
Pairs a deposit on one account with a withdrawal of the same amount on
another account, within a few days, and turns the pair into one transfer.
"""

from decimal import Decimal
from typing import Iterable, Optional
import logging

from ..identity import record_from_ledger
from ..models.transaction import (
    DuplicatePair,
    TransactionRecord,
    TransactionType,
    TransferDetectionResult,
)

logger = logging.getLogger(__name__)

AMOUNT_TOLERANCE = Decimal("0.01")
NOTES_SEPARATOR = "\n---\n"


def existing_transfers_from_ledger(groups: Iterable[dict]) -> list[TransactionRecord]:
    """Transfers already stored in the ledger, as records."""
    records = (record_from_ledger(group) for group in groups)
    return [record for record in records if record is not None and record.is_transfer]


def _days_apart(a: TransactionRecord, b: TransactionRecord) -> int:
    return abs((a.date - b.date).days)


def _amounts_match(a: Optional[Decimal], b: Optional[Decimal]) -> bool:
    if a is None or b is None:
        return False
    return abs(a - b) <= AMOUNT_TOLERANCE


def build_transfer(deposit: TransactionRecord, withdrawal: TransactionRecord) -> TransactionRecord:
    """
    Synthesize the transfer replacing a deposit/withdrawal pair.

    Args:
        deposit: Incoming leg
        withdrawal: Outgoing leg

    Returns:
        Transfer dated on the withdrawal, for the deposit's amount
    """
    description = withdrawal.description
    if deposit.description and deposit.description != withdrawal.description:
        description = f"{withdrawal.description} → {deposit.description}"

    notes = withdrawal.notes or ""
    if deposit.notes and deposit.notes != withdrawal.notes:
        notes = f"{notes}{NOTES_SEPARATOR}{deposit.notes}" if notes else deposit.notes

    return TransactionRecord(
        type=TransactionType.TRANSFER,
        date=withdrawal.date,
        amount=deposit.amount,
        external_id=f"transfer_{withdrawal.external_id}_{deposit.external_id}",
        description=description,
        notes=notes or None,
        source_account_id=withdrawal.source_account_id,
        destination_account_id=deposit.destination_account_id,
        currency_code=deposit.currency_code or withdrawal.currency_code,
        category_name=None,
        internal_reference=f"{withdrawal.internal_reference or ''}_{deposit.internal_reference or ''}",
        tags=set(withdrawal.tags) | set(deposit.tags),
    )


class TransferPairMatcher:
    """
    Greedy deposit/withdrawal pairing.

    Deposits are visited in date order and take the first eligible
    withdrawal in date order; a matched withdrawal is never reused.
    """

    def __init__(self, date_tolerance: int = 2):
        """
        Initialize the matcher.

        Args:
            date_tolerance: Maximum days between the two legs
        """
        self.date_tolerance = date_tolerance

    def is_pair(self, deposit: TransactionRecord, withdrawal: TransactionRecord) -> bool:
        if _days_apart(deposit, withdrawal) > self.date_tolerance:
            return False
        if not _amounts_match(deposit.amount, withdrawal.amount):
            return False
        # Same account on both sides is not a transfer
        return deposit.destination_account_id != withdrawal.source_account_id

    def find_existing(
        self,
        deposit: TransactionRecord,
        withdrawal: TransactionRecord,
        existing_transfers: list[TransactionRecord],
    ) -> Optional[TransactionRecord]:
        """Existing ledger transfer already reconciling the pair, if any."""
        for transfer in existing_transfers:
            if transfer.date is None or not _amounts_match(transfer.amount, deposit.amount):
                continue
            if (
                transfer.source_account_id != withdrawal.source_account_id
                or transfer.destination_account_id != deposit.destination_account_id
            ):
                continue
            if (
                _days_apart(transfer, deposit) <= self.date_tolerance
                and _days_apart(transfer, withdrawal) <= self.date_tolerance
            ):
                return transfer
        return None

    def detect(
        self,
        records: list[TransactionRecord],
        existing_transfers: Optional[list[TransactionRecord]] = None,
    ) -> TransferDetectionResult:
        """
        Pair deposits with withdrawals.

        Args:
            records: Candidate records; non deposit/withdrawal records pass through
            existing_transfers: Transfers already in the ledger

        Returns:
            New transfers, pairs duplicating existing transfers, and the
            remaining records in input order
        """
        existing_transfers = existing_transfers or []
        logger.debug(
            f"Starting transfer detection: {len(records)} transactions, "
            f"tolerance {self.date_tolerance} days"
        )

        valid = []
        for record in records:
            missing = record.missing_fields()
            if missing:
                logger.debug(f"Skipping {record.external_id} in transfer detection, missing {missing}")
                continue
            valid.append(record)

        if len(valid) < len(records):
            logger.warning(
                f"{len(records) - len(valid)} of {len(records)} transactions skipped in "
                f"transfer detection due to missing required fields"
            )

        ordered = sorted(valid, key=lambda r: r.date)
        deposits = [r for r in ordered if r.is_deposit]
        withdrawals = [r for r in ordered if r.is_withdrawal]

        result = TransferDetectionResult()
        # Tracked by identity so records sharing an external id stay distinct
        paired: set[int] = set()

        for deposit in deposits:
            withdrawal = next(
                (w for w in withdrawals if id(w) not in paired and self.is_pair(deposit, w)),
                None,
            )
            if withdrawal is None:
                continue

            paired.update((id(deposit), id(withdrawal)))
            existing = self.find_existing(deposit, withdrawal, existing_transfers)
            if existing is not None:
                result.duplicates_of_existing.append(
                    DuplicatePair(deposit=deposit, withdrawal=withdrawal, existing_transfer=existing)
                )
                logger.debug(
                    f"Pair {withdrawal.external_id} -> {deposit.external_id} duplicates "
                    f"existing transfer {existing.ledger_id or existing.external_id}"
                )
                continue

            transfer = build_transfer(deposit, withdrawal)
            result.transfers.append(transfer)
            result.legs[transfer.external_id] = (withdrawal, deposit)
            logger.debug(
                f"Converted {withdrawal.external_id} ({withdrawal.date}) -> "
                f"{deposit.external_id} ({deposit.date}) of {deposit.amount} to a transfer"
            )

        result.remaining = [r for r in records if id(r) not in paired]

        logger.info(
            f"Transfer detection complete: {len(records)} transactions, "
            f"{len(result.transfers)} transfers, {len(result.duplicates_of_existing)} "
            f"duplicates of existing transfers, {len(result.remaining)} remaining"
        )
        return result
