"""
Maintenance operations run directly against the ledger.
Backfill of transfers over already imported data, duplicate removal,
cleanup and inspection.
"""

from dataclasses import dataclass, field
from datetime import date
from typing import Optional
import logging

import httpx

from ..context import RunContext
from ..identity import first_split, group_by_external_id, parse_ledger_date, record_from_ledger
from ..ledger.accounts import AccountDirectory
from ..ledger.client import LedgerClient
from ..matching.strategies import ReferenceSettlement
from ..matching.transfers import TransferPairMatcher
from ..models.transaction import DuplicatePair, TransactionRecord
from ..utils.exceptions import LedgerError

logger = logging.getLogger(__name__)

PROGRESS_EVERY = 50
SAMPLE_SIZE = 20


@dataclass
class LedgerRow:
    """Compact view of a ledger transaction group."""

    id: str
    external_id: Optional[str]
    date: Optional[date]
    description: str
    amount: str

    @classmethod
    def from_group(cls, group: dict) -> Optional["LedgerRow"]:
        split = first_split(group)
        if not split:
            return None
        return cls(
            id=str(group.get("id")),
            external_id=split.get("external_id") or None,
            date=parse_ledger_date(split.get("date")),
            description=split.get("description") or "",
            amount=str(split.get("amount") or ""),
        )


@dataclass
class BackfillReport:
    """What a backfill found and did."""

    # Transfers replacing withdrawals that paid a credit card
    card_payments: list[TransactionRecord] = field(default_factory=list)
    # (transfer, withdrawal, deposit)
    transfers: list[tuple[TransactionRecord, TransactionRecord, TransactionRecord]] = field(
        default_factory=list
    )
    duplicates: list[DuplicatePair] = field(default_factory=list)
    created: int = 0
    deleted: int = 0
    failed: int = 0
    dry_run: bool = False

    @property
    def transactions_to_delete(self) -> int:
        return len(self.card_payments) + 2 * len(self.transfers) + 2 * len(self.duplicates)

    @property
    def transfers_to_create(self) -> int:
        return len(self.card_payments) + len(self.transfers)


@dataclass
class DuplicateRemovalReport:
    groups: int = 0
    deleted: int = 0
    failed: int = 0


@dataclass
class TransactionListing:
    """Statistics and samples of the ledger's transactions."""

    total: int = 0
    with_external_id: int = 0
    without_external_id: list[LedgerRow] = field(default_factory=list)
    first: list[LedgerRow] = field(default_factory=list)
    duplicate_groups: dict[str, list[LedgerRow]] = field(default_factory=dict)

    @property
    def duplicate_transactions(self) -> int:
        return sum(len(rows) - 1 for rows in self.duplicate_groups.values())


class LedgerMaintenance:
    """Operations over the whole ledger rather than a scrape."""

    def __init__(self, ledger: LedgerClient):
        self.ledger = ledger

    async def backfill(
        self,
        dry_run: bool = False,
        date_tolerance: int = 2,
        since: Optional[date] = None,
    ) -> BackfillReport:
        """
        Detect transfers among transactions already stored in the ledger.

        Card payments found by reference and new transfer pairs replace their
        original legs; legs duplicating an existing transfer are deleted.
        A transfer is created before its legs are deleted, so a failure never
        leaves the ledger without either of them.

        Args:
            dry_run: Only report what would be done
            date_tolerance: Maximum days between the two legs of a transfer
            since: Only consider transactions on or after this date

        Returns:
            Backfill report
        """
        logger.info(
            f"Starting transfer backfill (dry_run={dry_run}, tolerance={date_tolerance}, since={since})"
        )
        report = BackfillReport(dry_run=dry_run)

        directory = AccountDirectory(self.ledger, RunContext(dry_run=dry_run))
        accounts = await directory.accounts_from_ledger()

        groups = await self.ledger.get_all_transactions()
        records = [r for r in (record_from_ledger(g) for g in groups) if r is not None]
        if since is not None:
            records = [r for r in records if r.date is not None and r.date >= since]
            logger.info(f"Filtered transactions since {since}: {len(records)} of {len(groups)}")

        existing_transfers = [r for r in records if r.is_transfer]
        candidates = [r for r in records if r.is_deposit or r.is_withdrawal]
        logger.info(
            f"Prepared {len(candidates)} deposits and withdrawals, "
            f"{len(existing_transfers)} existing transfers"
        )
        if not candidates:
            logger.info("No deposit/withdrawal transactions found to process")
            return report

        settled = await ReferenceSettlement(accounts).run(candidates)
        detected = TransferPairMatcher(date_tolerance).detect(settled.remaining, existing_transfers)

        report.card_payments = settled.transfers
        report.transfers = [
            (transfer, *detected.legs[transfer.external_id]) for transfer in detected.transfers
        ]
        report.duplicates = detected.duplicates_of_existing

        if dry_run:
            logger.info(
                f"DRY RUN - Would delete {report.transactions_to_delete} transactions and "
                f"create {report.transfers_to_create} transfers"
            )
            return report

        for pair in report.duplicates:
            if await self._delete_legs(report, pair.withdrawal, pair.deposit):
                logger.debug(
                    f"Removed duplicate legs of existing transfer "
                    f"{pair.existing_transfer.ledger_id or pair.existing_transfer.external_id}"
                )

        for transfer in report.card_payments:
            # The settled record still carries the ledger id of the withdrawal it replaces
            if await self._create(report, transfer):
                await self._delete_legs(report, transfer)

        for transfer, withdrawal, deposit in report.transfers:
            if await self._create(report, transfer):
                await self._delete_legs(report, withdrawal, deposit)

        logger.info(
            f"Backfill complete: {report.created} transfers created, "
            f"{report.deleted} transactions deleted, {report.failed} failures"
        )
        return report

    async def cleanup(self) -> int:
        """Delete every transaction in the ledger. Returns how many were deleted."""
        groups = await self.ledger.get_all_transactions()
        logger.info(f"Dropping {len(groups)} transactions")
        deleted = 0
        for count, group in enumerate(groups, start=1):
            try:
                await self.ledger.delete_transaction(str(group["id"]))
                deleted += 1
            except (LedgerError, httpx.HTTPError) as e:
                logger.error(f"Error deleting transaction {group.get('id')}: {e}")
            if count % PROGRESS_EVERY == 0:
                logger.info(f"Transactions deleted: {count}")
        return deleted

    async def remove_duplicates(self) -> DuplicateRemovalReport:
        """Keep the earliest transaction of every external id and delete the rest."""
        groups = await self.ledger.get_all_transactions()
        by_external_id, without = group_by_external_id(groups)
        logger.info(
            f"Transaction external id statistics: {len(groups) - len(without)} with, "
            f"{len(without)} without, {len(by_external_id)} unique"
        )

        report = DuplicateRemovalReport()
        to_delete: list[LedgerRow] = []
        for external_id, members in by_external_id.items():
            if len(members) < 2:
                continue
            report.groups += 1
            rows = sorted(
                (LedgerRow.from_group(g) for g in members),
                key=lambda row: row.date or date.max,
            )
            keep, duplicates = rows[0], rows[1:]
            logger.info(
                f"Duplicate transactions for {external_id}: keeping {keep.id} ({keep.date}), "
                f"deleting {[d.id for d in duplicates]}"
            )
            to_delete.extend(duplicates)

        if not to_delete:
            logger.info("No duplicate transactions found in the ledger.")
            return report

        for count, row in enumerate(to_delete, start=1):
            try:
                await self.ledger.delete_transaction(row.id)
                report.deleted += 1
            except (LedgerError, httpx.HTTPError) as e:
                logger.error(f"Error deleting duplicate transaction {row.id}: {e}")
                report.failed += 1
            if count % PROGRESS_EVERY == 0:
                logger.info(f"Duplicate transactions deleted: {count} of {len(to_delete)}")

        logger.info(f"Finished removing duplicate transactions: {report.deleted} deleted")
        return report

    async def list_transactions(self) -> TransactionListing:
        """Gather statistics about external ids in the ledger."""
        groups = await self.ledger.get_all_transactions()
        rows = [row for row in (LedgerRow.from_group(g) for g in groups) if row is not None]

        listing = TransactionListing(total=len(groups), first=rows[:SAMPLE_SIZE])
        by_external_id: dict[str, list[LedgerRow]] = {}
        for row in rows:
            if row.external_id:
                by_external_id.setdefault(row.external_id, []).append(row)
            else:
                listing.without_external_id.append(row)

        listing.with_external_id = len(by_external_id)
        listing.duplicate_groups = {
            external_id: members
            for external_id, members in by_external_id.items()
            if len(members) > 1
        }
        logger.info(
            f"Transaction statistics: {listing.total} total, {listing.with_external_id} external ids, "
            f"{len(listing.without_external_id)} without, {len(listing.duplicate_groups)} duplicate groups"
        )
        return listing

    async def _delete_legs(self, report: BackfillReport, *records: TransactionRecord) -> bool:
        """Delete every leg that has a ledger id. Returns True when all deletions succeeded."""
        ok = True
        for record in records:
            if not record.ledger_id:
                continue
            try:
                await self.ledger.delete_transaction(record.ledger_id)
                report.deleted += 1
            except (LedgerError, httpx.HTTPError) as e:
                logger.error(
                    f"Error deleting transaction {record.ledger_id} ({record.external_id}), "
                    f"it is left in the ledger: {e}"
                )
                report.failed += 1
                ok = False
        return ok

    async def _create(self, report: BackfillReport, transfer: TransactionRecord) -> bool:
        try:
            await self.ledger.create_transaction(transfer)
        except (LedgerError, httpx.HTTPError) as e:
            logger.error(f"Error creating transfer {transfer.external_id}, keeping its legs: {e}")
            report.failed += 1
            return False
        report.created += 1
        return True
