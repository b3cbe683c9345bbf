"""
Ledger sync executor.
Applies a reconciliation plan to the ledger, one write at a time.
"""

from typing import Awaitable, Callable
import logging

import httpx

from ..identity import LedgerIndex
from ..ledger.client import LedgerClient
from ..models.transaction import ReconciliationPlan, SyncReport, TransactionRecord
from ..utils.exceptions import LedgerError
from .planner import leg_ledger_id

logger = logging.getLogger(__name__)

PROGRESS_EVERY = 50


class LedgerSyncExecutor:
    """
    Writes a plan to the ledger.

    Steps run in order: creates, type updates, destination patches, field
    updates, then removal of duplicate legs. A failing item is logged and
    counted; the batch goes on.
    """

    def __init__(self, ledger: LedgerClient, dry_run: bool = False):
        """
        Initialize the executor.

        Args:
            ledger: Ledger collaborator
            dry_run: Log what would be written instead of writing
        """
        self.ledger = ledger
        self.dry_run = dry_run

    async def execute(self, plan: ReconciliationPlan, index: LedgerIndex) -> SyncReport:
        """
        Apply a plan.

        Args:
            plan: Plan produced by the reconciliation planner
            index: Ledger snapshot the plan was built against

        Returns:
            Counters of what was written and what failed
        """
        report = SyncReport()

        if self.dry_run:
            self._log_dry_run(plan, index)
            return report

        await self._apply(
            "Created", plan.to_create, report, lambda r: self._create(r, report)
        )
        await self._apply(
            "Type updated", plan.to_type_update, report, lambda r: self._replace(r, index, report)
        )
        await self._apply(
            "Destination added", plan.to_add_destination, report, lambda r: self._update(r, index, report)
        )
        await self._apply(
            "Updated", plan.to_field_update, report, lambda r: self._update(r, index, report)
        )

        legs = []
        for pair in plan.suppressed_duplicates:
            for leg in (pair.deposit, pair.withdrawal):
                ledger_id = leg_ledger_id(leg, index)
                if ledger_id:
                    legs.append((leg, ledger_id))

        for count, (leg, ledger_id) in enumerate(legs, start=1):
            try:
                await self.ledger.delete_transaction(ledger_id)
                report.deleted += 1
            except (LedgerError, httpx.HTTPError) as e:
                logger.error(f"Error deleting duplicate leg {leg.external_id} ({ledger_id}): {e}")
                report.record_failure("delete", leg.external_id, e)
            if count % PROGRESS_EVERY == 0:
                logger.info(f"Duplicate legs deleted: {count}")

        logger.info(
            f"Sync complete: {report.created} created, {report.updated} updated, "
            f"{report.deleted} deleted, {report.failed} failed"
        )
        return report

    async def _apply(
        self,
        label: str,
        records: list[TransactionRecord],
        report: SyncReport,
        action: Callable[[TransactionRecord], Awaitable[None]],
    ) -> None:
        if not records:
            return
        logger.info(f"{label}: applying {len(records)} transactions")
        for count, record in enumerate(records, start=1):
            try:
                await action(record)
            except (LedgerError, httpx.HTTPError) as e:
                logger.error(
                    f"Error applying '{label}' to {record.external_id} "
                    f"({record.date}, {record.amount}, {record.description}): {e}"
                )
                report.record_failure(label.lower(), record.external_id, e)
            if count % PROGRESS_EVERY == 0:
                logger.info(f"{label}: {count} of {len(records)} transactions")

    async def _create(self, record: TransactionRecord, report: SyncReport) -> None:
        await self.ledger.create_transaction(record)
        report.created += 1

    async def _replace(self, record: TransactionRecord, index: LedgerIndex, report: SyncReport) -> None:
        """Type changes are not supported in place: delete the entry, then create the record."""
        entry = index.get(record.external_id)
        await self.ledger.delete_transaction(entry.id)
        report.deleted += 1
        await self.ledger.create_transaction(record)
        report.created += 1

    async def _update(self, record: TransactionRecord, index: LedgerIndex, report: SyncReport) -> None:
        entry = index.get(record.external_id)
        await self.ledger.update_transaction(entry.id, record)
        report.updated += 1

    def _log_dry_run(self, plan: ReconciliationPlan, index: LedgerIndex) -> None:
        steps = [
            ("create", plan.to_create),
            ("update the type of", plan.to_type_update),
            ("add destination accounts to", plan.to_add_destination),
            ("update", plan.to_field_update),
        ]
        for verb, records in steps:
            logger.info(f"DRY RUN - Would {verb} {len(records)} transactions")
            for record in records:
                logger.debug(f"DRY RUN - {verb}: {record.to_ledger_payload()}")

        legs = [
            leg_ledger_id(leg, index)
            for pair in plan.suppressed_duplicates
            for leg in (pair.deposit, pair.withdrawal)
        ]
        logger.info(
            f"DRY RUN - Would delete {sum(1 for leg in legs if leg)} legs of "
            f"{len(plan.suppressed_duplicates)} pairs duplicating existing transfers"
        )
