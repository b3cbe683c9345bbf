"""
Reconciliation planning.
Diffs classified records against the ledger snapshot and decides what to write.
"""

from typing import Optional
import logging

from ..identity import LedgerIndex, dedupe_by_external_id
from ..models.transaction import (
    DuplicatePair,
    ExistingLedgerEntry,
    ReconciliationPlan,
    TransactionRecord,
    TransactionType,
)

logger = logging.getLogger(__name__)


def leg_ledger_id(leg: TransactionRecord, index: LedgerIndex) -> Optional[str]:
    """Ledger id of a duplicate leg, from the record itself or the snapshot."""
    if leg.ledger_id:
        return leg.ledger_id
    entry = index.get(leg.external_id)
    return entry.id if entry else None


def fields_differ(record: TransactionRecord, entry: ExistingLedgerEntry) -> list[str]:
    """
    Names of the fields a record would change on its stored entry.

    Fields the record leaves unset are not compared; the ledger fills some
    of them in on its own (e.g. the revenue account of a deposit).
    """
    changed = []
    description = record.description or "(no description)"
    if description != entry.description:
        changed.append("description")
    if record.date is not None and record.date != entry.date:
        changed.append("date")
    if record.amount is not None and record.amount != entry.amount:
        changed.append("amount")
    if record.notes is not None and record.notes != entry.notes:
        changed.append("notes")
    if record.source_account_id and record.source_account_id != entry.source_account_id:
        changed.append("source")
    if (
        record.destination_account_id
        and record.destination_account_id != entry.destination_account_id
    ):
        changed.append("destination")
    return changed


class ReconciliationPlanner:
    """Classifies records into creates, type updates, destination patches and field updates."""

    def __init__(self, skip_edit: bool = True):
        """
        Initialize the planner.

        Args:
            skip_edit: Leave same-type matches alone instead of updating their fields
        """
        self.skip_edit = skip_edit

    @staticmethod
    def needs_destination(record: TransactionRecord, entry: ExistingLedgerEntry) -> bool:
        return (
            entry.type is TransactionType.WITHDRAWAL
            and record.is_withdrawal
            and bool(record.destination_account_id)
            and not entry.destination_account_id
            and record.source_account_id == entry.source_account_id
        )

    def plan(
        self,
        records: list[TransactionRecord],
        index: LedgerIndex,
        suppressed_duplicates: Optional[list[DuplicatePair]] = None,
    ) -> ReconciliationPlan:
        """
        Build the plan for a batch of records.

        Args:
            records: Classified records (transfers and remaining)
            index: Ledger snapshot keyed by external id
            suppressed_duplicates: Pairs already reconciled by an existing transfer

        Records without an external id cannot be matched against the ledger
        on a later run, so they are left out of the plan and only counted.

        Returns:
            Reconciliation plan; empty when the ledger is already in sync
        """
        identified = [record for record in records if record.external_id]
        unidentified = len(records) - len(identified)
        if unidentified:
            logger.warning(
                f"Skipping {unidentified} transactions without an external id; "
                f"consider the hash identity method for their source"
            )

        unique, removed = dedupe_by_external_id(identified)
        if removed:
            logger.info(
                f"Removed {removed} duplicate transactions with the same external id "
                f"({len(identified)} -> {len(unique)})"
            )

        plan = ReconciliationPlan(duplicates_removed=removed, unidentified=unidentified)
        for record in unique:
            entry = index.get(record.external_id)
            if entry is None:
                plan.to_create.append(record)
            elif entry.type is not record.type:
                plan.to_type_update.append(record)
            elif self.needs_destination(record, entry):
                plan.to_add_destination.append(record)
            elif not self.skip_edit:
                changed = fields_differ(record, entry)
                if changed:
                    logger.debug(f"Transaction {record.external_id} changed: {', '.join(changed)}")
                    plan.to_field_update.append(record)

        for pair in suppressed_duplicates or []:
            if leg_ledger_id(pair.deposit, index) or leg_ledger_id(pair.withdrawal, index):
                plan.suppressed_duplicates.append(pair)

        logger.info(
            f"Plan: {len(plan.to_create)} to create, {len(plan.to_type_update)} type updates, "
            f"{len(plan.to_add_destination)} destination updates, "
            f"{len(plan.to_field_update)} field updates, "
            f"{len(plan.suppressed_duplicates)} duplicate pairs to remove"
        )
        return plan
