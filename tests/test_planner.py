"""
Unit tests for reconciliation planning and plan execution.

Run with: pytest tests/test_planner.py -v
"""

from datetime import date
from unittest.mock import AsyncMock

import pytest

from bank_ledger_sync.identity import LedgerIndex
from bank_ledger_sync.models.transaction import (
    DuplicatePair,
    ReconciliationPlan,
    TransactionRecord,
    TransactionType,
)
from bank_ledger_sync.sync.executor import LedgerSyncExecutor
from bank_ledger_sync.sync.planner import ReconciliationPlanner
from bank_ledger_sync.utils.exceptions import LedgerError

from conftest import FakeLedger, ledger_group, make_record

DEPOSIT = TransactionType.DEPOSIT
WITHDRAWAL = TransactionType.WITHDRAWAL


def stored(group_id: str, record: TransactionRecord) -> dict:
    return ledger_group(group_id, **record.to_ledger_payload())


class TestReconciliationPlanner:
    """Test classification of records against the ledger snapshot."""

    def test_new_records_are_created(self):
        """Records unknown to the ledger go to creation."""
        record = make_record(DEPOSIT, date(2024, 1, 15), "10", "D1", "1")

        plan = ReconciliationPlanner().plan([record], LedgerIndex())

        assert plan.to_create == [record]
        assert not plan.to_type_update and not plan.to_field_update

    def test_duplicate_external_ids_keep_the_first(self):
        """Only the first record of an external id is planned."""
        first = make_record(DEPOSIT, date(2024, 1, 15), "10", "D1", "1", description="first")
        second = make_record(DEPOSIT, date(2024, 1, 15), "10", "D1", "1", description="second")

        plan = ReconciliationPlanner().plan([first, second], LedgerIndex())

        assert plan.to_create == [first]
        assert plan.duplicates_removed == 1

    def test_records_without_external_id_are_left_out(self, caplog):
        """A record with no external id is never created, since no later run could match it."""
        anonymous = make_record(WITHDRAWAL, date(2024, 1, 16), "10", None, "1", description="coffee")
        known = make_record(WITHDRAWAL, date(2024, 1, 16), "12", "W1", "1")

        plan = ReconciliationPlanner().plan([anonymous, known], LedgerIndex())

        assert plan.to_create == [known]
        assert plan.unidentified == 1
        assert "without an external id" in caplog.text

    def test_type_change_is_a_type_update(self):
        """A stored withdrawal that is now a transfer is replaced."""
        withdrawal = make_record(WITHDRAWAL, date(2024, 1, 15), "10", "W1", "1")
        index = LedgerIndex.from_ledger([stored("7", withdrawal)])
        transfer = make_record(WITHDRAWAL, date(2024, 1, 15), "10", "W1", "1", destination_account_id="9")
        transfer.type = TransactionType.TRANSFER

        plan = ReconciliationPlanner().plan([transfer], index)

        assert plan.to_type_update == [transfer]
        assert plan.to_create == []

    def test_missing_destination_is_added(self):
        """A stored card withdrawal without merchant gets its destination."""
        original = make_record(WITHDRAWAL, date(2024, 1, 15), "10", "W1", "9")
        index = LedgerIndex.from_ledger([stored("7", original)])
        enriched = make_record(WITHDRAWAL, date(2024, 1, 15), "10", "W1", "9", destination_account_id="300")

        plan = ReconciliationPlanner(skip_edit=False).plan([enriched], index)

        assert plan.to_add_destination == [enriched]
        assert plan.to_field_update == []

    def test_field_updates_only_when_edit_enabled_and_changed(self):
        """Same-type matches are updated only without skip_edit and only when they differ."""
        original = make_record(DEPOSIT, date(2024, 1, 15), "10", "D1", "1", description="old")
        index = LedgerIndex.from_ledger([stored("7", original)])
        changed = make_record(DEPOSIT, date(2024, 1, 15), "10", "D1", "1", description="new")
        same = make_record(DEPOSIT, date(2024, 1, 15), "10", "D1", "1", description="old")

        assert ReconciliationPlanner(skip_edit=True).plan([changed], index).to_field_update == []
        assert ReconciliationPlanner(skip_edit=False).plan([changed], index).to_field_update == [changed]
        assert ReconciliationPlanner(skip_edit=False).plan([same], index).is_empty

    def test_planning_twice_against_synced_ledger_is_empty(self):
        """After applying a plan, planning the same records again yields nothing."""
        records = [
            make_record(DEPOSIT, date(2024, 1, 15), "10", "D1", "1", description="salary"),
            make_record(WITHDRAWAL, date(2024, 1, 16), "5.5", "W1", "1", notes="coffee"),
        ]
        planner = ReconciliationPlanner(skip_edit=False)
        first = planner.plan(records, LedgerIndex())
        index = LedgerIndex.from_ledger(
            [stored(str(i), record) for i, record in enumerate(first.to_create)]
        )

        second = planner.plan(records, index)

        assert len(first.to_create) == 2
        assert second.is_empty

    def test_suppressed_duplicates_need_a_stored_leg(self):
        """Duplicate pairs are only planned for deletion when a leg exists in the ledger."""
        deposit = make_record(DEPOSIT, date(2024, 1, 15), "10", "D1", "1")
        withdrawal = make_record(WITHDRAWAL, date(2024, 1, 15), "10", "W1", "2")
        existing = TransactionRecord(type=TransactionType.TRANSFER, date=date(2024, 1, 15), amount=None, external_id="T")
        pair = DuplicatePair(deposit=deposit, withdrawal=withdrawal, existing_transfer=existing)

        unstored = ReconciliationPlanner().plan([], LedgerIndex(), [pair])
        stored_index = LedgerIndex.from_ledger([stored("4", deposit)])
        with_leg = ReconciliationPlanner().plan([], stored_index, [pair])

        assert unstored.suppressed_duplicates == []
        assert with_leg.suppressed_duplicates == [pair]


class TestLedgerSyncExecutor:
    """Test applying a plan to the ledger."""

    @pytest.mark.asyncio
    async def test_creates_and_replaces(self):
        """Creates are posted; type updates delete the stored entry then create."""
        ledger = FakeLedger()
        old = make_record(WITHDRAWAL, date(2024, 1, 15), "10", "W1", "1")
        ledger.groups["7"] = stored("7", old)
        index = LedgerIndex.from_ledger(ledger.groups.values())
        transfer = make_record(WITHDRAWAL, date(2024, 1, 15), "10", "W1", "1", destination_account_id="9")
        transfer.type = TransactionType.TRANSFER
        new = make_record(DEPOSIT, date(2024, 1, 16), "20", "D1", "1")
        plan = ReconciliationPlan(to_create=[new], to_type_update=[transfer])

        report = await LedgerSyncExecutor(ledger).execute(plan, index)

        assert ledger.writes() == [("create", "D1"), ("delete", "7"), ("create", "W1")]
        assert (report.created, report.deleted, report.failed) == (2, 1, 0)

    @pytest.mark.asyncio
    async def test_failures_are_counted_and_batch_continues(self):
        """A failing write is recorded; the remaining writes still happen."""
        ledger = AsyncMock()
        ledger.create_transaction.side_effect = [LedgerError("rejected", 422), {}]
        records = [
            make_record(DEPOSIT, date(2024, 1, 15), "10", "D1", "1"),
            make_record(DEPOSIT, date(2024, 1, 16), "20", "D2", "1"),
        ]

        report = await LedgerSyncExecutor(ledger).execute(ReconciliationPlan(to_create=records), LedgerIndex())

        assert report.created == 1
        assert report.failed == 1
        assert report.failures[0][1] == "D1"
        assert ledger.create_transaction.await_count == 2

    @pytest.mark.asyncio
    async def test_duplicate_legs_are_deleted(self):
        """Stored legs of pairs duplicating an existing transfer are removed."""
        ledger = FakeLedger()
        deposit = make_record(DEPOSIT, date(2024, 1, 15), "10", "D1", "1")
        withdrawal = make_record(WITHDRAWAL, date(2024, 1, 15), "10", "W1", "2")
        ledger.groups["4"] = stored("4", deposit)
        index = LedgerIndex.from_ledger(ledger.groups.values())
        existing = TransactionRecord(type=TransactionType.TRANSFER, date=date(2024, 1, 15), amount=None, external_id="T")
        plan = ReconciliationPlan(
            suppressed_duplicates=[DuplicatePair(deposit=deposit, withdrawal=withdrawal, existing_transfer=existing)]
        )

        report = await LedgerSyncExecutor(ledger).execute(plan, index)

        assert ledger.writes() == [("delete", "4")]
        assert report.deleted == 1

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self):
        """Dry runs only log the plan."""
        ledger = AsyncMock()
        plan = ReconciliationPlan(to_create=[make_record(DEPOSIT, date(2024, 1, 15), "10", "D1", "1")])

        report = await LedgerSyncExecutor(ledger, dry_run=True).execute(plan, LedgerIndex())

        ledger.create_transaction.assert_not_awaited()
        assert report.created == 0
