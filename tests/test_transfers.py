"""
Unit tests for deposit/withdrawal transfer detection.

Run with: pytest tests/test_transfers.py -v
"""

from datetime import date
from decimal import Decimal

from bank_ledger_sync.matching.transfers import (
    TransferPairMatcher,
    build_transfer,
    existing_transfers_from_ledger,
)
from bank_ledger_sync.models.transaction import TransactionRecord, TransactionType

from conftest import ledger_group, make_record

DEPOSIT = TransactionType.DEPOSIT
WITHDRAWAL = TransactionType.WITHDRAWAL


class TestPairing:
    """Test greedy pairing of deposits with withdrawals."""

    def test_one_day_apart_becomes_transfer(self):
        """A withdrawal from B and a deposit into A a day later form one transfer B -> A."""
        withdrawal = make_record(WITHDRAWAL, date(2024, 1, 16), "500", "W1", "B", description="To A")
        deposit = make_record(DEPOSIT, date(2024, 1, 17), "500", "D1", "A", description="From B")

        result = TransferPairMatcher(date_tolerance=2).detect([withdrawal, deposit])

        assert len(result.transfers) == 1
        transfer = result.transfers[0]
        assert transfer.type is TransactionType.TRANSFER
        assert transfer.external_id == "transfer_W1_D1"
        assert transfer.source_account_id == "B"
        assert transfer.destination_account_id == "A"
        assert transfer.amount == Decimal("500")
        assert transfer.date == date(2024, 1, 16)
        assert result.remaining == []
        assert result.legs["transfer_W1_D1"] == (withdrawal, deposit)

    def test_four_days_apart_is_not_matched(self):
        """Legs further apart than the tolerance stay as they are."""
        withdrawal = make_record(WITHDRAWAL, date(2024, 1, 15), "500", "W1", "B")
        deposit = make_record(DEPOSIT, date(2024, 1, 19), "500", "D1", "A")

        result = TransferPairMatcher(date_tolerance=2).detect([withdrawal, deposit])

        assert result.transfers == []
        assert result.remaining == [withdrawal, deposit]

    def test_amount_within_a_cent_matches(self):
        """Amounts differing by at most 0.01 still pair."""
        withdrawal = make_record(WITHDRAWAL, date(2024, 1, 15), "100.00", "W1", "B")
        deposit = make_record(DEPOSIT, date(2024, 1, 15), "100.01", "D1", "A")

        result = TransferPairMatcher().detect([withdrawal, deposit])

        assert len(result.transfers) == 1
        assert result.transfers[0].amount == Decimal("100.01")

    def test_amount_off_by_more_than_a_cent_does_not_match(self):
        """Amounts differing by more than 0.01 never pair."""
        withdrawal = make_record(WITHDRAWAL, date(2024, 1, 15), "100.00", "W1", "B")
        deposit = make_record(DEPOSIT, date(2024, 1, 15), "100.02", "D1", "A")

        assert TransferPairMatcher().detect([withdrawal, deposit]).transfers == []

    def test_same_account_is_not_a_transfer(self):
        """A refund on the same account is not a transfer."""
        withdrawal = make_record(WITHDRAWAL, date(2024, 1, 15), "80", "W1", "A")
        deposit = make_record(DEPOSIT, date(2024, 1, 15), "80", "D1", "A")

        assert TransferPairMatcher().detect([withdrawal, deposit]).transfers == []

    def test_first_withdrawal_in_date_order_wins(self):
        """Several eligible withdrawals: the earliest is taken, the other remains."""
        early = make_record(WITHDRAWAL, date(2024, 1, 14), "50", "W-early", "B")
        late = make_record(WITHDRAWAL, date(2024, 1, 16), "50", "W-late", "C")
        deposit = make_record(DEPOSIT, date(2024, 1, 15), "50", "D1", "A")

        result = TransferPairMatcher().detect([late, deposit, early])

        assert [t.external_id for t in result.transfers] == ["transfer_W-early_D1"]
        assert result.remaining == [late]

    def test_withdrawal_is_used_only_once(self):
        """Two deposits cannot share one withdrawal."""
        withdrawal = make_record(WITHDRAWAL, date(2024, 1, 15), "50", "W1", "B")
        first = make_record(DEPOSIT, date(2024, 1, 15), "50", "D1", "A")
        second = make_record(DEPOSIT, date(2024, 1, 16), "50", "D2", "C")

        result = TransferPairMatcher().detect([withdrawal, first, second])

        assert len(result.transfers) == 1
        assert result.remaining == [second]

    def test_every_record_is_accounted_for_once(self):
        """Each input id lands in exactly one of transfers (as a leg), duplicates or remaining."""
        records = [
            make_record(WITHDRAWAL, date(2024, 1, 10), "10", "W1", "B"),
            make_record(DEPOSIT, date(2024, 1, 10), "10", "D1", "A"),
            make_record(WITHDRAWAL, date(2024, 1, 12), "20", "W2", "B"),
            make_record(DEPOSIT, date(2024, 1, 12), "20", "D2", "A"),
            make_record(WITHDRAWAL, date(2024, 1, 20), "33", "W3", "B"),
            make_record(DEPOSIT, date(2024, 1, 21), "99", "D3", "A"),
        ]
        existing = [
            TransactionRecord(
                type=TransactionType.TRANSFER,
                date=date(2024, 1, 12),
                amount=Decimal("20"),
                external_id="old",
                source_account_id="B",
                destination_account_id="A",
                ledger_id="77",
            )
        ]

        result = TransferPairMatcher().detect(records, existing)

        seen = [r.external_id for r in result.remaining]
        for withdrawal, deposit in result.legs.values():
            seen += [withdrawal.external_id, deposit.external_id]
        for pair in result.duplicates_of_existing:
            seen += [pair.withdrawal.external_id, pair.deposit.external_id]
        assert sorted(seen) == sorted(r.external_id for r in records)


class TestInvalidRecords:
    """Test records missing required fields."""

    def test_records_missing_fields_are_kept_in_remaining(self):
        """Records without date, amount or external id skip matching but are not lost."""
        no_date = make_record(DEPOSIT, date(2024, 1, 15), "10", "D0", "A")
        no_date.date = None
        no_id = make_record(WITHDRAWAL, date(2024, 1, 15), "10", "", "B")
        transfer = TransactionRecord(
            type=TransactionType.TRANSFER,
            date=date(2024, 1, 15),
            amount=Decimal("10"),
            external_id="T1",
        )

        result = TransferPairMatcher().detect([no_date, no_id, transfer])

        assert result.transfers == []
        assert result.remaining == [no_date, no_id, transfer]


class TestExistingTransfers:
    """Test duplicate detection against transfers already in the ledger."""

    def test_pair_matching_existing_transfer_is_a_duplicate(self):
        """A pair already reconciled by a stored transfer is reported, not re-created."""
        withdrawal = make_record(WITHDRAWAL, date(2024, 1, 15), "500", "W1", "B")
        deposit = make_record(DEPOSIT, date(2024, 1, 16), "500", "D1", "A")
        existing = existing_transfers_from_ledger(
            [
                ledger_group(
                    "55",
                    type="transfer",
                    date="2024-01-15T00:00:00+02:00",
                    amount="500.00",
                    source_id="B",
                    destination_id="A",
                    external_id="transfer_W1_D1",
                ),
                ledger_group("56", type="withdrawal", date="2024-01-15", amount="500", source_id="B"),
            ]
        )

        result = TransferPairMatcher().detect([withdrawal, deposit], existing)

        assert result.transfers == []
        assert len(result.duplicates_of_existing) == 1
        pair = result.duplicates_of_existing[0]
        assert pair.existing_transfer.ledger_id == "55"
        assert (pair.deposit, pair.withdrawal) == (deposit, withdrawal)

    def test_existing_transfer_between_other_accounts_is_ignored(self):
        """Only a transfer between the same two accounts counts."""
        withdrawal = make_record(WITHDRAWAL, date(2024, 1, 15), "500", "W1", "B")
        deposit = make_record(DEPOSIT, date(2024, 1, 15), "500", "D1", "A")
        other = TransactionRecord(
            type=TransactionType.TRANSFER,
            date=date(2024, 1, 15),
            amount=Decimal("500"),
            external_id="x",
            source_account_id="C",
            destination_account_id="A",
        )

        result = TransferPairMatcher().detect([withdrawal, deposit], [other])

        assert len(result.transfers) == 1
        assert result.duplicates_of_existing == []


class TestBuildTransfer:
    """Test the synthesized transfer's fields."""

    def test_descriptions_and_notes_are_combined(self):
        """Different descriptions are joined with an arrow and notes with a separator."""
        withdrawal = make_record(
            WITHDRAWAL, date(2024, 1, 15), "10", "W1", "B",
            description="Out", notes="paid", internal_reference="r1", tags={"x"},
            currency_code="ILS",
        )
        deposit = make_record(
            DEPOSIT, date(2024, 1, 15), "10", "D1", "A",
            description="In", notes="received", tags={"y"}, category_name="Salary",
        )

        transfer = build_transfer(deposit, withdrawal)

        assert transfer.description == "Out → In"
        assert transfer.notes == "paid\n---\nreceived"
        assert transfer.internal_reference == "r1_"
        assert transfer.tags == {"x", "y"}
        assert transfer.currency_code == "ILS"
        assert transfer.category_name is None

    def test_identical_notes_are_not_repeated(self):
        """Identical descriptions and notes appear once."""
        withdrawal = make_record(WITHDRAWAL, date(2024, 1, 15), "10", "W1", "B", description="Move", notes="n")
        deposit = make_record(DEPOSIT, date(2024, 1, 15), "10", "D1", "A", description="Move", notes="n")

        transfer = build_transfer(deposit, withdrawal)

        assert transfer.description == "Move"
        assert transfer.notes == "n"
