"""
Unit tests for source acquisition.

Run with: pytest tests/test_acquisition.py -v
"""

import asyncio
import json
from datetime import datetime

import pytest

from bank_ledger_sync.config import CreditCardLogin, ScraperConfig
from bank_ledger_sync.models.source import ScrapeResult, SourceUser
from bank_ledger_sync.sources.acquisition import (
    GENERAL_ERROR,
    ExportDirectorySource,
    acquire,
    build_source_users,
    collect_batches,
    log_failures,
    successful_users,
)
from bank_ledger_sync.utils.exceptions import SourceError


class SlowSource:
    """Finishes scrapes in reverse order of submission."""

    def __init__(self, delays: dict[str, float], failing: tuple[str, ...] = ()):
        self.delays = delays
        self.failing = failing
        self.active = 0
        self.max_active = 0

    async def scrape(self, account_type: str, credentials: dict, start_date: datetime) -> ScrapeResult:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delays.get(account_type, 0))
            if account_type in self.failing:
                raise ConnectionError("site changed")
            return ScrapeResult(success=True, accounts=[{"accountNumber": account_type, "txns": []}])
        finally:
            self.active -= 1


def users(*types: str) -> list[SourceUser]:
    return [SourceUser(type=t, scrape_from=datetime(2024, 1, 1)) for t in types]


class TestAcquire:
    """Test concurrent and sequential scraping."""

    @pytest.mark.asyncio
    async def test_results_keep_user_order(self):
        """Results line up with users even when they finish out of order."""
        targets = users("a", "b", "c")
        source = SlowSource({"a": 0.03, "b": 0.02, "c": 0.0})

        results = await acquire(targets, source, ScraperConfig(parallel=True))

        assert [r.accounts[0].account_number for r in results] == ["a", "b", "c"]
        assert source.max_active == 3

    @pytest.mark.asyncio
    async def test_concurrency_limit(self):
        source = SlowSource({"a": 0.01, "b": 0.01, "c": 0.01})

        await acquire(users("a", "b", "c"), source, ScraperConfig(parallel=True, max_concurrency=1))

        assert source.max_active == 1

    @pytest.mark.asyncio
    async def test_sequential_mode(self):
        source = SlowSource({})

        results = await acquire(users("a", "b"), source, ScraperConfig(parallel=False))

        assert len(results) == 2
        assert source.max_active == 1

    @pytest.mark.asyncio
    async def test_failure_becomes_general_error(self, caplog):
        """A raising source yields an unsuccessful result and the others still run."""
        targets = users("a", "b")
        source = SlowSource({}, failing=("a",))

        results = await acquire(targets, source, ScraperConfig(parallel=True))

        assert results[0].success is False
        assert results[0].error_type == GENERAL_ERROR
        assert "site changed" in results[0].error_message
        assert results[1].success is True
        assert successful_users(results, targets) == [targets[1]]
        assert log_failures(results, targets) == 1
        assert "Scraping failed. Ignoring..." in caplog.text

    @pytest.mark.asyncio
    async def test_slow_source_times_out(self):
        """A scrape exceeding the timeout is reported as failed without holding up the rest."""
        targets = users("slow", "fast")
        source = SlowSource({"slow": 5.0})

        results = await acquire(targets, source, ScraperConfig(parallel=True, timeout=0.05))

        assert results[0].success is False
        assert results[0].error_type == GENERAL_ERROR
        assert results[0].error_message == "Timed out after 0.05s"
        assert results[1].success is True


class TestSourceUsers:
    """Test flattening configured logins."""

    def test_cards_follow_their_bank(self, sync_config):
        sync_config.banks[0].credit_cards = [
            CreditCardLogin(type="isracard", name="family", credentials={"id": "1"})
        ]
        now = datetime(2024, 6, 1)

        targets = build_source_users(sync_config, last_import_state={"leumi_john": "2024-05-20T00:00:00"}, now=now)

        assert [u.type for u in targets] == ["leumi", "isracard", "hapoalim"]
        assert targets[1].parent_bank_index == 0
        assert targets[0].scrape_from == datetime(2024, 5, 13)
        assert targets[2].last_import is None

    def test_only_accounts(self, sync_config):
        targets = build_source_users(sync_config, only_accounts=["savings"])

        assert [u.type for u in targets] == ["hapoalim"]


class TestCollectBatches:
    def test_leumi_sub_ledgers_are_filtered(self):
        leumi = SourceUser(type="leumi")
        result = ScrapeResult(
            success=True,
            accounts=[
                {"accountNumber": "123/45_01"},
                {"accountNumber": "123/45_xyz"},
                {"accountNumber": "999"},
            ],
        )

        batches = collect_batches([result], [leumi])

        assert [b.account.account_number for b in batches] == ["123/45_01", "999"]
        assert batches[0].kind == "bank"


class TestExportDirectorySource:
    """Test reading exported scrape results."""

    @pytest.mark.asyncio
    async def test_reads_keyed_export_and_filters_by_date(self, tmp_path):
        export = {
            "success": True,
            "accounts": [
                {
                    "accountNumber": "111",
                    "balance": 10.5,
                    "txns": [
                        {"date": "2023-12-31T22:00:00.000Z", "chargedAmount": -1, "identifier": "old"},
                        {"date": "2024-01-02T00:00:00.000Z", "chargedAmount": -2, "identifier": "new", "extra": "kept"},
                    ],
                }
            ],
        }
        (tmp_path / "leumi_john.json").write_text(json.dumps(export), encoding="utf-8")

        result = await ExportDirectorySource(tmp_path).scrape("leumi", {"username": "john"}, datetime(2024, 1, 1))

        txns = result.accounts[0].txns
        assert [t.identifier for t in txns] == ["new"]
        assert txns[0].raw_fields()["extra"] == "kept"

    @pytest.mark.asyncio
    async def test_falls_back_to_type_file(self, tmp_path):
        (tmp_path / "max.json").write_text('{"success": false, "errorType": "INVALID_PASSWORD"}', encoding="utf-8")

        result = await ExportDirectorySource(tmp_path).scrape("max", {"username": "a"}, datetime(2024, 1, 1))

        assert result.success is False
        assert result.error_type == "INVALID_PASSWORD"

    @pytest.mark.asyncio
    async def test_missing_or_broken_export(self, tmp_path):
        source = ExportDirectorySource(tmp_path)
        with pytest.raises(SourceError):
            await source.scrape("discount", {"id": "1"}, datetime(2024, 1, 1))

        (tmp_path / "discount.json").write_text("{broken", encoding="utf-8")
        with pytest.raises(SourceError):
            await source.scrape("discount", {"id": "1"}, datetime(2024, 1, 1))

    @pytest.mark.asyncio
    async def test_numeric_identifiers_are_read_as_strings(self, tmp_path):
        """Exports with numeric identifiers and account numbers still load."""
        export = {
            "success": True,
            "accounts": [
                {
                    "accountNumber": 111,
                    "txns": [{"date": "2024-01-02T00:00:00.000Z", "chargedAmount": -1200, "identifier": 6943}],
                }
            ],
        }
        (tmp_path / "leumi.json").write_text(json.dumps(export), encoding="utf-8")

        result = await ExportDirectorySource(tmp_path).scrape("leumi", {"username": "john"}, datetime(2024, 1, 1))

        account = result.accounts[0]
        assert account.account_number == "111"
        assert account.txns[0].identifier == "6943"
