"""Shared fixtures: record builders and an in-memory ledger."""

from datetime import date
from decimal import Decimal
from typing import Any, Optional
import itertools

import pytest

from bank_ledger_sync.config import SyncConfig
from bank_ledger_sync.models.transaction import (
    Account,
    AccountKind,
    TransactionRecord,
    TransactionType,
)
from bank_ledger_sync.utils.exceptions import LedgerError


def make_record(
    txn_type: TransactionType,
    day: date,
    amount: str,
    external_id: str,
    account_id: Optional[str] = None,
    **kwargs: Any,
) -> TransactionRecord:
    """Build a deposit (account is destination) or withdrawal (account is source)."""
    if txn_type is TransactionType.DEPOSIT:
        kwargs.setdefault("destination_account_id", account_id)
    else:
        kwargs.setdefault("source_account_id", account_id)
    return TransactionRecord(
        type=txn_type,
        date=day,
        amount=Decimal(amount),
        external_id=external_id,
        **kwargs,
    )


def ledger_group(group_id: str, **split: Any) -> dict:
    """A ledger transaction group with a single split."""
    return {"id": group_id, "type": "transactions", "attributes": {"transactions": [split]}}


def account_resource(account_id: str, name: str, **attributes: Any) -> dict:
    return {"id": account_id, "type": "accounts", "attributes": {"name": name, **attributes}}


class FakeLedger:
    """In-memory stand-in for LedgerClient with the same async surface."""

    def __init__(self, accounts: Optional[list[dict]] = None):
        self.groups: dict[str, dict] = {}
        self.accounts: list[dict] = list(accounts or [])
        self.preferences: dict[str, str] = {}
        self.calls: list[tuple[str, Any]] = []
        self._ids = itertools.count(1000)

    # Reads

    async def search_transactions(self, date_after: date, tag_query: Optional[str] = None) -> list[dict]:
        return [
            g for g in self.groups.values()
            if g["attributes"]["transactions"][0].get("date", "")[:10] >= date_after.isoformat()
        ]

    async def get_all_transactions(self) -> list[dict]:
        return list(self.groups.values())

    async def get_transactions_by_tag(self, tag: str) -> list[dict]:
        return [
            g for g in self.groups.values()
            if tag in (g["attributes"]["transactions"][0].get("tags") or [])
        ]

    async def get_accounts(self, account_type: Optional[str] = None) -> list[dict]:
        if account_type is None:
            return list(self.accounts)
        return [a for a in self.accounts if a["attributes"].get("type") == account_type]

    async def get_config_blob(self, key: str) -> Optional[str]:
        return self.preferences.get(key)

    # Writes

    async def create_transaction(self, record: TransactionRecord) -> dict:
        group_id = str(next(self._ids))
        self.groups[group_id] = ledger_group(group_id, **record.to_ledger_payload())
        self.calls.append(("create", record.external_id))
        return {"data": self.groups[group_id]}

    async def update_transaction(self, ledger_id: str, record: TransactionRecord) -> dict:
        if ledger_id not in self.groups:
            raise LedgerError(f"Transaction {ledger_id} not found", 404)
        self.groups[ledger_id] = ledger_group(ledger_id, **record.to_ledger_payload())
        self.calls.append(("update", record.external_id))
        return {"data": self.groups[ledger_id]}

    async def delete_transaction(self, ledger_id: str) -> None:
        if ledger_id not in self.groups:
            raise LedgerError(f"Transaction {ledger_id} not found", 404)
        del self.groups[ledger_id]
        self.calls.append(("delete", ledger_id))

    async def create_account(self, spec: dict) -> dict:
        resource = account_resource(str(next(self._ids)), spec["name"], **{
            k: v for k, v in spec.items() if k != "name"
        })
        self.accounts.append(resource)
        self.calls.append(("create_account", spec["name"]))
        return resource

    async def put_config_blob(self, key: str, value: str) -> None:
        self.preferences[key] = value

    def writes(self) -> list[tuple[str, Any]]:
        return [call for call in self.calls if call[0] in ("create", "update", "delete")]


@pytest.fixture
def bank_a() -> Account:
    return Account(id="1", kind=AccountKind.BANK, type="leumi", number="111")


@pytest.fixture
def bank_b() -> Account:
    return Account(id="2", kind=AccountKind.BANK, type="hapoalim", number="222")


@pytest.fixture
def card() -> Account:
    return Account(id="9", kind=AccountKind.CREDIT_CARD, type="isracard", number="4580123456786943")


@pytest.fixture
def sync_config() -> SyncConfig:
    return SyncConfig(
        ledger={"base_url": "http://ledger.test", "token": "token"},
        banks=[
            {"type": "leumi", "name": "main", "credentials": {"username": "john"}},
            {"type": "hapoalim", "name": "savings", "credentials": {"userCode": "jd"}},
        ],
        scraper={"parallel": False},
    )
