"""
External identifiers and the ledger snapshot index.

Every record carries an external id derived from its source data; the same
source transaction must produce the same id on every run, which is what makes
re-imports idempotent.
"""

from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Iterable, Iterator, Optional
import hashlib
import json
import logging

from .models.transaction import ExistingLedgerEntry, TransactionRecord, TransactionType
from .utils.exceptions import UnknownIdentityStrategy

logger = logging.getLogger(__name__)

# Raw fields left out of the content hash
HASH_EXCLUDED_FIELDS = frozenset({"account", "category"})

DEFAULT_STRATEGY = "identifier"


def _content_hash(raw: dict[str, Any]) -> str:
    """SHA-1 of the canonical JSON of every raw field except account and category."""
    fields = {k: v for k, v in raw.items() if k not in HASH_EXCLUDED_FIELDS}
    canonical = json.dumps(fields, sort_keys=True, default=str, ensure_ascii=False)
    return hashlib.sha1(canonical.encode("utf-8")).hexdigest()


def _source_identifier(raw: dict[str, Any]) -> Optional[str]:
    identifier = raw.get("identifier")
    return str(identifier) if identifier not in (None, "") else None


IDENTITY_STRATEGIES: dict[str, Callable[[dict[str, Any]], Optional[str]]] = {
    "hash": _content_hash,
    "identifier": _source_identifier,
}


def external_id_for(raw: dict[str, Any], strategy: str = DEFAULT_STRATEGY) -> Optional[str]:
    """
    Derive the external id of a raw source transaction.

    Args:
        raw: Raw source fields
        strategy: Registered strategy name ("hash" or "identifier")

    Returns:
        External id, or None when the source offers no identifier

    Raises:
        UnknownIdentityStrategy: If the strategy name is not registered
    """
    getter = IDENTITY_STRATEGIES.get(strategy)
    if getter is None:
        raise UnknownIdentityStrategy(strategy)
    return getter(raw)


def parse_ledger_date(value: Optional[str]) -> Optional[date]:
    """Parse the date part of a ledger timestamp ("2024-01-15T00:00:00+02:00")."""
    if not value:
        return None
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        logger.warning(f"Could not parse ledger date: {value}")
        return None


def parse_ledger_amount(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return abs(Decimal(str(value)))
    except InvalidOperation:
        logger.warning(f"Could not parse ledger amount: {value}")
        return None


def _parse_type(value: Optional[str]) -> Optional[TransactionType]:
    try:
        return TransactionType(value) if value else None
    except ValueError:
        # Opening balances, reconciliations and the like never take part in syncing
        return None


def first_split(group: dict) -> Optional[dict]:
    """First split of a ledger transaction group, if any."""
    splits = (group.get("attributes") or {}).get("transactions") or []
    return splits[0] if splits else None


def entry_from_ledger(group: dict) -> Optional[ExistingLedgerEntry]:
    """Build an index entry from a ledger transaction group (None when it has no external id or type)."""
    split = first_split(group)
    if not split:
        return None
    external_id = split.get("external_id")
    txn_type = _parse_type(split.get("type"))
    if not external_id or txn_type is None:
        return None
    return ExistingLedgerEntry(
        id=str(group.get("id")),
        type=txn_type,
        external_id=external_id,
        source_account_id=_optional_str(split.get("source_id")),
        destination_account_id=_optional_str(split.get("destination_id")),
        description=split.get("description") or "",
        date=parse_ledger_date(split.get("date")),
        amount=parse_ledger_amount(split.get("amount")),
        notes=split.get("notes") or None,
    )


def record_from_ledger(group: dict) -> Optional[TransactionRecord]:
    """Turn a ledger transaction group back into a record (used by backfill)."""
    split = first_split(group)
    if not split:
        return None
    return TransactionRecord(
        type=_parse_type(split.get("type")),
        date=parse_ledger_date(split.get("date")),
        amount=parse_ledger_amount(split.get("amount")),
        external_id=split.get("external_id") or None,
        description=split.get("description") or "",
        notes=split.get("notes") or None,
        source_account_id=_optional_str(split.get("source_id")),
        destination_account_id=_optional_str(split.get("destination_id")),
        currency_code=split.get("currency_code"),
        category_name=split.get("category_name"),
        internal_reference=split.get("internal_reference"),
        tags=set(split.get("tags") or []),
        process_date=parse_ledger_date(split.get("process_date")),
        ledger_id=str(group.get("id")),
    )


def _optional_str(value: Any) -> Optional[str]:
    return str(value) if value not in (None, "") else None


class LedgerIndex:
    """Existing ledger transactions keyed by external id."""

    def __init__(self, entries: Iterable[ExistingLedgerEntry] = ()):
        self._entries: dict[str, ExistingLedgerEntry] = {}
        for entry in entries:
            # Later groups win, matching a dict built over the API listing
            self._entries[entry.external_id] = entry

    @classmethod
    def from_ledger(cls, groups: Iterable[dict]) -> "LedgerIndex":
        entries = (entry_from_ledger(group) for group in groups)
        index = cls(entry for entry in entries if entry is not None)
        logger.debug(f"Indexed {len(index)} ledger transactions by external id")
        return index

    def get(self, external_id: Optional[str]) -> Optional[ExistingLedgerEntry]:
        if not external_id:
            return None
        return self._entries.get(external_id)

    def __contains__(self, external_id: object) -> bool:
        return external_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[ExistingLedgerEntry]:
        return iter(self._entries.values())


def dedupe_by_external_id(
    records: Iterable[TransactionRecord],
) -> tuple[list[TransactionRecord], int]:
    """
    Drop records whose external id was already seen, keeping the first.

    Returns:
        Tuple of (unique records, number removed)
    """
    seen: set[str] = set()
    unique: list[TransactionRecord] = []
    removed = 0
    for record in records:
        if record.external_id and record.external_id in seen:
            removed += 1
            continue
        if record.external_id:
            seen.add(record.external_id)
        unique.append(record)
    return unique, removed


def group_by_external_id(groups: Iterable[dict]) -> tuple[dict[str, list[dict]], list[dict]]:
    """
    Group raw ledger transaction groups by the external id of their first split.

    Returns:
        Tuple of (groups keyed by external id, groups without external id)
    """
    by_external_id: dict[str, list[dict]] = {}
    without_external_id: list[dict] = []
    for group in groups:
        split = first_split(group)
        if not split:
            continue
        external_id = split.get("external_id")
        if not external_id:
            without_external_id.append(group)
            continue
        by_external_id.setdefault(external_id, []).append(group)
    return by_external_id, without_external_id
