"""Last-import watermark persisted in the ledger between runs."""

from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional
import json
import logging

from ..models.source import SourceUser

logger = logging.getLogger(__name__)

# Credential field identifying the login of each source type
IDENTITY_FIELD_BY_TYPE: dict[str, str] = {
    "leumi": "username",
    "visaCal": "username",
    "beinleumi": "username",
    "mizrahi": "username",
    "massad": "username",
    "max": "username",
    "amex": "username",
    "yahav": "username",
    "otsar-hahayal": "username",
    "isracard": "id",
    "discount": "id",
    "beyahad-bishvilha": "id",
    "hapoalim": "userCode",
}

# Re-scrape a week back so late-settling transactions are picked up
RESCRAPE_OVERLAP = timedelta(days=7)
FIRST_RUN_LOOKBACK = timedelta(days=5 * 365)


def account_identification(account_type: str, credentials: dict) -> str:
    """Stable key of a source login, e.g. "leumi_john"."""
    identity_field = IDENTITY_FIELD_BY_TYPE.get(account_type)
    if identity_field is None:
        return account_type
    return f"{account_type}_{credentials.get(identity_field)}"


def source_key(user: SourceUser) -> str:
    return account_identification(user.type, user.credentials)


def last_import_for(
    user: SourceUser,
    state: Optional[dict[str, str]],
    since: Optional[datetime] = None,
) -> Optional[datetime]:
    """
    Resolve when a source was last imported successfully.

    Args:
        user: Source login
        state: Source key -> ISO-8601 timestamp
        since: Explicit override

    Returns:
        Override, stored timestamp, or None on first run
    """
    if since is not None:
        return since
    if not state:
        return None
    stored = state.get(source_key(user))
    if not stored:
        return None
    try:
        return datetime.fromisoformat(stored.replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Ignoring unparsable last import for {source_key(user)}: {stored}")
        return None


def scrape_from(last_import: Optional[datetime], now: Optional[datetime] = None) -> datetime:
    """Start date for a scrape: a week before the last import, or five years back."""
    if last_import is not None:
        return last_import - RESCRAPE_OVERLAP
    return (now or datetime.now()) - FIRST_RUN_LOOKBACK


def parse_state(blob: Optional[str]) -> dict[str, Any]:
    """Decode the stored state blob (missing or corrupt blobs yield an empty state)."""
    if not blob:
        logger.debug("No previous state found (first run), using empty state")
        return {}
    try:
        state = json.loads(blob)
    except ValueError:
        logger.warning("Stored state is not valid JSON, starting from an empty state")
        return {}
    return state if isinstance(state, dict) else {}


def with_last_import(
    users: Iterable[SourceUser],
    state: dict[str, Any],
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """
    Stamp successfully imported users with the current time.

    Args:
        users: Users whose scrape succeeded
        state: Previous state
        now: Timestamp to record (defaults to the current UTC time)

    Returns:
        New state; keys of other users are kept
    """
    stamp = (now or datetime.now(timezone.utc)).isoformat()
    previous = state.get("lastImport")
    last_import = dict(previous) if isinstance(previous, dict) else {}
    for user in users:
        last_import[source_key(user)] = stamp
    return {**state, "lastImport": last_import}
