"""
Acquisition of raw transactions from configured sources.
Sources are scraped concurrently or sequentially; each result keeps the slot
of the user it belongs to.
"""

from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, Optional, Protocol
import asyncio
import json
import logging
import re

from pydantic import ValidationError

from ..config import ScraperConfig, SyncConfig
from ..models.source import ScrapedAccount, ScrapeResult, SourceAccountBatch, SourceUser
from ..sync.state import account_identification, last_import_for, scrape_from
from ..utils.exceptions import SourceError

logger = logging.getLogger(__name__)

GENERAL_ERROR = "GENERAL_ERROR"


class SourceClient(Protocol):
    """Anything able to scrape one login's accounts since a start date."""

    async def scrape(
        self, account_type: str, credentials: dict, start_date: datetime
    ) -> ScrapeResult: ...


class ExportDirectorySource:
    """
    Source reading scrape results exported as JSON files.

    A scraper process writes `<type>_<login>.json` (or plain `<type>.json`)
    with the same structure a live scrape returns; transactions before the
    start date are ignored.
    """

    def __init__(self, directory: Path):
        self.directory = directory

    async def scrape(
        self,
        account_type: str,
        credentials: dict,
        start_date: datetime,
    ) -> ScrapeResult:
        path = self._path_for(account_type, credentials)
        if not path.exists():
            raise SourceError(f"No export found at {path}")

        try:
            content = await asyncio.to_thread(path.read_text, encoding="utf-8")
            result = ScrapeResult.model_validate(json.loads(content))
        except (OSError, ValueError, ValidationError) as e:
            raise SourceError(f"Failed to read export {path}: {e}") from e

        cutoff = start_date.date().isoformat()
        for account in result.accounts:
            account.txns = [t for t in account.txns if t.date[:10] >= cutoff]
        return result

    def _path_for(self, account_type: str, credentials: dict) -> Path:
        keyed = self.directory / f"{account_identification(account_type, credentials)}.json"
        if keyed.exists():
            return keyed
        return self.directory / f"{account_type}.json"


# Leumi reports sub-ledgers as "<number>_<suffix>"; only two-digit suffixes are real accounts
_LEUMI_SUFFIX = re.compile(r"^[0-9]{2}$")


def _leumi_filter(account: ScrapedAccount) -> bool:
    parts = account.account_number.split("_")
    return not (len(parts) == 2 and not _LEUMI_SUFFIX.match(parts[1]))


ACCOUNT_FILTERS: dict[str, Callable[[ScrapedAccount], bool]] = {
    "leumi": _leumi_filter,
}


def build_source_users(
    config: SyncConfig,
    only_accounts: Optional[list[str]] = None,
    last_import_state: Optional[dict[str, str]] = None,
    since: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> list[SourceUser]:
    """
    Flatten configured banks and their cards into scrape targets.

    Args:
        config: Application configuration
        only_accounts: Restrict to these login names
        last_import_state: Source key -> last successful import timestamp
        since: Explicit start date overriding the stored state
        now: Reference time (defaults to the current time)

    Returns:
        Ordered list of users with their scrape start dates
    """
    users: list[SourceUser] = []
    for index, bank in enumerate(config.banks):
        users.append(SourceUser(type=bank.type, credentials=bank.credentials, name=bank.name))
        for card in bank.credit_cards:
            users.append(
                SourceUser(
                    type=card.type,
                    credentials=card.credentials,
                    name=card.name,
                    parent_bank_index=index,
                )
            )

    if only_accounts:
        users = [u for u in users if (u.name or "") in only_accounts]

    for user in users:
        user.last_import = last_import_for(user, last_import_state, since)
        user.scrape_from = scrape_from(user.last_import, now)

    return users


async def acquire(
    users: list[SourceUser],
    source: SourceClient,
    scraper_config: ScraperConfig,
) -> list[ScrapeResult]:
    """
    Scrape every user, keeping results in user order.

    Args:
        users: Scrape targets
        source: Source collaborator
        scraper_config: Parallelism and timeout settings

    Returns:
        One result per user; failures are reported as unsuccessful results
    """
    semaphore = (
        asyncio.Semaphore(scraper_config.max_concurrency)
        if scraper_config.max_concurrency
        else None
    )

    def make_action(user: SourceUser) -> Callable[[], Awaitable[ScrapeResult]]:
        async def action() -> ScrapeResult:
            if semaphore is None:
                return await _scrape_one(source, user, scraper_config.timeout)
            async with semaphore:
                return await _scrape_one(source, user, scraper_config.timeout)

        return action

    actions = [make_action(user) for user in users]

    if scraper_config.parallel:
        return list(await asyncio.gather(*(action() for action in actions)))

    results: list[ScrapeResult] = []
    for action in actions:
        results.append(await action())
    return results


async def _scrape_one(
    source: SourceClient, user: SourceUser, timeout: Optional[float] = None
) -> ScrapeResult:
    logger.debug(f"Scraping {user.label} from {user.scrape_from}")
    start_date = user.scrape_from or datetime.now()
    try:
        return await asyncio.wait_for(
            source.scrape(user.type, user.credentials, start_date), timeout
        )
    except asyncio.TimeoutError:
        logger.error(f"Scraping {user.label} timed out after {timeout}s")
        return ScrapeResult(
            success=False, error_type=GENERAL_ERROR, error_message=f"Timed out after {timeout}s"
        )
    except Exception as e:
        # A broken source must never take the other accounts down with it
        logger.error(f"Unexpected error while scraping {user.label}: {e}")
        return ScrapeResult(success=False, error_type=GENERAL_ERROR, error_message=str(e))


def collect_batches(
    results: list[ScrapeResult], users: list[SourceUser]
) -> list[SourceAccountBatch]:
    """Pair every scraped account with its user and drop filtered-out accounts."""
    batches: list[SourceAccountBatch] = []
    for result, user in zip(results, users):
        account_filter = ACCOUNT_FILTERS.get(user.type)
        for account in result.accounts:
            if account_filter and not account_filter(account):
                logger.debug(f"Ignoring {user.type} account {account.account_number}")
                continue
            batches.append(SourceAccountBatch(account=account, user=user))
    return batches


def successful_users(results: list[ScrapeResult], users: list[SourceUser]) -> list[SourceUser]:
    return [user for result, user in zip(results, users) if result.success]


def log_failures(results: list[ScrapeResult], users: list[SourceUser]) -> int:
    """Log every failed scrape on a single line and return how many failed."""
    failures = [
        f"{user.label} failed with type {result.error_type or 'UNKNOWN'}: "
        f"{result.error_message or 'Unknown error'}"
        for result, user in zip(results, users)
        if not result.success
    ]
    if failures:
        logger.error(f"Scraping failed. Ignoring... {', '.join(failures)}")
    return len(failures)
