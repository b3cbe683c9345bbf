"""
Import pipeline.
Acquire -> normalize -> classify -> plan -> execute, then record the
last-import watermark.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional
import json
import logging

from .config import SyncConfig
from .context import RunContext
from .identity import LedgerIndex
from .ledger.accounts import AccountDirectory
from .ledger.client import LedgerClient
from .matching.engine import ReconciliationEngine
from .matching.transfers import existing_transfers_from_ledger
from .models.transaction import Account, ReconciliationPlan, SyncReport, TransactionRecord
from .sources.acquisition import (
    SourceClient,
    acquire,
    build_source_users,
    collect_batches,
    log_failures,
    successful_users,
)
from .sources.normalizer import TransactionNormalizer
from .sync.executor import LedgerSyncExecutor
from .sync.planner import ReconciliationPlanner
from .sync.state import parse_state, with_last_import

logger = logging.getLogger(__name__)

# The snapshot starts a day before the oldest record, existing transfers three days before
INDEX_LOOKBACK = timedelta(days=1)
TRANSFER_LOOKBACK = timedelta(days=3)


@dataclass
class ImportOptions:
    """Options of a single import run."""

    dry_run: bool = False
    since: Optional[datetime] = None
    only_accounts: Optional[list[str]] = None
    skip_edit: bool = True
    date_tolerance: Optional[int] = None


@dataclass
class ImportResult:
    """What an import run did."""

    report: SyncReport = field(default_factory=SyncReport)
    plan: ReconciliationPlan = field(default_factory=ReconciliationPlan)
    sources: int = 0
    failed_sources: int = 0
    transactions: int = 0
    drifted_accounts: int = 0


async def enrich_merchants(
    pairs: list[tuple[TransactionRecord, Account]],
    directory: AccountDirectory,
) -> int:
    """
    Give credit card withdrawals their merchant's expense account as destination.

    Returns:
        Number of records enriched
    """
    enriched = 0
    for record, account in pairs:
        if not (record.is_withdrawal and account.is_credit_card and record.description):
            continue
        destination = await directory.resolve_merchant(record.description)
        if destination is None:
            logger.warning(
                f"No expense account for merchant {record.description}, leaving destination empty"
            )
            continue
        record.destination_account_id = destination
        enriched += 1
    return enriched


async def read_state(ledger: LedgerClient, key: str) -> dict:
    logger.info("Getting state from the ledger...")
    return parse_state(await ledger.get_config_blob(key))


async def run_import(
    config: SyncConfig,
    options: ImportOptions,
    ledger: LedgerClient,
    source: SourceClient,
) -> ImportResult:
    """
    Run a full import.

    Args:
        config: Application configuration
        options: Run options
        ledger: Ledger collaborator
        source: Source collaborator

    Returns:
        Summary of the run

    Raises:
        LedgerError: If the ledger cannot be read at startup
    """
    context = RunContext(dry_run=options.dry_run)
    result = ImportResult()

    state = await read_state(ledger, config.ledger.state_key)
    last_import = state.get("lastImport")

    users = build_source_users(
        config,
        only_accounts=options.only_accounts,
        last_import_state=last_import if isinstance(last_import, dict) else None,
        since=options.since,
    )
    result.sources = len(users)
    logger.info(f"Getting scrape data for {len(users)} sources...")
    scrape_results = await acquire(users, source, config.scraper)
    result.failed_sources = log_failures(scrape_results, users)
    batches = collect_batches(scrape_results, users)

    logger.info("Getting or creating accounts...")
    directory = AccountDirectory(ledger, context)
    accounts = await directory.map_accounts(batches)

    normalizer = TransactionNormalizer(
        config.identify_method, config.currency_symbol_map, config.timezone
    )
    pairs = normalizer.normalize_batches(batches, accounts)
    await enrich_merchants(pairs, directory)
    records = [record for record, _ in pairs]
    result.transactions = len(records)

    dates = [r.date for r in records if r.date is not None]
    oldest = min(dates) if dates else datetime.now().date()

    existing_transfers = existing_transfers_from_ledger(
        await ledger.search_transactions(oldest - TRANSFER_LOOKBACK)
    )
    logger.debug(f"Found {len(existing_transfers)} existing transfers")

    engine = ReconciliationEngine(
        config, ledger, context, accounts, directory, date_tolerance=options.date_tolerance
    )
    classified, duplicates = await engine.classify(records, existing_transfers)

    logger.info(f"Getting ledger transactions since {oldest - INDEX_LOOKBACK} to compare...")
    index = LedgerIndex.from_ledger(await ledger.search_transactions(oldest - INDEX_LOOKBACK))

    result.plan = ReconciliationPlanner(skip_edit=options.skip_edit).plan(classified, index, duplicates)
    result.report = await LedgerSyncExecutor(ledger, dry_run=options.dry_run).execute(result.plan, index)

    result.drifted_accounts = await directory.log_balance_drift(batches)

    if options.dry_run:
        logger.info("DRY RUN - Skipping last import state update")
    else:
        logger.info("Updating last import...")
        new_state = with_last_import(successful_users(scrape_results, users), state)
        await ledger.put_config_blob(config.ledger.state_key, json.dumps(new_state))

    logger.info("Done.")
    return result
