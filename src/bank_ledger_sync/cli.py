"""
Command-line interface for the bank to ledger sync tool.
"""

from datetime import date, datetime
from pathlib import Path
from typing import Optional
import asyncio
import logging
import os
import sys

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .config import SyncConfig, generate_default_config, load_config
from .ledger.client import LedgerClient
from .pipeline import ImportOptions, ImportResult, run_import
from .sources.acquisition import ExportDirectorySource
from .sync.maintenance import (
    BackfillReport,
    DuplicateRemovalReport,
    LedgerMaintenance,
    LedgerRow,
    TransactionListing,
)
from .utils.exceptions import ConfigurationError
from .utils.logging_config import level_from_name, setup_logging

console = Console()

DEFAULT_CONFIG_FILE = "config.yaml"


@click.group()
@click.version_option(version=__version__)
def main():
    """Sync bank and credit card transactions into a personal finance ledger."""
    pass


@main.command()
@click.option(
    "-c",
    "--config",
    type=click.Path(path_type=Path),
    default=None,
    help="Path to configuration file (YAML); defaults to $CONFIG_FILE or ./config.yaml",
)
@click.option("--dry-run", is_flag=True, help="Show what would change without writing to the ledger")
@click.option("--since", default=None, help="Scrape (or backfill) from this date, YYYY-MM-DD")
@click.option("--backfill", is_flag=True, help="Detect transfers among already imported transactions")
@click.option("--date-tolerance", type=int, default=None, help="Override transfer date tolerance in days")
@click.option("--cleanup", is_flag=True, help="Delete every transaction in the ledger")
@click.option("--remove-duplicates", is_flag=True, help="Delete transactions sharing an external id")
@click.option("--list-transactions", is_flag=True, help="Show external id statistics of the ledger")
@click.option("--only-accounts", default=None, help="Comma separated login names to import")
@click.option(
    "--skip-edit/--edit",
    default=True,
    help="Leave already imported transactions unchanged (default) or update their fields",
)
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
def run(
    config: Optional[Path],
    dry_run: bool,
    since: Optional[str],
    backfill: bool,
    date_tolerance: Optional[int],
    cleanup: bool,
    remove_duplicates: bool,
    list_transactions: bool,
    only_accounts: Optional[str],
    skip_edit: bool,
    verbose: bool,
):
    """Import transactions, or run a maintenance operation on the ledger."""
    try:
        sync_config = load_config(config or Path(os.environ.get("CONFIG_FILE", DEFAULT_CONFIG_FILE)))
        _setup_logging(sync_config, verbose)

        since_date = _parse_since(since)

        if cleanup:
            deleted = asyncio.run(_maintenance(sync_config, lambda m: m.cleanup()))
            console.print(f"[green]Deleted {deleted} transactions[/green]")
            return

        if remove_duplicates:
            removal = asyncio.run(_maintenance(sync_config, lambda m: m.remove_duplicates()))
            _display_duplicate_removal(removal)
            return

        if list_transactions:
            listing = asyncio.run(_maintenance(sync_config, lambda m: m.list_transactions()))
            _display_listing(listing)
            return

        tolerance = date_tolerance if date_tolerance is not None else sync_config.transfer_date_tolerance

        if backfill:
            if dry_run:
                console.print("[yellow]Dry run - no changes will be made to the ledger[/yellow]")
            report = asyncio.run(
                _maintenance(
                    sync_config,
                    lambda m: m.backfill(dry_run=dry_run, date_tolerance=tolerance, since=since_date),
                )
            )
            _display_backfill(report)
            return

        options = ImportOptions(
            dry_run=dry_run,
            since=datetime.combine(since_date, datetime.min.time()) if since_date else None,
            only_accounts=[a.strip() for a in only_accounts.split(",") if a.strip()]
            if only_accounts
            else None,
            skip_edit=skip_edit,
            date_tolerance=tolerance,
        )
        result = asyncio.run(_import(sync_config, options))
        _display_import(result, dry_run)

    except Exception as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
        if verbose:
            console.print_exception()
        sys.exit(1)


@main.command("init-config")
@click.option(
    "-o", "--output", type=click.Path(path_type=Path), default=Path(DEFAULT_CONFIG_FILE)
)
def init_config(output: Path):
    """Generate a sample configuration file."""
    generate_default_config(output)
    console.print(f"[green]Configuration file generated: {output}[/green]")


async def _import(config: SyncConfig, options: ImportOptions) -> ImportResult:
    source = ExportDirectorySource(Path(config.scraper.export_dir))
    async with LedgerClient(config.ledger) as ledger:
        return await run_import(config, options, ledger, source)


async def _maintenance(config: SyncConfig, operation):
    async with LedgerClient(config.ledger) as ledger:
        return await operation(LedgerMaintenance(ledger))


def _setup_logging(config: SyncConfig, verbose: bool) -> None:
    level = logging.DEBUG if verbose else level_from_name(config.logging.level)
    log_file = Path(config.logging.file) if config.logging.file else None
    setup_logging(level, log_file, config.logging.format)


def _parse_since(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise ConfigurationError(f"Invalid since date {value!r}, use YYYY-MM-DD") from None


def _display_import(result: ImportResult, dry_run: bool) -> None:
    """Display import summary in console."""
    table = Table(title="Import Summary" + (" (dry run)" if dry_run else ""))
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")

    plan = result.plan
    table.add_row("Sources", str(result.sources))
    table.add_row("Failed Sources", str(result.failed_sources))
    table.add_row("Transactions", str(result.transactions))
    table.add_row("Duplicates Removed", str(plan.duplicates_removed))
    table.add_row("Without External Id", str(plan.unidentified))
    table.add_row("To Create", str(len(plan.to_create)))
    table.add_row("Type Updates", str(len(plan.to_type_update)))
    table.add_row("Destination Updates", str(len(plan.to_add_destination)))
    table.add_row("Field Updates", str(len(plan.to_field_update)))
    table.add_row("Duplicate Pairs", str(len(plan.suppressed_duplicates)))
    table.add_row("Created", str(result.report.created))
    table.add_row("Updated", str(result.report.updated))
    table.add_row("Deleted", str(result.report.deleted))
    table.add_row("Failed", str(result.report.failed))
    table.add_row("Accounts Out Of Sync", str(result.drifted_accounts))

    console.print(table)


def _display_backfill(report: BackfillReport) -> None:
    """Display what a backfill found and did."""
    if not (report.card_payments or report.transfers or report.duplicates):
        console.print("[green]No matching transfer pairs found[/green]")
        return

    if report.card_payments:
        table = Table(title="Credit Card Payments to Convert")
        for column in ("Date", "Amount", "Description", "From", "To Card", "Replaces"):
            table.add_column(column)
        for transfer in report.card_payments:
            table.add_row(
                str(transfer.date),
                f"{transfer.amount} {transfer.currency_code or ''}".strip(),
                _truncate(transfer.description),
                transfer.source_account_id or "-",
                transfer.destination_account_id or "-",
                transfer.ledger_id or "-",
            )
        console.print(table)

    if report.transfers:
        table = Table(title="New Transfer Pairs to Create")
        for column in ("Date", "Days Apart", "Amount", "Description", "From", "To", "Replaces"):
            table.add_column(column)
        for transfer, withdrawal, deposit in report.transfers:
            table.add_row(
                str(transfer.date),
                str(abs((deposit.date - withdrawal.date).days)),
                f"{transfer.amount} {transfer.currency_code or ''}".strip(),
                _truncate(transfer.description),
                transfer.source_account_id or "-",
                transfer.destination_account_id or "-",
                f"{withdrawal.ledger_id}, {deposit.ledger_id}",
            )
        console.print(table)

    if report.duplicates:
        table = Table(title="Duplicate Transactions for Existing Transfers")
        for column in ("Amount", "Days Apart", "Existing Transfer", "Withdrawal", "Deposit"):
            table.add_column(column)
        for pair in report.duplicates:
            table.add_row(
                str(pair.deposit.amount),
                str(abs((pair.deposit.date - pair.withdrawal.date).days)),
                pair.existing_transfer.ledger_id or "-",
                pair.withdrawal.ledger_id or "-",
                pair.deposit.ledger_id or "-",
            )
        console.print(table)

    summary = Table(title="Backfill Summary" + (" (dry run)" if report.dry_run else ""))
    summary.add_column("Metric", style="cyan")
    summary.add_column("Value", justify="right")
    summary.add_row("Credit Card Payments", str(len(report.card_payments)))
    summary.add_row("Transfer Pairs", str(len(report.transfers)))
    summary.add_row("Duplicate Pairs", str(len(report.duplicates)))
    summary.add_row("Transactions To Delete", str(report.transactions_to_delete))
    summary.add_row("Transfers To Create", str(report.transfers_to_create))
    if not report.dry_run:
        summary.add_row("Deleted", str(report.deleted))
        summary.add_row("Created", str(report.created))
        summary.add_row("Failed", str(report.failed))
    console.print(summary)


def _display_duplicate_removal(report: DuplicateRemovalReport) -> None:
    if not report.groups:
        console.print("[green]No duplicate transactions found[/green]")
        return
    console.print(
        f"Removed {report.deleted} duplicate transactions in {report.groups} groups"
        + (f" ([red]{report.failed} failed[/red])" if report.failed else "")
    )


def _display_listing(listing: TransactionListing) -> None:
    """Display external id statistics, a sample and the duplicate groups."""
    stats = Table(title="Transaction Statistics")
    stats.add_column("Metric", style="cyan")
    stats.add_column("Value", justify="right")
    stats.add_row("Total Transactions", str(listing.total))
    stats.add_row("External Ids", str(listing.with_external_id))
    stats.add_row("Without External Id", str(len(listing.without_external_id)))
    stats.add_row("Duplicate Groups", str(len(listing.duplicate_groups)))
    stats.add_row("Duplicate Transactions", str(listing.duplicate_transactions))
    console.print(stats)

    console.print(_rows_table(f"First {len(listing.first)} Transactions", listing.first))

    for external_id, rows in list(listing.duplicate_groups.items())[:10]:
        console.print(_rows_table(f"External Id {external_id} ({len(rows)} transactions)", rows))

    if listing.without_external_id:
        console.print(
            _rows_table("Transactions Without External Id", listing.without_external_id[:10])
        )


def _rows_table(title: str, rows: list[LedgerRow]) -> Table:
    table = Table(title=title)
    table.add_column("ID")
    table.add_column("External ID")
    table.add_column("Date")
    table.add_column("Amount", justify="right")
    table.add_column("Description")
    for row in rows:
        table.add_row(
            row.id,
            row.external_id or "NULL",
            str(row.date),
            row.amount,
            _truncate(row.description, 50),
        )
    return table


def _truncate(text: str, width: int = 40) -> str:
    return text[:width] + "..." if len(text) > width else text


if __name__ == "__main__":
    main()
