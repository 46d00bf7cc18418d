"""Command-line interface for the everybot ingestion pipeline."""

import asyncio
import json
from typing import Optional

import typer
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from everybot.config import settings
from everybot.errors import ConfigError
from everybot.logging import configure
from everybot.models.database import get_engine, init_db
from everybot.pipeline import (
    BatchResult,
    open_context,
    run_due_sources,
    run_enrich_round,
    run_full_cycle,
    run_geocode_batch,
    run_harvest,
    run_rcn_batch,
    run_verify_round,
)
from everybot.storage import ListingStore

app = typer.Typer(
    name="everybot",
    help="Listing ingestion for Polish real-estate portals",
    add_completion=False,
)
console = Console()

OFFICE_OPTION = typer.Option(
    None,
    "--office",
    help="Office (tenant) id; defaults to EVERYBOT_OFFICE_ID",
)


def _office(office: Optional[str]) -> str:
    return office or settings.office_id


def _run_stage(description: str, stage):
    """Run ``stage(ctx)`` inside a fresh pipeline context with a spinner."""

    async def runner():
        async with open_context(settings) as ctx:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                console=console,
            ) as progress:
                progress.add_task(description, total=None)
                return await stage(ctx)

    try:
        return asyncio.run(runner())
    except ConfigError as e:
        console.print(f"[red]✗ Configuration error: {e}[/red]")
        raise typer.Exit(2)


def _print_result(result: BatchResult):
    style = "green" if not result.errors else "yellow"
    console.print(f"[{style}]✓ {result.stage}: processed {result.processed}, errors {len(result.errors)}[/{style}]")
    if result.skipped:
        console.print(f"  Skipped: {result.skipped}")
    if result.details.get("locked"):
        console.print("[yellow]  Another run holds the lock for this office[/yellow]")
    for error in result.errors[:10]:
        console.print(f"  [red]{error.source or '-'}[/red] {error.url or error.item_id or ''}: {error.error}")
    if len(result.errors) > 10:
        console.print(f"  ... and {len(result.errors) - 10} more")


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", "--log-level", help="Log level for stderr"),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit logs as JSON lines"),
):
    configure(log_level, json_logs)


@app.command()
def init():
    """Initialize the database."""
    init_db(get_engine())
    console.print("[green]✓ Database initialized[/green]")


@app.command()
def harvest(
    source: str = typer.Option(
        "all",
        "--source", "-s",
        help="Source key, comma list, or 'all' (otodom, olx, morizon, gratka, odwlasciciela)",
    ),
    q: Optional[str] = typer.Option(None, "--q", "-q", help="Free-text phrase"),
    transaction: Optional[str] = typer.Option(
        None,
        "--transaction", "-o",
        help="Transaction type: sale or rent (sprzedaz/wynajem)",
    ),
    property_type: Optional[str] = typer.Option(
        None,
        "--type", "-t",
        help="Property type: apartment, house, plot, commercial",
    ),
    voivodeship: Optional[str] = typer.Option(None, "--voivodeship", "-w", help="Voivodeship name"),
    city: Optional[str] = typer.Option(None, "--city", "-c", help="City name"),
    max_pages: Optional[int] = typer.Option(None, "--pages", "-p", help="Maximum pages per source"),
    limit: Optional[int] = typer.Option(None, "--limit", "-n", help="Maximum rows per source"),
    office: Optional[str] = OFFICE_OPTION,
):
    """Harvest search pages into the catalog."""
    filters = {
        "source": source,
        "q": q,
        "transaction_type": transaction,
        "property_type": property_type,
        "voivodeship": voivodeship,
        "city": city,
    }
    office_id = _office(office)

    console.print(f"[bold blue]Harvesting {source} for {office_id}...[/bold blue]")
    console.print(f"  Phrase: {q or 'All'}")
    console.print(f"  Location: {city or voivodeship or 'All'}")
    console.print()

    result = _run_stage(
        "Fetching search pages...",
        lambda ctx: run_harvest(ctx, office_id, filters, pages=max_pages, limit=limit),
    )
    _print_result(result)
    for name, stored in result.details.get("per_source", {}).items():
        console.print(f"  {name}: {stored}")
    for degraded in result.details.get("degraded", []):
        console.print(f"[yellow]  {degraded['source']} degraded on page {degraded['page']}: {degraded['reason']}[/yellow]")


@app.command()
def enrich(
    limit: Optional[int] = typer.Option(None, "--limit", "-n", help="Rows per round"),
    listing_id: Optional[str] = typer.Option(None, "--id", help="Enrich one listing only"),
    office: Optional[str] = OFFICE_OPTION,
):
    """Fetch detail pages for the stalest rows."""
    office_id = _office(office)
    result = _run_stage(
        "Enriching listings...",
        lambda ctx: run_enrich_round(ctx, office_id, limit, listing_id=listing_id),
    )
    _print_result(result)


@app.command()
def verify(
    limit: Optional[int] = typer.Option(None, "--limit", "-n", help="Rows per round"),
    listing_id: Optional[str] = typer.Option(None, "--id", help="Verify one listing only"),
    office: Optional[str] = OFFICE_OPTION,
):
    """Re-check whether listings are still live on their portal."""
    office_id = _office(office)
    result = _run_stage(
        "Verifying listings...",
        lambda ctx: run_verify_round(ctx, office_id, limit, listing_id=listing_id),
    )
    _print_result(result)
    for status, n in result.details.get("statuses", {}).items():
        console.print(f"  {status}: {n}")


@app.command()
def geocode(
    limit: Optional[int] = typer.Option(None, "--limit", "-n", help="Rows per batch"),
    force: bool = typer.Option(False, "--force", help="Retry rows already attempted"),
    office: Optional[str] = OFFICE_OPTION,
):
    """Resolve address text to coordinates."""
    office_id = _office(office)
    result = _run_stage(
        "Geocoding listings...",
        lambda ctx: run_geocode_batch(ctx, office_id, limit, force=force),
    )
    _print_result(result)
    console.print(f"  Found: {result.details.get('found', 0)}, not found: {result.details.get('not_found', 0)}")


@app.command()
def rcn(
    limit: Optional[int] = typer.Option(None, "--limit", "-n", help="Rows per batch"),
    radius: Optional[float] = typer.Option(None, "--radius", "-r", help="Search radius in metres"),
    force: bool = typer.Option(False, "--force", help="Ignore the cooldown"),
    office: Optional[str] = OFFICE_OPTION,
):
    """Attach price-registry transactions near each geocoded listing."""
    office_id = _office(office)
    result = _run_stage(
        "Querying the price registry...",
        lambda ctx: run_rcn_batch(ctx, office_id, limit, radius, force=force),
    )
    _print_result(result)
    console.print(f"  Matched: {result.details.get('matched', 0)}")


@app.command()
def run(
    source: str = typer.Option("all", "--source", "-s", help="Source key, comma list, or 'all'"),
    q: Optional[str] = typer.Option(None, "--q", "-q", help="Free-text phrase"),
    city: Optional[str] = typer.Option(None, "--city", "-c", help="City name"),
    office: Optional[str] = OFFICE_OPTION,
):
    """Full cycle: harvest, enrichment rounds, verification rounds."""
    office_id = _office(office)
    filters = {"source": source, "q": q, "city": city}
    cycle = _run_stage("Running full cycle...", lambda ctx: run_full_cycle(ctx, office_id, filters))

    if cycle.locked:
        console.print(f"[yellow]A run for {office_id} is already in progress[/yellow]")
        raise typer.Exit(1)

    table = Table(title=f"Run for {office_id}")
    table.add_column("Stage", style="cyan")
    table.add_column("Processed", style="green", justify="right")
    table.add_row("harvest", str(cycle.harvested))
    table.add_row("enrich", str(cycle.enriched))
    table.add_row("verify", str(cycle.verified))
    table.add_row("─" * 10, "─" * 9)
    table.add_row("[bold]Errors[/bold]", f"[bold]{cycle.errors}[/bold]")
    console.print(table)


@app.command("run-due")
def run_due(
    office: Optional[str] = typer.Option(None, "--office", help="Only this office (default: all offices)"),
):
    """Harvest every configured source whose crawl interval has elapsed."""
    outcomes = _run_stage("Crawling due sources...", lambda ctx: run_due_sources(ctx, office))
    if not outcomes:
        console.print("[yellow]No sources due[/yellow]")
        return
    for outcome in outcomes:
        style = "green" if outcome["status"] == "ok" else "red"
        console.print(f"[{style}]{outcome['name']}[/{style}]: {outcome['processed']} ({outcome['status']})")


@app.command("add-source")
def add_source(
    adapter: str = typer.Argument(..., help="Adapter key (otodom, olx, morizon, gratka, odwlasciciela)"),
    name: Optional[str] = typer.Option(None, "--name", help="Display name"),
    filters: Optional[str] = typer.Option(None, "--filters", help="Search filters as JSON"),
    interval: int = typer.Option(360, "--interval", help="Crawl interval in minutes"),
    office: Optional[str] = OFFICE_OPTION,
):
    """Register a portal source for scheduled crawling."""
    from everybot.adapters import get_adapter

    try:
        get_adapter(adapter)
        parsed = json.loads(filters) if filters else {}
    except (ConfigError, ValueError) as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(1)

    store = ListingStore()
    store.init()
    source_id = store.add_source(
        _office(office),
        adapter,
        name=name,
        filters=parsed,
        crawl_interval_minutes=interval,
    )
    console.print(f"[green]✓ Source {source_id} added[/green]")


@app.command("import-link")
def import_link(
    url: str = typer.Argument(..., help="Offer URL"),
    title: Optional[str] = typer.Option(None, "--title", help="Title"),
    office: Optional[str] = OFFICE_OPTION,
):
    """Add a single offer URL to the catalog."""
    store = ListingStore()
    store.init()
    try:
        listing_id = store.import_link(_office(office), url, title=title)
    except ValueError as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]✓ Imported as {listing_id}[/green]")


@app.command()
def stats(office: Optional[str] = OFFICE_OPTION):
    """Show catalog statistics for an office."""
    store = ListingStore()
    store.init()
    data = store.stats(_office(office))

    table = Table(title="Catalog Statistics")
    table.add_column("Source", style="cyan")
    table.add_column("Count", style="green", justify="right")
    for source, count in sorted(data["by_source"].items()):
        table.add_row(source, str(count))
    table.add_row("─" * 15, "─" * 8)
    table.add_row("[bold]Total[/bold]", f"[bold]{data['total']}[/bold]")
    console.print(table)

    console.print(f"  Enriched: {data['enriched']}")
    console.print(f"  Geocoded: {data['geocoded']}")
    console.print(f"  With registry price: {data['with_rcn_price']}")
    for status, count in sorted(data["by_source_status"].items()):
        console.print(f"  Portal {status}: {count}")


@app.command()
def export(
    filepath: str = typer.Argument(
        "listings.csv",
        help="Output CSV file path",
    ),
    source: Optional[str] = typer.Option(
        None,
        "--source", "-s",
        help="Filter by source",
    ),
    office: Optional[str] = OFFICE_OPTION,
):
    """Export listings to CSV file."""
    store = ListingStore()
    store.init()

    console.print(f"[bold]Exporting to {filepath}...[/bold]")

    count = store.export_to_csv(filepath, _office(office), source)

    if count > 0:
        console.print(f"[green]✓ Exported {count} listings to {filepath}[/green]")
    else:
        console.print("[yellow]No listings to export[/yellow]")


if __name__ == "__main__":
    app()
