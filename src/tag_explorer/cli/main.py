"""CLI entry point using Click + Rich."""

import logging
import sys

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from tag_explorer.config import settings
from tag_explorer.db import open_database
from tag_explorer.exceptions import RunInProgress

console = Console()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)

STATUS_COLORS = {"excellent": "green", "good": "green", "fair": "yellow", "poor": "red"}


@click.group()
def cli():
    """Stock Tag Explorer - market data refresh and dynamic tagging"""
    pass


# ── Database commands ──────────────────────────────────────────

@cli.group()
def db():
    """Manage the database."""
    pass


@db.command("init")
def db_init():
    """Create all tables."""
    with open_database(settings):
        pass
    console.print(f"[bold green]Database ready:[/] {settings.db_url}")


# ── Universe commands ──────────────────────────────────────────

@cli.group()
def universe():
    """Maintain the stock universe."""
    pass


@universe.command("load")
@click.argument("csv_path", type=click.Path(exists=True, dir_okay=False))
def universe_load(csv_path):
    """Load tickers, names, sectors and index membership from a CSV file."""
    from tag_explorer.services.universe import load_universe

    with open_database(settings) as database, database.transaction() as session:
        inserted, updated = load_universe(session, csv_path)
    console.print(f"[bold green]Universe loaded:[/] {inserted} new, {updated} updated")


# ── Refresh commands ───────────────────────────────────────────

def _run(mode: str, reason: str):
    from tag_explorer.services.orchestrator import run_refresh

    console.print(f"[bold]Running {mode} refresh...[/]")
    with open_database(settings) as database:
        try:
            result = run_refresh(database, mode, triggered_by="manual", trigger_reason=reason, trusted=True)
        except RunInProgress as e:
            console.print(f"[yellow]{e}[/]")
            sys.exit(2)
    _print_result(result)
    if not result.succeeded:
        sys.exit(1)


def _print_result(result):
    color = "green" if result.succeeded else "red"
    state = "completed" if result.succeeded else "FAILED"
    lines = [
        f"Stocks: {result.success_count}/{result.total_stocks} ok  |  "
        f"Errors: {result.error_count}  |  Success rate: {result.success_rate}%",
        f"Duration: {result.duration_seconds:.1f}s  |  "
        f"Health: {result.health_score_before} -> {result.health_score_after}",
    ]
    if result.failure:
        lines.append(f"[red]{result.failure}[/]")
    console.print(Panel("\n".join(lines), title=f"[{color}]{result.mode} refresh {state}[/]"))

    if result.errors:
        table = Table(title=f"First {len(result.errors)} errors")
        table.add_column("Ticker/Tag", style="cyan")
        table.add_column("Error")
        for e in result.errors:
            table.add_row(e.get("ticker") or e.get("tag") or "-", e.get("error", ""))
        console.print(table)


@cli.group()
def refresh():
    """Refresh market data and tags."""
    pass


@refresh.command("standard")
@click.option("--reason", default=None, help="Free-text reason recorded with the run")
def refresh_standard(reason):
    """Daily refresh: snapshot + fundamentals, 10 tickers per batch."""
    _run("standard", reason)


@refresh.command("batch")
@click.option("--reason", default=None, help="Free-text reason recorded with the run")
def refresh_batch(reason):
    """Heavier resync: 20 tickers per batch, more retries."""
    _run("batch", reason)


@refresh.command("tags")
@click.option("--reason", default=None, help="Free-text reason recorded with the run")
def refresh_tags(reason):
    """Recompute tags only, no external fetches."""
    _run("tags-only", reason)


# ── Health command ─────────────────────────────────────────────

@cli.command("health")
@click.option("--escalate", is_flag=True, help="Start a batch refresh if the score is below the threshold")
def health(escalate):
    """Show data health score and recommendations."""
    from tag_explorer.services.health import WEIGHTS, compute_health
    from tag_explorer.services.orchestrator import run_if_unhealthy

    with open_database(settings) as database:
        with database.reader() as session:
            report = compute_health(session)

        color = STATUS_COLORS.get(report.status, "white")
        console.print(Panel(
            f"Score: [{color} bold]{report.score}/100[/]  |  Status: [{color}]{report.status}[/]  |  "
            f"Stocks: {report.counts.total}",
            title="[bold]Data Health[/]",
        ))

        table = Table(show_lines=True)
        table.add_column("Metric", style="bold")
        table.add_column("Rate", justify="right")
        table.add_column("Weight", justify="right")
        table.add_column("Status", justify="center")
        for metric, rate in report.rates.items():
            status = report.metric_status(metric)
            table.add_row(
                metric.replace("_", " ").title(),
                f"{rate:.1f}%",
                f"{WEIGHTS[metric]:.2f}",
                f"[{STATUS_COLORS[status]}]{status}[/]",
            )
        console.print(table)

        for rec in report.recommendations:
            console.print(f"  • {rec}")

        if escalate:
            try:
                result = run_if_unhealthy(database, settings.batch_trigger_threshold)
            except RunInProgress as e:
                console.print(f"[yellow]{e}[/]")
                return
            if result is None:
                console.print(f"[green]Score at or above {settings.batch_trigger_threshold}, no batch run needed.[/]")
            else:
                _print_result(result)


# ── Tag commands ───────────────────────────────────────────────

@cli.group()
def tags():
    """Browse and administer tags."""
    pass


@tags.command("list")
@click.option("--family", default=None, help="Only tags of this family")
def tags_list(family):
    """List tags with stock counts."""
    from tag_explorer.services.queries import list_tags_with_counts

    with open_database(settings) as database, database.reader() as session:
        rows = list_tags_with_counts(session, family=family)

    if not rows:
        console.print("[yellow]No tags yet. Run `tagx refresh tags` first.[/]")
        return

    table = Table(title=f"{len(rows)} Tags")
    table.add_column("Family", style="dim")
    table.add_column("Tag", style="cyan bold")
    table.add_column("Stocks", justify="right")
    for r in rows:
        table.add_row(r["family"], r["name"], str(r["stock_count"]))
    console.print(table)


@tags.command("stocks")
@click.argument("name")
def tags_stocks(name):
    """Show stocks carrying a tag."""
    from tag_explorer.services.queries import stocks_for_tag

    with open_database(settings) as database, database.reader() as session:
        stocks = stocks_for_tag(session, name)

    if stocks is None:
        console.print(f"[red]No tag named {name}[/]")
        return

    table = Table(title=f"{name} ({len(stocks)} stocks)")
    table.add_column("Ticker", style="cyan bold", width=8)
    table.add_column("Name")
    table.add_column("Price", justify="right")
    table.add_column("Chg %", justify="right")
    table.add_column("Mkt Cap ($B)", justify="right")
    for s in stocks:
        chg = s["change_percent"]
        chg_color = "green" if (chg or 0) >= 0 else "red"
        table.add_row(
            s["ticker"],
            s["name"] or "",
            f"${s['last_price']:,.2f}" if s["last_price"] is not None else "-",
            f"[{chg_color}]{chg:+.2f}%[/]" if chg is not None else "-",
            f"{s['market_cap'] / 1e9:,.1f}" if s["market_cap"] else "-",
        )
    console.print(table)


@tags.command("preview")
@click.argument("ticker")
def tags_preview(ticker):
    """Show which tags a stock would get from its current data."""
    from tag_explorer.models.stock import Stock
    from tag_explorer.services.queries import tags_for_ticker
    from tag_explorer.services.tag_rules import tags_for_stock

    ticker = ticker.upper()
    with open_database(settings) as database, database.reader() as session:
        stock = session.get(Stock, ticker)
        if stock is None:
            console.print(f"[red]No data found for {ticker}[/]")
            return
        computed = tags_for_stock(stock)
        current = [t["name"] for t in tags_for_ticker(session, ticker)]

    console.print(Panel(
        f"Computed: {', '.join(computed) or '-'}\nStored:   {', '.join(current) or '-'}",
        title=f"[bold]{ticker}[/]",
    ))


@tags.command("set-family")
@click.argument("name")
@click.argument("family")
def tags_set_family(name, family):
    """Move an existing tag to another family."""
    from tag_explorer.services.tag_applier import reassign_tag_family
    from tag_explorer.services.tag_rules import FAMILY_NAMES

    if family not in FAMILY_NAMES:
        console.print(f"[red]Unknown family {family}. Use one of: {', '.join(FAMILY_NAMES)}[/]")
        sys.exit(1)
    with open_database(settings) as database:
        try:
            with database.transaction() as session:
                reassign_tag_family(session, name, family)
        except LookupError as e:
            console.print(f"[red]{e}[/]")
            sys.exit(1)
    console.print(f"[green]Tag {name} now belongs to {family}[/]")


# ── Stats commands ─────────────────────────────────────────────

@cli.group()
def stats():
    """Refresh run history."""
    pass


@stats.command("recent")
@click.option("--limit", default=10, help="Number of runs to show")
@click.option("--type", "update_type", default=None, help="Only this update type")
def stats_recent(limit, update_type):
    """Show the most recent refresh runs."""
    from tag_explorer.services.stats import recent_update_stats

    with open_database(settings) as database, database.reader() as session:
        rows = [s.to_dict() for s in recent_update_stats(session, limit=limit, update_type=update_type)]

    if not rows:
        console.print("[yellow]No runs recorded yet.[/]")
        return

    table = Table(title="Recent Runs", show_lines=True)
    table.add_column("When", style="dim")
    table.add_column("Type", style="cyan")
    table.add_column("Trigger")
    table.add_column("Stocks", justify="right")
    table.add_column("OK", justify="right")
    table.add_column("Errors", justify="right")
    table.add_column("Secs", justify="right")
    table.add_column("Health", justify="right")
    for r in rows:
        err_color = "red" if r["error_count"] else "white"
        table.add_row(
            (r["created_at"] or "")[:19].replace("T", " "),
            r["update_type"],
            r["triggered_by"],
            str(r["total_stocks"]),
            str(r["success_count"]),
            f"[{err_color}]{r['error_count']}[/]",
            f"{r['duration_seconds'] or 0:.1f}",
            f"{r['health_score_before']} -> {r['health_score_after']}",
        )
    console.print(table)


@stats.command("summary")
@click.option("--days", default=30, help="Look-back window in days")
def stats_summary(days):
    """Aggregate runs per update type."""
    from tag_explorer.services.stats import update_summary

    with open_database(settings) as database, database.reader() as session:
        rows = update_summary(session, days=days)

    if not rows:
        console.print(f"[yellow]No runs in the last {days} days.[/]")
        return

    table = Table(title=f"Last {days} days")
    table.add_column("Type", style="cyan")
    table.add_column("Runs", justify="right")
    table.add_column("Processed", justify="right")
    table.add_column("Success %", justify="right")
    table.add_column("Avg secs", justify="right")
    table.add_column("Avg health", justify="right")
    table.add_column("Last run", style="dim")
    for r in rows:
        table.add_row(
            r["update_type"],
            str(r["update_count"]),
            str(r["total_stocks_processed"]),
            f"{r['avg_success_rate']:.1f}" if r["avg_success_rate"] is not None else "-",
            f"{r['avg_duration_seconds']:.1f}" if r["avg_duration_seconds"] is not None else "-",
            f"{r['avg_health_score_after']:.0f}" if r["avg_health_score_after"] is not None else "-",
            (r["last_update"] or "")[:19].replace("T", " "),
        )
    console.print(table)


@stats.command("cleanup")
@click.option("--days", default=None, type=int, help="Retention window (default TAGX_STATS_RETENTION_DAYS)")
def stats_cleanup(days):
    """Delete run records older than the retention window."""
    from tag_explorer.services.stats import cleanup_update_stats

    with open_database(settings) as database, database.transaction() as session:
        deleted = cleanup_update_stats(session, retention_days=days)
    console.print(f"[green]Removed {deleted} old run records.[/]")


# ── Server / scheduler ─────────────────────────────────────────

@cli.command("serve")
@click.option("--host", default=None, help="Bind address")
@click.option("--port", default=None, type=int, help="Bind port")
@click.option("--debug", is_flag=True)
def serve(host, port, debug):
    """Run the HTTP API with Flask's development server."""
    from tag_explorer.api.app import create_app

    if not settings.cron_secret:
        console.print("[yellow]TAGX_CRON_SECRET is not set; refresh and maintenance endpoints will return 401.[/]")
    with open_database(settings) as database:
        app = create_app(database, settings)
        app.run(host=host or settings.host, port=port or settings.port, debug=debug)


@cli.command("scheduler")
@click.option("--now", is_flag=True, help="Run a standard refresh immediately on start")
def scheduler(now):
    """Start the refresh scheduler (daily refresh + health escalation)."""
    from tag_explorer.scheduler.daily_job import start_scheduler

    console.print("[bold green]Starting refresh scheduler...[/]")
    console.print(f"Daily refresh at {settings.refresh_time}, health check every {settings.health_check_interval_hours}h.")
    console.print("Press Ctrl+C to stop.\n")
    start_scheduler(run_now=now)


if __name__ == "__main__":
    cli()
