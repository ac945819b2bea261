"""
ActGuard CLI Main Entry Point
"""

import sys
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from actguard import __version__
from actguard.core.config import settings
from actguard.core.encryption import SecretCipher
from actguard.core.logging import get_logger
from actguard.database.sql import SqlAlchemySecurityStore
from actguard.security.authentication import AccessGuard
from actguard.security.errors import SecurityError

logger = get_logger(__name__)
console = Console()

app = typer.Typer(
    name="actguard",
    help="ActGuard - authentication and secrets protection core",
    rich_markup_mode="rich",
    no_args_is_help=True,
)

DatabaseOption = typer.Option(
    None,
    "--database-url",
    "-d",
    help="SQLAlchemy database URL (defaults to ACTGUARD_DATABASE_URL)",
)


def _build_guard(database_url: Optional[str]) -> AccessGuard:
    store = SqlAlchemySecurityStore(database_url=database_url or settings.DATABASE_URL)
    store.create_all()
    return AccessGuard(store)


def version_callback(value: bool) -> None:
    if value:
        console.print(f"[bold blue]ActGuard[/bold blue] version [green]{__version__}[/green]")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit"
    ),
) -> None:
    """
    ActGuard security maintenance and reporting
    """


@app.command()
def info() -> None:
    """
    Show configuration summary
    """
    info_text = Text()
    info_text.append("ActGuard\n", style="bold blue")
    info_text.append(f"Version: {__version__}\n", style="green")
    info_text.append(f"Environment: {settings.ENVIRONMENT}\n", style="yellow")
    info_text.append(f"Database: {settings.DATABASE_URL}\n", style="cyan")
    info_text.append(f"Encryption key configured: {bool(settings.ENCRYPTION_KEY)}\n", style="cyan")
    info_text.append(f"Python: {sys.version.split()[0]}\n", style="cyan")

    console.print(Panel(
        info_text,
        title="[bold blue]System Information[/bold blue]",
        border_style="blue"
    ))


@app.command("generate-key")
def generate_key() -> None:
    """
    Print a fresh 256-bit encryption key for ACTGUARD_ENCRYPTION_KEY
    """
    console.print(SecretCipher.generate_key(), highlight=False)


@app.command("init-policy")
def init_policy(database_url: Optional[str] = DatabaseOption) -> None:
    """
    Create the security policy from settings if it does not exist
    """
    guard = _build_guard(database_url)
    policy = guard.initialize_security_policy()

    table = Table(title="Security Policy")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")
    for name, value in policy.model_dump().items():
        table.add_row(name, str(value))
    console.print(table)


@app.command()
def maintenance(database_url: Optional[str] = DatabaseOption) -> None:
    """
    Purge expired sessions, old failed attempts, expired reset tokens and old events
    """
    guard = _build_guard(database_url)
    results = guard.run_maintenance_tasks()

    table = Table(title="Maintenance")
    table.add_column("Task", style="cyan")
    table.add_column("Removed", justify="right")
    for task, count in results.items():
        table.add_row(task, "[red]failed[/red]" if count < 0 else str(count))
    console.print(table)

    if any(count < 0 for count in results.values()):
        raise typer.Exit(code=1)


@app.command()
def dashboard(
    timeframe: str = typer.Option("24h", "--timeframe", "-t", help="24h, 7d or 30d"),
    database_url: Optional[str] = DatabaseOption,
) -> None:
    """
    Summarize recent security events
    """
    guard = _build_guard(database_url)
    try:
        stats = guard.audit.dashboard(timeframe)
    except SecurityError as e:
        console.print(f"[bold red]Error:[/bold red] {e.message}")
        raise typer.Exit(code=2)

    summary = Table(title=f"Security Dashboard ({timeframe})")
    summary.add_column("Metric", style="cyan")
    summary.add_column("Value", justify="right")
    for key in ("total_events", "failed_logins", "suspicious_activities", "unique_accounts", "unique_ips"):
        summary.add_row(key.replace("_", " "), str(stats[key]))
    for bucket, count in stats["risk_distribution"].items():
        summary.add_row(f"{bucket} risk", str(count))
    console.print(summary)

    if stats["top_risky_ips"]:
        risky = Table(title="Top Risky IPs")
        risky.add_column("IP", style="red")
        risky.add_column("Average risk", justify="right")
        risky.add_column("Events", justify="right")
        for item in stats["top_risky_ips"]:
            risky.add_row(item["ip_address"], str(item["average_risk_score"]), str(item["event_count"]))
        console.print(risky)


@app.command("export-events")
def export_events(
    output: Path = typer.Option(..., "--output", "-o", help="CSV file to write"),
    account_id: Optional[str] = typer.Option(None, "--account", help="Only this account's events"),
    event_type: Optional[str] = typer.Option(None, "--event-type", help="Only this event type"),
    database_url: Optional[str] = DatabaseOption,
) -> None:
    """
    Export security events as CSV
    """
    guard = _build_guard(database_url)
    csv_text = guard.audit.export(account_id=account_id, event_type=event_type)
    output.write_text(csv_text, encoding="utf-8")
    console.print(f"[green]✓[/green] Security events exported to {output}")


if __name__ == "__main__":
    app()
