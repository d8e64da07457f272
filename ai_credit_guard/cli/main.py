"""
CLI interface for AI Credit Guard.

Operator commands for the credit store and the HTTP service.
"""

import logging
import sys
from datetime import timedelta
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from ai_credit_guard.config.loader import ServiceConfig, load_service_config
from ai_credit_guard.storage.ledger import CreditLedger
from ai_credit_guard.storage.repository import UsageRepository, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

CONFIG_OPTION_HELP = "Path to the service YAML configuration"


def _load_config(config_path: Optional[str]) -> ServiceConfig:
    return load_service_config(config_path)


def _ledger(config: ServiceConfig) -> CreditLedger:
    return CreditLedger(
        config.database.path,
        wallet_starting_credits=config.billing.wallet_starting_credits,
        demo_credits=config.demo.credits,
        demo_images=config.demo.images,
        demo_session_days=config.demo.session_days,
        busy_timeout=config.database.busy_timeout_seconds,
    )


def _repository(config: ServiceConfig) -> UsageRepository:
    return UsageRepository(
        config.database.path,
        default_limits=config.limits,
        wallet_starting_credits=config.billing.wallet_starting_credits,
        demo_credits=config.demo.credits,
        demo_images=config.demo.images,
        demo_session_days=config.demo.session_days,
        busy_timeout=config.database.busy_timeout_seconds,
    )


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """AI Credit Guard CLI."""
    if ctx.invoked_subcommand is None:
        console.print("AI Credit Guard - Use --help to see available commands")


@app.command()
def init(
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help=CONFIG_OPTION_HELP),
):
    """Create the credit store and record the configured plan limits."""
    try:
        config = _load_config(config_path)
        initialize_schema(config.database.path)
        _repository(config).set_usage_limits(config.billing.plan_id, config.limits)
        console.print(f"[green]✓[/] Database initialized at {config.database.path}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def grant(
    user_id: str = typer.Argument(..., help="Wallet owner"),
    credits: int = typer.Argument(..., help="Credits to add"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help=CONFIG_OPTION_HELP),
):
    """Top up a user's wallet."""
    try:
        config = _load_config(config_path)
        balance = _ledger(config).grant_credits(user_id, credits)
        console.print(f"[green]✓[/] Granted {credits} credits to {user_id} (balance: {balance})")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def balance(
    user_id: Optional[str] = typer.Option(None, "--user", "-u", help="Authenticated user id"),
    device: Optional[str] = typer.Option(None, "--device", "-d", help="Demo device fingerprint"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help=CONFIG_OPTION_HELP),
):
    """Show the remaining credits of a user wallet or a demo session."""
    if bool(user_id) == bool(device):
        console.print("[red]Error:[/] pass exactly one of --user or --device")
        sys.exit(EXIT_CODE_FAIL)
    try:
        config = _load_config(config_path)
        repository = _repository(config)
        if user_id:
            limits = repository.get_usage_limits(config.billing.plan_id)
            budget = repository.get_budget_status(user_id, limits)
            console.print(f"\n[bold]Wallet:[/bold] {user_id}")
            console.print(f"Credits remaining: {repository.get_balance(user_id)}")
            console.print(
                f"Budget consumed: ${budget.total_usd:,.4f} of ${budget.soft_usd_cap:,.2f} "
                f"({budget.period_days} days)"
            )
        else:
            session = repository.get_or_create_demo_session(device)
            console.print(f"\n[bold]Demo session:[/bold] {device}")
            console.print(f"Credits remaining: {session.credits_remaining}")
            console.print(f"Images remaining: {session.images_remaining}")
            console.print(f"Expires at: {session.expires_at.isoformat()}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def ledger(
    scope: Optional[str] = typer.Option(None, "--scope", "-s", help="Scope key, e.g. user:<id> or demo:<fingerprint>"),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of entries to show"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help=CONFIG_OPTION_HELP),
):
    """List recent ledger entries, newest first."""
    try:
        config = _load_config(config_path)
        entries = _repository(config).get_recent_entries(scope_key=scope, limit=limit)
        if not entries:
            console.print("\n[bold yellow]No ledger entries found[/]\n")
            sys.exit(EXIT_CODE_PASS)

        table = Table(title="Credit Ledger")
        table.add_column("Created (UTC)")
        table.add_column("Scope")
        table.add_column("Operation")
        table.add_column("Mode")
        table.add_column("Model")
        table.add_column("Credits", justify="right")
        table.add_column("Status")
        table.add_column("USD", justify="right")
        for entry in entries:
            table.add_row(
                entry.created_at.strftime("%Y-%m-%d %H:%M:%S"),
                entry.scope_key,
                entry.operation,
                entry.mode,
                entry.model,
                str(entry.credits),
                entry.status.value,
                f"{entry.usd_estimate:.6f}",
            )
        console.print(table)
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def reconcile(
    max_age: Optional[int] = typer.Option(
        None,
        "--max-age",
        "-m",
        help="Age in seconds after which a pending reservation is refunded (defaults to billing.reservation_ttl_seconds)",
    ),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help=CONFIG_OPTION_HELP),
):
    """Refund reservations abandoned by crashed or hung workers."""
    try:
        config = _load_config(config_path)
        seconds = max_age if max_age is not None else config.billing.reservation_ttl_seconds
        refunded = _ledger(config).reconcile_stale_reservations(timedelta(seconds=seconds))
        if refunded:
            for request_id in refunded:
                console.print(f"[yellow]↺[/] {request_id}")
        console.print(f"[green]✓[/] Refunded {len(refunded)} stale reservation(s)")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Bind address"),
    port: int = typer.Option(8000, "--port", "-p", help="Bind port"),
    log_level: str = typer.Option("info", "--log-level", help="Logging level"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help=CONFIG_OPTION_HELP),
):
    """Run the HTTP service."""
    import uvicorn

    from ai_credit_guard.api.app import create_app

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        config = _load_config(config_path)
        initialize_schema(config.database.path)
        application = create_app(config=config)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    uvicorn.run(application, host=host, port=port, log_level=log_level.lower())


if __name__ == "__main__":
    app()
