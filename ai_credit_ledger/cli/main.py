"""
CLI interface for AI Credit Ledger.

Provides command-line access to allowances, charges and settings.
"""

import logging
import sys
from typing import NoReturn, Optional

import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from ai_credit_ledger.config.loader import CONFIG_ENV_VAR, LedgerConfig, load_ledger_config
from ai_credit_ledger.core.errors import InsufficientBalance, LedgerError
from ai_credit_ledger.core.services import LedgerServices, build_services
from ai_credit_ledger.storage.models import Plan
from ai_credit_ledger.storage.repository import initialize_schema

app = typer.Typer()
settings_app = typer.Typer(help="Show or change credit settings.")
account_app = typer.Typer(help="Manage accounts and admin roles.")
app.add_typer(settings_app, name="settings")
app.add_typer(account_app, name="account")

console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1
EXIT_CODE_INSUFFICIENT = 2


def _config(ctx: typer.Context) -> LedgerConfig:
    config_path = (ctx.obj or {}).get("config_path")
    if not config_path:
        return LedgerConfig()
    try:
        return load_ledger_config(config_path)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        _fail(e)


def _services(ctx: typer.Context) -> LedgerServices:
    return build_services(_config(ctx))


def _fail(error: Exception) -> NoReturn:
    console.print(f"[red]Error:[/] {error}")
    sys.exit(EXIT_CODE_FAIL)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        envvar=CONFIG_ENV_VAR,
        help="Path to ledger YAML configuration"
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Log ledger activity"
    )
):
    """AI Credit Ledger CLI."""
    ctx.obj = {"config_path": config}
    if verbose:
        logging.basicConfig(
            level=logging.INFO,
            format="%(message)s",
            handlers=[RichHandler(console=console, show_path=False)],
        )
    if ctx.invoked_subcommand is None:
        console.print("AI Credit Ledger - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the ledger database."""
    try:
        initialize_schema(_config(ctx).database.path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def status(ctx: typer.Context, account_id: str = typer.Argument(..., help="Account id")):
    """Show the current allowance of an account."""
    try:
        snapshot = _services(ctx).status.status(account_id)
    except LedgerError as e:
        _fail(e)

    table = Table(title=f"Allowance for {account_id}")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Plan", snapshot.plan.value)
    table.add_row("Period", f"{snapshot.period_start:%Y-%m-%d} → {snapshot.period_end:%Y-%m-%d}")
    table.add_row("Tokens granted", f"{snapshot.tokens_granted:,}")
    table.add_row("  base", f"{snapshot.base_tokens:,}")
    table.add_row("  rollover", f"{snapshot.rollover_tokens:,}")
    table.add_row("Tokens used", f"{snapshot.tokens_used:,}")
    table.add_row("Tokens remaining", f"{snapshot.tokens_remaining:,}")
    table.add_row(
        "Credits",
        f"{snapshot.credits_used:,} / {snapshot.credits_granted:,} "
        f"({snapshot.credits_remaining:,} left)"
    )
    table.add_row("Usage", f"{snapshot.usage_percentage}%")
    console.print(table)

    if snapshot.at_limit:
        console.print(f"[bold red]At limit.[/] {snapshot.upgrade_message}")
    elif snapshot.low_balance_warning:
        console.print(f"[bold yellow]Low balance:[/] {snapshot.usage_percentage}% used")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def charge(
    ctx: typer.Context,
    account_id: str = typer.Argument(..., help="Account id"),
    prompt_tokens: int = typer.Option(0, "--prompt", "-p", help="Prompt tokens"),
    completion_tokens: int = typer.Option(0, "--completion", "-o", help="Completion tokens"),
    feature: str = typer.Option("chat", "--feature", "-f", help="Feature tag"),
    idempotency_key: Optional[str] = typer.Option(
        None,
        "--key",
        "-k",
        help="Idempotency key; reuse it when retrying"
    )
):
    """Charge token usage to an account."""
    try:
        result = _services(ctx).ledger.charge(
            account_id,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            feature=feature,
            idempotency_key=idempotency_key,
        )
    except InsufficientBalance as e:
        console.print(f"[bold red]Insufficient balance:[/] {e.message}")
        if e.upgrade_message:
            console.print(e.upgrade_message)
        sys.exit(EXIT_CODE_INSUFFICIENT)
    except LedgerError as e:
        _fail(e)

    note = " [dim](already processed)[/]" if result.replayed else ""
    console.print(
        f"[green]✓[/] Charged {result.total_tokens:,} tokens "
        f"({result.credits_charged:g} credits){note}"
    )
    console.print(
        f"Remaining: {result.tokens_remaining:,} tokens / "
        f"{result.credits_remaining:,} credits"
    )
    console.print(f"Event: {result.event_id}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def adjust(
    ctx: typer.Context,
    account_id: str = typer.Argument(..., help="Account id"),
    tokens_granted: int = typer.Option(..., "--granted", "-g", help="New tokens granted"),
    tokens_used: int = typer.Option(..., "--used", "-u", help="New tokens used"),
    actor: str = typer.Option(..., "--actor", "-a", help="Admin performing the change")
):
    """Overwrite the current period's counters (admin only)."""
    try:
        period = _services(ctx).allowances.apply_admin_adjustment(
            account_id, tokens_granted, tokens_used, actor
        )
    except LedgerError as e:
        _fail(e)
    console.print(
        f"[green]✓[/] {account_id}: {period.tokens_used:,} / {period.tokens_granted:,} tokens"
    )
    sys.exit(EXIT_CODE_PASS)


@app.command("init-all")
def init_all(ctx: typer.Context):
    """Create current periods for every active account."""
    try:
        result = _services(ctx).allowances.initialize_all_accounts()
    except LedgerError as e:
        _fail(e)
    console.print(f"[green]✓[/] Initialized {result.initialized} accounts")
    for account_id in result.accounts:
        console.print(f"  {account_id}")
    if result.failed:
        console.print(f"[yellow]Failed:[/] {', '.join(result.failed)}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def events(
    ctx: typer.Context,
    account_id: str = typer.Argument(..., help="Account id"),
    feature: Optional[str] = typer.Option(None, "--feature", "-f", help="Filter by feature"),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum events to show")
):
    """List recent usage events of an account."""
    try:
        history = _services(ctx).ledger.list_events(account_id, feature=feature, limit=limit)
    except LedgerError as e:
        _fail(e)

    if not history:
        console.print("[dim]No usage events recorded.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title=f"Usage events for {account_id}")
    table.add_column("When")
    table.add_column("Feature")
    table.add_column("Tokens", justify="right")
    table.add_column("Credits", justify="right")
    table.add_column("Applied")
    for event in history:
        table.add_row(
            f"{event.created_at:%Y-%m-%d %H:%M:%S}",
            event.feature,
            f"{event.total_tokens:,}",
            f"{event.credits_charged:g}",
            "yes" if event.balance_applied else "[yellow]pending[/]",
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def reconcile(ctx: typer.Context, account_id: str = typer.Argument(..., help="Account id")):
    """Apply recorded events whose balance update failed."""
    try:
        count = _services(ctx).ledger.reconcile(account_id)
    except LedgerError as e:
        _fail(e)
    console.print(f"[green]✓[/] Reconciled {count} events")
    sys.exit(EXIT_CODE_PASS)


@settings_app.command("show")
def settings_show(ctx: typer.Context):
    """Show credit settings in effect."""
    try:
        values = _services(ctx).settings.get_all().as_dict()
    except LedgerError as e:
        _fail(e)
    table = Table(title="Credit settings")
    table.add_column("Key")
    table.add_column("Value", justify="right")
    for key, value in values.items():
        table.add_row(key, f"{value:,}")
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@settings_app.command("set")
def settings_set(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Setting key"),
    value: int = typer.Argument(..., help="Positive integer value")
):
    """Change a credit setting."""
    try:
        _services(ctx).settings.set(key, value)
    except LedgerError as e:
        _fail(e)
    console.print(f"[green]✓[/] {key} = {value:,}")
    sys.exit(EXIT_CODE_PASS)


@account_app.command("add")
def account_add(
    ctx: typer.Context,
    account_id: str = typer.Argument(..., help="Account id"),
    plan: Plan = typer.Option(Plan.FREE, "--plan", help="Plan tier")
):
    """Register an account and record its plan."""
    try:
        services = _services(ctx)
        services.accounts.register(account_id)
        services.plans.set_plan(account_id, plan)
    except LedgerError as e:
        _fail(e)
    console.print(f"[green]✓[/] Account {account_id} registered ({plan.value})")
    sys.exit(EXIT_CODE_PASS)


@account_app.command("grant-admin")
def account_grant_admin(ctx: typer.Context, actor: str = typer.Argument(..., help="Actor id")):
    """Allow an actor to make admin adjustments."""
    try:
        _services(ctx).accounts.grant_role(actor)
    except LedgerError as e:
        _fail(e)
    console.print(f"[green]✓[/] {actor} is now an admin")
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
