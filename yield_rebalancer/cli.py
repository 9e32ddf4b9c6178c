"""
Yield Rebalancer CLI
====================
Command-line interface using Typer + Rich.

Commands:
    yield-rebalancer run [--mode queued|fused] [--dry-run]
    yield-rebalancer check
    yield-rebalancer execute [--limit N]
    yield-rebalancer worker
    yield-rebalancer queue [--limit N]
    yield-rebalancer history [--limit N]
    yield-rebalancer enroll ADDRESS [--wallet-id ID]
    yield-rebalancer unenroll ADDRESS
    yield-rebalancer accounts
"""

import asyncio
from pathlib import Path
from typing import Awaitable, Callable, Optional, TypeVar

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import SCHEDULER_MODES, ConfigError, RebalanceConfig, configure_logging, load_config
from .kv_store import StoreError
from .rebalance_integration import RebalanceIntegration
from .scheduler import CycleSummary
from .worker import run_worker

T = TypeVar('T')

app = typer.Typer(
    name="yield-rebalancer",
    help="Automated yield rebalancing across lending vaults",
    add_completion=False,
    rich_markup_mode="rich",
)

console = Console()


# ═══════════════════════════════════════════════════════════════════════════════
# HELPERS
# ═══════════════════════════════════════════════════════════════════════════════

def _load(ctx: typer.Context) -> RebalanceConfig:
    options = ctx.obj or {}
    try:
        config = load_config(options.get('config_path'))
    except ConfigError as e:
        console.print(f"[bold red]❌ Invalid configuration: {e}[/bold red]")
        raise typer.Exit(2)

    level = 'DEBUG' if options.get('verbose') else config.logging.level
    configure_logging(level, config.logging.file, config.logging.rotation, config.logging.retention)
    return config


def _run(config: RebalanceConfig, action: Callable[[RebalanceIntegration], Awaitable[T]],
         dry_run: bool = False) -> T:
    """Build the engine, run one async action against it, always close it"""

    async def runner() -> T:
        integration = RebalanceIntegration.from_config(config, dry_run=dry_run)
        try:
            return await action(integration)
        finally:
            await integration.close()

    try:
        return asyncio.run(runner())
    except StoreError as e:
        console.print(f"[bold red]❌ Store error: {e}[/bold red]")
        raise typer.Exit(1)


def _print_summary(summary: CycleSummary):
    table = Table(title=f"Cycle summary ({summary.mode})", show_header=False)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Users checked", str(summary.users_checked))
    table.add_row("Opportunities found", str(summary.opportunities_found))
    table.add_row("Skipped", str(summary.skipped))
    table.add_row("Executed", f"[green]{summary.executed}[/green]")
    table.add_row("Failed", f"[red]{summary.failed}[/red]" if summary.failed else "0")
    table.add_row("Value moved", f"${summary.total_value_moved_usd:,.2f}")
    table.add_row("Duration", f"{summary.duration_seconds:.1f}s")
    if summary.budget_exhausted:
        table.add_row("Time budget", "[yellow]exhausted[/yellow]")
    console.print(table)

    for error in summary.errors:
        console.print(f"  [red]✗[/red] {error}")


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to rebalance_config.yaml (default: $REBALANCE_CONFIG or ./rebalance_config.yaml)",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Yield rebalancer operator commands."""
    ctx.obj = {'config_path': str(config) if config else None, 'verbose': verbose}


# ═══════════════════════════════════════════════════════════════════════════════
# CYCLE COMMANDS
# ═══════════════════════════════════════════════════════════════════════════════

@app.command()
def run(
    ctx: typer.Context,
    mode: Optional[str] = typer.Option(None, "--mode", help="queued (two-phase) or fused"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Log custody calls instead of submitting them"),
):
    """
    Run one full rebalance cycle.

    \b
    Examples:
        yield-rebalancer run
        yield-rebalancer run --mode fused --dry-run
    """
    config = _load(ctx)
    if mode is not None and mode not in SCHEDULER_MODES:
        console.print(f"[bold red]❌ Unknown mode '{mode}' (expected one of {SCHEDULER_MODES})[/bold red]")
        raise typer.Exit(2)

    console.print(Panel.fit(
        f"[bold cyan]Rebalance cycle[/bold cyan]\n"
        f"Mode: {mode or config.scheduler.mode} | Dry run: {'[yellow]YES[/yellow]' if dry_run else 'NO'}",
        border_style="cyan"
    ))
    summary = _run(config, lambda integration: integration.run_cycle(mode), dry_run=dry_run)
    _print_summary(summary)


@app.command()
def check(
    ctx: typer.Context,
    dry_run: bool = typer.Option(False, "--dry-run", help="Queue into a throwaway in-memory queue"),
):
    """Phase 1 only: evaluate enrolled accounts and queue opportunities."""
    config = _load(ctx)
    summary = _run(config, lambda integration: integration.check(), dry_run=dry_run)
    _print_summary(summary)


@app.command()
def execute(
    ctx: typer.Context,
    limit: Optional[int] = typer.Option(None, "--limit", min=1, help="Maximum opportunities to execute"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Log custody calls instead of submitting them"),
):
    """Phase 2 only: execute the top queued opportunities."""
    config = _load(ctx)
    summary = _run(config, lambda integration: integration.execute(limit), dry_run=dry_run)
    _print_summary(summary)


@app.command()
def worker(
    ctx: typer.Context,
    dry_run: bool = typer.Option(False, "--dry-run", help="Log custody calls instead of submitting them"),
):
    """Run cycles on the configured cron hours until interrupted."""
    config = _load(ctx)
    hours = ', '.join(f"{h:02d}:00" for h in config.scheduler.cron_hours)
    console.print(Panel.fit(
        f"[bold cyan]Rebalance worker[/bold cyan]\nSchedule: {hours} UTC | Mode: {config.scheduler.mode}",
        border_style="cyan"
    ))
    try:
        asyncio.run(run_worker(config, dry_run=dry_run))
    except KeyboardInterrupt:
        console.print("\n[yellow]Shutdown requested.[/yellow]")


# ═══════════════════════════════════════════════════════════════════════════════
# INSPECTION COMMANDS
# ═══════════════════════════════════════════════════════════════════════════════

@app.command()
def queue(
    ctx: typer.Context,
    limit: int = typer.Option(20, "--limit", min=1, help="Entries to show"),
):
    """Show the highest-priority queued opportunities."""
    config = _load(ctx)

    async def action(integration: RebalanceIntegration):
        return await integration.queue.size(), await integration.queue.inspect(limit)

    size, entries = _run(config, action)

    table = Table(title=f"Rebalance queue ({size} queued)")
    table.add_column("Score", justify="right")
    table.add_column("Account")
    table.add_column("From")
    table.add_column("To")
    table.add_column("Amount", justify="right")
    table.add_column("APY +", justify="right")
    table.add_column("Age", justify="right")
    for entry in entries:
        opp = entry.opportunity
        table.add_row(
            f"{entry.score:,.2f}",
            opp.account,
            opp.from_protocol,
            opp.to_protocol,
            f"${opp.amount_usd:,.2f}",
            f"{opp.apy_diff * 100:.2f}%",
            f"{entry.age_seconds / 60:.0f}m",
        )
    console.print(table)


@app.command()
def history(
    ctx: typer.Context,
    limit: int = typer.Option(50, "--limit", min=1, help="Entries to show"),
):
    """Show recent execution attempts and aggregate statistics."""
    config = _load(ctx)

    async def action(integration: RebalanceIntegration):
        entries = await integration.history.recent(limit)
        stats = await integration.history.statistics()
        return entries, stats

    entries, stats = _run(config, action)

    table = Table(title="Rebalance history")
    table.add_column("Executed at")
    table.add_column("Account")
    table.add_column("Route")
    table.add_column("Amount", justify="right")
    table.add_column("Result")
    for entry in entries:
        opp = entry.opportunity
        outcome = ("[green]✓ success[/green]" if entry.success
                   else f"[red]✗ {entry.result.failed_step}[/red]")
        table.add_row(
            entry.executed_at.strftime('%Y-%m-%d %H:%M:%S'),
            opp.account,
            f"{opp.from_protocol} → {opp.to_protocol}",
            f"${opp.amount_usd:,.2f}",
            outcome,
        )
    console.print(table)

    console.print(
        f"Total: {stats['total_executions']} | Successful: {stats['successful_executions']} | "
        f"Failed: {stats['failed_executions']} | Success rate: {stats['success_rate']:.1f}% | "
        f"Moved: ${stats['total_value_moved_usd']:,.2f} | "
        f"Expected yearly gain: ${stats['total_expected_yearly_gain_usd']:,.2f}"
    )


# ═══════════════════════════════════════════════════════════════════════════════
# ACCOUNT COMMANDS
# ═══════════════════════════════════════════════════════════════════════════════

@app.command()
def enroll(
    ctx: typer.Context,
    address: str = typer.Argument(..., help="Account address"),
    wallet_id: Optional[str] = typer.Option(None, "--wallet-id", help="Custody wallet id (defaults to the address)"),
):
    """Opt an account into automated rebalancing."""
    config = _load(ctx)
    added = _run(config, lambda integration: integration.registry.enroll(address, wallet_id))
    if added:
        console.print(f"[green]✓ Enrolled {address}[/green]")
    else:
        console.print(f"[yellow]{address} was already enrolled (wallet id updated)[/yellow]")


@app.command()
def unenroll(
    ctx: typer.Context,
    address: str = typer.Argument(..., help="Account address"),
):
    """Opt an account out of automated rebalancing."""
    config = _load(ctx)
    removed = _run(config, lambda integration: integration.registry.unenroll(address))
    if removed:
        console.print(f"[green]✓ Unenrolled {address}[/green]")
    else:
        console.print(f"[yellow]{address} was not enrolled[/yellow]")


@app.command()
def accounts(ctx: typer.Context):
    """List enrolled accounts."""
    config = _load(ctx)
    enrolled = _run(config, lambda integration: integration.registry.list_enrolled_accounts())

    table = Table(title=f"Enrolled accounts ({len(enrolled)})")
    table.add_column("Address")
    table.add_column("Wallet id")
    for account in enrolled:
        table.add_row(account.address, account.wallet_id)
    console.print(table)


if __name__ == "__main__":
    app()
