"""
Tenant payments CLI - Main entry point.
Built with Click; operator output rendered with rich.
"""

import json
import logging
import sys
from dataclasses import replace

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .. import __version__
from ..common.config import ReconciliationConfig, TieBreakMode, get_database_url, mask_database_url
from ..common.date_utils import format_month
from ..common.engine import create_engine_from_url
from ..common.errors import ConstraintInstallError, ReconciliationError, ResolutionAmbiguityError
from ..common.session import SessionManager
from ..reconciliation.detector import MonthScope, detect_duplicates
from ..reconciliation.enforcer import InvariantEnforcer
from ..reconciliation.ledger import MigrationLedger
from ..reconciliation.policy import resolve_group
from ..reconciliation.service import STATE_CLEAN, STATE_DRY_RUN, ReconciliationService

console = Console()
logger = logging.getLogger(__name__)


def get_session_manager(ctx) -> SessionManager:
    """Build (once per invocation) the session manager for the configured database."""
    if 'session_manager' not in ctx.obj:
        db_url = ctx.obj.get('database_url') or get_database_url()
        logger.debug(f"Connecting to {mask_database_url(db_url)}")
        ctx.obj['session_manager'] = SessionManager(create_engine_from_url(db_url, retries=1))
    return ctx.obj['session_manager']


def get_config(ctx) -> ReconciliationConfig:
    """Load reconciliation configuration (YAML, then RECONCILE_* environment)."""
    return ReconciliationConfig.load(ctx.obj.get('config_path'))


def print_report(report):
    state_style = {
        'clean': '[green]clean[/green]',
        'dry_run': '[cyan]dry run[/cyan]',
        'skipped': '[dim]skipped (ledger)[/dim]',
        'clean_constraint_missing': '[yellow]clean, constraint missing[/yellow]',
        'partially_cleaned': '[red]partially cleaned[/red]',
    }.get(report.state, report.state)

    table = Table(title="Reconciliation Report")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("State", state_style)
    table.add_row("Scope", report.scope)
    table.add_row("Groups Found", str(report.groups_found))
    table.add_row("Records Deleted", str(report.records_deleted))
    table.add_row("Groups Remaining", str(report.groups_remaining))
    table.add_row("Groups Skipped", str(report.groups_skipped))
    table.add_row("Failed Batches", str(report.failed_batches))
    table.add_row("Constraint", report.constraint_status)

    console.print(table)


@click.group()
@click.version_option(version=__version__, prog_name='tenant-payments')
@click.option('--database-url', envvar='DATABASE_URL', default=None,
              help='SQLAlchemy database URL (default: DATABASE_URL / POSTGRESQL_* settings)')
@click.option('--config', '-c', 'config_path', default=None,
              help='Path to reconciliation config file')
@click.option('--verbose', '-v', is_flag=True, help='Debug logging')
@click.pass_context
def cli(ctx, database_url, config_path, verbose):
    """Tenant payment reconciliation - Deduplicate payment records and enforce uniqueness."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )
    ctx.ensure_object(dict)
    ctx.obj['database_url'] = database_url
    ctx.obj['config_path'] = config_path


# =============================================================================
# Reconciliation Commands
# =============================================================================

@cli.command()
@click.option('--month', '-m', 'month_prefix', help='Restrict to a month prefix (YYYY, YYYY-MM)')
@click.option('--dry-run', is_flag=True, help='Report what would be deleted, change nothing')
@click.option('--tie-break', type=click.Choice([m.value for m in TieBreakMode]),
              help='Override the configured tie-break mode')
@click.option('--batch-size', type=click.IntRange(min=1), help='Override the deletion batch size')
@click.option('--json', 'as_json', is_flag=True, help='Print the report as JSON')
@click.pass_context
def reconcile(ctx, month_prefix, dry_run, tie_break, batch_size, as_json):
    """Delete duplicate payment records and install the uniqueness constraint."""
    config = get_config(ctx)
    overrides = {}
    if tie_break:
        overrides['tie_break'] = tie_break
    if batch_size:
        overrides['batch_size'] = batch_size
    if overrides:
        config = replace(config, **overrides)

    if month_prefix:
        try:
            MonthScope.from_prefix(month_prefix)
        except ValueError as e:
            raise click.BadParameter(str(e), param_hint='--month')

    service = ReconciliationService(get_session_manager(ctx), config)
    try:
        report = service.reconcile(month_prefix, dry_run=dry_run)
    except ReconciliationError as e:
        console.print(f"[red]Reconciliation failed: {escape(str(e))}[/red]")
        sys.exit(1)

    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
    else:
        print_report(report)

    if report.state not in (STATE_CLEAN, STATE_DRY_RUN):
        sys.exit(1)


@cli.command()
@click.option('--force', is_flag=True, help='Run even if the ledger says it already ran')
@click.option('--json', 'as_json', is_flag=True, help='Print the report as JSON')
@click.pass_context
def startup(ctx, force, as_json):
    """Run the ledger-guarded startup reconciliation."""
    service = ReconciliationService(get_session_manager(ctx), get_config(ctx))
    try:
        report = service.run_on_startup(force=force)
    except ReconciliationError as e:
        console.print(f"[red]Startup reconciliation failed: {escape(str(e))}[/red]")
        sys.exit(1)

    if report is None:
        console.print("[dim]Startup reconciliation is disabled (run_on_startup: false)[/dim]")
        return

    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
    else:
        print_report(report)


@cli.command()
@click.option('--month', '-m', 'month_prefix', help='Restrict to a month prefix (YYYY, YYYY-MM)')
@click.pass_context
def check(ctx, month_prefix):
    """List duplicate payment groups without changing anything."""
    config = get_config(ctx)
    try:
        scope = MonthScope.from_prefix(month_prefix)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint='--month')

    session_manager = get_session_manager(ctx)
    with session_manager.session_scope() as session:
        detection = detect_duplicates(session, scope)

    if detection.is_clean:
        console.print(f"[green]No duplicate payments (scope: {scope})[/green]")
    else:
        table = Table(title=f"Duplicate Payments ({scope})")
        table.add_column("Tenant", style="cyan")
        table.add_column("Property", style="cyan")
        table.add_column("Month", style="yellow")
        table.add_column("Records", style="magenta")
        table.add_column("Keep", style="green")
        table.add_column("Delete", style="red")

        for group in detection.groups:
            members = escape(", ".join(f"{m.id}:{m.status}" for m in group.members))
            try:
                resolution = resolve_group(group, config.tie_break)
                keep, delete = str(resolution.keep_id), ', '.join(map(str, resolution.delete_ids))
            except ResolutionAmbiguityError:
                keep, delete = '[yellow]manual review[/yellow]', '-'
            table.add_row(
                str(group.key.tenant_id),
                str(group.key.property_id),
                format_month(group.key.payment_month),
                members,
                keep,
                delete,
            )

        console.print(table)
        console.print(
            f"{detection.group_count} groups, {detection.record_count} records, "
            f"{detection.excess_count} to delete (tie-break: {config.tie_break.value})"
        )

    ledger = MigrationLedger(session_manager)
    ran = ledger.table_exists() and ledger.has_run(config.ledger_operation)
    console.print(f"Ledger {config.ledger_operation}: {'[green]executed[/green]' if ran else '[yellow]not executed[/yellow]'}")


# =============================================================================
# Constraint Commands
# =============================================================================

@cli.group()
def constraint():
    """Manage the natural-key uniqueness constraint."""
    pass


@constraint.command('install')
@click.pass_context
def install_constraint(ctx):
    """Install unique_tenant_property_month (run reconcile first)."""
    enforcer = InvariantEnforcer(get_session_manager(ctx).engine)
    try:
        status = enforcer.install()
    except ConstraintInstallError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        sys.exit(1)
    console.print(f"[green]Constraint {status.value}[/green]")


@constraint.command('status')
@click.pass_context
def constraint_status(ctx):
    """Show whether the uniqueness constraint is installed."""
    enforcer = InvariantEnforcer(get_session_manager(ctx).engine)
    if enforcer.constraint_exists():
        console.print("[green]Constraint installed[/green]")
    else:
        console.print("[yellow]Constraint missing[/yellow]")


# =============================================================================
# Ledger Commands
# =============================================================================

@cli.group()
def ledger():
    """View and edit the migration ledger."""
    pass


@ledger.command('list')
@click.option('--pattern', '-p', help='SQL LIKE pattern on the operation name')
@click.pass_context
def list_ledger(ctx, pattern):
    """List executed operations."""
    migration_ledger = MigrationLedger(get_session_manager(ctx))
    migration_ledger.ensure_table()

    table = Table(title="Migration Ledger")
    table.add_column("Operation", style="cyan")
    table.add_column("Executed At", style="yellow")

    for entry in migration_ledger.history(pattern):
        executed = entry.executed_at.strftime('%Y-%m-%d %H:%M:%S') if entry.executed_at else 'N/A'
        table.add_row(entry.filename, executed)

    console.print(table)


@ledger.command('mark')
@click.argument('names', nargs=-1, required=True)
@click.pass_context
def mark_ledger(ctx, names):
    """Mark operations as executed without running them."""
    migration_ledger = MigrationLedger(get_session_manager(ctx))
    migration_ledger.ensure_table()

    recorded = migration_ledger.mark_executed(names)
    for name in names:
        if name in recorded:
            console.print(f"[green]Marked {name}[/green]")
        else:
            console.print(f"[dim]{name} already recorded[/dim]")


# =============================================================================
# Scheduler Commands
# =============================================================================

@cli.command()
@click.option('--cron', help='Override the configured cron expression')
@click.pass_context
def schedule(ctx, cron):
    """Run the reconciliation job on its cron schedule (foreground)."""
    import signal
    import time

    from ..scheduler.jobs import ReconciliationScheduler

    config = get_config(ctx)
    if cron:
        config = replace(config, schedule=replace(config.schedule, cron=cron, enabled=True))
    if not config.schedule.enabled:
        console.print("[yellow]Scheduled reconciliation is disabled (schedule.enabled: false); "
                      "enable it or pass --cron[/yellow]")
        return

    scheduler = ReconciliationScheduler(get_session_manager(ctx), config)
    scheduler.start()
    console.print(f"[green]Reconciliation scheduled ({config.schedule.cron}). Press Ctrl+C to stop.[/green]")

    def signal_handler(signum, frame):
        console.print("\n[yellow]Shutting down...[/yellow]")
        scheduler.stop(wait=True)
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    while scheduler.running:
        time.sleep(1)


if __name__ == '__main__':
    cli()
