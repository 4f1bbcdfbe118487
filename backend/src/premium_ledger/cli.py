"""Command-line interface for operators."""

import time
from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from premium_ledger.jobs.reconciliation import (
    distribute_monthly_coins,
    expire_cancelled_subscriptions,
    prune_processed_events,
)
from premium_ledger.logging_config import configure_logging, get_logger
from premium_ledger.referral.fraud import FraudHeuristicChecker
from premium_ledger.referral.service import (
    EarningNotFoundError,
    InvalidStateTransitionError,
    ReferralAdminService,
)
from premium_ledger.storage.db import db
from premium_ledger.storage.repo import AccountNotFoundError

# Configure logging
configure_logging()
logger = get_logger(__name__)

app = typer.Typer(
    name="premium-ledger",
    help="Premium subscriptions, balances and referral commissions",
    no_args_is_help=True,
)
earnings_app = typer.Typer(help="Referral earning payouts", no_args_is_help=True)
app.add_typer(earnings_app, name="earnings")

console = Console()


@app.command("init")
def init_database() -> None:
    """Initialize the database and create tables."""
    console.print("[bold blue]Initializing database...[/bold blue]")
    db.create_tables()
    console.print("[bold green]✓[/bold green] Database initialized successfully")


@app.command("reconcile")
def reconcile() -> None:
    """Expire cancelled subscriptions whose paid period has ended."""
    expired = expire_cancelled_subscriptions()
    table = Table(title="Expired subscriptions")
    table.add_column("Rule", style="cyan")
    table.add_column("Accounts", justify="right")
    for rule, count in expired.items():
        table.add_row(rule, str(count))
    console.print(table)


@app.command("distribute-coins")
def distribute_coins() -> None:
    """Grant this month's premium coin allowance."""
    credited = distribute_monthly_coins()
    console.print(f"[bold green]✓[/bold green] Credited {credited} account(s)")


@app.command("prune-events")
def prune_events(
    days: Annotated[int | None, typer.Option("--days", "-d", help="Keep event ids newer than this")] = None,
) -> None:
    """Delete processed webhook event ids past the retention window."""
    deleted = prune_processed_events(days=days)
    console.print(f"[bold green]✓[/bold green] Removed {deleted} processed event id(s)")


@app.command("fraud-report")
def fraud_report(
    status: Annotated[str | None, typer.Option("--status", "-s", help="Only earnings in this status")] = None,
    limit: Annotated[int, typer.Option("--limit", "-l", help="Number of earnings")] = 50,
    flagged_only: Annotated[bool, typer.Option("--flagged", help="Only show suspected earnings")] = False,
) -> None:
    """Review recent referral earnings for signs of self-referral."""
    checker = FraudHeuristicChecker()
    reports = checker.review(status=status, limit=limit)
    if flagged_only:
        reports = [report for report in reports if report.suspected]

    if not reports:
        console.print("[yellow]No earnings found[/yellow]")
        return

    table = Table(title="Referral earnings")
    table.add_column("ID", style="cyan")
    table.add_column("Referrer")
    table.add_column("Referred")
    table.add_column("Type")
    table.add_column("Amount", justify="right")
    table.add_column("Status")
    table.add_column("Reasons", style="red")

    for report in reports:
        table.add_row(
            str(report.earning_id),
            str(report.referrer_id),
            str(report.referred_id),
            report.earning_type,
            f"{report.amount:.4f}",
            report.status,
            "; ".join(report.reasons) or "-",
        )
    console.print(table)

    activity = checker.suspicious_activity()
    if activity:
        console.print("\n[bold]Suspicious IPs (24h):[/bold]")
        for row in activity:
            console.print(
                f"  {row['ip']}: {row['attempt_count']} attempts, "
                f"{row['failed_count']} failed, {row['violation_count']} violations"
            )


def _earning_action(action, earning_id: int, verb: str) -> None:
    try:
        earning = action(earning_id)
    except (EarningNotFoundError, InvalidStateTransitionError) as e:
        console.print(f"[bold red]✗[/bold red] {e}")
        raise typer.Exit(1)
    console.print(f"[bold green]✓[/bold green] Earning {earning.id} {verb}")


@earnings_app.command("approve")
def approve_earning(
    earning_id: Annotated[int, typer.Argument(help="Earning ID")],
) -> None:
    """Approve a pending earning."""
    _earning_action(ReferralAdminService().approve, earning_id, "approved")


@earnings_app.command("pay")
def pay_earnings(
    earning_id: Annotated[int | None, typer.Argument(help="Earning ID")] = None,
    referrer_id: Annotated[int | None, typer.Option("--referrer", "-r", help="Pay all approved earnings of a referrer")] = None,
) -> None:
    """Mark one approved earning, or all of a referrer's, as paid."""
    service = ReferralAdminService()
    if referrer_id is not None:
        paid = service.pay_approved(referrer_id)
        console.print(f"[bold green]✓[/bold green] Marked {paid} approved earning(s) as paid")
        return
    if earning_id is None:
        console.print("[red]Give an earning ID or --referrer[/red]")
        raise typer.Exit(1)
    _earning_action(service.mark_paid, earning_id, "marked as paid")


@earnings_app.command("cancel")
def cancel_earning(
    earning_id: Annotated[int, typer.Argument(help="Earning ID")],
) -> None:
    """Cancel a pending or approved earning."""
    _earning_action(ReferralAdminService().cancel, earning_id, "cancelled")


@app.command("set-program")
def set_program(
    account_id: Annotated[int, typer.Argument(help="Referrer account ID")],
    program: Annotated[str, typer.Argument(help="standard, offer_5 or offer_10")],
) -> None:
    """Change an account's referral program."""
    try:
        ReferralAdminService().set_program(account_id, program)
    except (ValueError, AccountNotFoundError) as e:
        console.print(f"[bold red]✗[/bold red] {e}")
        raise typer.Exit(1)
    console.print(f"[bold green]✓[/bold green] Account {account_id} is now on {program}")


@app.command("scheduler")
def run_scheduler() -> None:
    """Run the periodic jobs in the foreground until interrupted."""
    from premium_ledger.jobs.scheduler import create_scheduler, get_job_status

    scheduler = create_scheduler()
    scheduler.start()
    for job in get_job_status(scheduler):
        console.print(f"Scheduled job: {job['name']} - next run: {job['next_run_time']}")

    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        console.print("[bold blue]Stopping scheduler...[/bold blue]")
    finally:
        scheduler.shutdown(wait=True)


if __name__ == "__main__":
    app()
