"""CLI for SplitLedger using Typer."""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from decimal import Decimal

import typer
from rich.console import Console
from rich.table import Table

from .config import load_settings
from .db import Database
from .models import Category, ExpenseFilter, ExpenseSort, SyncEvent
from .service import LedgerService
from .sync import SyncEngine

app = typer.Typer(
    name="splitledger",
    help="Track shared group expenses and settle who owes whom",
)
group_app = typer.Typer(help="Manage groups")
member_app = typer.Typer(help="Manage members")
expense_app = typer.Typer(help="Manage expenses")
app.add_typer(group_app, name="group")
app.add_typer(member_app, name="member")
app.add_typer(expense_app, name="expense")

console = Console()


def setup_logging(verbose: bool = False):
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


@contextmanager
def open_database(verbose: bool) -> Iterator[Database]:
    """Open the configured database, reporting any error and exiting."""
    setup_logging(verbose)
    db = None
    try:
        settings = load_settings()
        db = Database(settings.database_path)
        yield db
    except Exception as e:
        console.print(f"\n[bold red]Error:[/bold red] {e}")
        if verbose:
            raise
        sys.exit(1)
    finally:
        if db is not None:
            db.close()


def format_money(amount: Decimal, use_color: bool = True) -> str:
    """
    Format money in accounting style with alignment.

    Negative amounts use parentheses: ($85.02)
    Positive amounts have spaces:      $85.02
    """
    abs_amount = abs(amount)
    if amount < 0:
        if use_color:
            return f"($[red]{abs_amount:,.2f}[/red])"
        return f"(${abs_amount:,.2f})"
    if use_color:
        return f" [green]${abs_amount:,.2f}[/green] "
    return f" ${abs_amount:,.2f} "


VERBOSE = typer.Option(False, "--verbose", "-v", help="Verbose output")


# ============================================================================
# Groups
# ============================================================================


@group_app.command("create")
def group_create(
    name: str = typer.Argument(..., help="Group name"),
    members: list[str] = typer.Option(
        [], "--member", "-m", help="Member id to add (repeatable)"
    ),
    verbose: bool = VERBOSE,
):
    """Create a group."""
    with open_database(verbose) as db:
        group = db.create_group(name, member_ids=members)
        console.print(f"[green]✓ Created group '{group.name}'[/green] {group.id}")


@group_app.command("list")
def group_list(verbose: bool = VERBOSE):
    """List groups with their totals."""
    with open_database(verbose) as db:
        groups = db.list_groups()
        if not groups:
            console.print("[yellow]No groups found.[/yellow]")
            return

        table = Table(title="Groups", show_header=True, header_style="bold magenta")
        table.add_column("ID", style="dim")
        table.add_column("Name", style="cyan")
        table.add_column("Members", justify="right")
        table.add_column("Total", justify="right")
        for group in groups:
            expenses = db.query_expenses(ExpenseFilter(group_id=group.id))
            total = sum((e.amount for e in expenses), Decimal("0.00"))
            table.add_row(
                group.id, group.name, str(len(group.member_ids)), format_money(total)
            )
        console.print(table)


@group_app.command("rename")
def group_rename(
    group_id: str = typer.Argument(..., help="Group id"),
    name: str = typer.Argument(..., help="New group name"),
    verbose: bool = VERBOSE,
):
    """Rename a group."""
    with open_database(verbose) as db:
        group = db.rename_group(group_id, name)
        console.print(f"[green]✓ Renamed group to '{group.name}'[/green]")


@group_app.command("delete")
def group_delete(
    group_id: str = typer.Argument(..., help="Group id"),
    verbose: bool = VERBOSE,
):
    """Delete a group and all of its expenses."""
    with open_database(verbose) as db:
        db.delete_group(group_id)
        console.print(f"[green]✓ Deleted group {group_id}[/green]")


# ============================================================================
# Members
# ============================================================================


@member_app.command("add")
def member_add(
    name: str = typer.Argument(..., help="Member name"),
    group_id: str | None = typer.Option(None, "--group", "-g", help="Join a group"),
    verbose: bool = VERBOSE,
):
    """Create a member, optionally adding them to a group."""
    with open_database(verbose) as db:
        member = db.create_member(name)
        if group_id:
            db.add_member_to_group(group_id, member.id)
        console.print(f"[green]✓ Created member '{member.name}'[/green] {member.id}")


@member_app.command("list")
def member_list(verbose: bool = VERBOSE):
    """List members."""
    with open_database(verbose) as db:
        table = Table(title="Members", show_header=True, header_style="bold magenta")
        table.add_column("ID", style="dim")
        table.add_column("Name", style="cyan")
        for member in db.list_members():
            table.add_row(member.id, member.name)
        console.print(table)


# ============================================================================
# Expenses
# ============================================================================


@expense_app.command("add")
def expense_add(
    group_id: str = typer.Argument(..., help="Group id"),
    payer_id: str = typer.Argument(..., help="Paying member id"),
    amount: str = typer.Argument(..., help="Amount, e.g. 12.50"),
    name: str = typer.Option("", "--name", "-n", help="Description"),
    category: str = typer.Option("other", "--category", "-c", help="Category tag"),
    date: datetime | None = typer.Option(None, "--date", help="Date (default now)"),
    verbose: bool = VERBOSE,
):
    """Record an expense."""
    with open_database(verbose) as db:
        expense = db.create_expense(
            group_id=group_id,
            payer_id=payer_id,
            amount=amount,
            category=category,
            date=date or datetime.now(UTC),
            name=name,
        )
        console.print(
            f"[green]✓ Recorded {format_money(expense.amount, use_color=False).strip()} "
            f"({expense.category.value})[/green] {expense.id}"
        )


@expense_app.command("list")
def expense_list(
    group_id: str | None = typer.Option(None, "--group", "-g", help="Filter by group"),
    sort: str = typer.Option("date", "--sort", help="date, amount, name or category"),
    ascending: bool = typer.Option(False, "--ascending", help="Oldest/smallest first"),
    verbose: bool = VERBOSE,
):
    """List expenses (newest first)."""
    with open_database(verbose) as db:
        expenses = db.query_expenses(
            ExpenseFilter(group_id=group_id),
            ExpenseSort(field=sort, descending=not ascending),
        )
        if not expenses:
            console.print("[yellow]No expenses found.[/yellow]")
            return

        table = Table(title="Expenses", show_header=True, header_style="bold magenta")
        table.add_column("Date", style="dim")
        table.add_column("Description", style="cyan", width=40)
        table.add_column("Category", style="yellow")
        table.add_column("Amount", justify="right")
        for expense in expenses:
            desc = expense.name or "[dim]—[/dim]"
            table.add_row(
                expense.date.date().isoformat(),
                desc[:40] + "..." if len(desc) > 40 else desc,
                expense.category.value,
                format_money(expense.amount),
            )
        console.print(table)


# ============================================================================
# Balances and categories
# ============================================================================


@app.command()
def balances(
    group_id: str = typer.Argument(..., help="Group id"),
    verbose: bool = VERBOSE,
):
    """Show member balances and who should pay whom."""
    with open_database(verbose) as db:
        service = LedgerService(db)
        try:
            result = service.get_balances(group_id)
            if not result:
                console.print("[yellow]Group has no members.[/yellow]")
                return

            names = {m.id: m.name for m in db.list_members()}
            table = Table(title="Balances", show_header=True, header_style="bold magenta")
            table.add_column("Member", style="cyan")
            table.add_column("Balance", justify="right")
            for member_id, balance in result.items():
                table.add_row(names.get(member_id, member_id), format_money(balance))
            console.print(table)

            transfers = service.get_settlements(group_id)
            if transfers:
                console.print("\n[bold]To settle up:[/bold]")
            for transfer in transfers:
                console.print(
                    f"  {names.get(transfer.from_member_id, transfer.from_member_id)} → "
                    f"{names.get(transfer.to_member_id, transfer.to_member_id)}: "
                    f"{format_money(transfer.amount).strip()}"
                )
        finally:
            service.close()


@app.command()
def categories(
    group_id: str | None = typer.Option(None, "--group", "-g", help="Limit to a group"),
    verbose: bool = VERBOSE,
):
    """Show expense totals per category."""
    with open_database(verbose) as db:
        service = LedgerService(db)
        try:
            sums = service.get_category_sums(group_id)
        finally:
            service.close()
        if not sums:
            console.print("[yellow]No expenses found.[/yellow]")
            return

        table = Table(title="By Category", show_header=True, header_style="bold magenta")
        table.add_column("Category", style="yellow")
        table.add_column("Total", justify="right")
        for item in sums:
            table.add_row(item.category.value, format_money(item.total))
        console.print(table)


# ============================================================================
# Sync
# ============================================================================


@app.command()
def sync(verbose: bool = VERBOSE):
    """Push local changes to the remote store and pull remote changes."""

    def show_event(event: SyncEvent):
        if event.phase == "started":
            console.print(f"[bold blue]{event.type.value.capitalize()}...[/bold blue]")
        elif event.succeeded:
            detail = ""
            if event.summary:
                detail = (
                    f" ({event.summary.inserted} new, {event.summary.updated} updated, "
                    f"{event.summary.deleted} deleted)"
                )
            console.print(f"[green]✓ {event.type.value} done{detail}[/green]")
        else:
            console.print(f"[red]✗ {event.type.value} failed: {event.error}[/red]")

    succeeded = False
    with open_database(verbose) as db:
        engine = SyncEngine.from_settings(db, load_settings())
        try:
            engine.subscribe(show_event)
            succeeded = engine.sync()
        finally:
            engine.close()

    if not succeeded:
        console.print(
            "[yellow]Sync did not complete. The ledger is still usable offline; "
            "run sync again later.[/yellow]"
        )
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
