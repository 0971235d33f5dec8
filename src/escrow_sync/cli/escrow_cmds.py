"""Escrow commands: list, show, create, act, save."""

import asyncio
import time
from datetime import UTC, datetime

import typer
from rich.table import Table

from . import escrows_app, console
from ..components import build_components
from ..engine import ReconciliationEngine
from ..errors import EscrowSyncError, TransactionReverted
from ..models import EscrowSnapshot
from ..utils.config_loader import config_loader

WEEK_SECONDS = 7 * 24 * 60 * 60

STATUS_STYLE = {
    "Pending": "white",
    "Submitted": "cyan",
    "Approved": "green",
    "Rejected": "red",
    "Paid": "bold green",
    "Claimed": "bold green",
}


def _run(work):
    """Build components from config, run ``work(engine)`` once, and tear down."""

    async def _main():
        components = build_components(config_loader.load_config())
        try:
            engine = components.new_engine()
            result = await work(engine)
            await engine.wait_settled()
            return result
        finally:
            await components.aclose()

    try:
        return asyncio.run(_main())
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        raise typer.Exit(1)
    except TransactionReverted as e:
        console.print(f"[red]{e.message}[/red]")
        console.print(f"  tx: {e.tx_id}")
        if e.reason:
            console.print(f"  reason: {e.reason}")
        raise typer.Exit(1)
    except EscrowSyncError as e:
        console.print(f"[red]{type(e).__name__}: {e.message}[/red]")
        raise typer.Exit(1)


def _fmt_ts(ts: int) -> str:
    if not ts:
        return "-"
    return datetime.fromtimestamp(ts, UTC).strftime("%Y-%m-%d %H:%M UTC")


def _print_snapshot(snapshot: EscrowSnapshot, engine: ReconciliationEngine) -> None:
    console.print(f"[bold]Escrow {snapshot.address}[/bold]")
    console.print(f"  Funded:   {'yes' if snapshot.funded else 'no'}")
    console.print(f"  Total:    {snapshot.total_amount} ETH")
    console.print(f"  Client:   {snapshot.client_address}")
    console.print(f"  Provider: {snapshot.provider_address}")
    console.print(f"  Ledger:   {_fmt_ts(snapshot.ledger_timestamp)}")

    table = Table(title="Milestones")
    table.add_column("#", justify="right")
    table.add_column("Amount (ETH)", justify="right")
    table.add_column("Deadline")
    table.add_column("Status")
    table.add_column("Proof")
    table.add_column("Claim in", justify="right")
    for m in snapshot.milestones:
        style = STATUS_STYLE.get(m.status.label, "white")
        ready_in = engine.claim_ready_in(m.index)
        table.add_row(
            str(m.index),
            str(m.amount),
            _fmt_ts(m.deadline),
            f"[{style}]{m.status.label}[/{style}]",
            m.proof_uri or "-",
            f"{ready_in}s" if ready_in else "-",
        )
    console.print(table)
    if snapshot.is_all_paid:
        console.print("[bold green]All milestones paid.[/bold green]")


def _print_warning(engine: ReconciliationEngine) -> None:
    warning = engine.last_warning
    if warning is not None:
        console.print(f"[yellow]Stale data: {warning}[/yellow]")


@escrows_app.command("list")
def list_escrows(limit: int = typer.Option(20, "--limit", help="Number of escrows to list (1-200)")):
    """List known escrows from metadata, the factory event feed and the local fallback."""

    async def work(engine: ReconciliationEngine):
        await engine.refresh(limit=limit)
        return engine

    engine = _run(work)
    listing = engine.listing
    titles = {m.address: m.title for m in listing.metadata}

    table = Table(title="Escrows")
    table.add_column("Address")
    table.add_column("Title")
    table.add_column("Source")
    for entry in listing.entries:
        table.add_row(entry.address, titles.get(entry.address, "-"), entry.provenance.value)
    console.print(table)
    if not listing.event_feed_ok:
        console.print("[yellow]Event feed unavailable; local fallback list included.[/yellow]")
    _print_warning(engine)


@escrows_app.command("show")
def show_escrow(address: str = typer.Argument(..., help="Escrow contract address")):
    """Read one escrow's full state from the ledger."""

    async def work(engine: ReconciliationEngine):
        await engine.select(address)
        return engine

    engine = _run(work)
    if engine.snapshot is None:
        console.print(f"[red]Escrow {address} could not be read[/red]")
        _print_warning(engine)
        raise typer.Exit(1)
    _print_snapshot(engine.snapshot, engine)
    _print_warning(engine)


@escrows_app.command("create")
def create_escrow(
    amounts: str = typer.Option(..., "--amounts", help="Comma-separated ETH amounts, e.g. 0.3,0.7"),
    deadlines: str = typer.Option("", "--deadlines", help="Comma-separated unix deadlines; default weekly"),
    client: str = typer.Option("", "--client", help="Client address; defaults to the configured client role"),
    provider: str = typer.Option("", "--provider", help="Provider address; defaults to the configured provider role"),
    title: str = typer.Option("", "--title", help="Project title stored with the metadata"),
):
    """Deploy a new escrow through the factory."""
    if not deadlines.strip():
        count = len([a for a in amounts.split(",") if a.strip()])
        now = int(time.time())
        deadlines = ",".join(str(now + WEEK_SECONDS * (n + 1)) for n in range(count))

    async def work(engine: ReconciliationEngine):
        roles = config_loader.get_config().roles
        return await engine.create_escrow(
            client or roles.get("client"),
            provider or roles.get("provider"),
            amounts,
            deadlines,
            title=title or None,
        )

    outcome = _run(work)
    console.print("[green]Escrow created.[/green]")
    console.print(f"  Escrow: {outcome.escrow}")
    console.print(f"  Tx:     {outcome.tx_id}")


@escrows_app.command("act")
def act(
    action: str = typer.Argument(..., help="fund | submit | approve | reject | claim"),
    address: str = typer.Argument(..., help="Escrow contract address"),
    index: int = typer.Option(None, "--index", "-i", help="Milestone index"),
    proof: str = typer.Option(None, "--proof", help="Proof reference for submit"),
    reason: str = typer.Option(None, "--reason", help="Reason reference for reject"),
):
    """Dispatch a milestone action and wait for the post-action refresh."""

    async def work(engine: ReconciliationEngine):
        await engine.select(address, auto_pick=False)
        outcome = await engine.dispatch(action, index, escrow=address, proof_uri=proof, reason_uri=reason)
        await engine.wait_settled()
        return outcome, engine

    outcome, engine = _run(work)
    console.print(f"[green]{engine.view()['notice']}[/green] (tx {outcome.tx_id})")
    if engine.snapshot is not None:
        _print_snapshot(engine.snapshot, engine)
    _print_warning(engine)


@escrows_app.command("save")
def save_escrow(
    address: str = typer.Argument(..., help="Escrow contract address"),
    client: str = typer.Option(..., "--client"),
    provider: str = typer.Option(..., "--provider"),
    amounts: str = typer.Option(..., "--amounts", help="Comma-separated ETH amounts"),
    title: str = typer.Option("", "--title"),
):
    """Record descriptive metadata for an escrow that already exists on the ledger."""

    async def work(engine: ReconciliationEngine):
        return await engine.save_metadata(address, client, provider, amounts, title=title or None)

    saved = _run(work)
    if saved:
        console.print(f"[green]Metadata saved for {address}[/green]")
    else:
        console.print(f"[yellow]Metadata for {address} already exists; left unchanged[/yellow]")
