"""escrow-sync CLI: operator commands for the daemon and escrows."""

import typer
from rich.console import Console

from .. import __version__
from ..db import has_db_dsn, init_db
from ..utils.config_loader import DEFAULT_HOME, config_loader

app = typer.Typer(help=f"escrow-sync {__version__} - milestone escrow state sync")
console = Console()

daemon_app = typer.Typer()
escrows_app = typer.Typer()

app.add_typer(daemon_app, name="daemon", help="Manage the escrow-sync daemon process")
app.add_typer(escrows_app, name="escrows", help="Inspect escrows and dispatch milestone actions")

# Runtime layout under ~/.escrow-sync
ESCROW_DIR = DEFAULT_HOME
PID_FILE = ESCROW_DIR / "escrow-sync.pid"
LOG_DIR = ESCROW_DIR / "logs"
DATA_DIR = ESCROW_DIR / "data"
CONFIG_DIR = config_loader.config_dir
CONFIG_FILE = config_loader.config_file

DEFAULT_CONFIG_YAML = """version: 1

# JSON-RPC endpoint of the ledger
rpc_url: http://127.0.0.1:8545
chain_id: 11155111

# Factory that deploys escrow contracts (EscrowCreated emitter)
factory_address: "0x0000000000000000000000000000000000000000"

gateway:
  base_url: http://127.0.0.1:8700
  timeout_seconds: 30
  confirmation_timeout_seconds: 180
  poll_interval_seconds: 2

# Signer addresses the gateway holds keys for
roles:
  client: "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
  provider: "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"

sync:
  settle_delay_seconds: 0.5
  refresh_retries: 2
  refresh_backoff_seconds: 1.5
  event_window_blocks: 10

registry:
  default_limit: 20
"""


def get_daemon_pid() -> int | None:
    try:
        return int(PID_FILE.read_text().strip())
    except (FileNotFoundError, ValueError):
        return None


@app.command("init")
def init_escrow_sync():
    """Create local runtime folders, a default escrow.yaml, and the metadata schema."""
    console.print(f"[bold]Initializing escrow-sync in {ESCROW_DIR}...[/bold]")

    for directory in (ESCROW_DIR, LOG_DIR, DATA_DIR, CONFIG_DIR):
        directory.mkdir(parents=True, exist_ok=True)

    if not CONFIG_FILE.exists():
        console.print("Creating default escrow.yaml...")
        CONFIG_FILE.write_text(DEFAULT_CONFIG_YAML)
        console.print(f"[yellow]Set factory_address in {CONFIG_FILE} before starting the daemon.[/yellow]")

    if has_db_dsn():
        try:
            init_db()
            console.print("[green]Metadata database initialized.[/green]")
        except Exception as e:
            console.print(f"[red]Failed to initialize database: {e}[/red]")
            raise typer.Exit(1)
    else:
        console.print("[yellow]ESCROW_SYNC_PG_DSN not set; metadata will be kept in memory.[/yellow]")

    console.print("[green]escrow-sync initialized.[/green]")


# Command modules register themselves on import.
from . import daemon_cmds   # noqa: E402, F401
from . import escrow_cmds   # noqa: E402, F401
