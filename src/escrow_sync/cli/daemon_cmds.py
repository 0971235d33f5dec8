"""Background daemon control: the FastAPI app runs under uvicorn in a child process."""

import os
import signal
import subprocess
import sys

import typer

from . import daemon_app, console, ESCROW_DIR, PID_FILE, LOG_DIR, CONFIG_DIR, CONFIG_FILE, get_daemon_pid
from ..db import has_db_dsn, redacted_dsn

DAEMON_OUT = LOG_DIR / "daemon.out"


def _alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else.
        return True
    return True


def _clear_pid_file() -> None:
    PID_FILE.unlink(missing_ok=True)


def _uvicorn_command(host: str, port: int, reload: bool) -> list[str]:
    cmd = [sys.executable, "-m", "uvicorn", "escrow_sync.app:app", "--host", host, "--port", str(port)]
    if reload:
        cmd.append("--reload")
    return cmd


@daemon_app.command("start")
def start_daemon(
    port: int = typer.Option(9100, help="Port for the HTTP API"),
    host: str = typer.Option("127.0.0.1", help="Interface to bind"),
    reload: bool = typer.Option(False, help="Restart on source changes (development only)"),
):
    """Start the sync daemon in the background."""
    if not CONFIG_FILE.exists():
        console.print(f"[red]{CONFIG_FILE} is missing; run `escrow-sync init` first.[/red]")
        raise typer.Exit(1)

    pid = get_daemon_pid()
    if pid and _alive(pid):
        console.print(f"[yellow]escrow-sync is already running as PID {pid}[/yellow]")
        return
    if pid:
        console.print(f"[yellow]Removing PID file left by exited process {pid}[/yellow]")
        _clear_pid_file()

    for directory in (ESCROW_DIR, LOG_DIR):
        directory.mkdir(parents=True, exist_ok=True)

    env = dict(os.environ, ESCROW_SYNC_LOG_DIR=str(LOG_DIR), ESCROW_SYNC_CONFIG_DIR=str(CONFIG_DIR))
    with DAEMON_OUT.open("a") as out:
        proc = subprocess.Popen(
            _uvicorn_command(host, port, reload),
            env=env,
            stdout=out,
            stderr=subprocess.STDOUT,
            start_new_session=True,
        )
    PID_FILE.write_text(str(proc.pid))

    console.print(f"[green]escrow-sync listening on http://{host}:{port} (PID {proc.pid})[/green]")
    console.print(f"Output: {DAEMON_OUT}")


@daemon_app.command("stop")
def stop_daemon():
    """Send SIGTERM to the running daemon."""
    pid = get_daemon_pid()
    if pid is None:
        console.print("[yellow]No PID file; nothing to stop.[/yellow]")
        return

    if _alive(pid):
        os.kill(pid, signal.SIGTERM)
        console.print(f"[green]Sent SIGTERM to PID {pid}[/green]")
    else:
        console.print(f"[yellow]PID {pid} had already exited[/yellow]")
    _clear_pid_file()


@daemon_app.command("status")
def status_daemon():
    """Report whether the daemon is up and which metadata backend it would use."""
    pid = get_daemon_pid()
    running = pid is not None and _alive(pid)
    if running:
        console.print(f"[green]running[/green] PID {pid}")
    else:
        console.print("[red]stopped[/red]")

    console.print(f"Config:   {CONFIG_FILE}")
    backend = f"postgres ({redacted_dsn()})" if has_db_dsn() else "in-memory"
    console.print(f"Metadata: {backend}")
    if not running:
        raise typer.Exit(1)
