import asyncio
import json
import logging
import time
from collections import deque
from typing import Any, Dict, List, Optional

import typer
from rich import print
from rich.console import Console
from rich.live import Live
from rich.table import Table

from acd.config import CONFIG_DIR_ENV, Settings, get_settings, is_custom_config_dir
from acd.daemon.client import DaemonClient
from acd.daemon.manager import ProcessSupervisor
from acd.errors import DaemonError
from acd.sessions.models import SessionSnapshot, SessionState

logger = logging.getLogger(__name__)

APP_HELP = """
acd: run several AI coding agents at once, each in its own git worktree.

A background daemon owns the agent sessions. The CLI starts, stops and inspects
that daemon; the terminal and web UIs talk to it over HTTP.

CORE WORKFLOW:
1. START:  `acd start` launches the daemon and prints its URL.
2. WATCH:  `acd tui` shows live session states (starts the daemon if needed).
3. CHECK:  `acd status` / `acd logs` when something looks wrong.
4. STOP:   `acd stop` tears down every session and the daemon.
"""

app = typer.Typer(name="acd", help=APP_HELP, no_args_is_help=True)

state = {"json": False}

STATE_STYLES = {
    SessionState.PENDING: "dim",
    SessionState.ACTIVE: "cyan",
    SessionState.BUSY: "yellow",
    SessionState.IDLE: "green",
    SessionState.WAITING_INPUT: "bold magenta",
    SessionState.ERROR: "bold red",
    SessionState.STOPPED: "dim",
}


@app.callback()
def main(
    json_output: bool = typer.Option(False, "--json", help="Machine-readable JSON output."),
):
    """
    acd: agent sessions behind a local daemon.
    """
    state["json"] = json_output


# ============================================================================
# Helpers
# ============================================================================

def _emit_json(payload: Dict[str, Any]) -> None:
    typer.echo(json.dumps(payload, indent=2, default=str))


def _fail(command: str, error: Exception) -> None:
    message = getattr(error, "message", None) or str(error)
    if state["json"]:
        _emit_json({"ok": False, "command": command, "error": {"message": message}})
    else:
        print(f"[red]Failed to {command} daemon: {message}[/red]")
    raise typer.Exit(code=1)


def _format_uptime(uptime: Optional[float]) -> str:
    uptime = uptime or 0
    if uptime > 3600:
        return f"{uptime / 3600:.1f} hours"
    elif uptime > 60:
        return f"{uptime / 60:.1f} minutes"
    return f"{uptime:.0f} seconds"


def _supervisor(settings: Optional[Settings] = None) -> ProcessSupervisor:
    return ProcessSupervisor(settings or get_settings())


# ============================================================================
# Daemon Commands
# ============================================================================

@app.command("start")
def daemon_start():
    """
    Start the background daemon.

    Does nothing (and says so) if a daemon is already running for this config
    directory. Waits until the daemon answers HTTP before returning.
    """
    try:
        result = _supervisor().start()
    except (DaemonError, OSError) as e:
        _fail("start", e)
        return

    if state["json"]:
        _emit_json({"ok": True, "command": "start", **result.model_dump()})
        return

    if result.started:
        print(f"[green]Daemon started (PID {result.pid})[/green]")
    else:
        print(f"[yellow]Daemon already running (PID {result.pid})[/yellow]")
    print(f"  URL: {result.web_url}")
    source = f" (from {CONFIG_DIR_ENV})" if is_custom_config_dir() else ""
    print(f"  Config dir: {result.config_dir}{source}")
    print(f"[dim]  PID file: {result.pid_file}[/dim]")
    print(f"[dim]  Log file: {result.log_file}[/dim]")


@app.command("stop")
def daemon_stop():
    """
    Stop the background daemon.

    Sends SIGTERM and waits for the daemon to tear down its sessions. If it
    does not exit in time the command fails; nothing is force-killed.
    """
    try:
        result = _supervisor().stop()
    except (DaemonError, OSError) as e:
        _fail("stop", e)
        return

    if state["json"]:
        _emit_json({"ok": True, "command": "stop", **result.model_dump()})
        return

    if result.stopped:
        print(f"[green]Daemon stopped (PID {result.pid})[/green]")
    else:
        print(f"[dim]{result.message}[/dim]")


@app.command("status")
def daemon_status():
    """
    Show daemon status.

    Displays:
    - Running state and PID
    - Uptime
    - URL and file locations
    """
    try:
        status = _supervisor().status()
    except (DaemonError, OSError) as e:
        _fail("status", e)
        return

    if state["json"]:
        _emit_json({"ok": True, "command": "status", **status.model_dump()})
        return

    if status.running:
        print("[bold green]Daemon is running[/bold green]")
        print(f"  PID: {status.pid}")
        print(f"  Port: {status.port}")
        print(f"  Uptime: {_format_uptime(status.uptime_seconds)}")
        reachable = "[green]reachable[/green]" if status.reachable else "[yellow]not responding[/yellow]"
        print(f"  URL: {status.web_url} ({reachable})")
    else:
        print("[dim]Daemon is not running[/dim]")
    print(f"[dim]  Config dir: {status.config_dir}[/dim]")
    print(f"[dim]  Log file: {status.log_file}[/dim]")


@app.command("restart")
def daemon_restart():
    """
    Restart the daemon.

    Stops the daemon if running, then starts it again.
    """
    try:
        result = _supervisor().restart()
    except (DaemonError, OSError) as e:
        _fail("restart", e)
        return

    if state["json"]:
        _emit_json({"ok": True, "command": "restart", **result.model_dump()})
        return

    if result.stop.stopped:
        print(f"[dim]Stopped PID {result.stop.pid}[/dim]")
    print(f"[green]Daemon started (PID {result.start.pid})[/green]")
    print(f"  URL: {result.start.web_url}")


@app.command("daemon")
def daemon_run(
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port to listen on"),
):
    """
    Run the daemon in the foreground.

    This is what `acd start` launches in the background. Stops on Ctrl+C or
    SIGTERM after tearing down every session.
    """
    from acd.daemon.server import run_server

    overrides = {"port": port} if port is not None else {}
    settings = get_settings(**overrides)
    try:
        run_server(settings)
    except (DaemonError, OSError) as e:
        _fail("run", e)


@app.command("logs")
def daemon_logs(
    follow: bool = typer.Option(False, "--follow", "-f", help="Follow log output"),
    lines: int = typer.Option(20, "--lines", "-n", help="Number of lines to show"),
):
    """
    Show daemon logs.

    Displays the tail of the daemon log file. Use --follow to watch for new entries.
    """
    log_file = get_settings().log_file

    if not log_file.exists():
        print("[yellow]No daemon log file found[/yellow]")
        print(f"[dim]Expected at: {log_file}[/dim]")
        return

    with open(log_file, "r", encoding="utf-8", errors="replace") as f:
        for line in deque(f, maxlen=lines):
            typer.echo(line.rstrip("\n"))

        if not follow:
            return

        try:
            while True:
                line = f.readline()
                if line:
                    typer.echo(line.rstrip("\n"))
                else:
                    time.sleep(0.5)
        except KeyboardInterrupt:
            pass


# ============================================================================
# TUI
# ============================================================================

def _sessions_table(sessions: List[SessionSnapshot], web_url: Optional[str] = None) -> Table:
    table = Table(title="acd sessions", caption=web_url)
    table.add_column("Name", style="bold")
    table.add_column("Agent")
    table.add_column("State")
    table.add_column("Worktree", overflow="fold")
    table.add_column("PID", justify="right")

    if not sessions:
        table.add_row("[dim]no sessions[/dim]", "", "", "", "")
        return table

    for session in sorted(sessions, key=lambda s: s.created_at):
        style = STATE_STYLES.get(session.state, "")
        table.add_row(
            session.name,
            session.agent_id,
            f"[{style}]{session.state.value}[/{style}]" if style else session.state.value,
            session.worktree_path,
            str(session.pid or ""),
        )
    return table


async def _watch_sessions(client: DaemonClient, interval: float, web_url: Optional[str], once: bool) -> None:
    console = Console()
    sessions = await client.list_sessions()
    if once:
        console.print(_sessions_table(sessions, web_url))
        return

    with Live(_sessions_table(sessions, web_url), console=console, refresh_per_second=4) as live:
        while True:
            await asyncio.sleep(interval)
            sessions = await client.list_sessions()
            live.update(_sessions_table(sessions, web_url))


@app.command("tui")
def tui(
    no_auto_start: bool = typer.Option(False, "--no-auto-start", help="Fail instead of starting the daemon"),
    interval: float = typer.Option(1.0, "--interval", help="Refresh interval in seconds"),
    once: bool = typer.Option(False, "--once", help="Print the session table once and exit"),
):
    """
    Live view of the daemon's sessions.

    Starts the daemon first unless --no-auto-start is given.
    """
    settings = get_settings()
    try:
        status = _supervisor(settings).ensure_running(auto_start=not no_auto_start)
    except (DaemonError, OSError) as e:
        _fail("reach", e)
        return

    client = DaemonClient(status.url, settings.access_token)
    try:
        asyncio.run(_watch_sessions(client, interval, status.web_url, once))
    except KeyboardInterrupt:
        pass
    except DaemonError as e:
        _fail("reach", e)


if __name__ == "__main__":
    app()
