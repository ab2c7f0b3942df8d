"""
Hop Terminal UI
===============
Rich terminal output: themed messages, proxy tables, and the live request log.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table
from rich.theme import Theme

from hop import __version__
from hop.config import ProxyRule
from hop.core.exchange import RequestEvent, ResponseEvent

# ── Theme ────────────────────────────────────────────────────────────────────

HOP_THEME = Theme({
    "info": "cyan",
    "warning": "yellow",
    "error": "bold red",
    "success": "bold green",
    "title": "bold bright_green",
    "dim": "dim white",
    "method": "bold cyan",
    "status.ok": "green",
    "status.redirect": "cyan",
    "status.client": "yellow",
    "status.server": "bold red",
})

console = Console(theme=HOP_THEME)

BANNER_SMALL = (
    f"[bold bright_green]⇢ Hop[/] [dim]v{__version__}[/] "
    "[dim]|[/] [bold bright_cyan]Local reverse-proxy endpoints[/]"
)


def show_banner() -> None:
    console.print(BANNER_SMALL)


def setup_logging(level: str = "INFO") -> None:
    """Route the ``logging`` module through rich."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False, markup=False)],
        force=True,
    )


# ── Messages ─────────────────────────────────────────────────────────────────

def print_info(text: str) -> None:
    console.print(f"[info]ℹ {text}[/]")


def print_success(text: str) -> None:
    console.print(f"[success]✔ {text}[/]")


def print_warning(text: str) -> None:
    console.print(f"[warning]⚠ {text}[/]")


def print_error(text: str) -> None:
    console.print(f"[error]✖ {text}[/]")


def print_proxy(rule: ProxyRule, url: str = "") -> None:
    """One line per started endpoint: ``8080 → https://api.example.com``."""
    local = url or str(rule.port)
    console.print(f"  [info]→[/] [bold]{rule.name}[/] {local} → {rule.target}")


# ── Tables ───────────────────────────────────────────────────────────────────

_STATE_LABELS = {
    "running_local": "[success]● running here[/]",
    "running_external": "[info]● running (PID {pid})[/]",
    "conflict": "[warning]● conflict (PID {pid})[/]",
    "stopped": "[dim]○ stopped[/]",
}


def format_state(state: str, pid: Optional[int] = None) -> str:
    return _STATE_LABELS.get(state, state).format(pid=pid)


def format_uptime(seconds: float) -> str:
    seconds = int(seconds)
    hours, rem = divmod(seconds, 3600)
    minutes, secs = divmod(rem, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def show_proxy_table(rules: List[ProxyRule], states: Dict[str, Dict[str, Any]]) -> None:
    """Configured rules with their live state."""
    table = Table(title="Configured Proxies", show_lines=False)
    table.add_column("Name", style="bold")
    table.add_column("Port", justify="right")
    table.add_column("Target")
    table.add_column("Paths", style="dim")
    table.add_column("Headers", style="dim")
    table.add_column("Status")

    for rule in rules:
        info = states.get(rule.name, {})
        scheme = "https" if rule.https else "http"
        table.add_row(
            rule.name,
            f"{rule.port} ({scheme})",
            rule.target,
            ", ".join(rule.paths) if rule.paths else "(all)",
            ", ".join(rule.headers) if rule.headers else "-",
            format_state(info.get("state", "stopped"), info.get("pid")),
        )

    console.print(table)


def show_status_table(rows: List[Dict[str, Any]]) -> None:
    """Live registry entries."""
    table = Table(title="Running Proxies", show_lines=False)
    table.add_column("Name", style="bold")
    table.add_column("Port", justify="right")
    table.add_column("PID", justify="right")
    table.add_column("Uptime", justify="right")
    table.add_column("Status")

    for row in rows:
        table.add_row(
            row["name"],
            str(row["port"]),
            str(row["pid"]),
            format_uptime(row.get("uptime_seconds", 0)),
            format_state(row["state"], row["pid"]),
        )

    console.print(table)


def show_paths(paths: Dict[str, str]) -> None:
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Key", style="dim")
    table.add_column("Value")
    for key, value in paths.items():
        table.add_row(key, value)
    console.print(Panel(table, title="[title]Hop Paths[/]", border_style="green"))


# ── Request Log ──────────────────────────────────────────────────────────────

def _status_style(status: int) -> str:
    if status >= 500:
        return "status.server"
    if status >= 400:
        return "status.client"
    if status >= 300:
        return "status.redirect"
    return "status.ok"


class RequestLog:
    """Prints one line per completed request from manager events."""

    def __init__(self) -> None:
        self._pending: Dict[str, RequestEvent] = {}

    def on_request(self, name: str, event: RequestEvent) -> None:
        self._pending[event.id] = event

    def on_response(self, name: str, event: ResponseEvent) -> None:
        req = self._pending.pop(event.id, None)
        method = req.method if req else "?"
        path = req.path if req else ""
        style = _status_style(event.status_code)
        console.print(
            f"[dim]{name:<12}[/] [method]{method:<7}[/] {path} "
            f"[{style}]{event.status_code}[/] [dim]{event.duration:.0f}ms[/]",
            highlight=False,
        )


# ── Progress ─────────────────────────────────────────────────────────────────

def create_spinner() -> Progress:
    """Create a spinner for long operations."""
    return Progress(
        SpinnerColumn("dots"),
        TextColumn("[dim]{task.description}[/]"),
        console=console,
        transient=True,
    )
