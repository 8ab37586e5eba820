"""
Proximity Terminal UI
=====================
Rich terminal output: banner, configuration table, status messages, and the
logging handler the CLI installs.
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.theme import Theme

from proximity import __version__

# ── Theme ────────────────────────────────────────────────────────────────────

PROXIMITY_THEME = Theme({
    "info": "cyan",
    "warning": "yellow",
    "error": "bold red",
    "success": "bold green",
    "title": "bold bright_green",
    "subtitle": "dim",
    "dim": "dim white",
})

console = Console(theme=PROXIMITY_THEME, stderr=True)

# ── Banner ───────────────────────────────────────────────────────────────────

BANNER_SMALL = (
    f"[bold bright_green]⇄ Proximity[/] [dim]v{__version__}[/] "
    "[dim]|[/] [bold bright_cyan]HTTP(S) forwarding proxy[/]"
)


def show_banner() -> None:
    """Display the Proximity banner."""
    console.print(BANNER_SMALL)


# ── Logging ──────────────────────────────────────────────────────────────────

def setup_logging(verbosity: int = 0, debug: bool = False) -> None:
    """Route all ``proximity`` loggers through a RichHandler.

    Request dumps are written at INFO on ``proximity.diagnostics``, so they
    show whenever a verbosity above 0 is configured.
    """
    level = logging.DEBUG if debug else logging.INFO
    handler = RichHandler(console=console, show_path=False, markup=False, rich_tracebacks=True)
    handler.setFormatter(logging.Formatter("%(message)s"))
    root = logging.getLogger("proximity")
    root.handlers = [handler]
    root.setLevel(level)
    root.propagate = False
    logging.getLogger("proximity.diagnostics").setLevel(logging.INFO if verbosity > 0 else logging.WARNING)


# ── Status & Info ────────────────────────────────────────────────────────────

def show_config_status(config: Dict[str, Any]) -> None:
    """Display the effective configuration."""
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Key", style="dim")
    table.add_column("Value")

    table.add_row("Listen", str(config.get("listen", "N/A")))
    table.add_row("Upstream", str(config.get("remote", "N/A")))
    if config.get("no_verify"):
        table.add_row("TLS", "⚠️  Verification disabled")
    else:
        table.add_row("TLS", "🛡️ Verify + client certificate")
        table.add_row("Certificate", str(config.get("cert_file", "")))
        table.add_row("Key", str(config.get("key_file", "")))
    table.add_row("Verbosity", str(config.get("verbosity", 0)))
    table.add_row("Metrics interval", f"{config.get('metrics_interval', 0)}s")
    table.add_row("Timeout", f"{config.get('timeout', 0)}s")
    table.add_row("Max redirects", str(config.get("max_redirects", 0)))

    console.print(Panel(table, title="[title]Configuration[/]", border_style="green"))


def show_counters(stats: Dict[str, Any]) -> None:
    """Display request counters."""
    table = Table(title="Requests", show_lines=False)
    table.add_column("Counter", style="bold")
    table.add_column("Count", justify="right")
    for name in ("requests_total", "requests_success", "requests_failure"):
        table.add_row(name, str(stats.get(name, 0)))
    console.print(table)


# ── Messages ─────────────────────────────────────────────────────────────────

def print_info(text: str) -> None:
    console.print(f"[info]ℹ {text}[/]")


def print_success(text: str) -> None:
    console.print(f"[success]✅ {text}[/]")


def print_warning(text: str) -> None:
    console.print(f"[warning]⚠️  {text}[/]")


def print_error(text: str) -> None:
    console.print(f"[error]❌ {text}[/]")
