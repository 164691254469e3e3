"""
Rich terminal UI components.
Unicode icons with an ASCII fallback for terminals that cannot encode them.
"""
import sys
from contextlib import contextmanager
from typing import Dict, Generator, List, Mapping

import typer
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.table import Table
from rich.text import Text

_encoding = getattr(sys.stdout, "encoding", None) or "utf-8"
try:
    "\U0001f4e6".encode(_encoding)
    HAS_UNICODE = True
except (UnicodeEncodeError, LookupError):
    HAS_UNICODE = False

ICONS: Dict[str, str] = {
    "provider": "\U0001f511",
    "snapshot": "\U0001f4e6",
    "restore": "♻️",
    "compress": "\U0001f5dc️",
    "verify": "\U0001f9ea",
    "delete": "\U0001f5d1️",
    "success": "✅",
    "error": "❌",
    "warn": "⚠️",
    "info": "ℹ️",
    "doctor": "\U0001fa7a",
}

ASCII_ICONS: Dict[str, str] = {
    "provider": "[KEY]",
    "snapshot": "[SNP]",
    "restore": "[RST]",
    "compress": "[CMP]",
    "verify": "[CHK]",
    "delete": "[DEL]",
    "success": "[OK]",
    "error": "[ERR]",
    "warn": "[WARN]",
    "info": "[INF]",
    "doctor": "[DOC]",
}

STATUS_STYLES = {
    "pass": "[bold green]PASS[/]",
    "warn": "[bold yellow]WARN[/]",
    "fail": "[bold red]FAIL[/]",
}

def icon(name: str) -> str:
    return ICONS.get(name, "") if HAS_UNICODE else ASCII_ICONS.get(name, "")

console = Console(width=120)
err_console = Console(stderr=True, width=120)

def render_status(action: str, message: str, style: str = "white") -> None:
    """Print a single line status update."""
    console.print(f"{icon(action)} [{style}]{message}[/]")

def _notice(target: Console, kind: str, label: str, color: str, message: str) -> None:
    target.print()
    target.print(Panel(Text(message, style=color), border_style=color, expand=False, title=f"{icon(kind)} {label}"))

def render_error(message: str) -> None:
    """Print a styled error panel on stderr."""
    _notice(err_console, "error", "ERROR", "red", message)

def render_warning(message: str) -> None:
    _notice(console, "warn", "WARNING", "yellow", message)

def confirm(prompt_text: str) -> bool:
    """Interactive confirmation prompt, defaulting to no."""
    return typer.confirm(f"{icon('warn')} {prompt_text}", default=False)

def render_table(title: str, headers: List[str], rows: List[List[str]]) -> None:
    """Render a rounded table; the first column never wraps."""
    console.print()
    table = Table(
        title=title,
        border_style="cyan",
        header_style="bold magenta",
        show_lines=True,
        box=box.ROUNDED if HAS_UNICODE else box.ASCII,
    )
    if headers:
        table.add_column(headers[0], no_wrap=True)
        for h in headers[1:]:
            table.add_column(h, justify="left", overflow="fold")
    for r in rows:
        table.add_row(*r)
    console.print(table)
    console.print()

def render_success_summary(title: str, stats: Mapping[str, object]) -> None:
    """Render a key/value summary panel for a finished operation."""
    table = Table(show_header=False, box=None)
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="magenta")
    for key, value in stats.items():
        table.add_row(str(key), str(value))
    console.print(Panel(table, title=f"[bold green]{icon('success')} {title}[/]", border_style="green", expand=False))

@contextmanager
def render_progress(title: str = "Working...") -> Generator[Progress, None, None]:
    """Spinner for operations whose duration is unknown up front."""
    progress = Progress(
        SpinnerColumn(spinner_name="dots2", style="cyan"),
        TextColumn("[bold blue]{task.description}"),
        TimeElapsedColumn(),
        console=console,
        transient=True,
    )
    with progress:
        progress.add_task(title, total=None)
        yield progress
