"""Console output using Rich.

Every user-facing line goes through the global ``console``:
status messages are prefixed by level, warnings and errors go to
stderr, and dry-run previews are marked so they can't be mistaken for
changes that happened.
"""

from enum import IntEnum
from typing import Any

from rich import box
from rich.console import Console as RichConsole
from rich.panel import Panel
from rich.prompt import Confirm
from rich.syntax import Syntax
from rich.table import Table


class Verbosity(IntEnum):
    """Output verbosity levels."""
    QUIET = 0    # Errors and warnings only
    NORMAL = 1
    VERBOSE = 2  # Per-command details
    DEBUG = 3    # Every executed command


# level -> (prefix markup, minimum verbosity, stderr)
_LEVELS = {
    "info": ("[green][INFO][/green]", Verbosity.NORMAL, False),
    "success": ("[green][OK][/green]", Verbosity.NORMAL, False),
    "step": ("[blue]->[/blue]", Verbosity.NORMAL, False),
    "debug": ("[cyan][DEBUG][/cyan]", Verbosity.DEBUG, False),
    "warn": ("[yellow][WARN][/yellow]", Verbosity.QUIET, True),
    "error": ("[red][ERROR][/red]", Verbosity.QUIET, True),
}


class Console:
    """Leveled console output on top of two Rich consoles (stdout, stderr)."""

    def __init__(self) -> None:
        self.verbosity = Verbosity.NORMAL
        self.dry_run = False
        self.no_color = False
        self._build()

    def _build(self) -> None:
        self._out = RichConsole(highlight=False, no_color=self.no_color)
        self._err = RichConsole(stderr=True, highlight=False, no_color=self.no_color)

    def configure(
        self,
        verbosity: int = 1,
        dry_run: bool = False,
        no_color: bool = False,
    ) -> None:
        """Apply CLI flags. Called once per invocation by the context."""
        self.verbosity = Verbosity(max(Verbosity.QUIET, min(verbosity, Verbosity.DEBUG)))
        self.dry_run = dry_run
        if no_color != self.no_color:
            self.no_color = no_color
            self._build()

    def _emit(self, level: str, message: str) -> None:
        prefix, minimum, stderr = _LEVELS[level]
        if self.verbosity < minimum:
            return
        (self._err if stderr else self._out).print(f"{prefix} {message}")

    def info(self, message: str) -> None:
        self._emit("info", message)

    def success(self, message: str) -> None:
        self._emit("success", message)

    def step(self, message: str) -> None:
        """Announce an action about to be taken."""
        self._emit("step", message)

    def debug(self, message: str) -> None:
        self._emit("debug", message)

    def warn(self, message: str) -> None:
        """Soft failure: printed to stderr even in quiet mode."""
        self._emit("warn", message)

    def error(self, message: str) -> None:
        self._emit("error", message)

    def verbose(self, message: str) -> None:
        """Detail shown with -v."""
        if self.verbosity >= Verbosity.VERBOSE:
            self._out.print(f"[dim]{message}[/dim]")

    def dry_run_msg(self, message: str) -> None:
        """Describe a change that dry-run mode did not make."""
        if self.dry_run:
            self._out.print(f"[blue][DRY-RUN][/blue] {message}")

    def hint(self, message: str) -> None:
        self._out.print(f"[cyan]Hint:[/cyan] {message}")

    def print(self, message: Any = "", **kwargs: Any) -> None:
        """Print raw text or any Rich renderable."""
        self._out.print(message, **kwargs)

    def table(
        self,
        title: str,
        columns: list[str],
        rows: list[list[str]],
        box_style: box.Box = box.ROUNDED,
    ) -> None:
        table = Table(title=title, box=box_style)
        for col in columns:
            table.add_column(col)
        for row in rows:
            table.add_row(*row)
        self._out.print(table)

    def yaml(self, yaml_text: str, title: str = "Configuration") -> None:
        syntax = Syntax(yaml_text, "yaml", theme="monokai", line_numbers=False)
        self._out.print(Panel(syntax, title=title, border_style="cyan"))

    def summary(self, title: str, items: dict[str, Any]) -> None:
        """Key/value panel; booleans render as Yes/No."""
        lines = []
        for key, value in items.items():
            if isinstance(value, bool):
                value = "[green]Yes[/green]" if value else "[red]No[/red]"
            lines.append(f"[bold]{key}:[/bold] {value}")
        self._out.print(Panel("\n".join(lines), title=title, border_style="blue"))

    def operation_summary(
        self,
        operation: str,
        success: bool,
        details: dict[str, Any],
    ) -> None:
        """Result panel for a finished operation."""
        status = "[green]SUCCESS[/green]" if success else "[red]FAILED[/red]"
        lines = [f"[bold]{key}:[/bold] {value}" for key, value in details.items()]
        self._out.print(Panel(
            "\n".join(lines),
            title=f"{operation} - {status}",
            border_style="green" if success else "red",
        ))

    def confirm(
        self,
        message: str,
        default: bool = False,
        skip_confirm: bool = False,
    ) -> bool:
        """Ask a yes/no question. EOF or Ctrl+C count as no."""
        if skip_confirm:
            return True
        try:
            return Confirm.ask(message, default=default, console=self._out)
        except (EOFError, KeyboardInterrupt):
            return False


# Global console instance
console = Console()
