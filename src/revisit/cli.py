"""
revisit: spaced repetition for plain-text files.

A Rich terminal interface over the item store and review session.

Commands:
- revisit add     - Start tracking files
- revisit review  - Review due files in your editor and grade your recall
- revisit list    - Show tracked files and their schedule
"""
from __future__ import annotations

import sys
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table

from loguru import logger

from .config import Settings, load_settings
from .editor import EditorLauncher
from .errors import RevisitError
from .models import Item, ReviewState, utcnow
from .scheduler import GRADE_DESCRIPTIONS, GRADES
from .session import ReviewSession, SessionSummary
from .store import open_store


# =============================================================================
# CLI Setup
# =============================================================================

app = typer.Typer(
    name="revisit",
    help="revisit: spaced repetition for your notes",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)


def configure_logging(level: str = "WARNING") -> None:
    """Send loguru output to stderr at `level`."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level,
        format="<level>{message}</level>",
    )


@dataclass
class GlobalOptions:
    """Options given before the subcommand."""

    config: Path | None = None
    database: Path | None = None
    root: Path | None = None

    def settings(self) -> Settings:
        settings = load_settings(
            config_path=self.config,
            database_path=self.database,
            root=self.root,
        )
        configure_logging(settings.log_level)
        return settings


@contextmanager
def reported_errors() -> Iterator[None]:
    """Turn RevisitErrors into a red message and a non-zero exit."""
    try:
        yield
    except RevisitError as exc:
        err_console.print(f"[bold red]Error:[/bold red] {exc.message}")
        raise typer.Exit(exc.exit_code) from exc


def _format_time(value: datetime | None) -> str:
    if value is None:
        return "-"
    return value.astimezone().strftime("%Y-%m-%d %H:%M")


# =============================================================================
# Interactive Collaborators
# =============================================================================


class PromptingEditor:
    """Shows the item header, offers a one-off editor override, then opens the file."""

    def __init__(self, launcher: EditorLauncher, console: Console):
        self.launcher = launcher
        self.console = console

    def open(self, path: Path) -> None:
        self.console.print()
        self.console.print(Panel(str(path), title="Reviewing", title_align="left", border_style="cyan"))
        try:
            editor_command = Prompt.ask(
                "[green]Editor[/green] [dim](Enter to keep, Ctrl+C to stop)[/dim]",
                default=self.launcher.editor_command,
                console=self.console,
            )
        except EOFError:
            # No more input: keep the configured editor
            self.console.print()
            editor_command = self.launcher.editor_command
        self.launcher.open(path, editor_command)


class ConsoleGradePrompt:
    """Asks for a 0-5 grade; `h` shows the legend, `n` the resulting dates, `q` quits."""

    def __init__(self, console: Console):
        self.console = console

    def ask(self, item: Item, preview: dict[int, ReviewState]) -> int | None:
        while True:
            try:
                answer = Prompt.ask(
                    "[green]Grade your recall 0-5[/green] [dim](h: help, n: next dates, q: quit)[/dim]",
                    console=self.console,
                ).strip().lower()
            except EOFError:
                # Ctrl+D or end of piped input ends the session like q
                self.console.print()
                return None

            if answer == "h":
                self._show_legend()
            elif answer == "n":
                self._show_preview(preview)
            elif answer == "q":
                return None
            elif answer.isdigit() and int(answer) in GRADES:
                return int(answer)
            else:
                self.console.print(f"[red]Invalid input:[/red] {answer!r}")

    def _show_legend(self) -> None:
        for grade, description in sorted(GRADE_DESCRIPTIONS.items(), reverse=True):
            self.console.print(f"  {grade} = {description}")
        self.console.print("[dim]Grades below 3 restart the item's schedule.[/dim]")

    def _show_preview(self, preview: dict[int, ReviewState]) -> None:
        table = Table(title="Next review by grade")
        table.add_column("Grade")
        table.add_column("Next review")
        table.add_column("Interval")
        for grade, state in sorted(preview.items()):
            table.add_row(str(grade), _format_time(state.next_review_at), f"{state.interval_days}d")
        self.console.print(table)


def _display_session_summary(summary: SessionSummary) -> None:
    """Display end-of-session summary."""
    lines = [f"Reviewed: {summary.reviewed} of {summary.selected}"]
    if summary.interrupted:
        lines.append("[yellow]Session interrupted.[/yellow]")
    elif summary.ended_early:
        lines.append("[yellow]Session ended early.[/yellow]")
    for result in summary.results:
        lines.append(
            f"  {result.file_path}: grade {result.grade}, "
            f"next {_format_time(result.updated.next_review_at)}"
        )
    console.print(Panel("\n".join(lines), title="Summary", border_style="green"))


# =============================================================================
# Commands
# =============================================================================


@app.callback()
def main_options(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(
        None,
        "--config", "-c",
        help="Config file (default: nearest .revisit.toml)",
    ),
    database: Optional[Path] = typer.Option(
        None,
        "--database", "-d",
        help="Store location (directory, or .db file for SQLite)",
    ),
    root: Optional[Path] = typer.Option(
        None,
        "--root", "-r",
        help="Track files under this directory by relative path",
    ),
) -> None:
    """revisit: spaced repetition for your notes."""
    ctx.obj = GlobalOptions(config=config, database=database, root=root)


@app.command()
def add(
    ctx: typer.Context,
    files: Optional[list[Path]] = typer.Argument(
        None,
        help="Files to track",
    ),
    file_options: Optional[list[Path]] = typer.Option(
        None,
        "--file", "-f",
        help="File to track (repeatable)",
    ),
) -> None:
    """Start tracking files. New files are due for review immediately."""
    paths = [*(file_options or []), *(files or [])]
    if not paths:
        raise typer.BadParameter("Give at least one file to add.")

    with reported_errors():
        settings = ctx.obj.settings()
        with open_store(settings) as store:
            now = utcnow()
            for path in paths:
                item = store.add(path, now)
                console.print(f"[green]Added[/green] {item.file_path} [dim](id {item.id})[/dim]")


@app.command()
def review(
    ctx: typer.Context,
    num: Optional[int] = typer.Option(
        None,
        "--num", "-n",
        min=1,
        help="Number of files to review (default: all due)",
    ),
    ignore_schedule: bool = typer.Option(
        False,
        "--ignore-schedule", "-i",
        help="Review files regardless of their next review date",
    ),
) -> None:
    """
    Review due files.

    Each file opens in your editor; when you close it, grade how well you
    remembered it. Every grade is saved immediately, so you can stop at any
    point with q or Ctrl+C.
    """
    with reported_errors():
        settings = ctx.obj.settings()
        with open_store(settings) as store:
            session = ReviewSession(
                store,
                editor=PromptingEditor(EditorLauncher(settings.editor_command), console),
                grader=ConsoleGradePrompt(console),
            )
            try:
                summary = session.run(num, utcnow(), ignore_schedule=ignore_schedule)
            except RevisitError:
                if session.summary.reviewed:
                    _display_session_summary(session.summary)
                raise

            if summary.selected == 0:
                console.print("[green]Nothing due for review![/green] Check back later.")
                return
            _display_session_summary(summary)


@app.command("list")
def list_items(
    ctx: typer.Context,
    due: bool = typer.Option(
        False,
        "--due",
        help="Only show files due now",
    ),
) -> None:
    """Show tracked files and their schedule."""
    with reported_errors():
        settings = ctx.obj.settings()
        with open_store(settings) as store:
            now = utcnow()
            items = store.list_due(now) if due else store.list_all()
            corrupt = dict(store.corrupt_records)

    if not items:
        console.print("[dim]No files tracked yet.[/dim]" if not due else "[green]Nothing due.[/green]")
    else:
        table = Table()
        table.add_column("ID", justify="right")
        table.add_column("File")
        table.add_column("Next review")
        table.add_column("Interval", justify="right")
        table.add_column("EF", justify="right")
        table.add_column("Reps", justify="right")

        for item in items:
            state = item.review_state
            next_review = _format_time(state.next_review_at)
            if item.is_due(now):
                next_review = f"[yellow]{next_review}[/yellow]"
            table.add_row(
                str(item.id),
                item.file_path,
                next_review,
                f"{state.interval_days}d",
                f"{state.easiness_factor:.2f}",
                str(state.repetition_count),
            )
        console.print(table)

    for item_id, reason in sorted(corrupt.items()):
        err_console.print(f"[yellow]Unreadable record {item_id}:[/yellow] {reason}")


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """CLI entry point."""
    configure_logging()
    app()


if __name__ == "__main__":
    main()
