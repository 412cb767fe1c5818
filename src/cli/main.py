"""
exam-engine - operator CLI for the session engine.

Commands:
    exam-engine sessions list          - Saved snapshots (most recent first)
    exam-engine sessions show ID       - Details of one saved session
    exam-engine sessions purge         - Delete expired or corrupted snapshots
    exam-engine bank validate FILE     - Check a question-bank JSON file

Usage:
    exam-engine --help
    exam-engine sessions list --dir ./sessions
    exam-engine bank validate banks/ccna.json
"""

from __future__ import annotations

import json
import sys
from collections import Counter
from pathlib import Path
from typing import Annotated

import typer
from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from config import get_settings
from src.core.errors import PersistenceError
from src.core.models import Question
from src.session.persistence import JsonFileSnapshotStore
from src.session.snapshot import SessionSnapshot
from src.session.stores import check_question_bank

LOG_FORMAT = "<dim>{time:HH:mm:ss}</dim> | <level>{level: <8}</level> | {message}"

app = typer.Typer(
    name="exam-engine",
    help="Exam session engine: inspect saved sessions and validate question banks",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
sessions_app = typer.Typer(help="Saved session snapshots", no_args_is_help=True)
bank_app = typer.Typer(help="Question banks", no_args_is_help=True)
app.add_typer(sessions_app, name="sessions")
app.add_typer(bank_app, name="bank")

console = Console()


def configure_logging(level: str) -> None:
    """Replace loguru's default sink with the CLI format on stderr."""
    logger.remove()
    logger.add(sys.stderr, format=LOG_FORMAT, level=level.upper(), colorize=True)


def _store(session_dir: Path | None) -> JsonFileSnapshotStore:
    settings = get_settings()
    return JsonFileSnapshotStore(
        session_dir or settings.session_dir,
        expiry_hours=settings.session_expiry_hours,
    )


def _format_seconds(seconds: float | None) -> str:
    if seconds is None:
        return "-"
    minutes, secs = divmod(int(round(seconds)), 60)
    return f"{minutes}:{secs:02d}"


@app.callback()
def main(
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Debug logging")] = False,
) -> None:
    """Exam session engine tools."""
    configure_logging("DEBUG" if verbose else get_settings().log_level)


# =============================================================================
# Sessions
# =============================================================================

SessionDirOption = Annotated[
    Path | None,
    typer.Option("--dir", "-d", help="Snapshot directory (default: settings.session_dir)"),
]


@sessions_app.command("list")
def sessions_list(session_dir: SessionDirOption = None) -> None:
    """List saved sessions that have not expired."""
    store = _store(session_dir)
    snapshots = store.list_sessions()
    if not snapshots:
        console.print(f"[yellow]No saved sessions in {store.session_dir}[/]")
        return

    table = Table(title="Saved Sessions")
    table.add_column("Session", style="cyan")
    table.add_column("Exam")
    table.add_column("Mode")
    table.add_column("Status")
    table.add_column("Question", justify="right")
    table.add_column("Answered", justify="right")
    table.add_column("Remaining", justify="right")
    table.add_column("Saved", style="dim")

    for snapshot in snapshots:
        status_style = "green" if snapshot.status.is_resumable else "dim"
        table.add_row(
            snapshot.session_id,
            snapshot.exam_id,
            snapshot.mode.value,
            f"[{status_style}]{snapshot.status.value}[/]",
            f"{min(snapshot.current_position + 1, len(snapshot.question_ids))}/{len(snapshot.question_ids)}",
            str(len(snapshot.answers)),
            _format_seconds(snapshot.remaining_time_seconds),
            snapshot.saved_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@sessions_app.command("show")
def sessions_show(
    session_id: Annotated[str, typer.Argument(help="Session id")],
    session_dir: SessionDirOption = None,
    as_json: Annotated[bool, typer.Option("--json", help="Print the raw snapshot")] = False,
) -> None:
    """Show one saved session."""
    store = _store(session_dir)
    try:
        snapshot = store.load(session_id)
    except PersistenceError as e:
        console.print(f"[red]{e.message}[/]")
        raise typer.Exit(code=1)
    if snapshot is None:
        console.print(f"[red]No saved session {session_id}[/]")
        raise typer.Exit(code=1)

    if as_json:
        console.print_json(snapshot.to_json())
        return
    console.print(_session_panel(snapshot, expired=store.is_expired(snapshot)))


def _session_panel(snapshot: SessionSnapshot, expired: bool) -> Panel:
    total = len(snapshot.question_ids)
    lines = [
        f"[bold]Exam:[/] {snapshot.exam_id}   [bold]Mode:[/] {snapshot.mode.value}",
        f"[bold]Status:[/] {snapshot.status.value}" + ("  [yellow](expired)[/]" if expired else ""),
        f"[bold]Position:[/] {min(snapshot.current_position + 1, total)}/{total}"
        f"   [bold]Answered:[/] {len(snapshot.answers)}   [bold]Flagged:[/] {len(snapshot.flagged)}",
        f"[bold]Elapsed:[/] {_format_seconds(snapshot.total_elapsed_seconds)}"
        f"   [bold]Remaining:[/] {_format_seconds(snapshot.remaining_time_seconds)}",
        f"[bold]Revision:[/] {snapshot.revision}   [bold]Saved:[/] {snapshot.saved_at.isoformat(timespec='seconds')}",
    ]
    if snapshot.violations:
        counts = Counter(v.type.value for v in snapshot.violations)
        summary = ", ".join(f"{name}={count}" for name, count in sorted(counts.items()))
        lines.append(f"[bold red]Violations:[/] {len(snapshot.violations)} ({summary})")
    if snapshot.correlation_id:
        lines.append(f"[dim]Correlation id: {snapshot.correlation_id}[/]")
    return Panel("\n".join(lines), title=f"Session {snapshot.session_id}", border_style="cyan")


@sessions_app.command("purge")
def sessions_purge(
    session_dir: SessionDirOption = None,
    purge_all: Annotated[bool, typer.Option("--all", help="Delete every snapshot, not just stale ones")] = False,
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Do not ask for confirmation")] = False,
) -> None:
    """Delete expired or unreadable snapshots."""
    store = _store(session_dir)
    if purge_all:
        snapshots = store.list_sessions()
        if not yes and not typer.confirm(f"Delete all {len(snapshots)} saved sessions?"):
            raise typer.Abort()
        removed = sum(1 for s in snapshots if store.delete(s.session_id))
        removed += store.cleanup_expired()
    else:
        removed = store.cleanup_expired()
    console.print(f"[green]✓[/green] Removed {removed} snapshot(s)")


# =============================================================================
# Question banks
# =============================================================================


@bank_app.command("validate")
def bank_validate(
    path: Annotated[Path, typer.Argument(help="Question bank JSON file", exists=True, dir_okay=False)],
) -> None:
    """
    Check a question bank for structural problems.

    Exits with code 1 if any question is unusable.
    """
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        console.print(f"[red]Cannot read {path}: {e}[/]")
        raise typer.Exit(code=1)

    raw_questions = data.get("questions", []) if isinstance(data, dict) else data
    problems: list[str] = []
    questions: list[Question] = []
    for index, raw in enumerate(raw_questions):
        try:
            questions.append(Question.from_dict(raw))
        except (KeyError, ValueError, TypeError) as e:
            problems.append(f"Question #{index + 1}: cannot parse ({e})")
    problems.extend(check_question_bank(questions))

    by_objective = Counter(q.objective_id for q in questions)
    table = Table(title=f"{path.name}: {len(questions)} questions")
    table.add_column("Objective", style="cyan")
    table.add_column("Questions", justify="right")
    for objective_id, count in sorted(by_objective.items()):
        table.add_row(objective_id, str(count))
    console.print(table)

    difficulty = Counter(q.difficulty for q in questions)
    console.print(
        "[dim]Difficulty: "
        + ", ".join(f"{level}={difficulty[level]}" for level in sorted(difficulty))
        + "[/]"
    )

    if problems:
        for problem in problems:
            console.print(f"[red]✗[/red] {problem}")
        console.print(f"[red]{len(problems)} problem(s) found[/]")
        raise typer.Exit(code=1)
    console.print("[green]✓[/green] Question bank is valid")


def run() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    run()
