"""
CLI interface for context reports.

Usage:
    memctx project alpha
    memctx memory "authentication bug"
    memctx priorities --horizon week
    memctx import data.json
"""

import asyncio
import json
import os
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from .api import ContextEngine
from .errors import NotFound, ReportTimeout, ValidationError
from .logging_config import configure_quiet_mode, enable_debug_mode
from .types import ContextLevel, TimeHorizon

# Configure quiet mode by default (suppress verbose library output)
# Set MEMCTX_VERBOSE=1 to enable debug mode via environment
if os.environ.get("MEMCTX_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_store_override: Optional[Path] = None


def _store_callback(value: Optional[Path]):
    global _store_override
    if value is not None:
        _store_override = value


def _get_store_override() -> Optional[Path]:
    return _store_override


app = typer.Typer(
    name="memctx",
    help="Working context reports from a knowledge and task store.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    store: Annotated[Optional[Path], typer.Option(
        "--store", "-s",
        envvar="MEMCTX_STORE_PATH",
        help="Path to the store directory (default: ~/.memctx/)",
        callback=_store_callback,
        is_eager=True,
    )] = None,
):
    """Working context reports from a knowledge and task store."""


# -----------------------------------------------------------------------------
# Common Options
# -----------------------------------------------------------------------------

LevelOption = Annotated[
    ContextLevel,
    typer.Option(
        "--level", "-l",
        help="Detail level",
    )
]

LimitOption = Annotated[
    int,
    typer.Option(
        "--limit", "-n",
        help="Maximum results to return",
    )
]


def _get_engine() -> ContextEngine:
    """Open the store, exiting with a message if that fails."""
    import atexit

    try:
        engine = ContextEngine(_get_store_override())
    except (OSError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    atexit.register(engine.close)
    return engine


def _report(coro) -> None:
    """Run a report coroutine and print it; report errors exit 1."""
    try:
        text = asyncio.run(coro)
    except (NotFound, ValidationError, ReportTimeout) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    typer.echo(text, nl=False)


# -----------------------------------------------------------------------------
# Reports
# -----------------------------------------------------------------------------

@app.command()
def project(
    name: Annotated[str, typer.Argument(help="Project name")],
    level: LevelOption = ContextLevel.STANDARD,
    include_completed: Annotated[bool, typer.Option(
        "--completed", "-c",
        help="Also list completed tasks",
    )] = False,
    max_items: Annotated[int, typer.Option(
        "--max-items", "-n",
        help="Maximum notes and tasks to list",
    )] = 10,
):
    """Show the working context of a project."""
    engine = _get_engine()
    _report(engine.get_project_context(name, level, include_completed, max_items))


@app.command()
def task(
    task_id: Annotated[int, typer.Argument(help="Task ID")],
    level: LevelOption = ContextLevel.STANDARD,
    related: Annotated[bool, typer.Option(
        "--related/--no-related",
        help="Include other tasks from the same project",
    )] = True,
    semantic: Annotated[bool, typer.Option(
        "--semantic/--no-semantic",
        help="Include semantically related notes",
    )] = True,
):
    """Show the context of a task."""
    engine = _get_engine()
    _report(engine.get_task_context(task_id, level, related, semantic))


@app.command()
def memory(
    topic: Annotated[str, typer.Argument(help="Topic to look for")],
    category: Annotated[Optional[str], typer.Option(
        "--category", help="Only notes in this category",
    )] = None,
    project_name: Annotated[Optional[str], typer.Option(
        "--project", "-p", help="Only notes in this project",
    )] = None,
    priority_min: Annotated[int, typer.Option(
        "--priority-min", min=1, max=5, help="Minimum note priority",
    )] = 1,
    limit: LimitOption = 15,
    min_similarity: Annotated[float, typer.Option(
        "--min-similarity", min=0.0, max=1.0, help="Similarity floor for semantic matches",
    )] = 0.15,
):
    """Find notes relevant to a topic."""
    engine = _get_engine()
    _report(engine.get_memory_context(
        topic, category, project_name, priority_min, limit, min_similarity))


@app.command()
def note(
    note_id: Annotated[int, typer.Argument(help="Note ID")],
    level: LevelOption = ContextLevel.STANDARD,
    related: Annotated[bool, typer.Option(
        "--related/--no-related",
        help="Include related tasks and notes",
    )] = True,
    semantic: Annotated[bool, typer.Option(
        "--semantic/--no-semantic",
        help="Find related notes by similarity",
    )] = True,
):
    """Show the context of a note."""
    engine = _get_engine()
    _report(engine.get_note_context(note_id, level, related, semantic))


@app.command()
def priorities(
    horizon: Annotated[TimeHorizon, typer.Option(
        "--horizon", help="Only tasks due within this window",
    )] = TimeHorizon.ALL,
    category: Annotated[Optional[str], typer.Option(
        "--category", help="Only tasks in this category",
    )] = None,
    project_name: Annotated[Optional[str], typer.Option(
        "--project", "-p", help="Only tasks in this project",
    )] = None,
    priority_min: Annotated[int, typer.Option(
        "--priority-min", min=1, max=5, help="Minimum task priority",
    )] = 1,
    limit: LimitOption = 20,
):
    """List outstanding tasks ranked by urgency."""
    engine = _get_engine()
    _report(engine.get_work_priorities(horizon, category, project_name, priority_min, limit))


# -----------------------------------------------------------------------------
# Data
# -----------------------------------------------------------------------------

@app.command("import")
def import_cmd(
    file: Annotated[Path, typer.Argument(
        help="JSON export file", exists=True, dir_okay=False, readable=True,
    )],
    index_after: Annotated[bool, typer.Option(
        "--index/--no-index",
        help="Compute embeddings for the imported items",
    )] = True,
):
    """Import projects, notes, tasks and instructions from JSON."""
    try:
        data = json.loads(file.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        typer.echo(f"Error: {file} is not valid JSON: {e}", err=True)
        raise typer.Exit(1)
    engine = _get_engine()
    try:
        stats = engine.import_data(data)
    except ValidationError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    typer.echo(json.dumps(stats))
    if index_after:
        typer.echo(json.dumps(engine.index()))


@app.command()
def index(
    force: Annotated[bool, typer.Option(
        "--force", "-f", help="Re-embed items that already have a vector",
    )] = False,
    batch_size: Annotated[int, typer.Option(
        "--batch-size", min=1, help="Texts per embedding batch",
    )] = 32,
):
    """Compute embeddings for notes and tasks."""
    engine = _get_engine()
    stats = engine.index(batch_size, force=force)
    typer.echo(json.dumps(stats))
    if stats["skipped"]:
        typer.echo(f"{stats['skipped']} items could not be embedded; see the ops log", err=True)


@app.command()
def mcp():
    """Start MCP stdio server for AI agent integration."""
    if _get_store_override() is not None:
        os.environ["MEMCTX_STORE_PATH"] = str(_get_store_override())
    from .mcp import main as mcp_main
    mcp_main()


# -----------------------------------------------------------------------------

def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to file, show clean message to user
        from .errors import log_exception
        log_path = log_exception(e, context="memctx CLI")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
