"""
MCP stdio server for memctx: context reports as tools for AI agents.

Usage:
    memctx mcp                                # stdio server (via CLI)
    claude --mcp-server memctx="memctx mcp"   # agent integration

All tools are read-only. Reports run concurrently; only engine creation
is serialized.
"""

import asyncio
import logging
from typing import Annotated, Literal, Optional

from mcp.server.fastmcp import FastMCP
from mcp.types import ToolAnnotations
from pydantic import Field

from .api import ContextEngine
from .errors import NotFound, ReportTimeout, ValidationError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Server setup
# ---------------------------------------------------------------------------

mcp = FastMCP(
    "memctx",
    instructions=(
        "Working context from a personal knowledge and task store. "
        "Ask for a project, task, note or topic and get the relevant notes, "
        "tasks and guidance instructions in one report. "
        "Ask for work priorities to see outstanding tasks ranked by urgency."
    ),
)

_engine: Optional[ContextEngine] = None
_lock = asyncio.Lock()


async def _get_engine() -> ContextEngine:
    """Lazy-init ContextEngine with default config (respects MEMCTX_STORE_PATH env)."""
    global _engine
    if _engine is None:
        async with _lock:
            if _engine is None:
                _engine = ContextEngine()
    return _engine


# Report failures shown to the agent as text instead of a tool error
_REPORT_ERRORS = (NotFound, ValidationError, ReportTimeout)

# ---------------------------------------------------------------------------
# Tool annotations
# ---------------------------------------------------------------------------

_READ_ONLY = ToolAnnotations(readOnlyHint=True, destructiveHint=False)

Level = Literal["basic", "standard", "comprehensive"]


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@mcp.tool(
    description=(
        "Get the working context of a project: its description, applicable "
        "instructions, recent notes, active tasks and statistics."
    ),
    annotations=_READ_ONLY,
)
async def get_project_context(
    project: Annotated[str, Field(
        description="Project name (case-insensitive).",
    )],
    level: Annotated[Level, Field(
        description="Detail level: basic omits previews, comprehensive adds the most.",
    )] = "standard",
    include_completed: Annotated[bool, Field(
        description="Also list completed tasks.",
    )] = False,
    max_items: Annotated[int, Field(
        description="Maximum notes and tasks to list.", ge=1, le=100,
    )] = 10,
) -> str:
    """Project context report."""
    engine = await _get_engine()
    try:
        return await engine.get_project_context(project, level, include_completed, max_items)
    except _REPORT_ERRORS as e:
        return f"Error: {e}"


@mcp.tool(
    description=(
        "Get the context of a task: its details, applicable instructions, "
        "related tasks in the same project and semantically related notes."
    ),
    annotations=_READ_ONLY,
)
async def get_task_context(
    task_id: Annotated[int, Field(
        description="Task ID.",
    )],
    level: Annotated[Level, Field(
        description="Detail level: comprehensive adds previews of related notes.",
    )] = "standard",
    include_related: Annotated[bool, Field(
        description="Include other tasks from the same project.",
    )] = True,
    semantic_search: Annotated[bool, Field(
        description="Include notes found by semantic similarity.",
    )] = True,
) -> str:
    """Task context report."""
    engine = await _get_engine()
    try:
        return await engine.get_task_context(task_id, level, include_related, semantic_search)
    except _REPORT_ERRORS as e:
        return f"Error: {e}"


@mcp.tool(
    description=(
        "Find notes relevant to a topic by meaning. Falls back to keyword "
        "matching when semantic search finds nothing or is unavailable."
    ),
    annotations=_READ_ONLY,
)
async def get_memory_context(
    topic: Annotated[str, Field(
        description='What to look for, e.g. "authentication bug".',
    )],
    category: Annotated[Optional[str], Field(
        description="Only notes in this category.",
    )] = None,
    project: Annotated[Optional[str], Field(
        description="Only notes in this project.",
    )] = None,
    priority_min: Annotated[int, Field(
        description="Minimum note priority (1-5).", ge=1, le=5,
    )] = 1,
    limit: Annotated[int, Field(
        description="Maximum notes to return.", ge=1, le=100,
    )] = 15,
    min_similarity: Annotated[float, Field(
        description="Similarity floor for semantic matches (0-1).", ge=0.0, le=1.0,
    )] = 0.15,
) -> str:
    """Topic context report."""
    engine = await _get_engine()
    try:
        return await engine.get_memory_context(
            topic, category, project, priority_min, limit, min_similarity)
    except _REPORT_ERRORS as e:
        return f"Error: {e}"


@mcp.tool(
    description=(
        "List outstanding tasks ranked by urgency (priority, due date and "
        "progress), grouped as urgent, high, medium and low."
    ),
    annotations=_READ_ONLY,
)
async def get_work_priorities(
    time_horizon: Annotated[Literal["today", "week", "month", "all"], Field(
        description="Only tasks due within this window; 'all' includes undated tasks.",
    )] = "all",
    category: Annotated[Optional[str], Field(
        description="Only tasks in this category.",
    )] = None,
    project: Annotated[Optional[str], Field(
        description="Only tasks in this project.",
    )] = None,
    priority_min: Annotated[int, Field(
        description="Minimum task priority (1-5).", ge=1, le=5,
    )] = 1,
    limit: Annotated[int, Field(
        description="Maximum tasks listed per urgency group.", ge=1, le=100,
    )] = 20,
) -> str:
    """Work priorities report."""
    engine = await _get_engine()
    try:
        return await engine.get_work_priorities(time_horizon, category, project, priority_min, limit)
    except _REPORT_ERRORS as e:
        return f"Error: {e}"


@mcp.tool(
    description=(
        "Get the context of a note: its content, tasks from the same project "
        "and related notes."
    ),
    annotations=_READ_ONLY,
)
async def get_note_context(
    note_id: Annotated[int, Field(
        description="Note ID.",
    )],
    level: Annotated[Level, Field(
        description="Detail level: controls how many related items are shown.",
    )] = "standard",
    include_related: Annotated[bool, Field(
        description="Include related tasks and notes.",
    )] = True,
    semantic_search: Annotated[bool, Field(
        description="Find related notes by similarity when the note is indexed.",
    )] = True,
) -> str:
    """Note context report."""
    engine = await _get_engine()
    try:
        return await engine.get_note_context(note_id, level, include_related, semantic_search)
    except _REPORT_ERRORS as e:
        return f"Error: {e}"


def main():
    """Run the MCP stdio server."""
    import os
    import signal
    # The stdin reader thread ignores task cancellation, so exit directly
    # on Ctrl+C rather than waiting on it.
    signal.signal(signal.SIGINT, lambda *_: os._exit(130))

    from .logging_config import configure_quiet_mode
    configure_quiet_mode()
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
