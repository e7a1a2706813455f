"""
Text rendering for context reports.

Stateless functions from the structures in memctx.context to markdown
text. Nothing here touches a store, so a report is either fully gathered
and rendered or not produced at all.
"""

from datetime import date
from typing import Optional

from .context import (
    MemoryContext,
    NoteContext,
    ProjectContext,
    TaskContext,
    WorkPriorities,
)
from .types import ContextLevel, GlobalScope, Instruction, ProjectScope, Task, TaskStatus
from .urgency import BUCKET_ORDER, Bucket, ScoredTask

NOTE_PREVIEW_CHARS = 200
TASK_PREVIEW_CHARS = 150
RELATED_PREVIEW_CHARS = 100

NO_TASKS_TEXT = "No tasks found for the specified criteria."

BUCKET_TITLES = {
    Bucket.URGENT: "Urgent",
    Bucket.HIGH: "High priority",
    Bucket.MEDIUM: "Medium priority",
    Bucket.LOW: "Low priority",
}

_STATUS_LABELS = {
    TaskStatus.NOT_STARTED.value: "todo",
    TaskStatus.IN_PROGRESS.value: "doing",
    TaskStatus.COMPLETED.value: "done",
    TaskStatus.CANCELLED.value: "cancelled",
    TaskStatus.ON_HOLD.value: "on hold",
}


def preview(text: Optional[str], max_chars: int) -> str:
    """Single-line preview, cut at max_chars with '...' appended."""
    flat = " ".join((text or "").split())
    if len(flat) > max_chars:
        return flat[:max_chars] + "..."
    return flat


def _or_none(value) -> str:
    return str(value) if value else "None"


def _tags(tags: list[str]) -> str:
    return ", ".join(tags) if tags else "None"


def _due(task: Task) -> str:
    return task.due_date.isoformat() if task.due_date else "No due date"


def _status(task: Task) -> str:
    return _STATUS_LABELS.get(task.status, task.status)


def _overdue_flag(task: Task, today: Optional[date]) -> str:
    if today is None or task.due_date is None or task.is_closed:
        return ""
    return " (OVERDUE)" if task.due_date < today else ""


def _match(score: Optional[float]) -> str:
    return f"[{round(score * 100)}% match] " if score is not None else ""


def _scope_label(instruction: Instruction) -> str:
    scope = instruction.scope
    if isinstance(scope, GlobalScope):
        return "global"
    if isinstance(scope, ProjectScope):
        return f"project {scope.name}"
    return f"category {scope.name}"


def _join(lines: list[str]) -> str:
    return "\n".join(lines).rstrip() + "\n"


# -----------------------------------------------------------------------------
# Sections
# -----------------------------------------------------------------------------

def _instructions_section(instructions: list[Instruction]) -> list[str]:
    if not instructions:
        return []
    lines = ["## Instructions"]
    for instr in instructions:
        lines.append(f"- [{_scope_label(instr)}] [P{instr.priority}] {instr.title}")
        lines.append(f"  {instr.body}")
    lines.append("")
    return lines


def _task_line(task: Task, today: Optional[date]) -> str:
    return f"- [{_status(task)}] [P{task.priority}] {task.title}{_overdue_flag(task, today)}"


def _related_tasks_section(title: str, tasks: Optional[list[Task]],
                           today: Optional[date]) -> list[str]:
    if not tasks:
        return []
    lines = [f"## {title}"]
    lines.extend(_task_line(t, today) for t in tasks)
    lines.append("")
    return lines


# -----------------------------------------------------------------------------
# Reports
# -----------------------------------------------------------------------------

def render_project_context(ctx: ProjectContext) -> str:
    basic = ctx.level is ContextLevel.BASIC
    lines = [
        f"# Project: {ctx.project.name}",
        "",
        f"Description: {ctx.project.description or 'No description'}",
        "",
    ]
    lines.extend(_instructions_section(ctx.instructions))

    if ctx.notes:
        lines.append(f"## Recent notes ({len(ctx.notes)})")
        for note in ctx.notes:
            lines.append(f"- [P{note.priority}] {note.title}")
            if not basic:
                lines.append(f"  {preview(note.content, NOTE_PREVIEW_CHARS)}")
                lines.append(f"  category: {_or_none(note.category)} | tags: {_tags(note.tags)}")
        lines.append("")

    if ctx.tasks:
        heading = "Tasks" if ctx.include_completed else "Active tasks"
        lines.append(f"## {heading} ({len(ctx.tasks)})")
        for task in ctx.tasks:
            lines.append(_task_line(task, ctx.today))
            if not basic:
                lines.append(f"  status: {task.status} | due: {_due(task)}")
                if task.description:
                    lines.append(f"  {preview(task.description, TASK_PREVIEW_CHARS)}")
                lines.append(f"  category: {_or_none(task.category)} | tags: {_tags(task.tags)}")
        lines.append("")

    stats = ctx.stats
    lines.extend([
        "## Statistics",
        f"- Notes: {stats.notes}",
        f"- Active tasks: {stats.active_tasks}",
        f"- Completed tasks: {stats.completed_tasks}",
        f"- Overdue tasks: {stats.overdue_tasks}",
    ])
    return _join(lines)


def render_task_context(ctx: TaskContext) -> str:
    task = ctx.task
    flag = " (OVERDUE)" if ctx.overdue else ""
    lines = [
        f"# Task: {task.title}{flag}",
        "",
        f"Status: {task.status}",
        f"Priority: {task.priority}/5",
        f"Project: {_or_none(task.project)}",
        f"Category: {_or_none(task.category)}",
        f"Due date: {_due(task)}",
    ]
    if ctx.level is not ContextLevel.BASIC:
        lines.append(f"Tags: {_tags(task.tags)}")
    lines.append("")
    if task.description:
        lines.extend(["## Description", task.description.strip(), ""])

    lines.extend(_instructions_section(ctx.instructions))
    lines.extend(_related_tasks_section("Related tasks in project", ctx.related_tasks, ctx.today))

    if ctx.related_notes:
        lines.append("## Related notes")
        for match in ctx.related_notes:
            lines.append(f"- {_match(match.score)}{match.note.title}")
            if ctx.level is ContextLevel.COMPREHENSIVE:
                lines.append(f"  {preview(match.note.content, RELATED_PREVIEW_CHARS)}")
        lines.append("")
    return _join(lines)


def render_memory_context(ctx: MemoryContext) -> str:
    if not ctx.matches:
        return f'No relevant notes found for topic: "{ctx.topic}"\n'

    how = "semantic search" if ctx.method == "semantic" else "keyword match"
    lines = [
        f'# Notes for: "{ctx.topic}"',
        "",
        f"Found {len(ctx.matches)} relevant notes ({how}):",
        "",
    ]
    for match in ctx.matches:
        note = match.note
        lines.append(f"- {_match(match.score)}[P{note.priority}] {note.title}")
        lines.append(f"  category: {_or_none(note.category)} | project: {_or_none(note.project)}")
        if note.tags:
            lines.append(f"  tags: {_tags(note.tags)}")
        lines.append(f"  {preview(note.content, NOTE_PREVIEW_CHARS)}")
        lines.append("")
    return _join(lines)


def _scored_lines(scored: list[ScoredTask], today: Optional[date]) -> list[str]:
    lines = []
    for st in scored:
        task = st.task
        lines.append(f"{_task_line(task, today)} (score {st.score:g})")
        lines.append(f"  due: {_due(task)} | project: {_or_none(task.project)}")
    return lines


def render_work_priorities(ctx: WorkPriorities) -> str:
    if ctx.total == 0:
        return NO_TASKS_TEXT + "\n"

    lines = [f"# Work priorities ({ctx.horizon.value} view)", ""]
    for bucket in BUCKET_ORDER:
        scored = ctx.buckets.get(bucket, [])
        if not scored:
            continue
        lines.append(f"## {BUCKET_TITLES[bucket]} ({len(scored)} tasks)")
        lines.extend(_scored_lines(scored[:ctx.limit], ctx.today))
        lines.append("")

    s = ctx.summary
    lines.extend([
        "## Summary",
        f"- Total tasks: {s.total}",
        f"- Overdue: {s.overdue}",
        f"- Due today: {s.due_today}",
        f"- Due this week: {s.due_this_week}",
    ])
    return _join(lines)


def render_note_context(ctx: NoteContext) -> str:
    note = ctx.note
    basic = ctx.level is ContextLevel.BASIC
    lines = [
        f"# Note: {note.title}",
        "",
        f"Priority: {note.priority}/5",
        f"Project: {_or_none(note.project)}",
        f"Category: {_or_none(note.category)}",
    ]
    if not basic:
        lines.append(f"Tags: {_tags(note.tags)}")
    lines.append("")
    if note.content:
        lines.extend(["## Content", note.content.strip(), ""])

    lines.extend(_related_tasks_section("Related tasks in project", ctx.related_tasks, ctx.today))

    if ctx.related_notes:
        lines.append("## Related notes")
        for match in ctx.related_notes:
            related = match.note
            lines.append(f"- {_match(match.score)}[P{related.priority}] {related.title}")
            if not basic and related.content:
                lines.append(f"  {preview(related.content, RELATED_PREVIEW_CHARS)}")
        lines.append("")
    return _join(lines)
