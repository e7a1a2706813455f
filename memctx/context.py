"""
Context aggregation.

Each report is gathered into a typed structure here and rendered to text
by memctx.render. Gathering is async: store reads and embedding run in
worker threads so that concurrent reports do not block one another, and
cancelling a report cancels everything it is waiting on.

Only NotFound and ValidationError abort a report. Other failures degrade
the affected section: instructions fall back to none, related notes are
omitted, and topic search falls back from embeddings to keyword matching.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Optional

from .config import ContextConfig
from .errors import EmbeddingUnavailable, InstructionStoreUnavailable, NotFound, ValidationError
from .instructions import InstructionResolver
from .protocol import NoteStoreProtocol, ProjectStoreProtocol, TaskStoreProtocol
from .providers.base import EmbeddingProvider
from .similarity import find_most_similar
from .types import (
    ContextLevel,
    Instruction,
    Note,
    NoteFilter,
    Project,
    ScopeQuery,
    Task,
    TaskStatus,
    TimeHorizon,
    normalize_status,
    searchable_text,
)
from .urgency import (
    Bucket,
    PrioritySummary,
    ScoredTask,
    UrgencyScorer,
    is_overdue,
    priority_summary,
    utc_datetime,
)

logger = logging.getLogger(__name__)

# How many related items a note context shows, by detail level
RELATED_LIMITS = {
    ContextLevel.BASIC: 3,
    ContextLevel.STANDARD: 5,
    ContextLevel.COMPREHENSIVE: 10,
}

_TOKEN_RE = re.compile(r"\w+")


# -----------------------------------------------------------------------------
# Report structures
# -----------------------------------------------------------------------------

@dataclass
class NoteMatch:
    """A note in a report; score is set when it came from similarity search."""
    note: Note
    score: Optional[float] = None


@dataclass
class ProjectStats:
    notes: int = 0
    active_tasks: int = 0
    completed_tasks: int = 0
    overdue_tasks: int = 0


@dataclass
class ProjectContext:
    project: Project
    level: ContextLevel
    instructions: list[Instruction] = field(default_factory=list)
    notes: list[Note] = field(default_factory=list)
    tasks: list[Task] = field(default_factory=list)
    include_completed: bool = False
    stats: ProjectStats = field(default_factory=ProjectStats)
    today: Optional[date] = None


@dataclass
class TaskContext:
    """
    Context for a single task.

    related_tasks / related_notes are None when the section was not
    requested or could not be produced; an empty list means "looked, found
    nothing".
    """
    task: Task
    level: ContextLevel
    overdue: bool = False
    instructions: list[Instruction] = field(default_factory=list)
    related_tasks: Optional[list[Task]] = None
    related_notes: Optional[list[NoteMatch]] = None
    today: Optional[date] = None


@dataclass
class MemoryContext:
    topic: str
    method: str  # "semantic" | "keyword"
    matches: list[NoteMatch] = field(default_factory=list)


@dataclass
class WorkPriorities:
    horizon: TimeHorizon
    buckets: dict[Bucket, list[ScoredTask]]
    summary: PrioritySummary
    limit: int = 20
    today: Optional[date] = None

    @property
    def total(self) -> int:
        return sum(len(tasks) for tasks in self.buckets.values())


@dataclass
class NoteContext:
    note: Note
    level: ContextLevel
    related_tasks: Optional[list[Task]] = None
    related_notes: Optional[list[NoteMatch]] = None
    related_method: Optional[str] = None  # "semantic" | "listing"
    today: Optional[date] = None


# -----------------------------------------------------------------------------
# Input checks
# -----------------------------------------------------------------------------

def _level(level: Any) -> ContextLevel:
    try:
        return ContextLevel(level)
    except ValueError:
        raise ValidationError(
            f"Invalid level {level!r} (expected basic, standard or comprehensive)"
        ) from None


def _horizon(horizon: Any) -> TimeHorizon:
    try:
        return TimeHorizon(horizon)
    except ValueError:
        raise ValidationError(
            f"Invalid time horizon {horizon!r} (expected today, week, month or all)"
        ) from None


def _positive_id(value: Any, what: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"Valid {what} ID is required")
    return value


def _positive_limit(value: Any, what: str = "limit") -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValidationError(f"{what} must be a positive integer: {value!r}")
    return value


def _priority_min(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or not 1 <= value <= 5:
        raise ValidationError(f"priority_min must be between 1 and 5: {value!r}")
    return value


def keyword_tokens(topic: str) -> list[str]:
    """
    Lower-cased words of two or more characters, in order, without repeats.

    A topic with no such word is searched as a whole.
    """
    tokens: list[str] = []
    for word in _TOKEN_RE.findall(topic.lower()):
        if len(word) >= 2 and word not in tokens:
            tokens.append(word)
    return tokens or [topic.strip().lower()]


def order_project_tasks(tasks: list[Task]) -> list[Task]:
    """Due date ascending (undated last), then priority desc, then most recent."""
    ordered = sorted(tasks, key=lambda t: t.updated_at or "", reverse=True)
    ordered.sort(key=lambda t: t.priority, reverse=True)
    ordered.sort(key=lambda t: (t.due_date is None, t.due_date or date.max))
    return ordered


# -----------------------------------------------------------------------------
# Aggregator
# -----------------------------------------------------------------------------

class ContextAggregator:
    """
    Builds the five report structures from the stores.

    Args:
        projects, notes, tasks: Store collaborators (see memctx.protocol)
        resolver: Instruction resolver sharing the engine's cache
        embedder: Embedding provider, or None to always use keyword search
        scorer: Urgency scorer for work priorities
        config: Context tunables
    """

    def __init__(
        self,
        projects: ProjectStoreProtocol,
        notes: NoteStoreProtocol,
        tasks: TaskStoreProtocol,
        resolver: InstructionResolver,
        embedder: Optional[EmbeddingProvider] = None,
        scorer: Optional[UrgencyScorer] = None,
        config: Optional[ContextConfig] = None,
    ):
        self._projects = projects
        self._notes = notes
        self._tasks = tasks
        self._resolver = resolver
        self._embedder = embedder
        self._scorer = scorer or UrgencyScorer()
        self._config = config or ContextConfig()

    # -------------------------------------------------------------------------
    # Shared steps
    # -------------------------------------------------------------------------

    async def _embed(self, text: str) -> list[float]:
        """Embed text in a worker thread, bounded by the embedding timeout."""
        if self._embedder is None:
            raise EmbeddingUnavailable("No embedding provider configured")
        timeout = self._config.embedding_timeout_seconds or None
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._embedder.embed, text), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise EmbeddingUnavailable(f"Embedding timed out after {timeout}s") from e
        except EmbeddingUnavailable:
            raise
        except Exception as e:
            raise EmbeddingUnavailable(f"Embedding failed: {e}") from e

    async def _instructions(self, query: ScopeQuery) -> list[Instruction]:
        try:
            return await asyncio.to_thread(self._resolver.resolve, query)
        except InstructionStoreUnavailable as e:
            logger.warning("Reporting without instructions: %s", e)
            return []

    async def _project_tasks(self, project_name: Optional[str], limit: int,
                             exclude_id: Optional[int] = None) -> Optional[list[Task]]:
        """Tasks of the named project, or None if it has no project."""
        if not project_name:
            return None
        project = await asyncio.to_thread(self._projects.get_project, project_name)
        if project is None:
            return None
        return await asyncio.to_thread(
            self._tasks.list_tasks_by_project, project.id,
            limit=limit, exclude_id=exclude_id)

    # -------------------------------------------------------------------------
    # Project context
    # -------------------------------------------------------------------------

    async def project_context(
        self,
        name: str,
        level: ContextLevel | str = ContextLevel.STANDARD,
        include_completed: bool = False,
        max_items: int = 10,
        now: Optional[datetime] = None,
    ) -> ProjectContext:
        if not name or not name.strip():
            raise ValidationError("Project name is required")
        level = _level(level)
        max_items = _positive_limit(max_items, "max_items")
        now = utc_datetime(now)

        project = await asyncio.to_thread(self._projects.get_project, name)
        if project is None:
            raise NotFound("Project", name.strip())

        instructions, notes, all_tasks, note_count = await asyncio.gather(
            self._instructions(ScopeQuery(project=project.name)),
            asyncio.to_thread(self._notes.list_notes_by_project, project.id, max_items),
            asyncio.to_thread(self._tasks.list_tasks_by_project, project.id),
            asyncio.to_thread(self._notes.count_notes, project.id),
        )

        # Listing and statistics come from the same task snapshot
        completed = [t for t in all_tasks
                     if normalize_status(t.status) == TaskStatus.COMPLETED.value]
        stats = ProjectStats(
            notes=note_count,
            active_tasks=len(all_tasks) - len(completed),
            completed_tasks=len(completed),
            overdue_tasks=sum(1 for t in all_tasks if is_overdue(t, now)),
        )
        completed_ids = {t.id for t in completed}
        listed = all_tasks if include_completed else [t for t in all_tasks if t.id not in completed_ids]

        return ProjectContext(
            project=project,
            level=level,
            instructions=instructions,
            notes=notes[:max_items],
            tasks=order_project_tasks(listed)[:max_items],
            include_completed=include_completed,
            stats=stats,
            today=now.date(),
        )

    # -------------------------------------------------------------------------
    # Task context
    # -------------------------------------------------------------------------

    async def task_context(
        self,
        task_id: int,
        level: ContextLevel | str = ContextLevel.STANDARD,
        include_related: bool = True,
        semantic_search: bool = True,
        now: Optional[datetime] = None,
    ) -> TaskContext:
        task_id = _positive_id(task_id, "task")
        level = _level(level)
        now = utc_datetime(now)

        task = await asyncio.to_thread(self._tasks.get_task, task_id)
        if task is None:
            raise NotFound("Task", task_id)

        instructions = await self._instructions(
            ScopeQuery(project=task.project, category=task.category))

        related_tasks = None
        if include_related:
            related_tasks = await self._project_tasks(
                task.project, self._config.related_tasks, exclude_id=task.id)

        related_notes = None
        if semantic_search:
            related_notes = await self._related_notes_for_task(task)

        return TaskContext(
            task=task,
            level=level,
            overdue=is_overdue(task, now),
            instructions=instructions,
            related_tasks=related_tasks,
            related_notes=related_notes,
            today=now.date(),
        )

    async def _related_notes_for_task(self, task: Task) -> Optional[list[NoteMatch]]:
        """Notes semantically close to the task, or None if search failed."""
        try:
            vector = await self._embed(searchable_text(task.title, task.description))
            candidates = await asyncio.to_thread(
                self._notes.search_notes,
                NoteFilter(project=task.project, category=task.category))
        except Exception as e:
            logger.warning("Omitting related notes for task %d: %s", task.id, e)
            return None
        results = find_most_similar(
            vector,
            (n.as_embedded() for n in candidates),
            limit=self._config.task_related_notes,
            min_similarity=self._config.task_similarity_threshold,
        )
        return [NoteMatch(r.item.source, r.score) for r in results]

    # -------------------------------------------------------------------------
    # Topic context
    # -------------------------------------------------------------------------

    async def memory_context(
        self,
        topic: str,
        category: Optional[str] = None,
        project: Optional[str] = None,
        priority_min: int = 1,
        limit: int = 15,
        min_similarity: float = 0.15,
    ) -> MemoryContext:
        """
        Notes relevant to a topic.

        Semantic search runs first; keyword matching runs only when the
        embedding failed or nothing cleared min_similarity.
        """
        if not topic or not topic.strip():
            raise ValidationError("Topic is required")
        topic = topic.strip()
        priority_min = _priority_min(priority_min)
        limit = _positive_limit(limit)
        if not 0.0 <= min_similarity <= 1.0:
            raise ValidationError(f"min_similarity must be between 0 and 1: {min_similarity!r}")

        filters = NoteFilter(category=category, project=project, priority_min=priority_min)
        matches = await self._try_semantic(topic, filters, limit, min_similarity)
        if matches:
            return MemoryContext(topic=topic, method="semantic", matches=matches)

        if matches is not None:
            logger.info("No notes above %.2f for %r; using keyword search", min_similarity, topic)
        return MemoryContext(
            topic=topic,
            method="keyword",
            matches=await self.keyword_search(topic, filters, limit),
        )

    async def _try_semantic(self, topic: str, filters: NoteFilter, limit: int,
                            min_similarity: float) -> Optional[list[NoteMatch]]:
        """Similarity search over the filtered notes; None if embedding failed."""
        try:
            vector = await self._embed(topic)
        except EmbeddingUnavailable as e:
            logger.warning("Semantic search unavailable, using keyword search: %s", e)
            return None
        candidates = await asyncio.to_thread(self._notes.search_notes, filters)
        results = find_most_similar(
            vector, (n.as_embedded() for n in candidates),
            limit=limit, min_similarity=min_similarity)
        return [NoteMatch(r.item.source, r.score) for r in results]

    async def keyword_search(self, topic: str, filters: NoteFilter, limit: int) -> list[NoteMatch]:
        """Notes containing any topic word, highest priority then most recent first."""
        keyword_filters = NoteFilter(
            category=filters.category,
            project=filters.project,
            priority_min=filters.priority_min,
            keywords=keyword_tokens(topic),
            limit=limit,
        )
        notes = await asyncio.to_thread(self._notes.search_notes, keyword_filters)
        return [NoteMatch(n) for n in notes[:limit]]

    # -------------------------------------------------------------------------
    # Work priorities
    # -------------------------------------------------------------------------

    async def work_priorities(
        self,
        time_horizon: TimeHorizon | str = TimeHorizon.ALL,
        category: Optional[str] = None,
        project: Optional[str] = None,
        priority_min: int = 1,
        limit: int = 20,
        now: Optional[datetime] = None,
    ) -> WorkPriorities:
        horizon = _horizon(time_horizon)
        priority_min = _priority_min(priority_min)
        limit = _positive_limit(limit)
        now = utc_datetime(now)

        tasks = await asyncio.to_thread(
            self._tasks.list_tasks_by_horizon, horizon,
            category=category, project=project, priority_min=priority_min, now=now)
        tasks = [t for t in tasks if not t.is_closed]

        # One `now` for scores, buckets and summary
        ranked = self._scorer.rank(tasks, now)
        return WorkPriorities(
            horizon=horizon,
            buckets=self._scorer.bucketize(ranked),
            summary=priority_summary(tasks, now),
            limit=limit,
            today=now.date(),
        )

    # -------------------------------------------------------------------------
    # Note context
    # -------------------------------------------------------------------------

    async def note_context(
        self,
        note_id: int,
        level: ContextLevel | str = ContextLevel.STANDARD,
        include_related: bool = True,
        semantic_search: bool = True,
        now: Optional[datetime] = None,
    ) -> NoteContext:
        note_id = _positive_id(note_id, "note")
        level = _level(level)
        now = utc_datetime(now)

        note = await asyncio.to_thread(self._notes.get_note, note_id)
        if note is None:
            raise NotFound("Note", note_id)

        context = NoteContext(note=note, level=level, today=now.date())
        if not include_related:
            return context

        limit = RELATED_LIMITS[level]
        context.related_tasks = await self._project_tasks(note.project, limit)

        if semantic_search and note.vector:
            candidates = await asyncio.to_thread(
                self._notes.search_notes, NoteFilter())
            results = find_most_similar(
                note.vector,
                (c.as_embedded() for c in candidates if c.id != note.id),
                limit=limit,
                min_similarity=self._config.task_similarity_threshold,
            )
            if results:
                context.related_notes = [NoteMatch(r.item.source, r.score) for r in results]
                context.related_method = "semantic"
                return context

        neighbours = await asyncio.to_thread(
            self._notes.search_notes,
            NoteFilter(project=note.project, category=note.category, limit=limit + 1))
        context.related_notes = [NoteMatch(n) for n in neighbours if n.id != note.id][:limit]
        context.related_method = "listing"
        return context

