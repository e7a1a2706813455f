"""
Data types for the context engine.

Projects, notes, tasks and instructions are owned by the store; the engine
only reads them. Scopes are a closed set of frozen dataclasses so that
scope handling never depends on loose string comparisons.
"""

import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional, Union


def utc_now() -> str:
    """Current UTC timestamp in canonical format: YYYY-MM-DDTHH:MM:SS.

    All stored timestamps are UTC without a timezone suffix.
    """
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")


def parse_utc_timestamp(ts: str) -> datetime:
    """Parse a stored timestamp string to a timezone-aware UTC datetime.

    Accepts the canonical format as well as values carrying microseconds,
    'Z', or '+00:00' suffixes.
    """
    ts = ts.replace("Z", "+00:00")
    dt = datetime.fromisoformat(ts)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def parse_due_date(value: Union[str, date, datetime, None]) -> Optional[date]:
    """Coerce a due date from storage or import input. Empty -> None."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def normalize_name(name: Optional[str]) -> Optional[str]:
    """Project/category names are case-insensitive and whitespace-trimmed."""
    if name is None:
        return None
    name = name.strip().lower()
    return name or None


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class ContextLevel(str, Enum):
    """How much detail a report includes. BASIC omits previews entirely."""
    BASIC = "basic"
    STANDARD = "standard"
    COMPREHENSIVE = "comprehensive"


class TimeHorizon(str, Enum):
    TODAY = "today"
    WEEK = "week"
    MONTH = "month"
    ALL = "all"


class TaskStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ON_HOLD = "on_hold"


# Statuses that no longer count as outstanding work
CLOSED_STATUSES = frozenset({TaskStatus.COMPLETED.value, TaskStatus.CANCELLED.value})

_STATUS_SEP_RE = re.compile(r"[\s\-]+")


def normalize_status(status: Optional[str]) -> str:
    """Normalize a status string: 'In Progress', 'in-progress' -> 'in_progress'.

    'todo' is accepted as an alias of 'not_started'. Empty -> 'not_started'.
    """
    if not status:
        return TaskStatus.NOT_STARTED.value
    value = _STATUS_SEP_RE.sub("_", status.strip().lower())
    if value == "todo":
        return TaskStatus.NOT_STARTED.value
    return value


# ---------------------------------------------------------------------------
# Scopes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class GlobalScope:
    """Applies everywhere."""

    @property
    def key(self) -> str:
        return "global"


@dataclass(frozen=True)
class ProjectScope:
    name: str

    def __post_init__(self):
        object.__setattr__(self, "name", normalize_name(self.name) or "")

    @property
    def key(self) -> str:
        return f"project:{self.name}"


@dataclass(frozen=True)
class CategoryScope:
    name: str

    def __post_init__(self):
        object.__setattr__(self, "name", normalize_name(self.name) or "")

    @property
    def key(self) -> str:
        return f"category:{self.name}"


Scope = Union[GlobalScope, ProjectScope, CategoryScope]


def parse_scope(kind: str, name: Optional[str] = None) -> Scope:
    """Build a Scope from its stored kind and target name.

    Raises:
        ValueError: unknown kind, or a project/category scope without a name
    """
    kind = (kind or "").strip().lower()
    if kind == "global":
        return GlobalScope()
    if kind in ("project", "category"):
        if not normalize_name(name):
            raise ValueError(f"A target name is required for {kind} scope")
        return ProjectScope(name) if kind == "project" else CategoryScope(name)
    raise ValueError(f"Invalid scope {kind!r} (expected global, project or category)")


def scope_kind(scope: Scope) -> str:
    """The stored kind string of a scope."""
    match scope:
        case GlobalScope():
            return "global"
        case ProjectScope():
            return "project"
        case CategoryScope():
            return "category"
    raise TypeError(f"Not a scope: {scope!r}")


def scope_target(scope: Scope) -> Optional[str]:
    """The target name of a project/category scope, None for global."""
    if isinstance(scope, (ProjectScope, CategoryScope)):
        return scope.name
    return None


@dataclass(frozen=True)
class ScopeQuery:
    """Which scopes to resolve instructions for."""
    include_global: bool = True
    project: Optional[str] = None
    category: Optional[str] = None

    def scopes(self) -> list[Scope]:
        """The individual scopes this query covers."""
        result: list[Scope] = []
        if self.include_global:
            result.append(GlobalScope())
        if normalize_name(self.project):
            result.append(ProjectScope(self.project))
        if normalize_name(self.category):
            result.append(CategoryScope(self.category))
        return result

    def is_empty(self) -> bool:
        return not self.scopes()


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------

@dataclass
class Project:
    id: int
    name: str
    description: str = ""
    created_at: str = ""
    updated_at: str = ""


@dataclass
class Instruction:
    """
    A guidance instruction for the agent.

    Attributes:
        id: Store identifier
        title: Short label
        body: Instruction text
        scope: Where the instruction applies
        priority: 1 (low) to 5 (critical)
        created_at: UTC timestamp, used as the ordering tie-breaker
    """
    id: int
    title: str
    body: str
    scope: Scope = field(default_factory=GlobalScope)
    priority: int = 1
    created_at: str = ""


@dataclass
class EmbeddedItem:
    """
    A note or task as seen by similarity search.

    Items without a vector are skipped by semantic search but stay visible
    to keyword matching.
    """
    id: int
    kind: str  # "note" | "task"
    text: str
    vector: Optional[list[float]] = None
    updated_at: str = ""
    source: Any = None


@dataclass
class SimilarityResult:
    item: EmbeddedItem
    score: float


def searchable_text(*parts: Any) -> str:
    """Join the non-empty parts with spaces. Lists are flattened."""
    words: list[str] = []
    for part in parts:
        if not part:
            continue
        if isinstance(part, (list, tuple)):
            words.extend(str(p) for p in part if str(p).strip())
        elif str(part).strip():
            words.append(str(part).strip())
    return " ".join(words).strip()


@dataclass
class Note:
    """A stored knowledge note."""
    id: int
    title: str
    content: str = ""
    priority: int = 1
    category: Optional[str] = None
    project: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    vector: Optional[list[float]] = None
    created_at: str = ""
    updated_at: str = ""

    def searchable_text(self) -> str:
        """Title, content, category, project and tags: the text that gets embedded."""
        return searchable_text(self.title, self.content, self.category, self.project, self.tags)

    def as_embedded(self) -> EmbeddedItem:
        return EmbeddedItem(
            id=self.id, kind="note", text=self.searchable_text(),
            vector=self.vector, updated_at=self.updated_at, source=self,
        )


@dataclass
class Task:
    id: int
    title: str
    description: str = ""
    priority: int = 1
    due_date: Optional[date] = None
    status: str = TaskStatus.NOT_STARTED.value
    project: Optional[str] = None
    category: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    vector: Optional[list[float]] = None
    created_at: str = ""
    updated_at: str = ""

    @property
    def is_closed(self) -> bool:
        return normalize_status(self.status) in CLOSED_STATUSES

    def searchable_text(self) -> str:
        return searchable_text(
            self.title, self.description, self.status,
            self.category, self.project, self.tags,
        )

    def as_embedded(self) -> EmbeddedItem:
        return EmbeddedItem(
            id=self.id, kind="task", text=self.searchable_text(),
            vector=self.vector, updated_at=self.updated_at, source=self,
        )


@dataclass
class NoteFilter:
    """
    Filters for note listing and keyword search.

    An empty keyword list means filter-only listing. With keywords, a note
    matches if any keyword occurs in its title, content, category, project
    or tags (case-insensitive substring).
    """
    category: Optional[str] = None
    project: Optional[str] = None
    priority_min: int = 1
    keywords: list[str] = field(default_factory=list)
    limit: Optional[int] = None
