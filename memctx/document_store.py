"""
Entity store using SQLite.

Holds the projects, notes, tasks and instructions that context reports
are built from. The context engine only reads through the protocols in
memctx.protocol; the write helpers here serve import, indexing and tests.

Embeddings are stored alongside each note/task as a JSON array. The corpus
is small enough that similarity is computed in memory over fetched rows.
"""

import json
import logging
import sqlite3
import threading
from datetime import date, datetime
from pathlib import Path
from typing import Any, Optional

from .errors import NotFound, ValidationError
from .types import (
    CLOSED_STATUSES,
    Instruction,
    Note,
    NoteFilter,
    Project,
    Scope,
    ScopeQuery,
    Task,
    TimeHorizon,
    normalize_name,
    normalize_status,
    parse_due_date,
    parse_scope,
    scope_kind,
    scope_target,
    utc_now,
)
from .urgency import horizon_window

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS projects (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE,
    description TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS notes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    title TEXT NOT NULL,
    content TEXT NOT NULL DEFAULT '',
    priority INTEGER NOT NULL DEFAULT 1,
    category TEXT,
    project_id INTEGER REFERENCES projects(id) ON DELETE SET NULL,
    tags_json TEXT NOT NULL DEFAULT '[]',
    vector_json TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS tasks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    priority INTEGER NOT NULL DEFAULT 1,
    due_date TEXT,
    status TEXT NOT NULL DEFAULT 'not_started',
    category TEXT,
    project_id INTEGER REFERENCES projects(id) ON DELETE SET NULL,
    tags_json TEXT NOT NULL DEFAULT '[]',
    vector_json TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS instructions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    title TEXT NOT NULL,
    body TEXT NOT NULL,
    scope TEXT NOT NULL,
    target TEXT,
    priority INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_notes_project ON notes(project_id);
CREATE INDEX IF NOT EXISTS idx_tasks_project ON tasks(project_id);
CREATE INDEX IF NOT EXISTS idx_tasks_due ON tasks(due_date);
CREATE INDEX IF NOT EXISTS idx_instructions_scope ON instructions(scope, target);
"""

_NOTE_SELECT = """
    SELECT n.*, p.name AS project_name
    FROM notes n LEFT JOIN projects p ON n.project_id = p.id
"""

_TASK_SELECT = """
    SELECT t.*, p.name AS project_name
    FROM tasks t LEFT JOIN projects p ON t.project_id = p.id
"""

_CLOSED = tuple(sorted(CLOSED_STATUSES))


def _validate_priority(priority: int) -> int:
    try:
        value = int(priority)
    except (TypeError, ValueError):
        raise ValidationError(f"Priority must be between 1 and 5: {priority!r}") from None
    if not 1 <= value <= 5:
        raise ValidationError(f"Priority must be between 1 and 5: {priority!r}")
    return value


def _like(term: str) -> str:
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _fold(value: Any) -> Any:
    return value.lower() if isinstance(value, str) else value


def _tags(value: Any) -> list[str]:
    """Tags from a list or a comma-separated string."""
    if not value:
        return []
    if isinstance(value, str):
        value = value.split(",")
    return [str(t).strip() for t in value if str(t).strip()]


class ContextStore:
    """
    SQLite-backed implementation of all four store protocols.

    One connection shared across threads; every statement runs under a
    lock because report requests fetch from worker threads concurrently.
    """

    def __init__(self, store_path: Path):
        """
        Args:
            store_path: Path to SQLite database file
        """
        self._db_path = store_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        # SQLite lower() folds ASCII only
        self._conn.create_function("py_lower", 1, _fold, deterministic=True)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.executescript(_SCHEMA)
        self._conn.commit()

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def _query(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        with self._lock:
            cursor = self._conn.execute(sql, params)
            self._conn.commit()
            return cursor

    # -------------------------------------------------------------------------
    # Row conversion
    # -------------------------------------------------------------------------

    @staticmethod
    def _row_to_project(row: sqlite3.Row) -> Project:
        return Project(
            id=row["id"], name=row["name"], description=row["description"],
            created_at=row["created_at"], updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_note(row: sqlite3.Row) -> Note:
        return Note(
            id=row["id"],
            title=row["title"],
            content=row["content"],
            priority=row["priority"],
            category=row["category"],
            project=row["project_name"],
            tags=json.loads(row["tags_json"] or "[]"),
            vector=json.loads(row["vector_json"]) if row["vector_json"] else None,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> Task:
        return Task(
            id=row["id"],
            title=row["title"],
            description=row["description"],
            priority=row["priority"],
            due_date=parse_due_date(row["due_date"]),
            status=row["status"],
            project=row["project_name"],
            category=row["category"],
            tags=json.loads(row["tags_json"] or "[]"),
            vector=json.loads(row["vector_json"]) if row["vector_json"] else None,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_instruction(row: sqlite3.Row) -> Instruction:
        return Instruction(
            id=row["id"],
            title=row["title"],
            body=row["body"],
            scope=parse_scope(row["scope"], row["target"]),
            priority=row["priority"],
            created_at=row["created_at"],
        )

    # -------------------------------------------------------------------------
    # Projects
    # -------------------------------------------------------------------------

    def get_project(self, name: str) -> Optional[Project]:
        name = normalize_name(name)
        if not name:
            return None
        rows = self._query("SELECT * FROM projects WHERE name = ?", (name,))
        return self._row_to_project(rows[0]) if rows else None

    def upsert_project(self, name: str, description: Optional[str] = None) -> Project:
        """Create a project, or update its description if it exists."""
        normalized = normalize_name(name)
        if not normalized:
            raise ValidationError("Project name is required")
        now = utc_now()
        with self._lock:
            self._conn.execute(
                """INSERT INTO projects (name, description, created_at, updated_at)
                   VALUES (?, ?, ?, ?) ON CONFLICT(name) DO NOTHING""",
                (normalized, description or "", now, now),
            )
            if description is not None:
                self._conn.execute(
                    """UPDATE projects SET description = ?, updated_at = ?
                       WHERE name = ? AND description != ?""",
                    (description, now, normalized, description),
                )
            self._conn.commit()
        return self.get_project(normalized)

    def _project_id(self, name: Optional[str]) -> Optional[int]:
        """Id of the named project, creating it on first reference."""
        if not normalize_name(name):
            return None
        return self.upsert_project(name).id

    # -------------------------------------------------------------------------
    # Notes
    # -------------------------------------------------------------------------

    def add_note(
        self,
        title: str,
        content: str = "",
        *,
        priority: int = 1,
        category: Optional[str] = None,
        project: Optional[str] = None,
        tags: Optional[list[str] | str] = None,
        vector: Optional[list[float]] = None,
        created_at: Optional[str] = None,
        updated_at: Optional[str] = None,
    ) -> Note:
        if not title or not title.strip():
            raise ValidationError("Note title is required")
        created = created_at or utc_now()
        cursor = self._execute(
            """INSERT INTO notes (title, content, priority, category, project_id,
                                  tags_json, vector_json, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                title.strip(), content or "", _validate_priority(priority),
                normalize_name(category), self._project_id(project),
                json.dumps(_tags(tags), ensure_ascii=False),
                json.dumps(vector) if vector else None,
                created, updated_at or created,
            ),
        )
        return self.get_note(cursor.lastrowid)

    def get_note(self, id: int) -> Optional[Note]:
        rows = self._query(f"{_NOTE_SELECT} WHERE n.id = ?", (id,))
        return self._row_to_note(rows[0]) if rows else None

    def list_notes_by_project(self, project_id: int, limit: Optional[int] = None) -> list[Note]:
        sql = f"{_NOTE_SELECT} WHERE n.project_id = ? ORDER BY n.priority DESC, n.updated_at DESC, n.id DESC"
        params: tuple = (project_id,)
        if limit is not None:
            sql += " LIMIT ?"
            params += (limit,)
        return [self._row_to_note(r) for r in self._query(sql, params)]

    def count_notes(self, project_id: int) -> int:
        rows = self._query("SELECT COUNT(*) FROM notes WHERE project_id = ?", (project_id,))
        return rows[0][0]

    def search_notes(self, filters: NoteFilter) -> list[Note]:
        clauses = ["n.priority >= ?"]
        params: list[Any] = [filters.priority_min or 1]
        if normalize_name(filters.category):
            clauses.append("n.category = ?")
            params.append(normalize_name(filters.category))
        if normalize_name(filters.project):
            clauses.append("p.name = ?")
            params.append(normalize_name(filters.project))

        keyword_clauses = []
        for keyword in filters.keywords:
            pattern = _like(keyword.lower())
            keyword_clauses.append(
                "(py_lower(n.title) LIKE ? ESCAPE '\\' OR py_lower(n.content) LIKE ? ESCAPE '\\'"
                " OR py_lower(coalesce(n.category, '')) LIKE ? ESCAPE '\\'"
                " OR py_lower(coalesce(p.name, '')) LIKE ? ESCAPE '\\'"
                " OR py_lower(n.tags_json) LIKE ? ESCAPE '\\')"
            )
            params.extend([pattern] * 5)
        if keyword_clauses:
            clauses.append("(" + " OR ".join(keyword_clauses) + ")")

        sql = (f"{_NOTE_SELECT} WHERE {' AND '.join(clauses)}"
               " ORDER BY n.priority DESC, n.updated_at DESC, n.id DESC")
        if filters.limit is not None:
            sql += " LIMIT ?"
            params.append(filters.limit)
        return [self._row_to_note(r) for r in self._query(sql, tuple(params))]

    def set_note_vector(self, id: int, vector: Optional[list[float]]) -> bool:
        cursor = self._execute(
            "UPDATE notes SET vector_json = ? WHERE id = ?",
            (json.dumps(vector) if vector else None, id),
        )
        return cursor.rowcount > 0

    def notes_missing_vectors(self) -> list[Note]:
        return [self._row_to_note(r) for r in self._query(
            f"{_NOTE_SELECT} WHERE n.vector_json IS NULL ORDER BY n.id")]

    def list_all_notes(self) -> list[Note]:
        return [self._row_to_note(r) for r in self._query(f"{_NOTE_SELECT} ORDER BY n.id")]

    # -------------------------------------------------------------------------
    # Tasks
    # -------------------------------------------------------------------------

    def add_task(
        self,
        title: str,
        description: str = "",
        *,
        priority: int = 1,
        due_date: Optional[str | date] = None,
        status: str = "not_started",
        category: Optional[str] = None,
        project: Optional[str] = None,
        tags: Optional[list[str] | str] = None,
        vector: Optional[list[float]] = None,
        created_at: Optional[str] = None,
        updated_at: Optional[str] = None,
    ) -> Task:
        if not title or not title.strip():
            raise ValidationError("Task title is required")
        try:
            due = parse_due_date(due_date)
        except ValueError as e:
            raise ValidationError(f"Invalid due date {due_date!r}: {e}") from e
        created = created_at or utc_now()
        cursor = self._execute(
            """INSERT INTO tasks (title, description, priority, due_date, status, category,
                                  project_id, tags_json, vector_json, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                title.strip(), description or "", _validate_priority(priority),
                due.isoformat() if due else None, normalize_status(status),
                normalize_name(category), self._project_id(project),
                json.dumps(_tags(tags), ensure_ascii=False),
                json.dumps(vector) if vector else None,
                created, updated_at or created,
            ),
        )
        return self.get_task(cursor.lastrowid)

    def get_task(self, id: int) -> Optional[Task]:
        rows = self._query(f"{_TASK_SELECT} WHERE t.id = ?", (id,))
        return self._row_to_task(rows[0]) if rows else None

    def set_task_status(self, id: int, status: str) -> Task:
        cursor = self._execute(
            "UPDATE tasks SET status = ?, updated_at = ? WHERE id = ?",
            (normalize_status(status), utc_now(), id),
        )
        if cursor.rowcount == 0:
            raise NotFound("Task", id)
        return self.get_task(id)

    def list_tasks_by_project(
        self,
        project_id: int,
        *,
        limit: Optional[int] = None,
        include_completed: bool = True,
        exclude_id: Optional[int] = None,
    ) -> list[Task]:
        clauses = ["t.project_id = ?"]
        params: list[Any] = [project_id]
        if not include_completed:
            clauses.append("t.status != 'completed'")
        if exclude_id is not None:
            clauses.append("t.id != ?")
            params.append(exclude_id)
        sql = (f"{_TASK_SELECT} WHERE {' AND '.join(clauses)}"
               " ORDER BY t.priority DESC, t.updated_at DESC, t.id DESC")
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [self._row_to_task(r) for r in self._query(sql, tuple(params))]

    def list_tasks_by_horizon(
        self,
        horizon: TimeHorizon,
        *,
        category: Optional[str] = None,
        project: Optional[str] = None,
        priority_min: int = 1,
        now: Optional[datetime] = None,
    ) -> list[Task]:
        clauses = [f"t.status NOT IN ({', '.join('?' for _ in _CLOSED)})", "t.priority >= ?"]
        params: list[Any] = [*_CLOSED, priority_min or 1]

        window = horizon_window(horizon, now)
        if window is not None:
            earliest, latest = window
            clauses.append("t.due_date IS NOT NULL AND t.due_date <= ?")
            params.append(latest.isoformat())
            if earliest is not None:
                clauses.append("t.due_date >= ?")
                params.append(earliest.isoformat())
        if normalize_name(category):
            clauses.append("t.category = ?")
            params.append(normalize_name(category))
        if normalize_name(project):
            clauses.append("p.name = ?")
            params.append(normalize_name(project))

        sql = (f"{_TASK_SELECT} WHERE {' AND '.join(clauses)}"
               " ORDER BY t.priority DESC, t.due_date IS NULL, t.due_date ASC, t.updated_at DESC")
        return [self._row_to_task(r) for r in self._query(sql, tuple(params))]

    def set_task_vector(self, id: int, vector: Optional[list[float]]) -> bool:
        cursor = self._execute(
            "UPDATE tasks SET vector_json = ? WHERE id = ?",
            (json.dumps(vector) if vector else None, id),
        )
        return cursor.rowcount > 0

    def tasks_missing_vectors(self) -> list[Task]:
        return [self._row_to_task(r) for r in self._query(
            f"{_TASK_SELECT} WHERE t.vector_json IS NULL ORDER BY t.id")]

    def list_all_tasks(self) -> list[Task]:
        return [self._row_to_task(r) for r in self._query(f"{_TASK_SELECT} ORDER BY t.id")]

    # -------------------------------------------------------------------------
    # Instructions
    # -------------------------------------------------------------------------

    def add_instruction(
        self,
        title: str,
        body: str,
        scope: Scope,
        *,
        priority: int = 1,
        created_at: Optional[str] = None,
    ) -> Instruction:
        if not title or not title.strip():
            raise ValidationError("Instruction title is required")
        if not body or not body.strip():
            raise ValidationError("Instruction body is required")
        created = created_at or utc_now()
        cursor = self._execute(
            """INSERT INTO instructions (title, body, scope, target, priority, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (title.strip(), body.strip(), scope_kind(scope), scope_target(scope),
             _validate_priority(priority), created, created),
        )
        return self.get_instruction(cursor.lastrowid)

    def get_instruction(self, id: int) -> Optional[Instruction]:
        rows = self._query("SELECT * FROM instructions WHERE id = ?", (id,))
        return self._row_to_instruction(rows[0]) if rows else None

    def update_instruction(
        self,
        id: int,
        *,
        title: Optional[str] = None,
        body: Optional[str] = None,
        scope: Optional[Scope] = None,
        priority: Optional[int] = None,
    ) -> Instruction:
        current = self.get_instruction(id)
        if current is None:
            raise NotFound("Instruction", id)
        new_scope = scope if scope is not None else current.scope
        self._execute(
            """UPDATE instructions SET title = ?, body = ?, scope = ?, target = ?,
                                       priority = ?, updated_at = ?
               WHERE id = ?""",
            (
                (title or current.title).strip(),
                (body or current.body).strip(),
                scope_kind(new_scope),
                scope_target(new_scope),
                _validate_priority(priority if priority is not None else current.priority),
                utc_now(),
                id,
            ),
        )
        return self.get_instruction(id)

    def delete_instruction(self, id: int) -> Optional[Instruction]:
        """Delete an instruction. Returns the deleted record, or None."""
        current = self.get_instruction(id)
        if current is None:
            return None
        self._execute("DELETE FROM instructions WHERE id = ?", (id,))
        return current

    def query_instructions(self, query: ScopeQuery) -> list[Instruction]:
        conditions = []
        params: list[Any] = []
        for scope in query.scopes():
            if scope_target(scope) is None:
                conditions.append("(scope = ?)")
                params.append(scope_kind(scope))
            else:
                conditions.append("(scope = ? AND target = ?)")
                params.extend([scope_kind(scope), scope_target(scope)])
        if not conditions:
            return []
        rows = self._query(
            f"SELECT * FROM instructions WHERE {' OR '.join(conditions)}"
            " ORDER BY priority DESC, created_at DESC",
            tuple(params),
        )
        return [self._row_to_instruction(r) for r in rows]
