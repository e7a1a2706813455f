"""
Protocol definitions for the stores the context engine reads from.

The engine never writes entities; it only needs these read operations.
Implemented by:
- ContextStore (local SQLite, memctx.document_store)
- test doubles in tests/conftest.py
"""

from datetime import datetime
from typing import Optional, Protocol, runtime_checkable

from .types import Instruction, Note, NoteFilter, Project, ScopeQuery, Task, TimeHorizon


@runtime_checkable
class ProjectStoreProtocol(Protocol):

    def get_project(self, name: str) -> Optional[Project]:
        """Project by (case-insensitive) name, or None."""
        ...


@runtime_checkable
class NoteStoreProtocol(Protocol):

    def get_note(self, id: int) -> Optional[Note]: ...

    def list_notes_by_project(self, project_id: int, limit: Optional[int] = None) -> list[Note]:
        """Notes of a project, highest priority then most recent first."""
        ...

    def search_notes(self, filters: NoteFilter) -> list[Note]:
        """
        Notes matching the filters, highest priority then most recent first.

        With no keywords this is a plain filtered listing (used to collect
        semantic search candidates); with keywords it is the keyword
        fallback search.
        """
        ...

    def count_notes(self, project_id: int) -> int: ...


@runtime_checkable
class TaskStoreProtocol(Protocol):

    def get_task(self, id: int) -> Optional[Task]: ...

    def list_tasks_by_project(
        self,
        project_id: int,
        *,
        limit: Optional[int] = None,
        include_completed: bool = True,
        exclude_id: Optional[int] = None,
    ) -> list[Task]: ...

    def list_tasks_by_horizon(
        self,
        horizon: TimeHorizon,
        *,
        category: Optional[str] = None,
        project: Optional[str] = None,
        priority_min: int = 1,
        now: Optional[datetime] = None,
    ) -> list[Task]:
        """Open (not completed or cancelled) tasks due within the horizon."""
        ...


@runtime_checkable
class InstructionStoreProtocol(Protocol):

    def query_instructions(self, query: ScopeQuery) -> list[Instruction]:
        """All instructions whose scope is one of the query's scopes."""
        ...
