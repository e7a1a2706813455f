"""
Core API for context reports.

ContextEngine wires the store, the embedding provider, the instruction
cache and the urgency scorer together and exposes the five reports as
async methods returning text:

- get_project_context(): instructions, notes, tasks and statistics
- get_task_context(): one task with related tasks and notes
- get_memory_context(): notes relevant to a topic
- get_work_priorities(): outstanding tasks ranked by urgency
- get_note_context(): one note with related tasks and notes
"""

import asyncio
import logging
import threading
from pathlib import Path
from typing import Any, Awaitable, Optional, TypeVar

import numpy as np

from .config import StoreConfig, load_or_create_config
from .context import ContextAggregator
from .document_store import ContextStore
from .errors import EmbeddingUnavailable, NotFound, ReportTimeout, ValidationError
from .instructions import InstructionCache, InstructionResolver
from .providers import get_registry
from .providers.base import EmbeddingProvider
from .render import (
    render_memory_context,
    render_note_context,
    render_project_context,
    render_task_context,
    render_work_priorities,
)
from .types import ContextLevel, Instruction, Scope, TimeHorizon, parse_scope
from .urgency import UrgencyScorer

logger = logging.getLogger(__name__)

EXPORT_FORMAT = "memctx-export"
EXPORT_VERSION = 1

T = TypeVar("T")


class _LazyEmbedding:
    """
    Creates the configured embedding provider on first use.

    Reports that never embed (project context, work priorities) then work
    without loading a model. Thread-safe: concurrent first calls create
    the provider once.
    """

    def __init__(self, config: StoreConfig):
        self._config = config
        self._provider: Optional[EmbeddingProvider] = None
        self._lock = threading.Lock()

    def _get(self) -> EmbeddingProvider:
        if self._provider is not None:
            return self._provider
        with self._lock:
            if self._provider is None:
                try:
                    self._provider = get_registry().create_embedding(
                        self._config.embedding.name,
                        self._config.embedding.params,
                    )
                except ValueError as e:
                    raise EmbeddingUnavailable(str(e)) from e
        return self._provider

    @property
    def dimension(self) -> int:
        return self._get().dimension

    def embed(self, text: str) -> list[float]:
        return self._get().embed(text)

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return self._get().embed_batch(texts)


def _scope(kind: str, target: Optional[str]) -> Scope:
    try:
        return parse_scope(kind, target)
    except ValueError as e:
        raise ValidationError(str(e)) from e


def _required(rec: dict, key: str, what: str) -> Any:
    try:
        return rec[key]
    except (KeyError, TypeError):
        raise ValidationError(f"{what} record is missing {key!r}: {rec!r}") from None


def _usable(vector: Optional[list[float]]) -> bool:
    """A vector worth storing: present, finite and not all zeros."""
    if not vector:
        return False
    values = np.asarray(vector, dtype=np.float64)
    return bool(np.all(np.isfinite(values)) and np.any(values != 0))


class ContextEngine:
    """
    Context reports over a local store.

    Example:
        engine = ContextEngine()
        text = await engine.get_memory_context("authentication bug")
    """

    def __init__(
        self,
        store_path: Optional[str | Path] = None,
        *,
        config: Optional[StoreConfig] = None,
        store: Optional[ContextStore] = None,
        embedder: Optional[EmbeddingProvider] = None,
        cache: Optional[InstructionCache] = None,
    ) -> None:
        """
        Open (or create) a store.

        Args:
            store_path: Store directory. Uses MEMCTX_STORE_PATH or ~/.memctx
                if not specified.
            config: Pre-loaded StoreConfig (skips config file discovery)
            store: Injected entity store (skips opening the database)
            embedder: Injected embedding provider (skips the registry)
            cache: Injected instruction cache
        """
        if config is not None:
            self._config = config
        else:
            path = Path(store_path).expanduser().resolve() if store_path is not None else None
            self._config = load_or_create_config(path)
        self._store_path = self._config.path

        from .logging_config import configure_ops_log
        self._ops_log_handler = configure_ops_log(self._store_path)

        self._store = store if store is not None else ContextStore(self._config.database_path)
        self._embedder = embedder if embedder is not None else _LazyEmbedding(self._config)

        context_config = self._config.context
        self._cache = cache or InstructionCache(default_ttl=context_config.cache_ttl_seconds)
        self._resolver = InstructionResolver(
            self._store, self._cache, default_ttl=context_config.cache_ttl_seconds)
        self._scorer = UrgencyScorer(self._config.urgency)
        self._aggregator = ContextAggregator(
            projects=self._store,
            notes=self._store,
            tasks=self._store,
            resolver=self._resolver,
            embedder=self._embedder,
            scorer=self._scorer,
            config=context_config,
        )

    @property
    def config(self) -> StoreConfig:
        return self._config

    @property
    def store(self) -> ContextStore:
        return self._store

    @property
    def store_path(self) -> Path:
        return self._store_path

    # -------------------------------------------------------------------------
    # Reports
    # -------------------------------------------------------------------------

    async def _bounded(self, report: Awaitable[T], what: str) -> T:
        """Await a report under the configured deadline, if any."""
        timeout = self._config.context.report_timeout_seconds
        if not timeout or timeout <= 0:
            return await report
        try:
            return await asyncio.wait_for(report, timeout=timeout)
        except asyncio.TimeoutError as e:
            raise ReportTimeout(f"{what} did not finish within {timeout:g}s") from e

    async def get_project_context(
        self,
        project: str,
        level: ContextLevel | str = ContextLevel.STANDARD,
        include_completed: bool = False,
        max_items: int = 10,
    ) -> str:
        ctx = await self._bounded(
            self._aggregator.project_context(project, level, include_completed, max_items),
            "Project context",
        )
        return render_project_context(ctx)

    async def get_task_context(
        self,
        task_id: int,
        level: ContextLevel | str = ContextLevel.STANDARD,
        include_related: bool = True,
        semantic_search: bool = True,
    ) -> str:
        ctx = await self._bounded(
            self._aggregator.task_context(task_id, level, include_related, semantic_search),
            "Task context",
        )
        return render_task_context(ctx)

    async def get_memory_context(
        self,
        topic: str,
        category: Optional[str] = None,
        project: Optional[str] = None,
        priority_min: int = 1,
        limit: int = 15,
        min_similarity: float = 0.15,
    ) -> str:
        ctx = await self._bounded(
            self._aggregator.memory_context(
                topic, category, project, priority_min, limit, min_similarity),
            "Memory context",
        )
        logger.info("Memory context for %r: %d notes (%s)", ctx.topic, len(ctx.matches), ctx.method)
        return render_memory_context(ctx)

    async def get_work_priorities(
        self,
        time_horizon: TimeHorizon | str = TimeHorizon.ALL,
        category: Optional[str] = None,
        project: Optional[str] = None,
        priority_min: int = 1,
        limit: int = 20,
    ) -> str:
        ctx = await self._bounded(
            self._aggregator.work_priorities(time_horizon, category, project, priority_min, limit),
            "Work priorities",
        )
        return render_work_priorities(ctx)

    async def get_note_context(
        self,
        note_id: int,
        level: ContextLevel | str = ContextLevel.STANDARD,
        include_related: bool = True,
        semantic_search: bool = True,
    ) -> str:
        ctx = await self._bounded(
            self._aggregator.note_context(note_id, level, include_related, semantic_search),
            "Note context",
        )
        return render_note_context(ctx)

    # -------------------------------------------------------------------------
    # Instructions
    # -------------------------------------------------------------------------

    def save_instruction(
        self,
        title: str,
        body: str,
        scope: str = "global",
        target: Optional[str] = None,
        priority: int = 1,
    ) -> Instruction:
        """Store a new instruction and drop cached sets that include its scope."""
        instruction = self._store.add_instruction(
            title, body, _scope(scope, target), priority=priority)
        self._resolver.invalidate_scope(instruction.scope)
        logger.info("Saved instruction %d (%s)", instruction.id, instruction.scope.key)
        return instruction

    def update_instruction(
        self,
        id: int,
        *,
        title: Optional[str] = None,
        body: Optional[str] = None,
        scope: Optional[str] = None,
        target: Optional[str] = None,
        priority: Optional[int] = None,
    ) -> Instruction:
        """
        Change an instruction.

        Both the old and the new scope are invalidated, so a move between
        scopes is visible everywhere immediately.
        """
        current = self._store.get_instruction(id)
        if current is None:
            raise NotFound("Instruction", id)
        new_scope = _scope(scope, target) if scope is not None else None
        updated = self._store.update_instruction(
            id, title=title, body=body, scope=new_scope, priority=priority)
        self._resolver.invalidate_scope(current.scope)
        if updated.scope != current.scope:
            self._resolver.invalidate_scope(updated.scope)
        logger.info("Updated instruction %d (%s)", id, updated.scope.key)
        return updated

    def delete_instruction(self, id: int) -> bool:
        deleted = self._store.delete_instruction(id)
        if deleted is None:
            return False
        self._resolver.invalidate_scope(deleted.scope)
        logger.info("Deleted instruction %d (%s)", id, deleted.scope.key)
        return True

    def cache_stats(self) -> dict:
        return self._cache.stats()

    def clear_cache(self) -> None:
        self._cache.clear()

    # -------------------------------------------------------------------------
    # Indexing and import
    # -------------------------------------------------------------------------

    def index(self, batch_size: int = 32, *, force: bool = False) -> dict:
        """
        Compute embeddings for notes and tasks.

        Only items without a vector are embedded unless force is set.
        Items whose embedding fails are skipped and counted; nothing is
        stored for them, so they stay visible to keyword search only.

        Returns:
            Dict with stats: {notes, tasks, skipped}
        """
        if batch_size < 1:
            raise ValidationError(f"batch_size must be a positive integer: {batch_size!r}")
        if force:
            notes, tasks = self._store.list_all_notes(), self._store.list_all_tasks()
        else:
            notes, tasks = self._store.notes_missing_vectors(), self._store.tasks_missing_vectors()
        items = [n.as_embedded() for n in notes] + [t.as_embedded() for t in tasks]

        stats = {"notes": 0, "tasks": 0, "skipped": 0}
        for start in range(0, len(items), batch_size):
            batch = items[start:start + batch_size]
            for item, vector in zip(batch, self._embed_batch([i.text for i in batch])):
                if not _usable(vector):
                    stats["skipped"] += 1
                    continue
                if item.kind == "note":
                    self._store.set_note_vector(item.id, vector)
                    stats["notes"] += 1
                else:
                    self._store.set_task_vector(item.id, vector)
                    stats["tasks"] += 1
            logger.info("Indexed %d/%d items", min(start + batch_size, len(items)), len(items))
        if stats["skipped"]:
            logger.warning("Skipped %d items whose embedding failed", stats["skipped"])
        return stats

    def _embed_batch(self, texts: list[str]) -> list[Optional[list[float]]]:
        """Embed a batch; on failure retry one by one, None for each failure."""
        try:
            return self._embedder.embed_batch(texts)
        except (EmbeddingUnavailable, ValueError) as e:
            logger.info("Batch embedding failed (%s); embedding items one by one", e)
        vectors: list[Optional[list[float]]] = []
        for text in texts:
            try:
                vectors.append(self._embedder.embed(text))
            except (EmbeddingUnavailable, ValueError) as e:
                logger.warning("Embedding failed for %r: %s", text[:40], e)
                vectors.append(None)
        return vectors

    def import_data(self, data: dict) -> dict:
        """
        Load projects, notes, tasks and instructions from an export dict.

        Records are added, never merged; embeddings are left for index().

        Returns:
            Dict with stats: {projects, notes, tasks, instructions}
        """
        fmt = data.get("format", EXPORT_FORMAT)
        if fmt != EXPORT_FORMAT:
            raise ValidationError(f"Invalid export format {fmt!r} (expected {EXPORT_FORMAT!r})")
        if data.get("version", 1) > EXPORT_VERSION:
            raise ValidationError(
                f"Export format version {data['version']} is not supported "
                f"(this version supports up to {EXPORT_VERSION})"
            )

        stats = {"projects": 0, "notes": 0, "tasks": 0, "instructions": 0}
        for rec in data.get("projects", []):
            self._store.upsert_project(_required(rec, "name", "Project"), rec.get("description"))
            stats["projects"] += 1
        for rec in data.get("notes", []):
            self._store.add_note(
                _required(rec, "title", "Note"),
                rec.get("content", ""),
                priority=rec.get("priority", 1),
                category=rec.get("category"),
                project=rec.get("project"),
                tags=rec.get("tags"),
                created_at=rec.get("created_at"),
                updated_at=rec.get("updated_at"),
            )
            stats["notes"] += 1
        for rec in data.get("tasks", []):
            self._store.add_task(
                _required(rec, "title", "Task"),
                rec.get("description", ""),
                priority=rec.get("priority", 1),
                due_date=rec.get("due_date"),
                status=rec.get("status", "not_started"),
                category=rec.get("category"),
                project=rec.get("project"),
                tags=rec.get("tags"),
                created_at=rec.get("created_at"),
                updated_at=rec.get("updated_at"),
            )
            stats["tasks"] += 1
        for rec in data.get("instructions", []):
            scope = rec.get("scope", "global")
            self._store.add_instruction(
                _required(rec, "title", "Instruction"),
                rec.get("body") or rec.get("content", ""),
                _scope(scope, rec.get("target") or rec.get(scope)),
                priority=rec.get("priority", 1),
                created_at=rec.get("created_at"),
            )
            stats["instructions"] += 1
        if stats["instructions"]:
            self._cache.clear()
        logger.info("Imported %(projects)d projects, %(notes)d notes, %(tasks)d tasks, "
                    "%(instructions)d instructions", stats)
        return stats

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Release the database connection and the ops log handler."""
        self._store.close()
        self._cache.clear()
        if self._ops_log_handler is not None:
            logging.getLogger("memctx").removeHandler(self._ops_log_handler)
            self._ops_log_handler.close()
            self._ops_log_handler = None

    def __enter__(self) -> "ContextEngine":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()
