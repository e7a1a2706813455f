"""Tests for ContextEngine: reports, instruction writes, indexing and import."""

import pytest

from memctx.api import ContextEngine
from memctx.config import ContextConfig, ProviderConfig, StoreConfig
from memctx.errors import NotFound, ReportTimeout, ValidationError
from memctx.instructions import cache_key
from memctx.types import ProjectScope, ScopeQuery

from tests.conftest import SlowEmbeddingProvider


class PickyEmbeddingProvider:
    """Zero vector for texts mentioning 'zero', NaN for 'nan', failure for 'boom'."""

    dimension = 3

    def embed(self, text: str) -> list[float]:
        if "boom" in text:
            raise ValueError("cannot embed")
        if "zero" in text:
            return [0.0, 0.0, 0.0]
        if "nan" in text:
            return [float("nan"), 1.0, 0.0]
        return [1.0, 0.5, 0.0]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [self.embed(t) for t in texts]


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_project_report(engine):
    engine.store.upsert_project("alpha", "The alpha project")
    engine.store.add_note("Design", "architecture", project="alpha")
    text = await engine.get_project_context("alpha")
    assert text.startswith("# Project: alpha")
    assert "- Notes: 1" in text


@pytest.mark.asyncio
async def test_memory_report_after_index(engine):
    engine.store.add_note("Database migration plan", "schema steps")
    engine.store.add_note("Lunch menu", "pizza")
    engine.index()
    text = await engine.get_memory_context("database migration")
    assert "(semantic search)" in text
    assert "Database migration plan" in text
    assert "Lunch menu" not in text


@pytest.mark.asyncio
async def test_memory_report_unknown_provider_uses_keywords(tmp_path, store):
    config = StoreConfig(path=tmp_path, embedding=ProviderConfig("no-such-provider"))
    store.add_note("Keyword hit", "found by words")
    with ContextEngine(config=config, store=store) as engine:
        text = await engine.get_memory_context("keyword")
    assert "(keyword match)" in text
    assert "Keyword hit" in text


@pytest.mark.asyncio
async def test_reports_without_embedding_never_load_model(tmp_path, store):
    config = StoreConfig(path=tmp_path, embedding=ProviderConfig("no-such-provider"))
    store.add_task("Ship", project="alpha", priority=5)
    with ContextEngine(config=config, store=store) as engine:
        assert "Ship" in await engine.get_project_context("alpha")
        assert "Ship" in await engine.get_work_priorities()


@pytest.mark.asyncio
async def test_not_found_propagates(engine):
    with pytest.raises(NotFound):
        await engine.get_task_context(99)
    with pytest.raises(NotFound):
        await engine.get_note_context(99)
    with pytest.raises(NotFound):
        await engine.get_project_context("ghost")


@pytest.mark.asyncio
async def test_report_timeout(tmp_path, store):
    config = StoreConfig(path=tmp_path, context=ContextConfig(
        report_timeout_seconds=0.05, embedding_timeout_seconds=0))
    store.add_note("anything", "content")
    with ContextEngine(config=config, store=store, embedder=SlowEmbeddingProvider(0.3)) as engine:
        with pytest.raises(ReportTimeout):
            await engine.get_memory_context("anything")


@pytest.mark.asyncio
async def test_note_report(engine):
    note = engine.store.add_note("Plan", "the plan", project="alpha")
    engine.store.add_task("Do it", project="alpha")
    text = await engine.get_note_context(note.id)
    assert text.startswith("# Note: Plan")
    assert "Do it" in text


# ---------------------------------------------------------------------------
# Instructions and the cache
# ---------------------------------------------------------------------------

class TestInstructionWrites:

    @pytest.mark.asyncio
    async def test_save_invalidates_cached_reports(self, engine):
        engine.store.upsert_project("alpha")
        assert "## Instructions" not in await engine.get_project_context("alpha")
        assert cache_key(ScopeQuery(project="alpha")) in engine.cache_stats()["keys"]

        engine.save_instruction("Use staging", "never prod", scope="project", target="alpha")
        text = await engine.get_project_context("alpha")
        assert "Use staging" in text

    @pytest.mark.asyncio
    async def test_save_leaves_other_projects_cached(self, engine):
        engine.store.upsert_project("alpha")
        engine.store.upsert_project("beta")
        await engine.get_project_context("alpha")
        await engine.get_project_context("beta")
        engine.save_instruction("Alpha only", "x", scope="project", target="alpha")
        keys = engine.cache_stats()["keys"]
        assert cache_key(ScopeQuery(project="beta")) in keys
        assert cache_key(ScopeQuery(project="alpha")) not in keys

    @pytest.mark.asyncio
    async def test_global_save_invalidates_everything(self, engine):
        engine.store.upsert_project("alpha")
        await engine.get_project_context("alpha")
        engine.save_instruction("Everywhere", "x")
        assert engine.cache_stats()["size"] == 0
        assert "Everywhere" in await engine.get_project_context("alpha")

    @pytest.mark.asyncio
    async def test_update_moves_scope(self, engine):
        engine.store.upsert_project("alpha")
        engine.store.upsert_project("beta")
        instr = engine.save_instruction("Rule", "x", scope="project", target="alpha")
        assert "Rule" in await engine.get_project_context("alpha")
        assert "Rule" not in await engine.get_project_context("beta")

        updated = engine.update_instruction(instr.id, scope="project", target="beta")
        assert updated.scope == ProjectScope("beta")
        assert "Rule" not in await engine.get_project_context("alpha")
        assert "Rule" in await engine.get_project_context("beta")

    @pytest.mark.asyncio
    async def test_delete(self, engine):
        engine.store.upsert_project("alpha")
        instr = engine.save_instruction("Rule", "x", scope="project", target="alpha")
        assert "Rule" in await engine.get_project_context("alpha")
        assert engine.delete_instruction(instr.id)
        assert "Rule" not in await engine.get_project_context("alpha")
        assert not engine.delete_instruction(instr.id)

    def test_update_unknown(self, engine):
        with pytest.raises(NotFound):
            engine.update_instruction(5, body="x")

    def test_invalid_scope(self, engine):
        with pytest.raises(ValidationError):
            engine.save_instruction("t", "b", scope="team", target="x")
        with pytest.raises(ValidationError):
            engine.save_instruction("t", "b", scope="project")

    @pytest.mark.asyncio
    async def test_clear_cache(self, engine):
        engine.store.upsert_project("alpha")
        await engine.get_project_context("alpha")
        assert engine.cache_stats()["size"] == 1
        engine.clear_cache()
        assert engine.cache_stats()["size"] == 0


# ---------------------------------------------------------------------------
# Indexing
# ---------------------------------------------------------------------------

class TestIndex:

    def test_index_missing_only(self, engine, word_embedder):
        engine.store.add_note("a", "alpha")
        engine.store.add_task("b", "beta")
        assert engine.index() == {"notes": 1, "tasks": 1, "skipped": 0}
        assert engine.index() == {"notes": 0, "tasks": 0, "skipped": 0}
        assert engine.index(force=True) == {"notes": 1, "tasks": 1, "skipped": 0}

    def test_batches(self, engine, word_embedder):
        for i in range(5):
            engine.store.add_note(f"note {i}", "x")
        engine.index(batch_size=2)
        assert word_embedder.batch_calls == 3

    def test_failures_skipped_and_no_zero_vectors(self, tmp_path, store):
        good = store.add_note("fine", "content")
        zero = store.add_note("zero", "content")
        boom = store.add_note("boom", "content")
        nan = store.add_note("nan", "content")
        config = StoreConfig(path=tmp_path)
        with ContextEngine(config=config, store=store, embedder=PickyEmbeddingProvider()) as engine:
            stats = engine.index()
            assert stats == {"notes": 1, "tasks": 0, "skipped": 3}
            assert engine.store.get_note(good.id).vector == [1.0, 0.5, 0.0]
            assert engine.store.get_note(zero.id).vector is None
            assert engine.store.get_note(boom.id).vector is None
            assert engine.store.get_note(nan.id).vector is None

    def test_invalid_batch_size(self, engine):
        with pytest.raises(ValidationError):
            engine.index(batch_size=0)


# ---------------------------------------------------------------------------
# Import
# ---------------------------------------------------------------------------

EXPORT = {
    "format": "memctx-export",
    "version": 1,
    "projects": [{"name": "alpha", "description": "The alpha project"}],
    "notes": [
        {"title": "Design", "content": "architecture", "priority": 3,
         "project": "alpha", "tags": ["arch"]},
    ],
    "tasks": [
        {"title": "Ship", "priority": 5, "due_date": "2026-03-12",
         "status": "in_progress", "project": "alpha"},
        {"title": "Plan"},
    ],
    "instructions": [
        {"title": "Be terse", "body": "short answers"},
        {"title": "Alpha rule", "content": "staging only", "scope": "project", "target": "alpha",
         "priority": 4},
        {"title": "Ops rule", "body": "check dashboards", "scope": "category", "category": "ops"},
    ],
}


class TestImport:

    @pytest.mark.asyncio
    async def test_import(self, engine):
        stats = engine.import_data(EXPORT)
        assert stats == {"projects": 1, "notes": 1, "tasks": 2, "instructions": 3}

        text = await engine.get_project_context("alpha")
        assert "Description: The alpha project" in text
        assert "Design" in text
        assert "Ship" in text
        assert "Alpha rule" in text
        assert "staging only" in text

    def test_import_scopes(self, engine):
        engine.import_data(EXPORT)
        found = engine.store.query_instructions(ScopeQuery(category="ops", include_global=False))
        assert [i.title for i in found] == ["Ops rule"]

    @pytest.mark.asyncio
    async def test_import_clears_cache(self, engine):
        engine.store.upsert_project("alpha")
        await engine.get_project_context("alpha")
        engine.import_data({"instructions": [{"title": "New", "body": "x"}]})
        assert engine.cache_stats()["size"] == 0

    def test_wrong_format(self, engine):
        with pytest.raises(ValidationError, match="Invalid export format"):
            engine.import_data({"format": "something-else"})

    def test_newer_version(self, engine):
        with pytest.raises(ValidationError, match="not supported"):
            engine.import_data({"version": 2})

    def test_missing_title(self, engine):
        with pytest.raises(ValidationError):
            engine.import_data({"notes": [{"content": "no title"}]})

    def test_empty(self, engine):
        assert engine.import_data({}) == {"projects": 0, "notes": 0, "tasks": 0, "instructions": 0}


def test_context_manager_closes(tmp_path):
    with ContextEngine(config=StoreConfig(path=tmp_path)) as engine:
        engine.store.add_note("n", "c")
    assert engine.store._conn is None
