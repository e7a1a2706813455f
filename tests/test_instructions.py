"""Tests for instruction resolution and the TTL cache."""

import threading

import pytest

from memctx.errors import InstructionStoreUnavailable
from memctx.instructions import (
    InstructionCache,
    InstructionResolver,
    cache_key,
    sort_instructions,
)
from memctx.types import CategoryScope, GlobalScope, Instruction, ProjectScope, ScopeQuery

from tests.conftest import CountingInstructionStore, FakeClock


def _instr(id, scope, priority=1, created_at="2026-01-01T00:00:00"):
    return Instruction(id=id, title=f"rule {id}", body=f"do thing {id}", scope=scope,
                       priority=priority, created_at=created_at)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def instruction_store():
    return CountingInstructionStore([
        _instr(1, GlobalScope(), priority=2),
        _instr(2, ProjectScope("alpha"), priority=5),
        _instr(3, CategoryScope("research"), priority=3),
        _instr(4, ProjectScope("alphabet"), priority=4),
        _instr(5, GlobalScope(), priority=2, created_at="2026-02-01T00:00:00"),
    ])


@pytest.fixture
def resolver(instruction_store, clock):
    return InstructionResolver(instruction_store, InstructionCache(default_ttl=300, clock=clock))


class TestCacheKey:

    def test_sorted_and_normalized(self):
        query = ScopeQuery(include_global=True, project="  Alpha ", category="Research")
        assert cache_key(query) == "category:research|global|project:alpha"

    def test_empty_query(self):
        assert cache_key(ScopeQuery(include_global=False)) == ""

    def test_same_scopes_same_key(self):
        assert cache_key(ScopeQuery(project="alpha")) == cache_key(ScopeQuery(project="ALPHA"))


class TestResolve:

    def test_union_sorted_by_priority_then_recency(self, resolver):
        result = resolver.resolve(ScopeQuery(project="alpha", category="research"))
        assert [i.id for i in result] == [2, 3, 5, 1]

    def test_excludes_other_scopes(self, resolver):
        result = resolver.resolve(ScopeQuery(project="alpha"))
        assert 4 not in [i.id for i in result]
        assert 3 not in [i.id for i in result]

    def test_empty_query_returns_nothing(self, resolver, instruction_store):
        assert resolver.resolve(ScopeQuery(include_global=False)) == []
        assert instruction_store.calls == 0

    def test_second_call_hits_cache(self, resolver, instruction_store):
        query = ScopeQuery(project="alpha")
        first = resolver.resolve(query)
        second = resolver.resolve(query)
        assert first == second
        assert instruction_store.calls == 1

    def test_returned_list_is_a_copy(self, resolver):
        query = ScopeQuery(project="alpha")
        first = resolver.resolve(query)
        first[0].title = "mutated"
        first.clear()
        second = resolver.resolve(query)
        assert second and second[0].title != "mutated"

    def test_expiry_requeries(self, resolver, instruction_store, clock):
        query = ScopeQuery()
        resolver.resolve(query)
        clock.advance(301)
        resolver.resolve(query)
        assert instruction_store.calls == 2

    def test_within_ttl_no_requery(self, resolver, instruction_store, clock):
        query = ScopeQuery()
        resolver.resolve(query)
        clock.advance(299)
        resolver.resolve(query)
        assert instruction_store.calls == 1

    def test_shorter_caller_ttl(self, resolver, instruction_store, clock):
        query = ScopeQuery()
        resolver.resolve(query, ttl=10)
        clock.advance(11)
        resolver.resolve(query)
        assert instruction_store.calls == 2

    def test_longer_caller_ttl_capped(self, resolver, instruction_store, clock):
        query = ScopeQuery()
        resolver.resolve(query, ttl=10_000)
        clock.advance(301)
        resolver.resolve(query)
        assert instruction_store.calls == 2


class TestInvalidation:

    def test_invalidate_project_forces_requery_for_every_key_with_it(
            self, resolver, instruction_store):
        with_alpha = [
            ScopeQuery(project="alpha"),
            ScopeQuery(project="alpha", category="research"),
            ScopeQuery(include_global=False, project="alpha"),
        ]
        without_alpha = [
            ScopeQuery(project="alphabet"),
            ScopeQuery(category="research"),
            ScopeQuery(),
        ]
        for q in with_alpha + without_alpha:
            resolver.resolve(q)
        assert instruction_store.calls == 6

        resolver.invalidate_project("alpha")

        for q in without_alpha:
            resolver.resolve(q)
        assert instruction_store.calls == 6  # untouched keys still hit

        for q in with_alpha:
            resolver.resolve(q)
        assert instruction_store.calls == 9

    def test_invalidate_category(self, resolver, instruction_store):
        resolver.resolve(ScopeQuery(category="research"))
        resolver.resolve(ScopeQuery(project="alpha"))
        assert resolver.invalidate_category("Research") == 1
        assert resolver.cache.stats()["keys"] == ["global|project:alpha"]

    def test_invalidate_global(self, resolver):
        resolver.resolve(ScopeQuery())
        resolver.resolve(ScopeQuery(include_global=False, project="alpha"))
        assert resolver.invalidate_global() == 1
        assert resolver.cache.stats()["keys"] == ["project:alpha"]

    def test_wildcard_pattern(self, resolver):
        resolver.resolve(ScopeQuery(project="alpha"))
        resolver.resolve(ScopeQuery(project="alphabet"))
        resolver.resolve(ScopeQuery(category="research"))
        assert resolver.invalidate("project:alpha*") == 2
        assert resolver.cache.stats()["keys"] == ["category:research|global"]

    def test_invalidate_all(self, resolver):
        resolver.resolve(ScopeQuery(project="alpha"))
        resolver.resolve(ScopeQuery())
        assert resolver.invalidate() == 2
        assert resolver.cache.stats()["size"] == 0

    def test_invalidate_scope_dispatch(self, resolver):
        resolver.resolve(ScopeQuery(project="alpha"))
        assert resolver.invalidate_scope(ProjectScope("alpha")) == 1
        with pytest.raises(TypeError):
            resolver.invalidate_scope("project:alpha")

    def test_project_name_with_wildcard_chars_matches_literally(self, resolver):
        resolver.resolve(ScopeQuery(project="a*"))
        resolver.resolve(ScopeQuery(project="ab"))
        assert resolver.invalidate_project("a*") == 1
        assert resolver.cache.stats()["keys"] == ["global|project:ab"]

    def test_project_name_containing_key_separator(self, clock):
        store = CountingInstructionStore([_instr(1, ProjectScope("r&d|infra"))])
        resolver = InstructionResolver(store, InstructionCache(default_ttl=300, clock=clock))
        query = ScopeQuery(project="r&d|infra")
        resolver.resolve(query)
        assert resolver.invalidate_project("r&d|infra") == 1
        resolver.resolve(query)
        assert store.calls == 2

    def test_category_invalidation_does_not_touch_lookalike_project(self, resolver):
        resolver.resolve(ScopeQuery(project="x|category:research"))
        resolver.resolve(ScopeQuery(category="research"))
        assert resolver.invalidate_category("research") == 1
        assert resolver.cache.stats()["keys"] == ["global|project:x|category:research"]


class TestFailures:

    def test_store_failure_without_cache_raises(self, resolver, instruction_store):
        instruction_store.fail = True
        with pytest.raises(InstructionStoreUnavailable):
            resolver.resolve(ScopeQuery(project="alpha"))

    def test_store_failure_serves_stale(self, resolver, instruction_store, clock):
        query = ScopeQuery(project="alpha")
        fresh = resolver.resolve(query)
        clock.advance(1000)
        instruction_store.fail = True
        stale = resolver.resolve(query)
        assert stale == fresh

    def test_store_failure_after_invalidation_raises(self, resolver, instruction_store):
        query = ScopeQuery(project="alpha")
        resolver.resolve(query)
        resolver.invalidate_project("alpha")
        instruction_store.fail = True
        with pytest.raises(InstructionStoreUnavailable):
            resolver.resolve(query)


class TestConcurrency:

    def test_fill_racing_invalidation_is_discarded(self, clock):
        """A resolution that started before an invalidation must not cache its result."""
        cache = InstructionCache(default_ttl=300, clock=clock)
        started = threading.Event()
        release = threading.Event()

        class SlowStore(CountingInstructionStore):
            def query_instructions(self, query):
                result = super().query_instructions(query)
                started.set()
                release.wait(5)
                return result

        store = SlowStore([_instr(1, ProjectScope("alpha"))])
        resolver = InstructionResolver(store, cache)
        query = ScopeQuery(project="alpha")

        worker = threading.Thread(target=resolver.resolve, args=(query,))
        worker.start()
        assert started.wait(5)
        store.instructions = [_instr(2, ProjectScope("alpha"))]
        resolver.invalidate_project("alpha")
        release.set()
        worker.join(5)

        assert cache.stats()["size"] == 0
        assert [i.id for i in resolver.resolve(query)] == [2]

    def test_concurrent_resolves(self, resolver):
        results = []
        errors = []

        def work():
            try:
                for _ in range(50):
                    results.append(resolver.resolve(ScopeQuery(project="alpha")))
                    resolver.invalidate_project("alpha")
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=work) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert not errors
        assert all([i.id for i in r] == [2, 5, 1] for r in results)


class TestCacheMaintenance:

    def test_cleanup_drops_expired(self, clock):
        cache = InstructionCache(default_ttl=10, clock=clock)
        cache.set("global", [])
        cache.set("project:alpha", [], ttl=100)
        clock.advance(20)
        assert cache.stats()["expired"] == 1
        assert cache.cleanup() == 1
        assert cache.stats()["keys"] == ["project:alpha"]

    def test_expired_entry_not_returned_by_get(self, clock):
        cache = InstructionCache(default_ttl=10, clock=clock)
        cache.set("global", [_instr(1, GlobalScope())])
        clock.advance(11)
        assert cache.get("global") is None
        assert cache.get_stale("global") is not None


def test_sort_instructions():
    items = [
        _instr(1, GlobalScope(), priority=1, created_at="2026-03-01T00:00:00"),
        _instr(2, GlobalScope(), priority=3, created_at="2026-01-01T00:00:00"),
        _instr(3, GlobalScope(), priority=3, created_at="2026-02-01T00:00:00"),
    ]
    assert [i.id for i in sort_instructions(items)] == [3, 2, 1]
