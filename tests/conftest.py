"""
Shared pytest fixtures for memctx tests.

Provides mock embedding providers to avoid loading ML models during
testing, plus a throwaway SQLite store per test.
"""

import re
import time
from datetime import datetime, timezone

import pytest

from memctx.api import ContextEngine
from memctx.config import StoreConfig
from memctx.context import ContextAggregator
from memctx.document_store import ContextStore
from memctx.errors import EmbeddingUnavailable
from memctx.instructions import InstructionCache, InstructionResolver
from memctx.types import Instruction, ScopeQuery

_WORD_RE = re.compile(r"\w+")


class WordEmbeddingProvider:
    """
    Deterministic bag-of-words embedding for testing.

    Every distinct lower-cased word gets its own dimension, so texts
    sharing words are similar and texts with no common word have
    similarity 0. No model loading.
    """

    dimension = 512

    def __init__(self):
        self.embed_calls = 0
        self.batch_calls = 0
        self._vocab: dict[str, int] = {}

    def embed(self, text: str) -> list[float]:
        self.embed_calls += 1
        vector = [0.0] * self.dimension
        for word in _WORD_RE.findall(text.lower()):
            index = self._vocab.setdefault(word, len(self._vocab) % self.dimension)
            vector[index] += 1.0
        if not any(vector):
            raise ValueError("Cannot generate embedding for empty text")
        return vector

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        self.batch_calls += 1
        return [self.embed(t) for t in texts]


class ConstantEmbeddingProvider:
    """Returns the same vector for any text."""

    def __init__(self, vector: list[float]):
        self.vector = list(vector)
        self.dimension = len(vector)
        self.embed_calls = 0

    def embed(self, text: str) -> list[float]:
        self.embed_calls += 1
        return list(self.vector)

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [self.embed(t) for t in texts]


class FailingEmbeddingProvider:
    """Fails on every call, like a model that cannot be loaded."""

    dimension = 512

    def __init__(self):
        self.embed_calls = 0

    def embed(self, text: str) -> list[float]:
        self.embed_calls += 1
        raise EmbeddingUnavailable("model not available")

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        raise EmbeddingUnavailable("model not available")


class SlowEmbeddingProvider:
    """Takes longer than any test timeout."""

    dimension = 3

    def __init__(self, delay: float = 1.0):
        self.delay = delay

    def embed(self, text: str) -> list[float]:
        time.sleep(self.delay)
        return [1.0, 0.0, 0.0]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [self.embed(t) for t in texts]


class CountingInstructionStore:
    """In-memory instruction store that counts queries and can be made to fail."""

    def __init__(self, instructions: list[Instruction] | None = None):
        self.instructions = list(instructions or [])
        self.calls = 0
        self.fail = False

    def query_instructions(self, query: ScopeQuery) -> list[Instruction]:
        self.calls += 1
        if self.fail:
            raise RuntimeError("instruction store offline")
        wanted = set(query.scopes())
        return [i for i in self.instructions if i.scope in wanted]


class FakeClock:
    """Monotonic clock under test control."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def now():
    """Fixed request time: 2026-03-10 12:00 UTC."""
    return datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def word_embedder():
    return WordEmbeddingProvider()


@pytest.fixture
def store(tmp_path):
    """A fresh SQLite store."""
    s = ContextStore(tmp_path / "memctx.db")
    yield s
    s.close()


@pytest.fixture
def cache():
    return InstructionCache(default_ttl=300)


@pytest.fixture
def make_aggregator(store, cache):
    """Build an aggregator over the test store with a chosen embedder."""

    def _make(embedder=None, config=None):
        resolver = InstructionResolver(store, cache)
        return ContextAggregator(
            projects=store, notes=store, tasks=store,
            resolver=resolver, embedder=embedder, config=config,
        )

    return _make


@pytest.fixture
def engine(tmp_path, store, word_embedder):
    """ContextEngine over the test store and the word embedder."""
    e = ContextEngine(config=StoreConfig(path=tmp_path), store=store, embedder=word_embedder)
    yield e
    e.close()


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (loading real ML models)"
    )
    config.addinivalue_line(
        "markers", "e2e: marks tests as end-to-end (require real providers)"
    )
