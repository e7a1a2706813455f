"""
Instruction resolution with a TTL cache.

An instruction applies to a scope: global, a project, or a category.
Reports ask for the union of instructions over a scope combination
(e.g. global + project "alpha" + category "research"). Resolved sets are
cached under a key built from the normalized, sorted scope components:

    "category:research|global|project:alpha"

A change to one instruction can affect many composite keys. Each entry
remembers the scopes it was resolved for, and scope invalidation removes
every entry holding that scope. Free-form invalidation matches wildcard
patterns against keys and key components.

The cache is shared by concurrent report requests. All access goes
through one lock. A generation counter, bumped by every invalidation,
keeps a resolution that raced an invalidation from writing its (possibly
stale) result back.
"""

import copy
import fnmatch
import logging
import threading
import time
from dataclasses import dataclass
from collections.abc import Iterable
from typing import Callable, Optional

from .errors import InstructionStoreUnavailable
from .protocol import InstructionStoreProtocol
from .types import (
    CategoryScope,
    GlobalScope,
    Instruction,
    ProjectScope,
    Scope,
    ScopeQuery,
    parse_scope,
)

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300.0
KEY_SEPARATOR = "|"


@dataclass(frozen=True)
class CacheEntry:
    key: str
    instructions: tuple[Instruction, ...]
    created_at: float
    ttl: float
    scopes: frozenset = frozenset()

    def expired(self, now: float) -> bool:
        return now - self.created_at > self.ttl


def cache_key(query: ScopeQuery) -> str:
    """Deterministic cache key for a scope combination. Empty query -> ''."""
    return KEY_SEPARATOR.join(sorted(scope.key for scope in query.scopes()))


def _key_components(key: str) -> list[str]:
    return key.split(KEY_SEPARATOR) if key else []


def _scopes_from_key(key: str) -> frozenset:
    scopes = set()
    for component in _key_components(key):
        kind, _, name = component.partition(":")
        try:
            scopes.add(parse_scope(kind, name or None))
        except ValueError:
            continue
    return frozenset(scopes)


class InstructionCache:
    """
    Thread-safe TTL cache of resolved instruction sets.

    Expired entries are kept until cleanup() so that a failing store can
    still be answered from the last known value (see get_stale). Entries
    removed by invalidation are gone for good.
    """

    def __init__(self, default_ttl: float = DEFAULT_TTL_SECONDS,
                 clock: Callable[[], float] = time.monotonic):
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._generation = 0

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    def get(self, key: str) -> Optional[list[Instruction]]:
        """Cached instructions for key, or None if missing or expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.expired(self._clock()):
                return None
            return copy.deepcopy(list(entry.instructions))

    def get_stale(self, key: str) -> Optional[list[Instruction]]:
        """Cached instructions for key regardless of expiry."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            return copy.deepcopy(list(entry.instructions))

    def set(self, key: str, instructions: list[Instruction],
            ttl: Optional[float] = None, generation: Optional[int] = None,
            scopes: Optional[Iterable[Scope]] = None) -> bool:
        """
        Store a resolved set.

        Args:
            key: Cache key from cache_key()
            instructions: Resolved instructions (a copy is stored)
            ttl: Seconds to live; defaults to the cache default
            generation: Generation observed before the store was queried.
                If an invalidation happened since, nothing is stored.
            scopes: Scopes the set was resolved for; parsed from the key
                when omitted

        Returns:
            True if the entry was stored
        """
        entry = CacheEntry(
            key=key,
            instructions=tuple(copy.deepcopy(instructions)),
            created_at=self._clock(),
            ttl=self.default_ttl if ttl is None else ttl,
            scopes=_scopes_from_key(key) if scopes is None else frozenset(scopes),
        )
        with self._lock:
            if generation is not None and generation != self._generation:
                logger.debug("Discarding cache fill for %r: invalidated meanwhile", key)
                return False
            self._entries[key] = entry
            return True

    def invalidate(self, pattern: Optional[str] = None) -> int:
        """
        Remove entries matching a wildcard pattern.

        The pattern (fnmatch syntax, '*' wildcard) is tested against the
        whole key and against each scope component of the key. No pattern
        clears everything.

        Returns:
            Number of entries removed
        """
        with self._lock:
            self._generation += 1
            if pattern is None:
                count = len(self._entries)
                self._entries.clear()
                return count
            pattern = pattern.strip().lower()
            doomed = [
                key for key in self._entries
                if fnmatch.fnmatchcase(key, pattern)
                or any(fnmatch.fnmatchcase(c, pattern) for c in _key_components(key))
            ]
            for key in doomed:
                del self._entries[key]
        if doomed:
            logger.debug("Invalidated %d instruction cache entries for %r", len(doomed), pattern)
        return len(doomed)

    def invalidate_containing(self, scope: Scope) -> int:
        """Remove every entry resolved for a scope set that includes scope."""
        with self._lock:
            self._generation += 1
            doomed = [key for key, e in self._entries.items() if scope in e.scopes]
            for key in doomed:
                del self._entries[key]
        if doomed:
            logger.debug("Invalidated %d instruction cache entries for %s", len(doomed), scope.key)
        return len(doomed)

    def invalidate_project(self, name: str) -> int:
        return self.invalidate_containing(ProjectScope(name))

    def invalidate_category(self, name: str) -> int:
        return self.invalidate_containing(CategoryScope(name))

    def invalidate_global(self) -> int:
        return self.invalidate_containing(GlobalScope())

    def clear(self) -> None:
        self.invalidate(None)

    def cleanup(self) -> int:
        """Drop expired entries. Returns the number removed."""
        with self._lock:
            now = self._clock()
            expired = [k for k, e in self._entries.items() if e.expired(now)]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def stats(self) -> dict:
        with self._lock:
            now = self._clock()
            return {
                "size": len(self._entries),
                "keys": sorted(self._entries),
                "expired": sum(1 for e in self._entries.values() if e.expired(now)),
            }


def sort_instructions(instructions: list[Instruction]) -> list[Instruction]:
    """Priority descending, then newest first."""
    ordered = sorted(instructions, key=lambda i: i.created_at or "", reverse=True)
    return sorted(ordered, key=lambda i: i.priority, reverse=True)


class InstructionResolver:
    """
    Resolves the instructions that apply to a scope combination.

    Reads through the cache; on a miss queries the instruction store for the
    union of the requested scopes. When the store fails, the last cached
    value is served even if expired; with nothing cached the failure
    propagates as InstructionStoreUnavailable.
    """

    def __init__(self, store: InstructionStoreProtocol, cache: InstructionCache,
                 default_ttl: Optional[float] = None):
        self._store = store
        self._cache = cache
        self.default_ttl = cache.default_ttl if default_ttl is None else default_ttl

    @property
    def cache(self) -> InstructionCache:
        return self._cache

    def resolve(self, query: ScopeQuery, ttl: Optional[float] = None) -> list[Instruction]:
        """
        Instructions applying to the query's scopes, highest priority first.

        Args:
            query: Which scopes to include
            ttl: Optional cache lifetime; only shorter values than the
                default take effect
        """
        key = cache_key(query)
        if not key:
            return []

        cached = self._cache.get(key)
        if cached is not None:
            return cached

        generation = self._cache.generation
        try:
            found = self._store.query_instructions(query)
        except Exception as e:
            stale = self._cache.get_stale(key)
            if stale is not None:
                logger.warning("Instruction store failed (%s); serving cached %r", e, key)
                return stale
            raise InstructionStoreUnavailable(
                f"Instruction store unavailable for {key}: {e}"
            ) from e

        instructions = sort_instructions(self._matching(found, query))
        effective_ttl = self.default_ttl if ttl is None else min(ttl, self.default_ttl)
        self._cache.set(key, instructions, ttl=effective_ttl, generation=generation,
                        scopes=query.scopes())
        return copy.deepcopy(instructions)

    @staticmethod
    def _matching(instructions: list[Instruction], query: ScopeQuery) -> list[Instruction]:
        """Keep only instructions whose scope is part of the query."""
        wanted = set(query.scopes())
        return [i for i in instructions if i.scope in wanted]

    def invalidate(self, pattern: Optional[str] = None) -> int:
        return self._cache.invalidate(pattern)

    def invalidate_project(self, name: str) -> int:
        return self._cache.invalidate_project(name)

    def invalidate_category(self, name: str) -> int:
        return self._cache.invalidate_category(name)

    def invalidate_global(self) -> int:
        return self._cache.invalidate_global()

    def invalidate_scope(self, scope) -> int:
        """Invalidate every key that includes the given scope."""
        match scope:
            case GlobalScope():
                return self.invalidate_global()
            case ProjectScope(name=name):
                return self.invalidate_project(name)
            case CategoryScope(name=name):
                return self.invalidate_category(name)
        raise TypeError(f"Not a scope: {scope!r}")

