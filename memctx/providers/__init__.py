"""
Provider registry.

Built-in providers are registered by name when the registry is first
created; the store config selects one by name:

    [embedding]
    name = "sentence-transformers"
    model = "all-MiniLM-L6-v2"
"""

import logging
import threading
from typing import Any, Callable, Optional

from .base import EmbeddingProvider, prepare_text

logger = logging.getLogger(__name__)

__all__ = ["EmbeddingProvider", "ProviderRegistry", "get_registry", "prepare_text"]


class ProviderRegistry:
    """Maps provider names to factories."""

    def __init__(self):
        self._embedding: dict[str, Callable[..., EmbeddingProvider]] = {}

    def register_embedding(self, name: str, factory: Callable[..., EmbeddingProvider]) -> None:
        self._embedding[name] = factory

    def list_embedding(self) -> list[str]:
        return sorted(self._embedding)

    def create_embedding(self, name: str, params: Optional[dict[str, Any]] = None) -> EmbeddingProvider:
        """
        Instantiate a registered embedding provider.

        Raises:
            ValueError: unknown provider name
        """
        factory = self._embedding.get(name)
        if factory is None:
            available = ", ".join(self.list_embedding()) or "none"
            raise ValueError(f"Unknown embedding provider {name!r} (available: {available})")
        logger.debug("Creating embedding provider %s %s", name, params or {})
        return factory(**(params or {}))


_registry: Optional[ProviderRegistry] = None
_registry_lock = threading.Lock()


def get_registry() -> ProviderRegistry:
    """The process registry, with built-in providers loaded."""
    global _registry
    with _registry_lock:
        if _registry is None:
            from .embeddings import register_builtin_providers
            registry = ProviderRegistry()
            register_builtin_providers(registry)
            _registry = registry
    return _registry
