"""
Base provider protocols.

These define the interfaces that concrete providers must implement.
Using Protocol for structural subtyping - no explicit inheritance required.
"""

import re
from typing import Protocol, runtime_checkable


# -----------------------------------------------------------------------------
# Embedding Generation
# -----------------------------------------------------------------------------

@runtime_checkable
class EmbeddingProvider(Protocol):
    """
    Generates vector embeddings from text.

    Embeddings enable semantic similarity search. The same provider
    configuration must be used for both indexing and querying so that
    vectors stay comparable; mixing dimensions within a corpus makes those
    items invisible to search.

    Implementations load their model lazily and must be safe to call from
    several threads at once. Any failure to produce a vector is raised as
    memctx.errors.EmbeddingUnavailable.

    Example implementation:
        class SentenceTransformerEmbedding:
            def __init__(self, model: str = "all-MiniLM-L6-v2"):
                from sentence_transformers import SentenceTransformer
                self.model = SentenceTransformer(model)

            @property
            def dimension(self) -> int:
                return self.model.get_sentence_embedding_dimension()

            def embed(self, text: str) -> list[float]:
                return self.model.encode(text).tolist()

            def embed_batch(self, texts: list[str]) -> list[list[float]]:
                return self.model.encode(texts).tolist()
    """

    @property
    def dimension(self) -> int:
        """The dimensionality of the embedding vectors."""
        ...

    def embed(self, text: str) -> list[float]:
        """
        Generate an embedding vector for the given text.

        Args:
            text: The text to embed

        Returns:
            A list of floats representing the embedding vector

        Raises:
            EmbeddingUnavailable: model missing, timed out, or failed
        """
        ...

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """
        Generate embeddings for multiple texts.

        Batch processing is often more efficient than individual calls.
        """
        ...


# -----------------------------------------------------------------------------
# Text preparation
# -----------------------------------------------------------------------------

MAX_EMBED_CHARS = 400
# When truncating, only back off to a word boundary past this point
MIN_WORD_BOUNDARY = 300

_WHITESPACE_RE = re.compile(r"\s+")
# Keep word characters, whitespace and common punctuation
_NOISE_RE = re.compile(r"[^\w\s\-.,!?;:()\[\]{}'\"@#$%&]")


def prepare_text(text: str) -> str:
    """
    Clean text before embedding.

    Collapses whitespace, drops unusual symbols, and truncates to
    MAX_EMBED_CHARS (small sentence models have short token windows),
    ending on a word boundary when one is reasonably close.

    Raises:
        ValueError: if nothing is left to embed
    """
    if not text or not text.strip():
        raise ValueError("Cannot generate embedding for empty text")
    cleaned = _WHITESPACE_RE.sub(" ", text)
    cleaned = _NOISE_RE.sub(" ", cleaned)
    cleaned = _WHITESPACE_RE.sub(" ", cleaned).strip()
    if len(cleaned) > MAX_EMBED_CHARS:
        cleaned = cleaned[:MAX_EMBED_CHARS].strip()
        last_space = cleaned.rfind(" ")
        if last_space > MIN_WORD_BOUNDARY:
            cleaned = cleaned[:last_space]
    if not cleaned:
        raise ValueError("Cannot generate embedding for empty text")
    return cleaned
