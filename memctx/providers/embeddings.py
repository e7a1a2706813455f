"""
Embedding providers.

- sentence-transformers: local model, loaded lazily on first use
- ollama: HTTP embeddings from a local Ollama server
"""

import logging
import threading

import requests

from ..errors import EmbeddingUnavailable
from .base import prepare_text

logger = logging.getLogger(__name__)


class SentenceTransformerEmbedding:
    """
    Embedding provider using a sentence-transformers model.

    The first call loads the model (slow, possibly a download); later calls
    are fast. Loading happens under a lock so concurrent first requests load
    it once.
    """

    def __init__(self, model: str = "all-MiniLM-L6-v2", device: str | None = None):
        self.model_name = model
        self.device = device
        self._model = None
        self._load_lock = threading.Lock()

    def _get_model(self):
        if self._model is not None:
            return self._model
        with self._load_lock:
            if self._model is None:
                logger.info("Loading embedding model %s", self.model_name)
                try:
                    from sentence_transformers import SentenceTransformer
                    self._model = SentenceTransformer(self.model_name, device=self.device)
                except Exception as e:
                    raise EmbeddingUnavailable(
                        f"Failed to load embedding model {self.model_name}: {e}"
                    ) from e
                logger.info("Embedding model %s loaded", self.model_name)
        return self._model

    @property
    def is_loaded(self) -> bool:
        return self._model is not None

    @property
    def dimension(self) -> int:
        return self._get_model().get_sentence_embedding_dimension()

    def embed(self, text: str) -> list[float]:
        model = self._get_model()
        prepared = prepare_text(text)
        try:
            vector = model.encode(prepared, normalize_embeddings=True)
        except Exception as e:
            raise EmbeddingUnavailable(f"Embedding failed: {e}") from e
        return vector.tolist()

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        model = self._get_model()
        prepared = [prepare_text(t) for t in texts]
        try:
            vectors = model.encode(prepared, normalize_embeddings=True)
        except Exception as e:
            raise EmbeddingUnavailable(f"Batch embedding failed: {e}") from e
        return vectors.tolist()


class OllamaEmbedding:
    """
    Embedding provider using Ollama's local API.

    Respects OLLAMA_HOST env var (default: http://localhost:11434).
    The model is checked (and pulled if missing) on first use.
    """

    def __init__(
        self,
        model: str = "nomic-embed-text",
        base_url: str | None = None,
        timeout: float = 30.0,
    ):
        from .ollama_utils import ollama_base_url
        self.model = model
        self.base_url = ollama_base_url(base_url)
        self.timeout = timeout
        self._dimension: int | None = None
        self._ready = False
        self._ready_lock = threading.Lock()

    def _ensure_ready(self) -> None:
        if self._ready:
            return
        with self._ready_lock:
            if not self._ready:
                from .ollama_utils import ollama_ensure_model
                try:
                    ollama_ensure_model(self.base_url, self.model)
                except RuntimeError as e:
                    raise EmbeddingUnavailable(str(e)) from e
                self._ready = True

    @property
    def dimension(self) -> int:
        if self._dimension is None:
            self._dimension = len(self.embed("dimension probe"))
        return self._dimension

    def embed(self, text: str) -> list[float]:
        self._ensure_ready()
        prompt = prepare_text(text)
        try:
            response = requests.post(
                f"{self.base_url}/api/embeddings",
                json={"model": self.model, "prompt": prompt},
                timeout=(5, self.timeout),  # (connect, read)
            )
        except requests.RequestException as e:
            raise EmbeddingUnavailable(f"Ollama embedding request failed: {e}") from e
        if not response.ok:
            detail = response.text[:200] if response.text else ""
            raise EmbeddingUnavailable(
                f"Ollama embedding failed (model={self.model}): "
                f"HTTP {response.status_code} from {self.base_url}. {detail}"
            )
        vector = response.json().get("embedding")
        if not vector:
            raise EmbeddingUnavailable(f"Ollama returned no embedding (model={self.model})")
        self._dimension = len(vector)
        return vector

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [self.embed(t) for t in texts]


def register_builtin_providers(registry) -> None:
    registry.register_embedding("sentence-transformers", SentenceTransformerEmbedding)
    registry.register_embedding("ollama", OllamaEmbedding)
