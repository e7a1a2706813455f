"""Tests for embedding providers and the provider registry."""

import sys
from unittest.mock import MagicMock, patch

import pytest
import requests

from memctx.errors import EmbeddingUnavailable
from memctx.providers import ProviderRegistry, get_registry, prepare_text
from memctx.providers.base import MAX_EMBED_CHARS, EmbeddingProvider
from memctx.providers.embeddings import OllamaEmbedding, SentenceTransformerEmbedding
from memctx.providers.ollama_utils import ollama_base_url


class TestPrepareText:

    def test_whitespace_collapsed(self):
        assert prepare_text("  a\n\tb   c ") == "a b c"

    def test_noise_removed(self):
        assert prepare_text("fix → bug ✓ now") == "fix bug now"

    def test_truncated_on_word_boundary(self):
        text = " ".join(["word"] * 200)
        prepared = prepare_text(text)
        assert len(prepared) <= MAX_EMBED_CHARS
        assert prepared.endswith("word")

    @pytest.mark.parametrize("text", ["", "   ", "→ ✓"])
    def test_empty_rejected(self, text):
        with pytest.raises(ValueError):
            prepare_text(text)


class TestRegistry:

    def test_builtins_registered(self):
        assert {"sentence-transformers", "ollama"} <= set(get_registry().list_embedding())

    def test_unknown_provider(self):
        with pytest.raises(ValueError, match="Unknown embedding provider"):
            ProviderRegistry().create_embedding("nope")

    def test_params_passed_to_factory(self):
        registry = ProviderRegistry()
        registry.register_embedding("st", SentenceTransformerEmbedding)
        provider = registry.create_embedding("st", {"model": "tiny"})
        assert provider.model_name == "tiny"
        assert not provider.is_loaded
        assert isinstance(provider, EmbeddingProvider)


class TestSentenceTransformer:

    def test_missing_library_is_unavailable(self, monkeypatch):
        monkeypatch.setitem(sys.modules, "sentence_transformers", None)
        provider = SentenceTransformerEmbedding()
        with pytest.raises(EmbeddingUnavailable, match="Failed to load"):
            provider.embed("hello")


class TestOllama:

    def _provider(self):
        provider = OllamaEmbedding(base_url="http://ollama.test:11434")
        provider._ready = True
        return provider

    def test_base_url(self, monkeypatch):
        monkeypatch.delenv("OLLAMA_HOST", raising=False)
        assert ollama_base_url() == "http://localhost:11434"
        assert ollama_base_url("gpu-box:11434/") == "http://gpu-box:11434"
        monkeypatch.setenv("OLLAMA_HOST", "https://remote")
        assert ollama_base_url() == "https://remote"

    def test_embed(self):
        response = MagicMock(ok=True)
        response.json.return_value = {"embedding": [0.1, 0.2, 0.3]}
        with patch("memctx.providers.embeddings.requests.post", return_value=response) as post:
            provider = self._provider()
            assert provider.embed("hello  world") == [0.1, 0.2, 0.3]
        assert post.call_args.kwargs["json"] == {"model": "nomic-embed-text", "prompt": "hello world"}
        assert provider.dimension == 3

    def test_http_error(self):
        response = MagicMock(ok=False, status_code=500, text="boom")
        with patch("memctx.providers.embeddings.requests.post", return_value=response):
            with pytest.raises(EmbeddingUnavailable, match="HTTP 500"):
                self._provider().embed("hello")

    def test_connection_error(self):
        with patch("memctx.providers.embeddings.requests.post",
                   side_effect=requests.ConnectionError("refused")):
            with pytest.raises(EmbeddingUnavailable):
                self._provider().embed("hello")

    def test_unreachable_server(self):
        provider = OllamaEmbedding(base_url="http://ollama.test:11434")
        with patch("memctx.providers.ollama_utils.requests.get",
                   side_effect=requests.ConnectionError("refused")):
            with pytest.raises(EmbeddingUnavailable, match="Cannot reach Ollama"):
                provider.embed("hello")
