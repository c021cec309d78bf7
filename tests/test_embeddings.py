"""
Unit tests for content splitting, embedding validation and model construction.
"""

from unittest.mock import Mock

import pytest
from langchain_ollama import ChatOllama, OllamaEmbeddings

from reporag.errors import MalformedResponseError, PermanentError, TransientError
from reporag.rag.embeddings import ContentEmbedder, content_hash, create_embeddings
from reporag.rag.llm import create_llm


class TestContentEmbedder:
    """Tests for ContentEmbedder."""

    def test_short_content_is_one_unit(self, embeddings):
        """Test content within the chunk size is not split."""
        embedder = ContentEmbedder(embeddings, chunk_size=100)

        assert embedder.split("short file") == ["short file"]

    def test_long_content_is_split(self, embeddings):
        """Test content above the chunk size is split into bounded pieces."""
        embedder = ContentEmbedder(embeddings, chunk_size=30, chunk_overlap=0)
        content = "## One\n\nalpha beta gamma delta\n\n## Two\n\nepsilon zeta eta theta"

        pieces = embedder.split(content)

        assert len(pieces) > 1
        assert all(len(piece) <= 30 for piece in pieces)

    def test_embed_one_vector_per_text(self, embedder):
        """Test embedding returns one vector per input."""
        vectors = embedder.embed(["alpha", "beta"])

        assert len(vectors) == 2
        assert all(len(vector) == 16 for vector in vectors)

    def test_embed_count_mismatch(self):
        """Test a short response is malformed."""
        model = Mock()
        model.embed_documents.return_value = [[1.0, 0.0]]

        with pytest.raises(MalformedResponseError):
            ContentEmbedder(model).embed(["alpha", "beta"])

    def test_embed_empty_vector(self):
        """Test an empty vector is malformed."""
        model = Mock()
        model.embed_query.return_value = []

        with pytest.raises(MalformedResponseError):
            ContentEmbedder(model).embed_query("alpha")

    def test_embed_dimension_check(self, embeddings):
        """Test vectors of the wrong width are rejected when a width is configured."""
        embedder = ContentEmbedder(embeddings, dimensions=768)

        with pytest.raises(MalformedResponseError):
            embedder.embed(["alpha"])

    def test_embed_connection_error_is_transient(self):
        """Test an unreachable model is retryable."""
        model = Mock()
        model.embed_documents.side_effect = ConnectionRefusedError("ollama down")

        with pytest.raises(TransientError):
            ContentEmbedder(model).embed(["alpha"])

    def test_content_hash(self):
        """Test the content hash is short and stable."""
        assert content_hash("alpha") == content_hash("alpha")
        assert len(content_hash("alpha")) == 12


class TestModelFactories:
    """Tests for provider selection."""

    def test_ollama_embeddings(self, settings):
        """Test the default provider builds Ollama embeddings."""
        assert isinstance(create_embeddings(settings), OllamaEmbeddings)

    def test_ollama_llm(self, settings):
        """Test the default provider builds an Ollama chat model."""
        assert isinstance(create_llm(settings), ChatOllama)

    def test_unknown_provider(self, settings):
        """Test unknown providers are rejected."""
        settings.llm_provider = "mystery"

        with pytest.raises(ValueError):
            create_embeddings(settings)
        with pytest.raises(ValueError):
            create_llm(settings)

    def test_permanent_errors_pass_through(self):
        """Test classified errors from the model are not re-wrapped."""
        model = Mock()
        model.embed_documents.side_effect = PermanentError("bad model")

        with pytest.raises(PermanentError, match="bad model"):
            ContentEmbedder(model).embed(["alpha"])
