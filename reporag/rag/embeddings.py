"""
Content embedding for the RAG pipeline.

Wraps a LangChain Embeddings model with the splitting and validation the
ingestion saga needs: one unit of content per file, subdivided only when a
file is longer than the configured chunk size.
"""

import hashlib
import logging
from typing import List, Optional

from langchain_text_splitters import RecursiveCharacterTextSplitter
from langchain_core.embeddings import Embeddings

from reporag.errors import MalformedResponseError, classify_exception

logger = logging.getLogger(__name__)


def create_embeddings(settings) -> Embeddings:
    """
    Create embeddings instance based on configured provider.

    Supports:
    - ollama: Free, local embeddings (default)
    - openai: OpenAI embeddings (requires API key)

    Anthropic has no embedding endpoint, so the anthropic chat provider
    embeds through OpenAI unless embedding_provider says otherwise.
    """
    provider = settings.embedding_provider or settings.llm_provider
    if provider == "ollama":
        from langchain_ollama import OllamaEmbeddings
        return OllamaEmbeddings(
            model=settings.embedding_model,
            base_url=settings.ollama_base_url,
        )
    elif provider in ("openai", "anthropic"):
        from langchain_openai import OpenAIEmbeddings
        return OpenAIEmbeddings(
            model=settings.embedding_model,
            api_key=settings.openai_api_key,
        )
    else:
        raise ValueError(f"Unknown embedding provider: {provider}")


def content_hash(content: str) -> str:
    """Short digest of a unit's content, stored alongside it."""
    return hashlib.md5(content.encode()).hexdigest()[:12]


class ContentEmbedder:
    """
    Splits file content into embeddable units and embeds them.

    Every failure from the underlying model surfaces as a TransientError or
    PermanentError; empty or mis-sized vectors are MalformedResponseError.
    """

    def __init__(
        self,
        embeddings: Embeddings,
        chunk_size: int = 8000,
        chunk_overlap: int = 200,
        dimensions: Optional[int] = None,
    ):
        self.embeddings = embeddings
        self.chunk_size = chunk_size
        self.dimensions = dimensions
        self.text_splitter = RecursiveCharacterTextSplitter(
            chunk_size=chunk_size,
            chunk_overlap=chunk_overlap,
            separators=[
                "\n## ",
                "\n### ",
                "\n\n",
                "\n",
                " ",
                "",
            ],
        )

    def split(self, content: str) -> List[str]:
        """Return the file as a single unit, or its pieces if it is oversize."""
        if len(content) <= self.chunk_size:
            return [content]
        pieces = [piece for piece in self.text_splitter.split_text(content) if piece.strip()]
        return pieces or [content]

    def embed(self, texts: List[str]) -> List[List[float]]:
        """
        Generate embeddings for a batch of texts.

        Args:
            texts: Non-empty strings to embed

        Returns:
            One vector per input text, in order
        """
        if not texts:
            return []

        try:
            vectors = self.embeddings.embed_documents(texts)
        except Exception as e:
            raise classify_exception(e, "embedding request") from e

        if vectors is None or len(vectors) != len(texts):
            raise MalformedResponseError(
                f"Embedding service returned {0 if vectors is None else len(vectors)} "
                f"vectors for {len(texts)} inputs"
            )
        return [self._validate(vector) for vector in vectors]

    def embed_query(self, text: str) -> List[float]:
        """Embed a single query string."""
        try:
            vector = self.embeddings.embed_query(text)
        except Exception as e:
            raise classify_exception(e, "query embedding request") from e
        return self._validate(vector)

    def _validate(self, vector) -> List[float]:
        if not vector:
            raise MalformedResponseError("Embedding service returned an empty vector")
        vector = [float(value) for value in vector]
        if self.dimensions and len(vector) != self.dimensions:
            raise MalformedResponseError(
                f"Expected {self.dimensions}-dimensional embedding, got {len(vector)}"
            )
        return vector
