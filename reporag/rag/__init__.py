"""RAG pipeline over ingested repositories."""

from .embeddings import ContentEmbedder
from .vector_store import ContentUnit, VectorStore
from .pipeline import QueryResult, RetrievalPipeline

__all__ = [
    "ContentEmbedder",
    "ContentUnit",
    "VectorStore",
    "QueryResult",
    "RetrievalPipeline",
]
