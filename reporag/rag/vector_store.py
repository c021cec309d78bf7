"""
Vector store for content units.

Manages ChromaDB storage and nearest-neighbour retrieval of content units,
always scoped to a single ingestion run.
"""

import logging
import os
from dataclasses import dataclass
from typing import Dict, List, Optional, Set

import chromadb
from chromadb.config import Settings as ChromaSettings

from reporag.errors import classify_exception

logger = logging.getLogger(__name__)


@dataclass
class ContentUnit:
    """One embedded unit of content belonging to an ingestion run."""
    id: str
    run_id: str
    content: str
    seq: int
    source_path: str = ""
    content_hash: str = ""
    embedding: Optional[List[float]] = None
    distance: Optional[float] = None

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "run_id": self.run_id,
            "content": self.content,
            "seq": self.seq,
            "source_path": self.source_path,
            "content_hash": self.content_hash,
            "distance": self.distance,
        }


def content_unit_id(run_id: str, source_path: str, chunk_index: int) -> str:
    """Deterministic unit id, so a retried step writes the same ids again."""
    return f"{run_id}::{source_path}::{chunk_index}"


class VectorStore:
    """
    Content units in a ChromaDB collection, using cosine distance.

    This class handles:
    - Writing units tagged with their run id
    - Top-k retrieval restricted to one run
    - Removing every unit of a run (saga compensation)
    """

    def __init__(self, collection):
        self.collection = collection

    @classmethod
    def from_settings(cls, settings) -> "VectorStore":
        """Connect to a Chroma server when chroma_host is set, else use local persistence."""
        chroma_settings = ChromaSettings(anonymized_telemetry=False)
        if settings.chroma_host:
            client = chromadb.HttpClient(
                host=settings.chroma_host,
                port=settings.chroma_port,
                settings=chroma_settings,
            )
        else:
            os.makedirs(settings.chroma_persist_directory, exist_ok=True)
            client = chromadb.PersistentClient(
                path=settings.chroma_persist_directory,
                settings=chroma_settings,
            )
        return cls.from_client(client, settings.chroma_collection_name)

    @classmethod
    def from_client(cls, client, collection_name: str) -> "VectorStore":
        collection = client.get_or_create_collection(
            name=collection_name,
            embedding_function=None,  # embeddings are computed by the caller
            metadata={"hnsw:space": "cosine"},  # Use cosine similarity
        )
        return cls(collection)

    def upsert(
        self,
        run_id: str,
        content: str,
        embedding: List[float],
        *,
        source_path: str = "",
        chunk_index: int = 0,
        seq: int = 0,
        content_hash: str = "",
    ) -> str:
        """
        Write one content unit. Writing the same id twice leaves a single unit.

        Returns:
            The unit id
        """
        unit_id = content_unit_id(run_id, source_path, chunk_index)
        try:
            self.collection.upsert(
                ids=[unit_id],
                embeddings=[list(embedding)],
                documents=[content],
                metadatas=[{
                    "run_id": run_id,
                    "seq": seq,
                    "source_path": source_path,
                    "chunk_index": chunk_index,
                    "content_hash": content_hash,
                }],
            )
        except Exception as e:
            raise classify_exception(e, f"vector store upsert {unit_id}") from e
        return unit_id

    def query(self, run_id: str, embedding: List[float], k: int = 5) -> List[ContentUnit]:
        """
        Nearest content units of one run.

        Ordered by ascending cosine distance, ties broken by insertion
        sequence. A run with no units yields an empty list.
        """
        if k <= 0:
            return []

        count = self.count(run_id)
        if count == 0:
            return []

        # Over-fetch so that ties at the k boundary are settled by seq, not by the index.
        n_results = min(count, k * 2)
        try:
            results = self.collection.query(
                query_embeddings=[list(embedding)],
                n_results=n_results,
                where={"run_id": run_id},
                include=["documents", "metadatas", "distances"],
            )
        except Exception as e:
            raise classify_exception(e, f"vector store query for {run_id}") from e

        units = []
        if results["ids"] and results["ids"][0]:
            for i, unit_id in enumerate(results["ids"][0]):
                metadata = results["metadatas"][0][i] or {}
                units.append(ContentUnit(
                    id=unit_id,
                    run_id=metadata.get("run_id", run_id),
                    content=results["documents"][0][i],
                    seq=int(metadata.get("seq", 0)),
                    source_path=metadata.get("source_path", ""),
                    content_hash=metadata.get("content_hash", ""),
                    distance=float(results["distances"][0][i]),
                ))

        units.sort(key=lambda unit: (unit.distance, unit.seq))
        return units[:k]

    def count(self, run_id: str) -> int:
        """Number of units written for a run."""
        return len(self.existing_ids(run_id))

    def existing_ids(self, run_id: str) -> Set[str]:
        try:
            results = self.collection.get(where={"run_id": run_id}, include=[])
        except Exception as e:
            raise classify_exception(e, f"vector store lookup for {run_id}") from e
        return set(results["ids"])

    def delete_run(self, run_id: str) -> int:
        """
        Remove every unit of a run.

        Returns:
            Number of units removed
        """
        ids = sorted(self.existing_ids(run_id))
        if not ids:
            return 0

        batch_size = 100
        try:
            for i in range(0, len(ids), batch_size):
                self.collection.delete(ids=ids[i:i + batch_size])
        except Exception as e:
            raise classify_exception(e, f"vector store delete for {run_id}") from e

        logger.info(f"Deleted {len(ids)} content units of {run_id}")
        return len(ids)

    def stats(self) -> Dict:
        """Get statistics about the indexed collection."""
        return {
            "total_units": self.collection.count(),
            "collection_name": self.collection.name,
        }
