"""
Shared fixtures.

Everything runs in-process: SQLite in tmp_path, the filesystem object store,
an ephemeral Chroma client and deterministic fake embeddings.
"""

import hashlib
import uuid
from pathlib import Path
from typing import Dict, List, Optional
from unittest.mock import Mock

import chromadb
import pytest
from chromadb.config import Settings as ChromaSettings
from langchain_core.embeddings import Embeddings
from langchain_core.messages import AIMessage

from reporag.config import Settings
from reporag.database.connection import Database
from reporag.database.service import RunRegistry, SagaStepLedger
from reporag.graph.activities import IngestionActivities
from reporag.graph.state import RepositoryDescriptor
from reporag.graph.workflow import IngestionRunner
from reporag.integrations.object_store import LocalObjectStore
from reporag.rag.embeddings import ContentEmbedder
from reporag.rag.pipeline import RetrievalPipeline
from reporag.rag.vector_store import VectorStore
from reporag.services import Services


class FakeEmbeddings(Embeddings):
    """Deterministic bag-of-words vectors; records every call."""

    def __init__(self, dimensions: int = 16):
        self.dimensions = dimensions
        self.document_calls: List[List[str]] = []
        self.query_calls: List[str] = []

    def vector(self, text: str) -> List[float]:
        vector = [0.0] * self.dimensions
        for word in text.lower().split():
            digest = hashlib.md5(word.encode()).digest()
            vector[digest[0] % (self.dimensions - 1)] += 1.0
        # bias keeps every vector non-zero under cosine distance
        vector[-1] = 1.0
        return vector

    def embed_documents(self, texts: List[str]) -> List[List[float]]:
        self.document_calls.append(list(texts))
        return [self.vector(text) for text in texts]

    def embed_query(self, text: str) -> List[float]:
        self.query_calls.append(text)
        return self.vector(text)


class FakeFetcher:
    """Stands in for GitFetcher: writes a fixed file tree into the destination."""

    def __init__(self, files: Optional[Dict[str, object]] = None, errors=None, on_fetch=None):
        self.files = files or {}
        self.errors = list(errors or [])
        self.on_fetch = on_fetch
        self.calls = []

    def fetch(self, url: str, branch: str, destination: str) -> str:
        self.calls.append((url, branch))
        if self.on_fetch:
            self.on_fetch()
        if self.errors:
            raise self.errors.pop(0)

        Path(destination).mkdir(parents=True, exist_ok=True)
        for relative, content in self.files.items():
            path = Path(destination, relative)
            path.parent.mkdir(parents=True, exist_ok=True)
            if isinstance(content, bytes):
                path.write_bytes(content)
            else:
                path.write_text(content, encoding="utf-8")
        return destination


DOCS = {
    "docs/intro.md": "# Intro\n\nX is a framework for building CRUD services.",
    "docs/usage.md": "# Usage\n\nInstall X and run the generator to scaffold a project.",
    "docs/empty.md": "",
    "docs/notes.txt": "not markdown, filtered out",
}


@pytest.fixture(scope="session")
def chroma_client():
    return chromadb.EphemeralClient(settings=ChromaSettings(anonymized_telemetry=False))


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        llm_provider="ollama",
        github_token=None,
        openai_api_key=None,
        anthropic_api_key=None,
        database_url=f"sqlite:///{tmp_path / 'reporag.db'}",
        scratch_directory=str(tmp_path / "scratch"),
        chroma_persist_directory=str(tmp_path / "chroma"),
        object_store_backend="local",
        short_timeout=10,
        medium_timeout=10,
        long_timeout=10,
        retry_max_attempts=3,
        retry_initial_interval=0.01,
        retry_backoff_factor=1.0,
        retry_max_interval=0.05,
        retry_jitter=False,
        retrieval_k=5,
        assistant_project_name="X",
    )


@pytest.fixture
def database(settings):
    db = Database(settings.database_url)
    db.init_db()
    yield db
    db.dispose()


@pytest.fixture
def registry(database):
    return RunRegistry(database)


@pytest.fixture
def ledger(database):
    return SagaStepLedger(database)


@pytest.fixture
def object_store(tmp_path):
    return LocalObjectStore(str(tmp_path / "buckets"))


@pytest.fixture
def vector_store(chroma_client):
    return VectorStore.from_client(chroma_client, f"test-{uuid.uuid4().hex}")


@pytest.fixture
def embeddings():
    return FakeEmbeddings()


@pytest.fixture
def embedder(embeddings, settings):
    return ContentEmbedder(
        embeddings,
        chunk_size=settings.chunk_size,
        chunk_overlap=settings.chunk_overlap,
    )


@pytest.fixture
def fetcher():
    return FakeFetcher(DOCS)


@pytest.fixture
def activities(settings, object_store, vector_store, embedder, fetcher, registry):
    return IngestionActivities(
        settings,
        object_store=object_store,
        vector_store=vector_store,
        embedder=embedder,
        fetcher=fetcher,
        registry=registry,
    )


@pytest.fixture
def runner(settings, registry, ledger, activities):
    return IngestionRunner(settings, registry, ledger, activities)


@pytest.fixture
def repository():
    return RepositoryDescriptor(
        url="https://example.com/acme/x.git",
        branch="main",
        file_extensions=["md"],
    )


@pytest.fixture
def llm():
    model = Mock()
    model.invoke.return_value = AIMessage(content="X is a framework for building CRUD services.")
    return model


@pytest.fixture
def pipeline(settings, registry, vector_store, embedder, llm, object_store):
    return RetrievalPipeline(
        settings,
        registry=registry,
        vector_store=vector_store,
        embedder=embedder,
        llm=llm,
        object_store=object_store,
    )


@pytest.fixture
def services(settings, database, registry, ledger, object_store, vector_store, runner, pipeline):
    return Services(
        settings=settings,
        database=database,
        registry=registry,
        ledger=ledger,
        object_store=object_store,
        vector_store=vector_store,
        runner=runner,
        pipeline=pipeline,
    )
