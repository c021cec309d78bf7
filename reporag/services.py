"""
Service wiring.

Builds every long-lived collaborator from one Settings value. Entry points
(API, CLI) call build_services once; core classes never read settings
globally.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from reporag.config import Settings
from reporag.database.connection import Database
from reporag.database.service import RunRegistry, SagaStepLedger
from reporag.graph.activities import IngestionActivities
from reporag.graph.workflow import IngestionRunner
from reporag.integrations.git_fetcher import GitFetcher
from reporag.integrations.github_client import GitHubClient
from reporag.integrations.object_store import ObjectStore, create_object_store
from reporag.rag.embeddings import ContentEmbedder, create_embeddings
from reporag.rag.llm import create_llm
from reporag.rag.pipeline import RetrievalPipeline
from reporag.rag.vector_store import VectorStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    database: Database
    registry: RunRegistry
    ledger: SagaStepLedger
    object_store: ObjectStore
    vector_store: VectorStore
    runner: IngestionRunner
    pipeline: RetrievalPipeline
    github: Optional[GitHubClient] = None

    def close(self):
        self.database.dispose()


def build_services(settings: Settings) -> Services:
    """Create the database, stores, models, saga runner and retrieval pipeline."""
    database = Database(settings.database_url)
    database.init_db()

    registry = RunRegistry(database)
    ledger = SagaStepLedger(database)
    object_store = create_object_store(settings)
    vector_store = VectorStore.from_settings(settings)
    embedder = ContentEmbedder(
        create_embeddings(settings),
        chunk_size=settings.chunk_size,
        chunk_overlap=settings.chunk_overlap,
        dimensions=settings.embedding_dimensions,
    )

    github = None
    if settings.github_token:
        github = GitHubClient(settings.github_token)
    else:
        logger.info("No GitHub token configured; repository preflight checks disabled")

    activities = IngestionActivities(
        settings,
        object_store=object_store,
        vector_store=vector_store,
        embedder=embedder,
        fetcher=GitFetcher(timeout=settings.medium_timeout),
        registry=registry,
        github=github,
    )
    runner = IngestionRunner(settings, registry, ledger, activities)
    pipeline = RetrievalPipeline(
        settings,
        registry=registry,
        vector_store=vector_store,
        embedder=embedder,
        llm=create_llm(settings),
        object_store=object_store,
    )

    return Services(
        settings=settings,
        database=database,
        registry=registry,
        ledger=ledger,
        object_store=object_store,
        vector_store=vector_store,
        runner=runner,
        pipeline=pipeline,
        github=github,
    )
