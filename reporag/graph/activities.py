"""
Ingestion activities.

Each method is one unit of work of the ingestion saga. Activities are
idempotent: re-running one after a crash or a retry converges on the same
result, so the orchestrator can re-enter a partially executed run safely.
"""

import io
import logging
import os
import posixpath
import tempfile
import threading
import zipfile
from pathlib import Path
from typing import Optional

from reporag.database.service import RunRegistry
from reporag.errors import MalformedResponseError, PermanentError, RepositoryNotFoundError
from reporag.graph.state import RepositoryDescriptor
from reporag.integrations.git_fetcher import GitFetcher
from reporag.integrations.github_client import GitHubClient
from reporag.integrations.object_store import ObjectStore
from reporag.rag.embeddings import ContentEmbedder, content_hash
from reporag.rag.vector_store import VectorStore, content_unit_id

logger = logging.getLogger(__name__)

# Object key of the collected source archive inside a run's bucket
ARCHIVE_KEY = "files.zip"


class IngestionActivities:
    """
    The saga's steps and their compensations.

    Buckets are named after the run id, and every content unit carries the
    run id, so concurrent runs never touch each other's artifacts.
    """

    def __init__(
        self,
        settings,
        object_store: ObjectStore,
        vector_store: VectorStore,
        embedder: ContentEmbedder,
        fetcher: GitFetcher,
        registry: RunRegistry,
        github: Optional[GitHubClient] = None,
    ):
        self.settings = settings
        self.object_store = object_store
        self.vector_store = vector_store
        self.embedder = embedder
        self.fetcher = fetcher
        self.registry = registry
        self.github = github

    # ---- forward steps ----

    def provision_scratch_storage(self, run_id: str) -> str:
        """Create the run's scratch bucket. An existing bucket is reused."""
        self.object_store.create_bucket(run_id)
        logger.info(f"Provisioned scratch bucket {run_id}")
        return run_id

    def collect_source_files(self, run_id: str, repository: RepositoryDescriptor) -> str:
        """
        Fetch the repository and store the matching files as a zip archive.

        Args:
            run_id: The run identifier (also the bucket name)
            repository: What to fetch and which files to keep

        Returns:
            Object key of the archive
        """
        if self.github is not None and self.github.is_github_url(repository.url):
            self.github.check_branch(repository.url, repository.branch)

        checkouts = os.path.join(self.settings.scratch_directory, "checkouts")
        os.makedirs(checkouts, exist_ok=True)

        with tempfile.TemporaryDirectory(prefix=f"{run_id}-", dir=checkouts) as tmp:
            checkout = os.path.join(tmp, "repo")
            self.fetcher.fetch(repository.url, repository.branch, checkout)

            root = Path(checkout, repository.path) if repository.path else Path(checkout)
            if not root.is_dir():
                raise RepositoryNotFoundError(
                    f"Path '{repository.path}' not found in {repository.url} ({repository.branch})"
                )

            data, file_count = self._build_archive(root, repository.file_extensions)

        self.object_store.put(run_id, ARCHIVE_KEY, data)
        logger.info(f"Collected {file_count} files from {repository.url} into {run_id}/{ARCHIVE_KEY}")
        return ARCHIVE_KEY

    def embed_and_store(self, run_id: str, archive_key: str, stop: Optional[threading.Event] = None) -> int:
        """
        Embed every eligible archive member and write it to the vector store.

        Units already present from an earlier attempt are not embedded again.

        Args:
            run_id: The run identifier
            archive_key: Object key of the collected archive
            stop: Set when the caller has given up on this attempt; no unit
                is written once it is set

        Returns:
            Number of content units the run holds
        """
        self._check_writable(run_id, stop)

        data = self.object_store.get(run_id, archive_key)
        try:
            archive = zipfile.ZipFile(io.BytesIO(data))
        except zipfile.BadZipFile as e:
            raise MalformedResponseError(f"{run_id}/{archive_key} is not a zip archive") from e

        existing = self.vector_store.existing_ids(run_id)
        seq = 0
        embedded = 0

        with archive:
            for info in sorted(archive.infolist(), key=lambda member: member.filename):
                if info.is_dir():
                    continue
                name = info.filename
                _check_member_name(name)
                if "." not in posixpath.basename(name):
                    continue

                try:
                    content = archive.read(info).decode("utf-8")
                except UnicodeDecodeError:
                    logger.warning(f"Skipping {name}: not valid UTF-8")
                    continue
                if not content:
                    logger.debug(f"Skipping {name}: empty")
                    continue

                for chunk_index, piece in enumerate(self.embedder.split(content)):
                    unit_id = content_unit_id(run_id, name, chunk_index)
                    if unit_id not in existing:
                        vector = self.embedder.embed([piece])[0]
                        self._check_writable(run_id, stop)
                        self.vector_store.upsert(
                            run_id,
                            piece,
                            vector,
                            source_path=name,
                            chunk_index=chunk_index,
                            seq=seq,
                            content_hash=content_hash(piece),
                        )
                        embedded += 1
                    seq += 1

        logger.info(f"Stored {seq} content units for {run_id} ({embedded} newly embedded)")
        return seq

    def release_scratch_storage(self, run_id: str) -> None:
        """Delete the archive and the run's bucket. Missing ones are fine."""
        self.object_store.delete_object(run_id, ARCHIVE_KEY)
        self.object_store.delete_bucket(run_id)
        logger.info(f"Released scratch bucket {run_id}")

    # ---- compensations ----

    def discard_bucket(self, run_id: str) -> None:
        self.object_store.delete_bucket(run_id)

    def delete_archive(self, run_id: str) -> None:
        self.object_store.delete_object(run_id, ARCHIVE_KEY)

    def delete_content_units(self, run_id: str) -> int:
        return self.vector_store.delete_run(run_id)

    # ---- helpers ----

    def _check_writable(self, run_id: str, stop: Optional[threading.Event]):
        """Refuse to write units for an abandoned attempt or a run that left the forward path."""
        if stop is not None and stop.is_set():
            raise PermanentError(f"Run {run_id}: embedding attempt was abandoned")
        run = self.registry.get_run(run_id)
        if not run.status.is_in_progress:
            raise PermanentError(
                f"Run {run_id} is '{run.status.value}'; content units are only written while it is in progress"
            )

    @staticmethod
    def _build_archive(root: Path, extensions):
        """Zip the files under root whose extension is allowed (all files when none are listed)."""
        buffer = io.BytesIO()
        file_count = 0
        with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            for path in sorted(root.rglob("*")):
                relative = path.relative_to(root)
                if ".git" in relative.parts or path.is_symlink() or not path.is_file():
                    continue
                if extensions and path.suffix.lower().lstrip(".") not in extensions:
                    continue
                archive.write(path, arcname=relative.as_posix())
                file_count += 1
        return buffer.getvalue(), file_count


def _check_member_name(name: str):
    """Reject archive members that would escape the archive root."""
    parts = name.replace("\\", "/").split("/")
    if name.startswith(("/", "\\")) or ".." in parts or (len(name) > 1 and name[1] == ":"):
        raise PermanentError(f"Unsafe archive member name: {name!r}")
