"""
Unit tests for the ingestion activities.
"""

import io
import threading
import zipfile
from unittest.mock import Mock

import pytest

from reporag.errors import ObjectNotFoundError, PermanentError, RepositoryNotFoundError
from reporag.graph.activities import ARCHIVE_KEY
from reporag.graph.state import RepositoryDescriptor, RunStatus
from reporag.rag.embeddings import ContentEmbedder
from conftest import FakeFetcher


RUN_ID = "ingestion-activities"


def put_archive(object_store, run_id, members):
    """Store a hand-built archive as the run's collected files."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name, content in members.items():
            archive.writestr(name, content)
    object_store.create_bucket(run_id)
    object_store.put(run_id, ARCHIVE_KEY, buffer.getvalue())


def archive_names(object_store, run_id):
    data = object_store.get(run_id, ARCHIVE_KEY)
    with zipfile.ZipFile(io.BytesIO(data)) as archive:
        return sorted(archive.namelist())


class TestProvisionScratchStorage:
    """Tests for bucket provisioning."""

    def test_provision_twice(self, activities, object_store):
        """Test provisioning is idempotent."""
        activities.provision_scratch_storage(RUN_ID)
        activities.provision_scratch_storage(RUN_ID)

        assert object_store.list_buckets() == [RUN_ID]


class TestCollectSourceFiles:
    """Tests for fetching and archiving source files."""

    def test_collect_filters_by_extension(self, activities, object_store, fetcher, repository):
        """Test only allow-listed extensions are archived."""
        activities.provision_scratch_storage(RUN_ID)

        key = activities.collect_source_files(RUN_ID, repository)

        assert key == ARCHIVE_KEY
        assert archive_names(object_store, RUN_ID) == [
            "docs/empty.md", "docs/intro.md", "docs/usage.md",
        ]
        assert fetcher.calls == [(repository.url, "main")]

    def test_collect_extension_match_ignores_case(self, activities, object_store):
        """Test .MD files match the md allow-list and the .git directory is skipped."""
        activities.fetcher = FakeFetcher({
            "a.md": "alpha",
            "b.MD": "beta",
            "c.txt": "gamma",
            ".git/config.md": "not content",
        })
        activities.provision_scratch_storage(RUN_ID)

        activities.collect_source_files(RUN_ID, RepositoryDescriptor(url="https://example.com/x.git"))

        assert archive_names(object_store, RUN_ID) == ["a.md", "b.MD"]

    def test_collect_subpath(self, activities, object_store):
        """Test only files under the requested path are archived, relative to it."""
        activities.fetcher = FakeFetcher({
            "docs/guide/start.md": "start",
            "README.md": "readme",
        })
        activities.provision_scratch_storage(RUN_ID)

        activities.collect_source_files(
            RUN_ID, RepositoryDescriptor(url="https://example.com/x.git", path="/docs/")
        )

        assert archive_names(object_store, RUN_ID) == ["guide/start.md"]

    def test_collect_all_extensions(self, activities, object_store):
        """Test an empty allow-list keeps every file."""
        activities.provision_scratch_storage(RUN_ID)

        activities.collect_source_files(
            RUN_ID, RepositoryDescriptor(url="https://example.com/x.git", file_extensions=[])
        )

        assert "docs/notes.txt" in archive_names(object_store, RUN_ID)

    def test_collect_missing_path(self, activities):
        """Test a path absent from the branch is permanent."""
        activities.provision_scratch_storage(RUN_ID)

        with pytest.raises(RepositoryNotFoundError):
            activities.collect_source_files(
                RUN_ID, RepositoryDescriptor(url="https://example.com/x.git", path="missing")
            )

    def test_collect_runs_github_preflight(self, activities):
        """Test GitHub URLs are checked before cloning."""
        activities.github = Mock()
        activities.github.is_github_url.return_value = True
        activities.provision_scratch_storage(RUN_ID)

        activities.collect_source_files(
            RUN_ID, RepositoryDescriptor(url="https://github.com/acme/x", branch="docs")
        )

        activities.github.check_branch.assert_called_once_with("https://github.com/acme/x", "docs")

    def test_collect_preflight_failure_skips_clone(self, activities, fetcher):
        """Test a failed preflight stops before git runs."""
        activities.github = Mock()
        activities.github.is_github_url.return_value = True
        activities.github.check_branch.side_effect = RepositoryNotFoundError("no such branch")
        activities.provision_scratch_storage(RUN_ID)

        with pytest.raises(RepositoryNotFoundError):
            activities.collect_source_files(
                RUN_ID, RepositoryDescriptor(url="https://github.com/acme/x", branch="nope")
            )
        assert fetcher.calls == []


class TestEmbedAndStore:
    """Tests for embedding archived files."""

    @pytest.fixture(autouse=True)
    def run(self, registry, repository):
        registry.create_run(RUN_ID, repository)

    def test_embed_one_unit_per_file(self, activities, object_store, vector_store, embeddings, repository):
        """Test each non-empty file becomes one unit."""
        activities.provision_scratch_storage(RUN_ID)
        activities.collect_source_files(RUN_ID, repository)

        count = activities.embed_and_store(RUN_ID, ARCHIVE_KEY)

        assert count == 2
        assert vector_store.existing_ids(RUN_ID) == {
            f"{RUN_ID}::docs/intro.md::0",
            f"{RUN_ID}::docs/usage.md::0",
        }
        assert sum(len(call) for call in embeddings.document_calls) == 2

    def test_embed_skips_unusable_members(self, activities, object_store, vector_store):
        """Test empty, extensionless and non-UTF-8 members are skipped but whitespace-only ones are kept."""
        put_archive(object_store, RUN_ID, {
            "guide.md": "usable",
            "blank.md": "   \n",
            "empty.md": "",
            "LICENSE": "no extension",
            "logo.md": b"\xff\xfe\x00binary",
        })

        count = activities.embed_and_store(RUN_ID, ARCHIVE_KEY)

        assert count == 2
        assert vector_store.existing_ids(RUN_ID) == {
            f"{RUN_ID}::blank.md::0",
            f"{RUN_ID}::guide.md::0",
        }

    def test_embed_twice_does_not_reembed(self, activities, object_store, vector_store, embeddings):
        """Test a retried step reuses units that are already stored."""
        put_archive(object_store, RUN_ID, {"a.md": "alpha", "b.md": "beta"})

        activities.embed_and_store(RUN_ID, ARCHIVE_KEY)
        calls = len(embeddings.document_calls)
        count = activities.embed_and_store(RUN_ID, ARCHIVE_KEY)

        assert count == 2
        assert len(embeddings.document_calls) == calls
        assert vector_store.count(RUN_ID) == 2

    def test_embed_splits_oversize_files(self, activities, object_store, vector_store, embeddings):
        """Test files longer than the chunk size become several units."""
        activities.embedder = ContentEmbedder(embeddings, chunk_size=20, chunk_overlap=0)
        put_archive(object_store, RUN_ID, {
            "long.md": "first paragraph here\n\nsecond paragraph here\n\nthird one",
        })

        count = activities.embed_and_store(RUN_ID, ARCHIVE_KEY)

        ids = vector_store.existing_ids(RUN_ID)
        assert count == len(ids) >= 2
        assert f"{RUN_ID}::long.md::0" in ids
        assert f"{RUN_ID}::long.md::1" in ids

    def test_embed_rejects_unsafe_member(self, activities, object_store):
        """Test archive members escaping the root are rejected."""
        put_archive(object_store, RUN_ID, {"../evil.md": "escape"})

        with pytest.raises(PermanentError, match="Unsafe archive member"):
            activities.embed_and_store(RUN_ID, ARCHIVE_KEY)

    def test_embed_requires_run_in_progress(self, activities, object_store, registry):
        """Test no units are written for a run that is compensating."""
        put_archive(object_store, RUN_ID, {"a.md": "alpha"})
        registry.record(RUN_ID, RunStatus.COMPENSATING)

        with pytest.raises(PermanentError):
            activities.embed_and_store(RUN_ID, ARCHIVE_KEY)

    def test_embed_stops_when_abandoned(self, activities, object_store, vector_store):
        """Test an attempt whose caller gave up writes no units."""
        put_archive(object_store, RUN_ID, {"a.md": "alpha"})
        stop = threading.Event()
        stop.set()

        with pytest.raises(PermanentError, match="abandoned"):
            activities.embed_and_store(RUN_ID, ARCHIVE_KEY, stop)

        assert vector_store.count(RUN_ID) == 0

    def test_embed_malformed_archive(self, activities, object_store):
        """Test a corrupt archive is a permanent error."""
        object_store.create_bucket(RUN_ID)
        object_store.put(RUN_ID, ARCHIVE_KEY, b"not a zip")

        with pytest.raises(PermanentError):
            activities.embed_and_store(RUN_ID, ARCHIVE_KEY)


class TestReleaseAndCompensations:
    """Tests for cleanup and compensation activities."""

    def test_release_twice(self, activities, object_store, repository):
        """Test releasing storage is idempotent."""
        activities.provision_scratch_storage(RUN_ID)
        activities.collect_source_files(RUN_ID, repository)

        activities.release_scratch_storage(RUN_ID)
        activities.release_scratch_storage(RUN_ID)

        assert not object_store.bucket_exists(RUN_ID)

    def test_delete_archive_keeps_bucket(self, activities, object_store, repository):
        """Test the collect compensation removes only the archive."""
        activities.provision_scratch_storage(RUN_ID)
        activities.collect_source_files(RUN_ID, repository)

        activities.delete_archive(RUN_ID)

        assert object_store.bucket_exists(RUN_ID)
        with pytest.raises(ObjectNotFoundError):
            object_store.get(RUN_ID, ARCHIVE_KEY)

    def test_delete_content_units(self, activities, object_store, vector_store, registry, repository):
        """Test the embed compensation removes the run's units."""
        registry.create_run(RUN_ID, repository)
        put_archive(object_store, RUN_ID, {"a.md": "alpha", "b.md": "beta"})
        activities.embed_and_store(RUN_ID, ARCHIVE_KEY)

        assert activities.delete_content_units(RUN_ID) == 2
        assert vector_store.count(RUN_ID) == 0
