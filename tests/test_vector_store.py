"""
Unit tests for the Chroma-backed vector store.
"""

import pytest

from reporag.errors import PermanentError
from reporag.rag.vector_store import content_unit_id


def unit_vector(index, dimensions=8):
    vector = [0.0] * dimensions
    vector[index] = 1.0
    return vector


class TestUpsert:
    """Tests for writing content units."""

    def test_upsert_returns_deterministic_id(self, vector_store):
        """Test unit ids are derived from run, path and chunk index."""
        unit_id = vector_store.upsert(
            "ingestion-a", "hello", unit_vector(0), source_path="docs/a.md", chunk_index=0
        )

        assert unit_id == "ingestion-a::docs/a.md::0"
        assert unit_id == content_unit_id("ingestion-a", "docs/a.md", 0)

    def test_upsert_same_unit_twice(self, vector_store):
        """Test writing the same unit again leaves one unit."""
        for _ in range(2):
            vector_store.upsert("ingestion-a", "hello", unit_vector(0), source_path="a.md")

        assert vector_store.count("ingestion-a") == 1

    def test_existing_ids(self, vector_store):
        """Test existing ids are reported per run."""
        vector_store.upsert("ingestion-a", "one", unit_vector(0), source_path="a.md")
        vector_store.upsert("ingestion-b", "two", unit_vector(1), source_path="b.md")

        assert vector_store.existing_ids("ingestion-a") == {"ingestion-a::a.md::0"}


class TestQuery:
    """Tests for run-scoped top-k retrieval."""

    def test_query_restricted_to_run(self, vector_store):
        """Test units of other runs are never returned."""
        vector_store.upsert("ingestion-a", "from a", unit_vector(0), source_path="a.md")
        vector_store.upsert("ingestion-b", "from b", unit_vector(0), source_path="b.md")

        results = vector_store.query("ingestion-a", unit_vector(0), k=5)

        assert [unit.content for unit in results] == ["from a"]
        assert all(unit.run_id == "ingestion-a" for unit in results)

    def test_query_top_k_ordering(self, vector_store):
        """Test at most k units come back in non-decreasing distance order."""
        query = [1.0, 0.5, 0.25, 0.0, 0.0, 0.0, 0.0, 0.1]
        for i in range(8):
            vector_store.upsert(
                "ingestion-a", f"unit {i}", unit_vector(i), source_path=f"{i}.md", seq=i
            )

        results = vector_store.query("ingestion-a", query, k=5)

        assert len(results) == 5
        distances = [unit.distance for unit in results]
        assert distances == sorted(distances)
        assert results[0].content == "unit 0"
        assert results[1].content == "unit 1"
        assert results[2].content == "unit 2"

    def test_query_ties_broken_by_insertion_order(self, vector_store):
        """Test equally distant units come back in insertion order."""
        for seq, name in enumerate(["c.md", "a.md", "b.md"]):
            vector_store.upsert(
                "ingestion-a", name, unit_vector(3), source_path=name, seq=seq
            )

        results = vector_store.query("ingestion-a", unit_vector(3), k=5)

        assert [unit.source_path for unit in results] == ["c.md", "a.md", "b.md"]
        assert [unit.seq for unit in results] == [0, 1, 2]

    def test_query_fewer_units_than_k(self, vector_store):
        """Test k larger than the run's unit count is clamped, not an error."""
        vector_store.upsert("ingestion-a", "only", unit_vector(0), source_path="a.md")

        results = vector_store.query("ingestion-a", unit_vector(1), k=5)

        assert len(results) == 1

    def test_query_empty_run(self, vector_store):
        """Test a run without units yields an empty list."""
        assert vector_store.query("ingestion-none", unit_vector(0), k=5) == []

    def test_query_dimension_mismatch_is_permanent(self, vector_store):
        """Test querying with a vector of the wrong width is not retried."""
        vector_store.upsert("ingestion-a", "only", unit_vector(0), source_path="a.md")

        with pytest.raises(PermanentError):
            vector_store.query("ingestion-a", [1.0, 0.0], k=5)


class TestDeleteRun:
    """Tests for removing a run's units."""

    def test_delete_run(self, vector_store):
        """Test only the given run's units are removed."""
        vector_store.upsert("ingestion-a", "one", unit_vector(0), source_path="a.md")
        vector_store.upsert("ingestion-a", "two", unit_vector(1), source_path="b.md")
        vector_store.upsert("ingestion-b", "three", unit_vector(2), source_path="c.md")

        assert vector_store.delete_run("ingestion-a") == 2
        assert vector_store.count("ingestion-a") == 0
        assert vector_store.count("ingestion-b") == 1

    def test_delete_run_twice(self, vector_store):
        """Test deleting an empty run is a no-op."""
        assert vector_store.delete_run("ingestion-none") == 0

    def test_stats(self, vector_store):
        """Test stats report the collection size."""
        vector_store.upsert("ingestion-a", "one", unit_vector(0), source_path="a.md")

        stats = vector_store.stats()
        assert stats["total_units"] == 1
        assert stats["collection_name"].startswith("test-")
