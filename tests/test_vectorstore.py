# =============================================================================
# Unit Tests — Vector Store (ChromaDB backend)
# =============================================================================
#
# Tests ChromaDB vector store operations: add, get, update, delete, KNN
# search with metadata filters. Uses ChromaDB's in-process mode (no external
# services needed). For pgvector only the filter compiler is covered here;
# the queries themselves need a running PostgreSQL instance.
# =============================================================================

import asyncio

import pytest
from sqlalchemy.dialects import postgresql

from research_agents.services.vectorstore import (
    VectorSearchResult,
    _compile_where,
    _sanitise_chroma_metadata,
    where_all,
)

COLLECTION = "items"


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _seed(store):
    _run(store.add(
        COLLECTION,
        ids=["a", "b", "c"],
        documents=["Revenue increased by 15%", "Expenses decreased by 5%", "Other project"],
        embeddings=[[1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [0.9, 0.1, 0.0]],
        metadatas=[
            {"project_id": "P1", "rank": 1},
            {"project_id": "P1", "rank": 2},
            {"project_id": "P2", "rank": 3},
        ],
    ))


class TestChromaVectorStore:
    """Tests for ChromaVectorStore (in-process mode)."""

    def test_knn_returns_sorted_results(self, vector_store):
        _seed(vector_store)

        results = _run(vector_store.knn_search(COLLECTION, [1.0, 0.0, 0.0], limit=2))

        assert len(results) == 2
        assert all(isinstance(r, VectorSearchResult) for r in results)
        assert results[0].similarity_score >= results[1].similarity_score
        assert results[0].record.record_id == "a"
        assert results[0].similarity_score == pytest.approx(1.0, abs=1e-3)

    def test_knn_filters_by_metadata(self, vector_store):
        _seed(vector_store)

        results = _run(vector_store.knn_search(
            COLLECTION, [1.0, 0.0, 0.0], where={"project_id": "P2"}, limit=10,
        ))

        assert [r.record.record_id for r in results] == ["c"]
        assert results[0].record.metadata["project_id"] == "P2"

    def test_knn_on_empty_collection(self, vector_store):
        assert _run(vector_store.knn_search(COLLECTION, [1.0, 0.0, 0.0])) == []

    def test_get_by_id_with_embeddings(self, vector_store):
        _seed(vector_store)

        records = _run(vector_store.get(COLLECTION, ids=["b"], include_embeddings=True))

        assert len(records) == 1
        assert records[0].document == "Expenses decreased by 5%"
        assert records[0].embedding == pytest.approx([0.0, 1.0, 0.0])

    def test_get_with_empty_id_list(self, vector_store):
        assert _run(vector_store.get(COLLECTION, ids=[])) == []

    def test_update_merges_metadata_and_keeps_vector(self, vector_store):
        _seed(vector_store)

        assert _run(vector_store.update(
            COLLECTION, "a", document="Revenue increased by 20%", metadata={"rank": 9},
        )) is True

        record = _run(vector_store.get(COLLECTION, ids=["a"], include_embeddings=True))[0]
        assert record.document == "Revenue increased by 20%"
        assert record.metadata == {"project_id": "P1", "rank": 9}
        assert record.embedding == pytest.approx([1.0, 0.0, 0.0])

    def test_update_missing_record(self, vector_store):
        _seed(vector_store)
        assert _run(vector_store.update(COLLECTION, "zzz", metadata={"rank": 1})) is False

    def test_delete_by_filter_returns_count(self, vector_store):
        _seed(vector_store)

        deleted = _run(vector_store.delete(COLLECTION, where={"rank": {"$lt": 3}}))

        assert deleted == 2
        assert _run(vector_store.count(COLLECTION)) == 1

    def test_delete_requires_ids_or_filter(self, vector_store):
        with pytest.raises(ValueError):
            _run(vector_store.delete(COLLECTION))

    def test_count_with_filter(self, vector_store):
        _seed(vector_store)
        assert _run(vector_store.count(COLLECTION, where={"project_id": "P1"})) == 2

    def test_metadata_sanitisation(self, vector_store):
        """None and list values are flattened before they reach Chroma."""
        _run(vector_store.add(
            COLLECTION,
            ids=["x"],
            documents=["Test content"],
            embeddings=[[0.5] * 3],
            metadatas=[{"source": None, "tags": ["a", "b"], "title": "Overview"}],
        ))

        record = _run(vector_store.get(COLLECTION, ids=["x"]))[0]
        assert record.metadata == {"source": "", "tags": "a,b", "title": "Overview"}


class TestFilterHelpers:

    def test_where_all_drops_empty_clauses(self):
        assert where_all(None, {"a": 1}) == {"a": 1}
        assert where_all(None, None) is None
        assert where_all({"a": 1}, {"b": 2}) == {"$and": [{"a": 1}, {"b": 2}]}

    def test_sanitise_stringifies_unknown_types(self):
        assert _sanitise_chroma_metadata({"n": 3, "ok": True, "obj": object}) == {
            "n": 3, "ok": True, "obj": str(object),
        }

    def test_compile_where_for_postgres(self):
        clause = _compile_where(where_all(
            {"project_id": "P1"},
            {"$or": [{"has_expiry": False}, {"expires_at": {"$gt": 10.0}}]},
        ))
        sql = str(clause.compile(dialect=postgresql.dialect()))

        assert "->>" in sql
        assert " OR " in sql

    def test_compile_where_rejects_unknown_operator(self):
        with pytest.raises(ValueError):
            _compile_where({"rank": {"$regex": "x"}})
