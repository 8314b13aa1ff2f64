# =============================================================================
# Vector Store Abstraction — Pluggable Backend Protocol
# =============================================================================
#
# Provides k-nearest-neighbour search with metadata filters plus basic
# CRUD over named collections. Two collections are used by the agents:
#   - "project_data"   : project items (documents, images) and their
#                        stored analysis
#   - "agent_memories" : associative memory records
#
# FILTER LANGUAGE: a subset of Chroma's `where` syntax, shared by both
# backends:
#   {"project_id": "p1"}                         equality
#   {"confidence": {"$gte": 0.5}}                $eq $ne $gt $gte $lt $lte
#   {"type": {"$in": ["fact", "insight"]}}       $in $nin
#   {"$and": [{...}, {...}]} / {"$or": [...]}    combinators
# Use `where_all()` to combine clauses; Chroma rejects a dict with more
# than one top-level key.
#
# INVARIANT: `update()` can rewrite a record's document and metadata but
# never its embedding. Vectors are written once, by `add()`.
#
# ARCHITECTURE:
#   VectorStore (Protocol)
#   ├── ChromaVectorStore — ChromaDB (in-process, persistent or HTTP);
#   │                       sync client wrapped in asyncio.to_thread()
#   └── PgVectorStore     — PostgreSQL + pgvector, JSONB metadata,
#                           filters compiled to SQL
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import operator
from dataclasses import dataclass, field
from typing import Any, Protocol

import chromadb
from sqlalchemy import and_, delete, func, or_, select

from research_agents.config import settings
from research_agents.db.engine import get_async_session_factory
from research_agents.db.models import VectorItem

logger = logging.getLogger(__name__)

PROJECT_DATA_COLLECTION = "project_data"
MEMORY_COLLECTION = "agent_memories"


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class VectorRecord:
    """A stored item: its text, metadata and (optionally loaded) vector."""

    record_id: str
    document: str
    metadata: dict = field(default_factory=dict)
    embedding: list[float] | None = None


@dataclass
class VectorSearchResult:
    """A single KNN hit with its cosine similarity (higher = closer)."""

    record: VectorRecord
    similarity_score: float


def where_all(*clauses: dict | None) -> dict | None:
    """Combine filter clauses with $and, dropping empty ones."""
    parts = [c for c in clauses if c]
    if not parts:
        return None
    if len(parts) == 1:
        return parts[0]
    return {"$and": parts}


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class VectorStore(Protocol):
    """Interface implemented by every vector store backend."""

    async def add(
        self,
        collection: str,
        ids: list[str],
        documents: list[str],
        embeddings: list[list[float]],
        metadatas: list[dict],
    ) -> list[str]:
        """Insert records. Returns their IDs."""
        ...

    async def get(
        self,
        collection: str,
        ids: list[str] | None = None,
        where: dict | None = None,
        limit: int | None = None,
        include_embeddings: bool = False,
    ) -> list[VectorRecord]:
        """Fetch records by ID and/or filter."""
        ...

    async def update(
        self,
        collection: str,
        record_id: str,
        document: str | None = None,
        metadata: dict | None = None,
    ) -> bool:
        """
        Rewrite a record's document and/or merge keys into its metadata.
        Returns False when the record does not exist.
        """
        ...

    async def delete(
        self,
        collection: str,
        ids: list[str] | None = None,
        where: dict | None = None,
    ) -> int:
        """Delete records by ID and/or filter. Returns the number deleted."""
        ...

    async def count(self, collection: str, where: dict | None = None) -> int:
        ...

    async def knn_search(
        self,
        collection: str,
        query_embedding: list[float],
        where: dict | None = None,
        num_candidates: int = 100,
        limit: int = 10,
    ) -> list[VectorSearchResult]:
        """
        Nearest neighbours of `query_embedding` among records matching
        `where`, sorted by similarity (highest first).
        """
        ...


# ---------------------------------------------------------------------------
# Implementation 1: ChromaDB
# ---------------------------------------------------------------------------


class ChromaVectorStore:
    """
    ChromaDB-backed vector store.

    Client selection:
    - `client` argument (tests inject an in-process client)
    - CHROMA_URL → HttpClient (client/server mode)
    - CHROMA_PERSIST_DIR → PersistentClient
    - otherwise an in-process ephemeral client

    `namespace` prefixes every collection name so independent stores can
    share one Chroma client.
    """

    def __init__(self, client: Any | None = None, namespace: str = "") -> None:
        if client is not None:
            self._client = client
        elif settings.chroma_url:
            self._client = chromadb.HttpClient(host=settings.chroma_url)
        elif settings.chroma_persist_dir:
            self._client = chromadb.PersistentClient(path=settings.chroma_persist_dir)
        else:
            self._client = chromadb.Client()

        self._namespace = namespace
        self._collections: dict[str, Any] = {}

    def _collection(self, name: str):
        full_name = f"{self._namespace}{name}"
        if full_name not in self._collections:
            # Cosine space to match pgvector's cosine_distance.
            self._collections[full_name] = self._client.get_or_create_collection(
                name=full_name,
                metadata={"hnsw:space": "cosine"},
            )
        return self._collections[full_name]

    async def add(
        self,
        collection: str,
        ids: list[str],
        documents: list[str],
        embeddings: list[list[float]],
        metadatas: list[dict],
    ) -> list[str]:
        def _sync_add() -> list[str]:
            self._collection(collection).add(
                ids=ids,
                documents=documents,
                embeddings=embeddings,
                metadatas=[_sanitise_chroma_metadata(m) for m in metadatas],
            )
            return list(ids)

        added = await asyncio.to_thread(_sync_add)
        logger.debug("Stored %d records in Chroma collection %s", len(added), collection)
        return added

    async def get(
        self,
        collection: str,
        ids: list[str] | None = None,
        where: dict | None = None,
        limit: int | None = None,
        include_embeddings: bool = False,
    ) -> list[VectorRecord]:
        def _sync_get() -> list[VectorRecord]:
            include = ["documents", "metadatas"]
            if include_embeddings:
                include.append("embeddings")

            kwargs: dict = {"include": include}
            if ids is not None:
                kwargs["ids"] = ids
            if where:
                kwargs["where"] = where
            if limit is not None:
                kwargs["limit"] = limit

            results = self._collection(collection).get(**kwargs)
            return _records_from_chroma(results, include_embeddings)

        if ids is not None and not ids:
            return []
        return await asyncio.to_thread(_sync_get)

    async def update(
        self,
        collection: str,
        record_id: str,
        document: str | None = None,
        metadata: dict | None = None,
    ) -> bool:
        def _sync_update() -> bool:
            coll = self._collection(collection)
            existing = coll.get(
                ids=[record_id],
                include=["documents", "metadatas", "embeddings"],
            )
            if not existing["ids"]:
                return False

            current = _records_from_chroma(existing, include_embeddings=True)[0]
            merged = {**current.metadata, **_sanitise_chroma_metadata(metadata or {})}

            # The stored vector is passed back unchanged. Updating a document
            # without embeddings would make Chroma recompute the vector.
            coll.update(
                ids=[record_id],
                embeddings=[current.embedding],
                documents=[document if document is not None else current.document],
                metadatas=[merged],
            )
            return True

        return await asyncio.to_thread(_sync_update)

    async def delete(
        self,
        collection: str,
        ids: list[str] | None = None,
        where: dict | None = None,
    ) -> int:
        def _sync_delete() -> int:
            coll = self._collection(collection)
            kwargs: dict = {"include": []}
            if ids is not None:
                kwargs["ids"] = ids
            if where:
                kwargs["where"] = where
            matched = coll.get(**kwargs)["ids"]
            if matched:
                coll.delete(ids=matched)
            return len(matched)

        if ids is None and not where:
            raise ValueError("delete() requires ids or a where filter")
        return await asyncio.to_thread(_sync_delete)

    async def count(self, collection: str, where: dict | None = None) -> int:
        def _sync_count() -> int:
            coll = self._collection(collection)
            if not where:
                return coll.count()
            return len(coll.get(where=where, include=[])["ids"])

        return await asyncio.to_thread(_sync_count)

    async def knn_search(
        self,
        collection: str,
        query_embedding: list[float],
        where: dict | None = None,
        num_candidates: int = 100,
        limit: int = 10,
    ) -> list[VectorSearchResult]:
        """
        Similarity search in ChromaDB.

        Chroma's HNSW search has no per-query candidate pool, so
        `num_candidates` is accepted for interface parity only.
        """

        def _sync_search() -> list[VectorSearchResult]:
            coll = self._collection(collection)
            n_results = min(limit, coll.count())
            if n_results <= 0:
                return []

            results = coll.query(
                query_embeddings=[query_embedding],
                n_results=n_results,
                where=where or None,
                include=["documents", "metadatas", "distances"],
            )

            search_results: list[VectorSearchResult] = []
            if results and results["ids"] and results["ids"][0]:
                for i, record_id in enumerate(results["ids"][0]):
                    distance = (
                        results["distances"][0][i] if results["distances"] else 0.0
                    )
                    metadata = (
                        results["metadatas"][0][i] if results["metadatas"] else {}
                    )
                    document = (
                        results["documents"][0][i] if results["documents"] else ""
                    )
                    # Chroma cosine distance is in [0, 2]; convert to similarity
                    search_results.append(VectorSearchResult(
                        record=VectorRecord(
                            record_id=record_id,
                            document=document or "",
                            metadata=dict(metadata or {}),
                        ),
                        similarity_score=round(1.0 - distance, 4),
                    ))
            return search_results

        return await asyncio.to_thread(_sync_search)


# ---------------------------------------------------------------------------
# Implementation 2: pgvector (PostgreSQL)
# ---------------------------------------------------------------------------


class PgVectorStore:
    """
    pgvector-backed vector store.

    All collections live in one `vector_items` table keyed by
    (collection, id). Metadata is JSONB; `where` filters compile to JSONB
    comparisons (see `_compile_where`).
    """

    def __init__(self, session_factory=None) -> None:
        self._session_factory = session_factory

    def _sessions(self):
        return self._session_factory or get_async_session_factory()

    async def add(
        self,
        collection: str,
        ids: list[str],
        documents: list[str],
        embeddings: list[list[float]],
        metadatas: list[dict],
    ) -> list[str]:
        async with self._sessions()() as session:
            session.add_all([
                VectorItem(
                    collection=collection,
                    id=record_id,
                    document=document,
                    embedding=embedding,
                    metadata_=metadata,
                )
                for record_id, document, embedding, metadata in zip(
                    ids, documents, embeddings, metadatas, strict=True
                )
            ])
            await session.commit()

        logger.debug("Stored %d records in pgvector collection %s", len(ids), collection)
        return list(ids)

    async def get(
        self,
        collection: str,
        ids: list[str] | None = None,
        where: dict | None = None,
        limit: int | None = None,
        include_embeddings: bool = False,
    ) -> list[VectorRecord]:
        if ids is not None and not ids:
            return []

        stmt = select(VectorItem).where(VectorItem.collection == collection)
        if ids is not None:
            stmt = stmt.where(VectorItem.id.in_(ids))
        if where:
            stmt = stmt.where(_compile_where(where))
        if limit is not None:
            stmt = stmt.limit(limit)

        async with self._sessions()() as session:
            items = (await session.execute(stmt)).scalars().all()

        return [_record_from_item(item, include_embeddings) for item in items]

    async def update(
        self,
        collection: str,
        record_id: str,
        document: str | None = None,
        metadata: dict | None = None,
    ) -> bool:
        async with self._sessions()() as session:
            item = await session.get(VectorItem, (collection, record_id))
            if item is None:
                return False
            if document is not None:
                item.document = document
            if metadata:
                # Reassign so SQLAlchemy sees the JSONB change
                item.metadata_ = {**(item.metadata_ or {}), **metadata}
            await session.commit()
        return True

    async def delete(
        self,
        collection: str,
        ids: list[str] | None = None,
        where: dict | None = None,
    ) -> int:
        if ids is None and not where:
            raise ValueError("delete() requires ids or a where filter")

        stmt = delete(VectorItem).where(VectorItem.collection == collection)
        if ids is not None:
            stmt = stmt.where(VectorItem.id.in_(ids))
        if where:
            stmt = stmt.where(_compile_where(where))

        async with self._sessions()() as session:
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount or 0

    async def count(self, collection: str, where: dict | None = None) -> int:
        stmt = (
            select(func.count())
            .select_from(VectorItem)
            .where(VectorItem.collection == collection)
        )
        if where:
            stmt = stmt.where(_compile_where(where))
        async with self._sessions()() as session:
            return (await session.execute(stmt)).scalar_one()

    async def knn_search(
        self,
        collection: str,
        query_embedding: list[float],
        where: dict | None = None,
        num_candidates: int = 100,
        limit: int = 10,
    ) -> list[VectorSearchResult]:
        """
        Exact cosine search. pgvector's cosine_distance() is in [0, 2];
        similarity is reported as 1 - distance.
        """
        distance = VectorItem.embedding.cosine_distance(query_embedding)
        stmt = (
            select(VectorItem, distance.label("distance"))
            .where(VectorItem.collection == collection)
            .order_by(distance)
            .limit(limit)
        )
        if where:
            stmt = stmt.where(_compile_where(where))

        async with self._sessions()() as session:
            rows = (await session.execute(stmt)).all()

        logger.debug(
            "pgvector KNN returned %d rows (collection=%s, limit=%d)",
            len(rows), collection, limit,
        )
        return [
            VectorSearchResult(
                record=_record_from_item(item, include_embeddings=False),
                similarity_score=round(1.0 - dist, 4),
            )
            for item, dist in rows
        ]


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

_store: ChromaVectorStore | PgVectorStore | None = None


def get_vector_store(
    override_type: str | None = None,
) -> ChromaVectorStore | PgVectorStore:
    """
    Return the configured vector store backend.

    Reads `vectorstore_type` from settings:
    - "chroma" → ChromaVectorStore (default)
    - "pgvector" → PgVectorStore

    The configured backend is cached; `override_type` always builds a
    fresh instance.
    """
    global _store
    if override_type is None and _store is not None:
        return _store

    store_type = override_type or settings.vectorstore_type
    if store_type == "pgvector":
        logger.info("Using pgvector vector store")
        store: ChromaVectorStore | PgVectorStore = PgVectorStore()
    else:
        logger.info("Using ChromaDB vector store")
        store = ChromaVectorStore()

    if override_type is None:
        _store = store
    return store


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _sanitise_chroma_metadata(metadata: dict) -> dict:
    """
    Sanitise metadata for ChromaDB, which only accepts str, int, float
    and bool values:
    - list → comma-separated string
    - None → empty string
    """
    sanitised = {}
    for key, value in metadata.items():
        if value is None:
            sanitised[key] = ""
        elif isinstance(value, list):
            sanitised[key] = ",".join(str(v) for v in value)
        elif isinstance(value, (str, int, float, bool)):
            sanitised[key] = value
        else:
            sanitised[key] = str(value)
    return sanitised


def _records_from_chroma(results: dict, include_embeddings: bool) -> list[VectorRecord]:
    """Convert a Chroma `get()` result into VectorRecords."""
    ids = results.get("ids") or []
    documents = results.get("documents")
    metadatas = results.get("metadatas")
    embeddings = results.get("embeddings") if include_embeddings else None

    records = []
    for i, record_id in enumerate(ids):
        # Chroma may return embeddings as a numpy array; avoid truthiness
        embedding = None
        if embeddings is not None and len(embeddings) > i:
            embedding = [float(x) for x in embeddings[i]]
        records.append(VectorRecord(
            record_id=record_id,
            document=(documents[i] if documents is not None else "") or "",
            metadata=dict((metadatas[i] if metadatas is not None else None) or {}),
            embedding=embedding,
        ))
    return records


def _record_from_item(item: VectorItem, include_embeddings: bool) -> VectorRecord:
    embedding = None
    if include_embeddings and item.embedding is not None:
        embedding = [float(x) for x in item.embedding]
    return VectorRecord(
        record_id=item.id,
        document=item.document or "",
        metadata=dict(item.metadata_ or {}),
        embedding=embedding,
    )


_COMPARISONS = {
    "$eq": operator.eq,
    "$ne": operator.ne,
    "$gt": operator.gt,
    "$gte": operator.ge,
    "$lt": operator.lt,
    "$lte": operator.le,
}


def _compile_where(where: dict):
    """Translate a Chroma-style filter into a SQLAlchemy clause."""
    clauses = []
    for key, condition in where.items():
        if key == "$and":
            clauses.append(and_(*[_compile_where(c) for c in condition]))
        elif key == "$or":
            clauses.append(or_(*[_compile_where(c) for c in condition]))
        elif isinstance(condition, dict):
            for op, value in condition.items():
                clauses.append(_compile_comparison(key, op, value))
        else:
            clauses.append(_compile_comparison(key, "$eq", condition))
    return and_(*clauses)


def _compile_comparison(key: str, op: str, value: Any):
    field_ = VectorItem.metadata_[key]
    sample = value[0] if isinstance(value, list) and value else value

    # bool before int: bool is an int subclass
    if isinstance(sample, bool):
        column = field_.as_boolean()
    elif isinstance(sample, (int, float)):
        column = field_.as_float()
    else:
        column = field_.as_string()

    if op == "$in":
        return column.in_(value)
    if op == "$nin":
        return column.not_in(value)
    if op not in _COMPARISONS:
        raise ValueError(f"Unsupported filter operator: {op}")
    return _COMPARISONS[op](column, value)
