# =============================================================================
# Memory Store — Associative Memory over the Vector Store
# =============================================================================
#
# Persists what the agents learn about a project (facts, preferences,
# query patterns, insights) and recalls it by semantic similarity.
#
# WRITE PATH (store):
#   embed(content) ──▶ KNN over same project + same type, not expired
#                 ├─ top hit scores > 0.8  → ENRICH the existing memory
#                 │    content  += " [ENRICHED: <new content>]"
#                 │    confidence = min(0.95, mean(old, new))
#                 │    tags       = ordered union
#                 │    related    += conversation/session reference
#                 │    (embedding and access count untouched)
#                 └─ otherwise             → INSERT a new memory
#
# READ PATH (retrieve):
#   embed(query) ──▶ KNN (pool limit*10, top limit*2) ──▶ keep hits whose
#   score AND stored confidence are ≥ min_confidence ──▶ first `limit`,
#   highest score first ──▶ access counts bumped.
#
# STORAGE ENCODING:
# Chroma metadata is flat (str/int/float/bool), so timestamps are epoch
# seconds and lists (tags, related memories) are JSON-encoded strings.
# `has_expiry` makes "not expired" expressible as a filter:
#   {"$or": [{"has_expiry": False}, {"expires_at": {"$gt": now}}]}
#
# CONCURRENCY:
# The check-similar-then-write sequence runs under an asyncio.Lock per
# (project_id, type). Across processes two near-identical writes can
# still race and both insert; pruning cleans those up.
#
# Failures of the embedder or vector store are logged and turned into
# neutral results (None / [] / "" / False). prune() is the exception:
# it logs and re-raises, so the maintenance task can retry.
# =============================================================================

from __future__ import annotations

import asyncio
import json
import logging
import uuid
import weakref
from datetime import datetime, timedelta, timezone

from research_agents.config import settings
from research_agents.models.agents import utc_now
from research_agents.models.memory import (
    MemoryMetadata,
    MemoryRecord,
    MemorySearchResult,
    MemoryType,
    RetrieveMemoriesInput,
    StoreMemoryInput,
)
from research_agents.services.embedder import EmbeddingService, get_embedding_service
from research_agents.services.vectorstore import (
    MEMORY_COLLECTION,
    VectorRecord,
    VectorStore,
    where_all,
)

logger = logging.getLogger(__name__)

CONTEXT_MEMORY_LIMIT = 5
CONTEXT_MIN_CONFIDENCE = 0.6


class MemoryStore:
    """Project-scoped associative memory (see module header)."""

    def __init__(
        self,
        vector_store: VectorStore,
        embedder: EmbeddingService | None = None,
    ) -> None:
        self._vector_store = vector_store
        self._embedder = embedder
        # Entries vanish once no coroutine holds or awaits the lock
        self._locks: weakref.WeakValueDictionary[tuple[str, str], asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _get_embedder(self) -> EmbeddingService:
        """Embedder passed in, or the configured one (resolved on first use)."""
        if self._embedder is None:
            self._embedder = get_embedding_service()
        return self._embedder

    # -------------------------------------------------------------------------
    # Write path
    # -------------------------------------------------------------------------

    async def store(self, memory: StoreMemoryInput) -> str | None:
        """
        Store a memory, or merge it into a near-duplicate.

        Returns the ID of the inserted or enriched memory, or None when a
        collaborator failed.
        """
        try:
            embedding = await self._get_embedder().embed(text=memory.content, mode="document")

            async with self._lock_for(memory.project_id, memory.type):
                similar = await self._vector_store.knn_search(
                    MEMORY_COLLECTION,
                    embedding,
                    where=where_all(
                        {"project_id": memory.project_id},
                        {"type": memory.type.value},
                        _not_expired(),
                    ),
                    num_candidates=settings.memory_dedup_candidates,
                    limit=1,
                )

                if similar and similar[0].similarity_score > settings.memory_enrichment_threshold:
                    existing = _memory_from_record(similar[0].record)
                    await self._enrich(existing, memory)
                    logger.info(
                        "Enriched memory %s (score=%.4f)",
                        existing.id, similar[0].similarity_score,
                    )
                    return existing.id

                now = utc_now()
                record = MemoryRecord(
                    id=uuid.uuid4().hex,
                    project_id=memory.project_id,
                    session_id=memory.session_id,
                    user_id=memory.user_id,
                    type=memory.type,
                    content=memory.content,
                    embedding=embedding,
                    metadata=MemoryMetadata(
                        source=memory.source,
                        confidence=memory.confidence,
                        access_count=0,
                        last_accessed=now,
                    ),
                    tags=list(memory.tags),
                    created_at=now,
                    expires_at=memory.expires_at,
                )
                await self._vector_store.add(
                    MEMORY_COLLECTION,
                    ids=[record.id],
                    documents=[record.content],
                    embeddings=[embedding],
                    metadatas=[_metadata_from_memory(record)],
                )
                logger.info("Memory stored: %s (type=%s)", record.id, record.type.value)
                return record.id

        except Exception:
            logger.exception("Error storing memory (project_id=%s)", memory.project_id)
            return None

    async def _enrich(self, existing: MemoryRecord, memory: StoreMemoryInput) -> None:
        content = f"{existing.content} [ENRICHED: {memory.content}]"
        confidence = min(
            settings.memory_enrichment_max_confidence,
            (existing.metadata.confidence + memory.confidence) / 2,
        )
        tags = _ordered_union(existing.tags, memory.tags)

        reference = memory.conversation_id or memory.session_id
        related = _ordered_union(existing.related_memories, [reference])

        await self._vector_store.update(
            MEMORY_COLLECTION,
            existing.id,
            document=content,
            metadata={
                "confidence": confidence,
                "tags": _encode_list(tags),
                "related_memories": _encode_list(related),
            },
        )

    # -------------------------------------------------------------------------
    # Read path
    # -------------------------------------------------------------------------

    async def retrieve(self, query: RetrieveMemoriesInput) -> list[MemorySearchResult]:
        """
        Semantic recall within one project.

        The returned records are the state read by this call; the access
        counts in storage are incremented afterwards.
        """
        try:
            embedding = await self._get_embedder().embed(text=query.query, mode="query")

            hits = await self._vector_store.knn_search(
                MEMORY_COLLECTION,
                embedding,
                where=where_all(
                    {"project_id": query.project_id},
                    {"type": query.type.value} if query.type else None,
                    _not_expired(),
                ),
                num_candidates=query.limit * 10,
                limit=query.limit * 2,
            )

            results: list[MemorySearchResult] = []
            for hit in hits:
                memory = _memory_from_record(hit.record)
                if hit.similarity_score < query.min_confidence:
                    continue
                if memory.metadata.confidence < query.min_confidence:
                    continue
                results.append(MemorySearchResult(memory=memory, score=hit.similarity_score))
                if len(results) >= query.limit:
                    break

            results.sort(key=lambda r: r.score, reverse=True)

        except Exception:
            logger.exception("Error retrieving memories (project_id=%s)", query.project_id)
            return []

        for result in results:
            await self.update_access(result.memory.id)

        logger.debug("Retrieved %d memories for project %s", len(results), query.project_id)
        return results

    async def get_context(
        self,
        project_id: str,
        session_id: str,
        query: str | None = None,
    ) -> str:
        """
        Memory block for prompt injection, or "" when nothing is relevant.

        With a query: semantic recall (5 memories, min confidence 0.6).
        Without: the session's 5 most recent memories, each scored 1.0.
        """
        try:
            if query:
                memories = await self.retrieve(RetrieveMemoriesInput(
                    project_id=project_id,
                    query=query,
                    limit=CONTEXT_MEMORY_LIMIT,
                    min_confidence=CONTEXT_MIN_CONFIDENCE,
                ))
            else:
                recent = await self.recent(project_id, session_id, CONTEXT_MEMORY_LIMIT)
                memories = [MemorySearchResult(memory=m, score=1.0) for m in recent]
        except Exception:
            logger.exception("Error getting memory context (project_id=%s)", project_id)
            return ""

        if not memories:
            return ""

        lines = [
            f"{i}. [{m.memory.type.value.upper()}] {m.memory.content} "
            f"(confidence: {m.memory.metadata.confidence:.2f}, "
            f"accessed: {m.memory.metadata.access_count} times)"
            for i, m in enumerate(memories, start=1)
        ]
        return (
            "## Relevant Memories\n\nFrom past interactions:\n"
            + "\n".join(lines)
            + "\n\nUse these memories to provide better context-aware responses."
        )

    async def get(self, memory_id: str) -> MemoryRecord | None:
        """Fetch one memory by ID (expired or not)."""
        try:
            records = await self._vector_store.get(
                MEMORY_COLLECTION, ids=[memory_id], include_embeddings=True,
            )
        except Exception:
            logger.exception("Error fetching memory %s", memory_id)
            return None
        return _memory_from_record(records[0]) if records else None

    async def get_by_type(
        self,
        project_id: str,
        memory_type: MemoryType,
        limit: int = 10,
    ) -> list[MemoryRecord]:
        """Non-expired memories of one type, most-accessed then newest first."""
        try:
            records = await self._vector_store.get(
                MEMORY_COLLECTION,
                where=where_all(
                    {"project_id": project_id},
                    {"type": memory_type.value},
                    _not_expired(),
                ),
            )
        except Exception:
            logger.exception("Error getting memories by type (project_id=%s)", project_id)
            return []

        memories = [_memory_from_record(r) for r in records]
        memories.sort(
            key=lambda m: (m.metadata.access_count, m.created_at),
            reverse=True,
        )
        return memories[:limit]

    async def recent(
        self,
        project_id: str,
        session_id: str,
        limit: int = CONTEXT_MEMORY_LIMIT,
    ) -> list[MemoryRecord]:
        """The session's newest non-expired memories."""
        records = await self._vector_store.get(
            MEMORY_COLLECTION,
            where=where_all(
                {"project_id": project_id},
                {"session_id": session_id},
                _not_expired(),
            ),
        )
        memories = [_memory_from_record(r) for r in records]
        memories.sort(key=lambda m: m.created_at, reverse=True)
        return memories[:limit]

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    async def update_access(self, memory_id: str) -> bool:
        """Increment the access count and refresh last_accessed."""
        try:
            records = await self._vector_store.get(MEMORY_COLLECTION, ids=[memory_id])
            if not records:
                return False
            access_count = int(records[0].metadata.get("access_count", 0)) + 1
            return await self._vector_store.update(
                MEMORY_COLLECTION,
                memory_id,
                metadata={
                    "access_count": access_count,
                    "last_accessed": utc_now().timestamp(),
                },
            )
        except Exception:
            logger.exception("Error updating memory access (id=%s)", memory_id)
            return False

    async def prune(
        self,
        project_id: str | None,
        min_access_count: int | None = None,
        min_confidence: float | None = None,
        older_than_days: int | None = None,
    ) -> int:
        """
        Delete low-value memories: created before the cutoff AND accessed
        fewer than `min_access_count` times AND with confidence below
        `min_confidence`. `project_id=None` prunes every project.

        Returns the number of memories deleted. Vector store errors are
        logged and re-raised.
        """
        if min_access_count is None:
            min_access_count = settings.memory_prune_min_access_count
        if min_confidence is None:
            min_confidence = settings.memory_prune_min_confidence
        if older_than_days is None:
            older_than_days = settings.memory_prune_older_than_days

        cutoff = utc_now() - timedelta(days=older_than_days)

        try:
            deleted = await self._vector_store.delete(
                MEMORY_COLLECTION,
                where=where_all(
                    {"project_id": project_id} if project_id is not None else None,
                    {"created_at": {"$lt": cutoff.timestamp()}},
                    {"access_count": {"$lt": min_access_count}},
                    {"confidence": {"$lt": min_confidence}},
                ),
            )
        except Exception:
            logger.exception("Error pruning memories (project_id=%s)", project_id)
            raise

        logger.info("Pruned %d low-value memories (project_id=%s)", deleted, project_id)
        return deleted

    async def link(self, memory_id: str, related_ids: list[str]) -> bool:
        """
        Add `related_ids` to a memory's related_memories (set semantics,
        insertion order kept). Returns True when the memory exists.
        """
        try:
            records = await self._vector_store.get(MEMORY_COLLECTION, ids=[memory_id])
            if not records:
                return False
            current = _decode_list(records[0].metadata.get("related_memories"))
            return await self._vector_store.update(
                MEMORY_COLLECTION,
                memory_id,
                metadata={"related_memories": _encode_list(_ordered_union(current, related_ids))},
            )
        except Exception:
            logger.exception("Error linking memories (id=%s)", memory_id)
            return False

    def _lock_for(self, project_id: str, memory_type: MemoryType) -> asyncio.Lock:
        key = (project_id, memory_type.value)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock


# ---------------------------------------------------------------------------
# Record ↔ metadata encoding
# ---------------------------------------------------------------------------


def _not_expired(now: datetime | None = None) -> dict:
    timestamp = (now or utc_now()).timestamp()
    return {"$or": [{"has_expiry": False}, {"expires_at": {"$gt": timestamp}}]}


def _metadata_from_memory(memory: MemoryRecord) -> dict:
    return {
        "project_id": memory.project_id,
        "session_id": memory.session_id,
        "user_id": memory.user_id or "",
        "type": memory.type.value,
        "source": memory.metadata.source,
        "confidence": memory.metadata.confidence,
        "access_count": memory.metadata.access_count,
        "last_accessed": memory.metadata.last_accessed.timestamp(),
        "created_at": memory.created_at.timestamp(),
        "has_expiry": memory.expires_at is not None,
        "expires_at": memory.expires_at.timestamp() if memory.expires_at else 0.0,
        "tags": _encode_list(memory.tags),
        "related_memories": _encode_list(memory.related_memories),
    }


def _memory_from_record(record: VectorRecord) -> MemoryRecord:
    meta = record.metadata
    return MemoryRecord(
        id=record.record_id,
        project_id=meta["project_id"],
        session_id=meta.get("session_id", ""),
        user_id=meta.get("user_id") or None,
        type=MemoryType(meta["type"]),
        content=record.document,
        embedding=record.embedding or [],
        metadata=MemoryMetadata(
            source=meta.get("source", "unknown"),
            confidence=float(meta.get("confidence", 0.0)),
            access_count=int(meta.get("access_count", 0)),
            last_accessed=_from_timestamp(meta.get("last_accessed")),
        ),
        related_memories=_decode_list(meta.get("related_memories")),
        tags=_decode_list(meta.get("tags")),
        created_at=_from_timestamp(meta.get("created_at")),
        expires_at=(
            _from_timestamp(meta.get("expires_at")) if meta.get("has_expiry") else None
        ),
    )


def _from_timestamp(value) -> datetime:
    if value in (None, ""):
        return utc_now()
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


def _encode_list(values: list[str]) -> str:
    return json.dumps(list(values))


def _decode_list(value) -> list[str]:
    if not value:
        return []
    if isinstance(value, list):
        return [str(v) for v in value]
    return [str(v) for v in json.loads(value)]


def _ordered_union(first: list[str], second: list[str]) -> list[str]:
    merged = list(first)
    for item in second:
        if item not in merged:
            merged.append(item)
    return merged
