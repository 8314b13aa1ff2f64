# =============================================================================
# Project Data — Items the Search and Analysis Agents Work On
# =============================================================================
#
# A project item is a text document or an image belonging to one project,
# stored in the "project_data" collection with its embedding and its stored
# analysis (description, tags, insights, facets).
#
# STORAGE ENCODING (flat metadata, see vectorstore.py):
#   document  : text content, or base64 bytes for images
#   metadata  : project_id, type, filename, mime_type, size,
#               analysis (JSON string), created_at / updated_at (epoch s)
# =============================================================================

from __future__ import annotations

import base64
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

from research_agents.config import settings
from research_agents.models.agents import utc_now
from research_agents.services.embedder import EmbeddingService
from research_agents.services.vectorstore import (
    PROJECT_DATA_COLLECTION,
    VectorRecord,
    VectorStore,
)

logger = logging.getLogger(__name__)

EMPTY_ANALYSIS = {
    "description": "No analysis available",
    "tags": [],
    "insights": [],
    "facets": {},
}


@dataclass
class ProjectItem:
    id: str
    project_id: str
    type: str  # "text" or "image"
    filename: str
    mime_type: str
    content: str  # text, or base64 for images
    size: int = 0
    analysis: dict | None = None
    embedding: list[float] | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def description(self) -> str:
        return (self.analysis or {}).get("description") or "No description"

    @property
    def tags(self) -> list[str]:
        return list((self.analysis or {}).get("tags") or [])


@dataclass
class ProjectSearchHit:
    item: ProjectItem
    score: float

    def to_dict(self) -> dict:
        return {
            "id": self.item.id,
            "filename": self.item.filename or "Unknown",
            "type": self.item.type,
            "score": self.score,
            "description": self.item.description,
            "tags": self.item.tags,
        }


class ProjectDataRepository:
    """Reads and writes project items through the vector store."""

    def __init__(self, vector_store: VectorStore, embedder: EmbeddingService) -> None:
        self._vector_store = vector_store
        self._embedder = embedder

    async def add_project_item(
        self,
        project_id: str,
        filename: str,
        content: str,
        item_type: str = "text",
        mime_type: str | None = None,
        analysis: dict | None = None,
    ) -> ProjectItem:
        """
        Embed and store one item. Images are passed as base64 `content` and
        embedded from their bytes (with the filename as caption).
        """
        if item_type == "image":
            raw = base64.b64decode(content)
            embedding = await self._embedder.embed(
                text=filename, image_bytes=raw, mode="document",
            )
            size = len(raw)
        else:
            embedding = await self._embedder.embed(text=content, mode="document")
            size = len(content.encode("utf-8"))

        item = ProjectItem(
            id=uuid.uuid4().hex,
            project_id=project_id,
            type=item_type,
            filename=filename,
            mime_type=mime_type or ("image/jpeg" if item_type == "image" else "text/plain"),
            content=content,
            size=size,
            analysis=analysis,
        )
        await self._vector_store.add(
            PROJECT_DATA_COLLECTION,
            ids=[item.id],
            documents=[item.content],
            embeddings=[embedding],
            metadatas=[_metadata_from_item(item)],
        )
        item.embedding = embedding

        logger.info("Stored project item %s (%s, project=%s)", item.id, filename, project_id)
        return item

    async def get_project_item(
        self,
        item_id: str,
        project_id: str | None = None,
        include_embedding: bool = False,
    ) -> ProjectItem | None:
        """
        Fetch one item, preferring the project-scoped lookup and falling
        back to an unscoped one when `project_id` is given but misses.
        """
        records: list[VectorRecord] = []
        if project_id is not None:
            records = await self._vector_store.get(
                PROJECT_DATA_COLLECTION,
                ids=[item_id],
                where={"project_id": project_id},
                include_embeddings=include_embedding,
            )
        if not records:
            records = await self._vector_store.get(
                PROJECT_DATA_COLLECTION,
                ids=[item_id],
                include_embeddings=include_embedding,
            )
        return _item_from_record(records[0]) if records else None

    async def search_project_data(
        self,
        project_id: str,
        query: str,
        max_results: int | None = None,
        threshold: float | None = None,
    ) -> list[ProjectSearchHit]:
        """Semantic search over one project's items, best match first."""
        max_results = max_results or settings.search_max_results
        if threshold is None:
            threshold = settings.search_similarity_threshold

        embedding = await self._embedder.embed(text=query, mode="query")
        hits = await self._vector_store.knn_search(
            PROJECT_DATA_COLLECTION,
            embedding,
            where={"project_id": project_id},
            num_candidates=max_results * 10,
            limit=max_results,
        )

        results = [
            ProjectSearchHit(item=_item_from_record(hit.record), score=hit.similarity_score)
            for hit in hits
            if hit.similarity_score >= threshold
        ]
        logger.debug(
            "Project search returned %d/%d hits above %.2f (project=%s)",
            len(results), len(hits), threshold, project_id,
        )
        return results

    async def find_similar_items(
        self,
        project_id: str,
        reference: ProjectItem,
        max_results: int | None = None,
    ) -> list[ProjectSearchHit]:
        """Items nearest to `reference`'s stored embedding, excluding itself."""
        if not reference.embedding:
            raise ValueError("Reference item has no embedding")
        max_results = max_results or settings.similar_items_max_results

        hits = await self._vector_store.knn_search(
            PROJECT_DATA_COLLECTION,
            reference.embedding,
            where={"project_id": project_id},
            num_candidates=max_results * 5,
            limit=max_results + 1,
        )
        return [
            ProjectSearchHit(item=_item_from_record(hit.record), score=hit.similarity_score)
            for hit in hits
            if hit.record.record_id != reference.id
        ][:max_results]


def _metadata_from_item(item: ProjectItem) -> dict:
    return {
        "project_id": item.project_id,
        "type": item.type,
        "filename": item.filename,
        "mime_type": item.mime_type,
        "size": item.size,
        "analysis": json.dumps(item.analysis) if item.analysis else "",
        "created_at": item.created_at.timestamp(),
        "updated_at": item.updated_at.timestamp(),
    }


def _item_from_record(record: VectorRecord) -> ProjectItem:
    meta = record.metadata
    analysis = meta.get("analysis")
    if isinstance(analysis, str):
        analysis = json.loads(analysis) if analysis else None
    return ProjectItem(
        id=record.record_id,
        project_id=meta.get("project_id", ""),
        type=meta.get("type", "text"),
        filename=meta.get("filename", ""),
        mime_type=meta.get("mime_type", ""),
        content=record.document,
        size=int(meta.get("size", 0)),
        analysis=analysis,
        embedding=record.embedding,
        created_at=_from_timestamp(meta.get("created_at")),
        updated_at=_from_timestamp(meta.get("updated_at")),
    )


def _from_timestamp(value) -> datetime:
    if value in (None, ""):
        return utc_now()
    return datetime.fromtimestamp(float(value), tz=timezone.utc)
