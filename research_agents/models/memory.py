# =============================================================================
# Memory Schemas — Associative Memory Records
# =============================================================================
#
# A memory is a short piece of text the agents learned about a project
# (a fact, a user preference, a recurring query pattern, or an insight),
# stored with its embedding so it can be recalled by semantic similarity.
#
# INVARIANTS:
#   - metadata.confidence is always within [0, 1]
#   - embedding is computed once at creation; enrichment rewrites content,
#     confidence, tags and related_memories but never the embedding
#   - a record whose expires_at is in the past is invisible to every read
# =============================================================================

from __future__ import annotations

import enum
from datetime import datetime

from pydantic import BaseModel, Field

from research_agents.models.agents import utc_now


class MemoryType(str, enum.Enum):
    FACT = "fact"
    PREFERENCE = "preference"
    PATTERN = "pattern"
    INSIGHT = "insight"


class MemoryMetadata(BaseModel):
    source: str = "unknown"
    confidence: float = Field(default=0.8, ge=0.0, le=1.0)
    access_count: int = Field(default=0, ge=0)
    last_accessed: datetime = Field(default_factory=utc_now)


class MemoryRecord(BaseModel):
    id: str
    project_id: str
    session_id: str
    user_id: str | None = None
    type: MemoryType
    content: str
    embedding: list[float] = Field(default_factory=list)
    metadata: MemoryMetadata = Field(default_factory=MemoryMetadata)
    related_memories: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    expires_at: datetime | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or utc_now())


class MemorySearchResult(BaseModel):
    memory: MemoryRecord
    score: float


class StoreMemoryInput(BaseModel):
    """
    Write request for the memory store.

    `conversation_id` is recorded in the target's related_memories when the
    write is merged into an existing memory.
    """

    project_id: str
    session_id: str
    user_id: str | None = None
    conversation_id: str | None = None
    type: MemoryType = MemoryType.FACT
    content: str = Field(..., min_length=1)
    source: str = "memory-agent"
    confidence: float = Field(default=0.8, ge=0.0, le=1.0)
    tags: list[str] = Field(default_factory=list)
    expires_at: datetime | None = None


class RetrieveMemoriesInput(BaseModel):
    project_id: str
    query: str
    limit: int = Field(default=5, ge=1)
    type: MemoryType | None = None
    min_confidence: float = Field(default=0.5, ge=0.0, le=1.0)
