# =============================================================================
# Database Models — SQLAlchemy ORM
# =============================================================================
#
# SCHEMA OVERVIEW:
#
# ┌──────────────────────────────┐   ┌──────────────────────────────────┐
# │  vector_items                │   │  agent_conversations             │
# ├──────────────────────────────┤   ├──────────────────────────────────┤
# │ collection (PK)              │   │ id (PK)                          │
# │ id (PK)                      │   │ project_id, session_id           │
# │ document (text)              │   │ user_query (text)                │
# │ embedding (vector(N))        │   │ coordinator_plan (jsonb)         │
# │ metadata_ (jsonb)            │   │ agent_messages (jsonb)           │
# │ created_at                   │   │ agent_results (jsonb)            │
# └──────────────────────────────┘   │ final_response (text)            │
#                                    │ total_duration (float, ms)       │
#                                    │ created_at                       │
#                                    └──────────────────────────────────┘
#
# DESIGN DECISIONS:
#
# 1. One table for every vector store collection ("project_data",
#    "agent_memories"), keyed by (collection, id). The pgvector backend
#    mirrors ChromaDB's collection model so both backends share one
#    filter language over metadata.
#
# 2. JSONB `metadata_`: memory records and project items carry different
#    fields; filters compile to JSONB comparisons.
#    The trailing underscore avoids SQLAlchemy's `.metadata` attribute.
#
# 3. agent_conversations stores plan/messages/results as JSONB snapshots.
#    They are only ever read back whole, for analytics.
# =============================================================================

from datetime import datetime

from pgvector.sqlalchemy import Vector
from sqlalchemy import DateTime, Float, Index, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from research_agents.config import settings


class Base(DeclarativeBase):
    """SQLAlchemy declarative base class."""

    pass


class VectorItem(Base):
    """A record in one of the vector store's named collections."""

    __tablename__ = "vector_items"

    collection: Mapped[str] = mapped_column(String(100), primary_key=True)
    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    document: Mapped[str] = mapped_column(Text, nullable=False, default="")

    # Written once on insert; PgVectorStore.update() never touches it
    embedding: Mapped[list[float]] = mapped_column(
        Vector(settings.embedding_dimensions),
        nullable=False,
    )

    metadata_: Mapped[dict | None] = mapped_column(
        JSONB,
        nullable=True,
        default=dict,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<VectorItem(collection='{self.collection}', id='{self.id}')>"


class AgentConversationRecord(Base):
    """A finished coordination run (see models.agents.AgentConversation)."""

    __tablename__ = "agent_conversations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    project_id: Mapped[str] = mapped_column(String(100), nullable=False)
    session_id: Mapped[str] = mapped_column(String(100), nullable=False)

    user_query: Mapped[str] = mapped_column(Text, nullable=False)

    coordinator_plan: Mapped[dict] = mapped_column(JSONB, nullable=False)
    agent_messages: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    agent_results: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)

    final_response: Mapped[str] = mapped_column(Text, nullable=False, default="")

    # Milliseconds
    total_duration: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<AgentConversationRecord(id={self.id}, "
            f"project_id='{self.project_id}', duration={self.total_duration})>"
        )


# =============================================================================
# Database Indexes
# =============================================================================
# HNSW with vector_cosine_ops: cosine distance, matching ChromaDB's
# "hnsw:space": "cosine" collections.
# =============================================================================

vector_item_embedding_idx = Index(
    "idx_vector_item_embedding_hnsw",
    VectorItem.embedding,
    postgresql_using="hnsw",
    postgresql_with={"m": 16, "ef_construction": 64},
    postgresql_ops={"embedding": "vector_cosine_ops"},
)

vector_item_project_idx = Index(
    "idx_vector_item_project_id",
    VectorItem.collection,
    VectorItem.metadata_["project_id"].astext,
)

agent_conversation_project_idx = Index(
    "idx_agent_conversation_project",
    AgentConversationRecord.project_id,
    AgentConversationRecord.created_at,
)
