# =============================================================================
# Database Package
# =============================================================================
# Provides the lazily-created async SQLAlchemy engine and the ORM models.
#
# Key exports:
#   - get_async_session_factory: session factory for self-managed sessions
#   - Base: SQLAlchemy declarative base for ORM models
#   - VectorItem: pgvector-backed records for every vector store collection
#   - AgentConversationRecord: finished coordination runs
# =============================================================================
