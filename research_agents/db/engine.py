# =============================================================================
# Database Engine & Session Management
# =============================================================================
#
# Async SQLAlchemy engine (asyncpg driver) shared by the pgvector vector
# store and conversation persistence.
#
# DESIGN DECISION: Lazy initialization.
# Nothing touches PostgreSQL unless VECTORSTORE_TYPE=pgvector or
# CONVERSATION_PERSISTENCE_ENABLED=true, so the engine is created on first
# use instead of at import time. The default ChromaDB setup and the test
# suite never need asyncpg to connect.
#
# EVENT LOOPS:
# An async engine's pool is bound to the event loop it was first used on.
# Code that runs its own loop with asyncio.run() (the Celery maintenance
# task) must call `dispose_engine()` before that loop closes.
#
# COMMIT POLICY:
# Sessions are self-managed (`async with get_async_session_factory()() as s`)
# and MUST commit explicitly.
# =============================================================================

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from research_agents.config import settings

_async_engine: AsyncEngine | None = None
_async_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_async_engine() -> AsyncEngine:
    """Lazily create and cache the async engine."""
    global _async_engine
    if _async_engine is None:
        _async_engine = create_async_engine(
            settings.database_url,
            echo=settings.debug,
            pool_size=5,
            max_overflow=10,
        )
    return _async_engine


def get_async_session_factory() -> async_sessionmaker[AsyncSession]:
    """
    Lazily create and cache the session factory.

    expire_on_commit=False: attributes stay readable after commit without
    a new round-trip, which would fail outside the session in async code.
    """
    global _async_session_factory
    if _async_session_factory is None:
        _async_session_factory = async_sessionmaker(
            bind=get_async_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _async_session_factory


async def dispose_engine() -> None:
    """Close pooled connections and forget the engine."""
    global _async_engine, _async_session_factory
    if _async_engine is not None:
        await _async_engine.dispose()
    _async_engine = None
    _async_session_factory = None
