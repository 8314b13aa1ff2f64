# =============================================================================
# Celery Task Definitions — Memory Maintenance
# =============================================================================
#
# `prune_agent_memories` deletes memories that are old, rarely accessed AND
# low-confidence (see MemoryStore.prune). Scheduled daily by celery beat;
# can also be queued by hand for one project:
#   prune_agent_memories.delay(project_id="p1")
#
# Vector store errors propagate out of MemoryStore.prune and trigger a
# retry (up to 3, one minute apart).
#
# Celery workers are synchronous. The task runs the async memory store on a
# private event loop via asyncio.run() and disposes the async DB engine
# before that loop closes (the pgvector backend's pool is bound to it).
# =============================================================================

import asyncio
import logging

from research_agents.config import settings
from research_agents.db.engine import dispose_engine
from research_agents.services.memory import MemoryStore
from research_agents.services.vectorstore import get_vector_store
from research_agents.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


async def _prune(
    project_id: str | None,
    min_access_count: int | None,
    min_confidence: float | None,
    older_than_days: int | None,
) -> int:
    # Pruning filters on metadata only; no embedder is needed
    store = MemoryStore(get_vector_store())
    try:
        return await store.prune(
            project_id,
            min_access_count=min_access_count,
            min_confidence=min_confidence,
            older_than_days=older_than_days,
        )
    finally:
        await dispose_engine()


@celery_app.task(
    bind=True,
    name="prune_agent_memories",
    max_retries=3,
    default_retry_delay=60,
)
def prune_agent_memories(
    self,
    project_id: str | None = None,
    min_access_count: int | None = None,
    min_confidence: float | None = None,
    older_than_days: int | None = None,
) -> dict:
    """
    Prune low-value memories for one project, or for all projects when
    `project_id` is None.

    Returns:
        dict with the number of deleted memories and the backend used.
    """
    task_id = self.request.id
    logger.info(
        "[%s] Pruning agent memories (project_id=%s, vectorstore=%s)",
        task_id, project_id or "*", settings.vectorstore_type,
    )

    try:
        deleted = asyncio.run(
            _prune(project_id, min_access_count, min_confidence, older_than_days)
        )
    except Exception as exc:
        logger.exception("[%s] Memory pruning failed: %s", task_id, exc)
        raise self.retry(exc=exc)

    summary = {
        "project_id": project_id,
        "deleted": deleted,
        "vectorstore": settings.vectorstore_type,
    }
    logger.info("[%s] Memory pruning complete: %s", task_id, summary)
    return summary
