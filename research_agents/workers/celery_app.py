# =============================================================================
# Celery Application Configuration
# =============================================================================
#
# Runs periodic memory maintenance. Start a worker with an embedded beat
# scheduler:
#   celery -A research_agents.workers.celery_app worker --beat -l info
#
# The broker (Redis db 0) queues tasks; results go to Redis db 1.
# =============================================================================

from celery import Celery
from celery.schedules import crontab

from research_agents.config import settings

celery_app = Celery(
    "research_agents.workers",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

celery_app.conf.update(
    # --- Serialization ---
    # JSON, not pickle: pickle can execute code during deserialization.
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # --- Reliability ---
    # Acknowledge only after completion so a crashed worker's task is
    # re-queued. Pruning is idempotent, so re-running it is harmless.
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,

    # --- Timeouts ---
    task_soft_time_limit=300,
    task_time_limit=600,

    # --- Results ---
    result_expires=3600,

    # --- Schedule ---
    timezone="UTC",
    beat_schedule={
        "prune-agent-memories-daily": {
            "task": "prune_agent_memories",
            "schedule": crontab(hour=settings.memory_prune_hour, minute=0),
        },
    },

    include=["research_agents.workers.tasks"],
)
