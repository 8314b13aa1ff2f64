# =============================================================================
# Workers Package — Celery Background Tasks
# =============================================================================
#   - celery_app.py: Celery application configuration and beat schedule
#   - tasks.py: memory maintenance (pruning low-value memories)
#
# Agents never wait on these tasks. Pruning runs on a schedule, outside
# any coordination run.
# =============================================================================
