# =============================================================================
# Research Agents — Multi-Agent Research Coordinator
# =============================================================================
# A coordinator plans a research query, delegates it to specialist agents
# (search, analysis, memory, synthesis), and merges their outputs into one
# answer, recalling and recording project memories along the way.
#
# Package structure:
#   research_agents/
#   ├── agents/       → Agent base class, specialists, LangGraph coordinator
#   ├── db/           → Async engine and ORM models (pgvector, run records)
#   ├── models/       → Pydantic V2 schemas (agents, memory)
#   ├── services/     → Collaborators: LLM, embeddings, vector store,
#   │                    memory store, project data, web search, images,
#   │                    coordination state
#   └── workers/      → Celery memory-maintenance tasks
# =============================================================================
