# =============================================================================
# Memory Agent — Agent Façade over the Memory Store
# =============================================================================
#
# Task routing:
#   "store" | "save" | "remember"  → store (merges near-duplicates)
#   "retrieve" | "recall" | "search" → semantic recall
#   "context" | "summary"          → formatted memory block for prompts
#   "link" | "relate"              → add related-memory references
#   anything else                  → semantic recall
#
# All reads and writes are scoped to the bound context's project.
# =============================================================================

from __future__ import annotations

from collections import Counter

from research_agents.agents.base import Agent
from research_agents.config import settings
from research_agents.models.agents import AgentInput, AgentOutput, AgentType
from research_agents.models.memory import (
    MemoryRecord,
    MemoryType,
    RetrieveMemoriesInput,
    StoreMemoryInput,
)

STORE_KEYWORDS = ("store", "save", "remember")
RETRIEVE_KEYWORDS = ("retrieve", "recall", "search")
CONTEXT_KEYWORDS = ("context", "summary")
LINK_KEYWORDS = ("link", "relate")

DEFAULT_RETRIEVE_MIN_CONFIDENCE = 0.6
PATTERN_ANALYSIS_LIMIT = 50


class MemoryAgent(Agent):
    agent_type = AgentType.MEMORY

    async def _dispatch(self, agent_input: AgentInput) -> AgentOutput:
        task = agent_input.task.lower()

        if any(k in task for k in STORE_KEYWORDS):
            return await self.store_memory(agent_input)
        if any(k in task for k in RETRIEVE_KEYWORDS):
            return await self.retrieve_memories(agent_input)
        if any(k in task for k in CONTEXT_KEYWORDS):
            return await self.get_memory_context(agent_input)
        if any(k in task for k in LINK_KEYWORDS):
            return await self.link_memories(agent_input)
        return await self.retrieve_memories(agent_input)

    async def store_memory(self, agent_input: AgentInput) -> AgentOutput:
        context = self.get_context()
        data = agent_input.data
        content = data.get("content")
        if not content:
            return self._fail("No content provided for memory storage")

        memory_type = MemoryType(data.get("type") or MemoryType.FACT.value)
        self._log("Storing %s memory: %.50s", memory_type.value, content)

        memory_id = await self.services.get_memory_store().store(StoreMemoryInput(
            project_id=context.project_id,
            session_id=context.session_id,
            conversation_id=context.conversation_id,
            type=memory_type,
            content=content,
            source=data.get("source") or "memory-agent",
            confidence=data.get("confidence") or settings.memory_default_confidence,
            tags=data.get("tags") or [],
        ))
        if memory_id is None:
            return self._fail("Failed to store memory")

        return self._ok({
            "success": True,
            "memory_id": memory_id,
            "type": memory_type.value,
            "message": "Memory stored successfully",
        })

    async def retrieve_memories(self, agent_input: AgentInput) -> AgentOutput:
        context = self.get_context()
        data = agent_input.data
        query = data.get("query") or agent_input.task
        limit = data.get("limit") or 5
        memory_type = MemoryType(data["type"]) if data.get("type") else None
        min_confidence = data.get("min_confidence") or DEFAULT_RETRIEVE_MIN_CONFIDENCE

        self._log("Retrieving memories (query=%.50r, limit=%d)", query, limit)

        memories = await self.services.get_memory_store().retrieve(RetrieveMemoriesInput(
            project_id=context.project_id,
            query=query,
            limit=limit,
            type=memory_type,
            min_confidence=min_confidence,
        ))
        return self._ok({
            "found": len(memories),
            "memories": [
                {
                    **_memory_summary(m.memory),
                    "score": m.score,
                    "source": m.memory.metadata.source,
                }
                for m in memories
            ],
            "query": query,
        })

    async def get_memory_context(self, agent_input: AgentInput) -> AgentOutput:
        context = self.get_context()
        query = agent_input.data.get("query")

        memory_context = await self.services.get_memory_store().get_context(
            context.project_id, context.session_id, query,
        )
        return self._ok({
            "context": memory_context,
            "has_memories": bool(memory_context),
        })

    async def link_memories(self, agent_input: AgentInput) -> AgentOutput:
        memory_id = agent_input.data.get("memory_id")
        related_ids = agent_input.data.get("related_ids") or []
        if not memory_id or not related_ids:
            return self._fail("memoryId and relatedIds required for linking")

        self._log("Linking memory %s to %d related memories", memory_id, len(related_ids))

        if not await self.services.get_memory_store().link(memory_id, related_ids):
            return self._fail("Failed to link memories")

        return self._ok({
            "success": True,
            "message": f"Linked {len(related_ids)} related memories",
        })

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    async def get_memories_by_type(
        self,
        memory_type: MemoryType,
        limit: int = 10,
    ) -> AgentOutput:
        try:
            memories = await self.services.get_memory_store().get_by_type(
                self.get_context().project_id, memory_type, limit,
            )
        except Exception as e:
            return self._fail(str(e) or "Failed to get memories by type")

        return self._ok({
            "type": memory_type.value,
            "found": len(memories),
            "memories": [_memory_summary(m) for m in memories],
        })

    async def analyze_memory_patterns(self) -> AgentOutput:
        """Counts by type, the five most-accessed memories, the ten commonest tags."""
        try:
            project_id = self.get_context().project_id
            store = self.services.get_memory_store()
            by_type = {
                memory_type: await store.get_by_type(
                    project_id, memory_type, PATTERN_ANALYSIS_LIMIT,
                )
                for memory_type in MemoryType
            }
        except Exception as e:
            return self._fail(str(e) or "Failed to analyze memory patterns")

        everything = [m for memories in by_type.values() for m in memories]
        most_accessed = sorted(
            everything, key=lambda m: m.metadata.access_count, reverse=True,
        )[:5]
        tag_counts = Counter(tag for m in everything for tag in m.tags)

        return self._ok({
            "total_memories": len(everything),
            "by_type": {t.value: len(memories) for t, memories in by_type.items()},
            "most_accessed": [
                {
                    "content": m.content[:100],
                    "access_count": m.metadata.access_count,
                    "type": m.type.value,
                }
                for m in most_accessed
            ],
            "common_tags": [
                {"tag": tag, "count": count} for tag, count in tag_counts.most_common(10)
            ],
        })


def _memory_summary(memory: MemoryRecord) -> dict:
    return {
        "id": memory.id,
        "content": memory.content,
        "type": memory.type.value,
        "confidence": memory.metadata.confidence,
        "tags": memory.tags,
        "access_count": memory.metadata.access_count,
        "created_at": memory.created_at.isoformat(),
    }
