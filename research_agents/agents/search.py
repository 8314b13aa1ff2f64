# =============================================================================
# Search Agent — Project Data, Similar Items, and the Web
# =============================================================================
#
# Task routing (keywords in the lower-cased task string):
#   "web" | "external" | "internet"  → web search (Perplexity)
#   "similar" | "related"            → nearest items to a reference item
#   anything else                    → semantic search over project data
#
# DESIGN DECISION: Keyword routing, not LLM classification.
# The coordinator writes these task strings itself, so a handful of
# keywords is exact and free.
# =============================================================================

from __future__ import annotations

from research_agents.agents.base import Agent
from research_agents.config import settings
from research_agents.models.agents import AgentInput, AgentOutput, AgentType

WEB_KEYWORDS = ("web", "external", "internet")
SIMILAR_KEYWORDS = ("similar", "related")


class SearchAgent(Agent):
    agent_type = AgentType.SEARCH

    async def _dispatch(self, agent_input: AgentInput) -> AgentOutput:
        task = agent_input.task.lower()

        if any(k in task for k in WEB_KEYWORDS):
            return await self.web_search(agent_input)
        if any(k in task for k in SIMILAR_KEYWORDS):
            return await self.find_similar_items(agent_input)
        return await self.search_project_data(agent_input)

    async def search_project_data(self, agent_input: AgentInput) -> AgentOutput:
        context = self.get_context()
        data = agent_input.data
        query = data.get("query") or agent_input.task
        max_results = data.get("max_results") or settings.search_max_results

        self._log("Searching project data (query=%r, max_results=%d)", query, max_results)

        hits = await self.services.get_project_data().search_project_data(
            context.project_id, query, max_results=max_results,
        )
        if not hits:
            return self._ok({
                "found": 0,
                "results": [],
                "query": query,
                "message": "No results found for the query",
            })

        results = [hit.to_dict() for hit in hits]
        return self._ok({
            "found": len(results),
            "showing": len(results),
            "results": results,
            "query": query,
        })

    async def find_similar_items(self, agent_input: AgentInput) -> AgentOutput:
        context = self.get_context()
        data = agent_input.data
        data_id = data.get("data_id") or data.get("reference_id")
        max_results = data.get("max_results") or settings.similar_items_max_results

        if not data_id:
            return self._fail("No reference dataId provided for similarity search")

        self._log("Finding items similar to %s (max_results=%d)", data_id, max_results)

        repository = self.services.get_project_data()
        reference = await repository.get_project_item(data_id, include_embedding=True)
        if reference is None or not reference.embedding:
            return self._fail("Reference item not found or has no embedding")

        hits = await repository.find_similar_items(
            context.project_id, reference, max_results=max_results,
        )
        return self._ok({
            "reference_item": reference.filename or data_id,
            "found": len(hits),
            "results": [hit.to_dict() for hit in hits],
        })

    async def web_search(self, agent_input: AgentInput) -> AgentOutput:
        if not settings.web_search_enabled:
            return self._fail("Web search is not enabled")

        query = agent_input.data.get("query") or agent_input.task
        self._log("Performing web search (query=%r)", query)

        result = await self.services.get_web_search().search(query)
        return self._ok({
            "answer": result.answer,
            "citations": result.citations,
            "source": "web",
            "query": query,
        })
