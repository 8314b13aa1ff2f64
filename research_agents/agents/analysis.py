# =============================================================================
# Analysis Agent — Item Analysis, Stored Analyses, Comparison
# =============================================================================
#
# Task routing:
#   "image" | "visual" (or data.type == "image")  → analyse one item
#   "compare" | "comparison"                      → compare stored analyses
#   "stored" | "cached"                           → return stored analysis
#   anything else                                 → analyse one item
#
# ANALYSE: the item is fetched project-scoped first, then unscoped.
#   - images are compressed (Pillow) and attached as an image block
#   - text items go into the prompt, truncated to ANALYSIS_MAX_CHARS
# The prompt adds the project context and a focus area
# (data.focus_query → input.context → the run's user query).
#
# COMPARE is pure set logic over stored tags; no LLM call.
# =============================================================================

from __future__ import annotations

import asyncio

from research_agents.agents.base import Agent
from research_agents.config import settings
from research_agents.models.agents import AgentInput, AgentOutput, AgentType
from research_agents.services.image_utils import compress_image, estimate_image_tokens
from research_agents.services.llm import ImageInput, generate
from research_agents.services.project_data import EMPTY_ANALYSIS, ProjectItem

IMAGE_KEYWORDS = ("image", "visual")
COMPARE_KEYWORDS = ("compare", "comparison")
STORED_KEYWORDS = ("stored", "cached")

ANALYSIS_INSTRUCTIONS = """**Analysis Instructions:**
- Extract key insights directly relevant to the focus area and project context
- Identify specific technical details, measurements, or specifications if visible
- Highlight any issues, recommendations, or notable observations
- If the item contains text, extract and summarize key information
- Be concise and actionable"""


class AnalysisAgent(Agent):
    agent_type = AgentType.ANALYSIS

    async def _dispatch(self, agent_input: AgentInput) -> AgentOutput:
        task = agent_input.task.lower()

        if any(k in task for k in IMAGE_KEYWORDS) or agent_input.data.get("type") == "image":
            return await self.analyze_item(agent_input)
        if any(k in task for k in COMPARE_KEYWORDS):
            return await self.compare_items(agent_input)
        if any(k in task for k in STORED_KEYWORDS):
            return await self.get_stored_analysis(agent_input)
        return await self.analyze_item(agent_input)

    # -------------------------------------------------------------------------
    # Analyse
    # -------------------------------------------------------------------------

    async def analyze_item(self, agent_input: AgentInput) -> AgentOutput:
        context = self.get_context()
        data = agent_input.data
        data_id = data.get("data_id") or data.get("id")
        focus_query = data.get("focus_query") or agent_input.context or context.user_query

        if not data_id:
            return self._fail("No dataId provided for image analysis")

        self._log("Analyzing item %s (focus=%r)", data_id, focus_query)

        item = await self.services.get_project_data().get_project_item(
            data_id, project_id=context.project_id,
        )
        if item is None or not item.content:
            return self._fail("Item not found or invalid")

        prompt = self._build_prompt(item, focus_query)
        images: list[ImageInput] | None = None

        if item.type == "image":
            compressed = await asyncio.to_thread(
                compress_image, item.content, item.mime_type or "image/jpeg",
            )
            images = [ImageInput(data=compressed.base64, media_type=compressed.media_type)]
            metadata = {
                "original_size_kb": compressed.original_size_kb,
                "compressed_size_kb": compressed.size_kb,
                "estimated_tokens": estimate_image_tokens(compressed.base64),
            }
        else:
            text = item.content[: settings.analysis_max_chars]
            prompt += f"\n\n**Content:**\n{text}"
            size_kb = round(len(item.content.encode("utf-8")) / 1024)
            metadata = {
                "original_size_kb": size_kb,
                "compressed_size_kb": round(len(text.encode("utf-8")) / 1024),
                "estimated_tokens": round(len(text) / 4),
            }

        response = await generate(prompt, llm=self.services.get_llm(), images=images)

        return self._ok(
            {
                "data_id": data_id,
                "filename": item.filename,
                "analysis": response.content or "Analysis failed",
                "existing_analysis": item.analysis,
                "metadata": metadata,
            },
            tokens_used=response.total_tokens,
        )

    def _build_prompt(self, item: ProjectItem, focus_query: str | None) -> str:
        context = self.get_context()
        kind = "image" if item.type == "image" else "document"
        prompt = f'Analyze this {kind} "{item.filename or "Unknown"}"'

        if context.project_name or context.project_description:
            prompt += "\n\n**Project Context:**"
            if context.project_name:
                prompt += f"\n- Project: {context.project_name}"
            if context.project_description:
                prompt += f"\n- Description: {context.project_description}"

        if focus_query:
            prompt += f'\n\n**Focus Area:** "{focus_query}"'
            prompt += "\nConcentrate your analysis specifically on elements related to this query."

        return prompt + "\n\n" + ANALYSIS_INSTRUCTIONS

    # -------------------------------------------------------------------------
    # Stored analysis
    # -------------------------------------------------------------------------

    async def get_stored_analysis(self, agent_input: AgentInput) -> AgentOutput:
        data_id = agent_input.data.get("data_id") or agent_input.data.get("id")
        if not data_id:
            return self._fail("No dataId provided")

        self._log("Fetching stored analysis for %s", data_id)
        stored = await self._stored_analysis(data_id)
        if stored is None:
            return self._fail("Item not found")
        return self._ok(stored)

    async def _stored_analysis(self, data_id: str) -> dict | None:
        item = await self.services.get_project_data().get_project_item(
            data_id, project_id=self.get_context().project_id,
        )
        if item is None:
            return None
        return {
            "id": item.id,
            "type": item.type,
            "filename": item.filename,
            "metadata": {"mime_type": item.mime_type, "size": item.size},
            "analysis": item.analysis or dict(EMPTY_ANALYSIS),
            "created_at": item.created_at.isoformat(),
            "updated_at": item.updated_at.isoformat(),
        }

    # -------------------------------------------------------------------------
    # Compare
    # -------------------------------------------------------------------------

    async def compare_items(self, agent_input: AgentInput) -> AgentOutput:
        data_ids = agent_input.data.get("data_ids") or []
        if len(data_ids) < 2:
            return self._fail("Need at least 2 items to compare")

        self._log("Comparing %d items", len(data_ids))

        analyses = []
        for data_id in data_ids:
            stored = await self._stored_analysis(data_id)
            if stored is not None:
                analyses.append(stored)

        if not analyses:
            return self._fail("No analyses found for comparison")

        return self._ok({
            "item_count": len(analyses),
            "items": [
                {
                    "id": a["id"],
                    "filename": a["filename"],
                    "description": a["analysis"].get("description"),
                    "tags": a["analysis"].get("tags") or [],
                }
                for a in analyses
            ],
            "common_tags": find_common_tags(analyses),
            "differences": {"unique_to_items": find_unique_tags(analyses)},
        })


def find_common_tags(analyses: list[dict]) -> list[str]:
    """Tags present in every item, in the first item's order."""
    if not analyses:
        return []
    tag_sets = [set(a["analysis"].get("tags") or []) for a in analyses]
    first = list(dict.fromkeys(analyses[0]["analysis"].get("tags") or []))
    return [tag for tag in first if all(tag in s for s in tag_sets)]


def find_unique_tags(analyses: list[dict]) -> list[dict]:
    """Tags owned by exactly one item, with that item's filename."""
    owners: dict[str, list[str]] = {}
    for a in analyses:
        for tag in dict.fromkeys(a["analysis"].get("tags") or []):
            owners.setdefault(tag, []).append(a["filename"])
    return [
        {"tag": tag, "file": files[0]}
        for tag, files in owners.items()
        if len(files) == 1
    ]
