# =============================================================================
# Synthesis Agent — Merging Specialist Outputs into One Answer
# =============================================================================
#
# Task routing:
#   "report" | "document"     → structured report from arbitrary data
#   "summary" | "summarize"   → summary of a block of content
#   "comparison" | "compare"  → compare/contrast named items
#   anything else             → combine agent results (coordinator path)
#
# COMBINE: input.data = {user_query, results: [{agent, type, data,
# summary}], memory_context}. Failed sources stay in the prompt and the
# model is told to say which ones failed, so a partial answer is
# recognisable as partial.
# =============================================================================

from __future__ import annotations

import json
from typing import Any

from research_agents.agents.base import Agent
from research_agents.config import settings
from research_agents.models.agents import AgentInput, AgentOutput, AgentType, utc_now
from research_agents.services.llm import generate

REPORT_KEYWORDS = ("report", "document")
SUMMARY_KEYWORDS = ("summary", "summarize")
COMPARISON_KEYWORDS = ("comparison", "compare")

SYNTHESIS_INSTRUCTIONS = """**Instructions:**
1. Synthesize all the information into a coherent, well-formatted response
2. Use markdown formatting with headers, bullets, and emphasis where appropriate
3. Cite specific sources when presenting information
4. If there are contradictions, acknowledge them
5. If any source failed, state explicitly which one and what is missing as a result
6. Provide actionable insights or conclusions
7. Keep the response focused on answering the user's query

Generate a comprehensive response now:"""


class SynthesisAgent(Agent):
    agent_type = AgentType.SYNTHESIS

    async def _dispatch(self, agent_input: AgentInput) -> AgentOutput:
        task = agent_input.task.lower()

        if any(k in task for k in REPORT_KEYWORDS):
            return await self.generate_report(agent_input)
        if any(k in task for k in SUMMARY_KEYWORDS):
            return await self.generate_summary(agent_input)
        if any(k in task for k in COMPARISON_KEYWORDS):
            return await self.synthesize_comparison(agent_input)
        return await self.combine_results(agent_input)

    async def combine_results(self, agent_input: AgentInput) -> AgentOutput:
        data = agent_input.data
        results = data.get("results") or []
        user_query = data.get("user_query") or agent_input.context or ""
        memory_context = data.get("memory_context") or ""

        if not results:
            return self._fail("No results provided for synthesis")

        self._log("Combining %d results", len(results))

        prompt = build_synthesis_prompt(user_query, results, memory_context)
        response = await self._generate(prompt)

        return self._ok(
            {
                "synthesis": response.content,
                "source_count": len(results),
                "sources": [
                    {
                        "agent": r.get("agent"),
                        "type": r.get("type"),
                        "summary": r.get("summary") or "No summary",
                    }
                    for r in results
                ],
            },
            tokens_used=response.total_tokens,
        )

    async def generate_summary(self, agent_input: AgentInput) -> AgentOutput:
        content = agent_input.data.get("content") or ""
        max_length = agent_input.data.get("max_length") or 500

        if not content:
            return self._fail("No content provided for summarization")

        self._log("Generating summary (%d chars, max %d words)", len(content), max_length)

        prompt = (
            "Summarize the following content in a concise and informative way "
            f"(max {max_length} words):\n\n{content}\n\n"
            "Provide a clear, well-structured summary that captures the key points."
        )
        response = await self._generate(prompt)

        return self._ok(
            {
                "summary": response.content,
                "original_length": len(content),
                "summary_length": len(response.content),
            },
            tokens_used=response.total_tokens,
        )

    async def generate_report(self, agent_input: AgentInput) -> AgentOutput:
        data = agent_input.data.get("data") or {}
        title = agent_input.data.get("title") or "Analysis Report"
        report_format = agent_input.data.get("format") or "markdown"

        self._log("Generating report %r (%s)", title, report_format)

        prompt = f"""Generate a professional {report_format} report with the title "{title}".

**Data to include:**
{_to_json(data)}

**Requirements:**
1. Start with an executive summary
2. Organize content into clear sections
3. Include relevant data points and statistics
4. Provide analysis and insights
5. End with conclusions and recommendations
6. Use proper {report_format} formatting

Generate the report now:"""
        response = await self._generate(prompt)

        return self._ok(
            {
                "title": title,
                "format": report_format,
                "report": response.content,
                "generated_at": utc_now().isoformat(),
            },
            tokens_used=response.total_tokens,
        )

    async def synthesize_comparison(self, agent_input: AgentInput) -> AgentOutput:
        items = agent_input.data.get("items") or []
        if len(items) < 2:
            return self._fail("Need at least 2 items to compare")

        self._log("Synthesizing comparison of %d items", len(items))

        sections = "\n".join(
            f"\n**Item {i}: {item.get('name') or 'Unknown'}**\n{_to_json(item.get('data'))}\n"
            for i, item in enumerate(items, start=1)
        )
        prompt = f"""Compare and contrast the following items:

{sections}

Provide a detailed comparison highlighting:
1. Key similarities
2. Notable differences
3. Unique characteristics of each item
4. Recommendations or insights based on the comparison"""
        response = await self._generate(prompt)

        return self._ok(
            {
                "comparison": response.content,
                "item_count": len(items),
                "items": [item.get("name") or "Unknown" for item in items],
            },
            tokens_used=response.total_tokens,
        )

    async def _generate(self, prompt: str):
        return await generate(
            prompt,
            llm=self.services.get_llm(),
            max_tokens=settings.synthesis_max_tokens,
        )


def build_synthesis_prompt(
    user_query: str,
    results: list[dict],
    memory_context: str = "",
) -> str:
    prompt = (
        "Based on the following information gathered from multiple specialized "
        "agents, provide a comprehensive and well-structured answer to the "
        f"user's query.\n\n**User Query:** {user_query}\n"
    )
    if memory_context:
        prompt += f"\n{memory_context}\n"

    prompt += "\n**Information Gathered:**\n"
    for i, result in enumerate(results, start=1):
        prompt += f"\n### Source {i} ({result.get('agent') or 'Unknown'} Agent):\n"
        if result.get("type") == "error":
            prompt += f"FAILED: {result.get('summary') or 'unknown error'}\n"
            continue
        payload = result.get("data")
        prompt += (payload if isinstance(payload, str) else _to_json(payload)) + "\n"

    return prompt + "\n" + SYNTHESIS_INSTRUCTIONS


def _to_json(value: Any) -> str:
    return json.dumps(value, indent=2, default=str)
