# =============================================================================
# Coordinator Agent — LangGraph Pipeline over the Specialist Agents
# =============================================================================
#
# The coordinator owns one instance of each specialist, plans a research
# task, delegates it, and merges the outputs into a single answer.
#
# GRAPH TOPOLOGY:
#   START ──▶ create_plan ──▶ recall_memories ──▶ execute_plan
#                                                     │
#         END ◀── store_memories ◀── synthesize ◀─────┘
#
# DESIGN DECISION: Fixed pipeline.
# Plan entries record `dependencies` for display and analytics, but tasks
# run strictly in list order, one at a time. The plan builder emits an
# order that already satisfies every declared dependency (memory first,
# synthesis last).
#
# DESIGN DECISION: Graph compiled once at module level.
# Nodes are plain functions; the coordinator instance travels in the
# graph state and the nodes call its public pipeline methods.
#
# STEP BUDGET:
# Every specialist delegation is routed through the run's
# CoordinationState. When the budget (COORDINATION_MAX_STEPS) runs out,
# the remaining tasks are skipped and synthesis runs on what was gathered.
#
# FAILURE SEMANTICS:
#   - a specialist failing (or raising) fills its result slot with a failed
#     output; the pipeline continues
#   - memory recall and memory writes are best-effort
#   - synthesis failing falls back to raw concatenation of the results
#   - anything else aborts the run with a single failed AgentOutput
# =============================================================================

from __future__ import annotations

import asyncio
import json
import logging
import time

from langgraph.graph import END, START, StateGraph
from typing_extensions import TypedDict

from research_agents.agents.analysis import AnalysisAgent
from research_agents.agents.base import Agent, AgentServices
from research_agents.agents.memory import MemoryAgent
from research_agents.agents.search import SearchAgent
from research_agents.agents.synthesis import SynthesisAgent
from research_agents.config import settings
from research_agents.models.agents import (
    AgentContext,
    AgentInput,
    AgentOutput,
    AgentStatus,
    AgentType,
    CoordinatorPlan,
    DelegationTask,
    MessageType,
    PlanTask,
    Priority,
)
from research_agents.services.coordination import (
    CoordinationState,
    build_agent_conversation,
    create_agent_message,
    create_coordination_state,
    get_coordination_summary,
    has_step_budget,
    record_agent_result,
    route_message,
    save_agent_conversation,
)

logger = logging.getLogger(__name__)

SPECIALIST_AGENTS: dict[AgentType, type[Agent]] = {
    AgentType.SEARCH: SearchAgent,
    AgentType.ANALYSIS: AnalysisAgent,
    AgentType.MEMORY: MemoryAgent,
    AgentType.SYNTHESIS: SynthesisAgent,
}

SEARCH_KEYWORDS = ("find", "search", "look for")
ANALYSIS_KEYWORDS = ("analyze", "analyse", "explain", "compare")


# ---------------------------------------------------------------------------
# Pipeline State Schema
# ---------------------------------------------------------------------------


class CoordinatorState(TypedDict, total=False):
    """
    State that flows through the coordination graph.

    total=False: nodes only return the keys they update.
    """

    # Input
    coordinator: CoordinatorAgent
    agent_input: AgentInput
    coordination: CoordinationState

    # Set by create_plan
    plan: CoordinatorPlan

    # Set by recall_memories
    memory_context: str

    # Set by execute_plan
    results: dict[AgentType, AgentOutput]

    # Set by synthesize
    synthesis: AgentOutput

    # Set by store_memories
    stored_memory_ids: list[str]


# ---------------------------------------------------------------------------
# Graph Nodes
# ---------------------------------------------------------------------------


async def create_plan_node(state: CoordinatorState) -> dict:
    plan = await state["coordinator"].create_plan(state["agent_input"])
    return {"plan": plan}


async def recall_memories_node(state: CoordinatorState) -> dict:
    memory_context = await state["coordinator"].retrieve_memory_context(state["agent_input"])
    return {"memory_context": memory_context}


async def execute_plan_node(state: CoordinatorState) -> dict:
    results = await state["coordinator"].execute_plan(
        state["plan"], state["agent_input"], state["coordination"],
    )
    return {"results": results}


async def synthesize_node(state: CoordinatorState) -> dict:
    synthesis = await state["coordinator"].synthesize_results(
        state["results"],
        state["agent_input"],
        state.get("memory_context", ""),
        state["coordination"],
    )
    return {"synthesis": synthesis}


async def store_memories_node(state: CoordinatorState) -> dict:
    stored = await state["coordinator"].store_memories(
        state["agent_input"], state["synthesis"], state["results"],
    )
    return {"stored_memory_ids": stored}


# ---------------------------------------------------------------------------
# Coordinator Agent
# ---------------------------------------------------------------------------


class CoordinatorAgent(Agent):
    agent_type = AgentType.COORDINATOR

    def __init__(self, services: AgentServices | None = None) -> None:
        super().__init__(services)
        self._agents: dict[AgentType, Agent] = {}

    async def initialize(self, context: AgentContext) -> None:
        await super().initialize(context)

        agents = {
            agent_type: agent_cls(self.services)
            for agent_type, agent_cls in SPECIALIST_AGENTS.items()
        }
        await asyncio.gather(*(agent.initialize(context) for agent in agents.values()))
        self._agents = agents

        self._log("All specialist agents initialized")

    async def _dispatch(self, agent_input: AgentInput) -> AgentOutput:
        if not settings.multi_agent_enabled:
            return self._fail("Multi-agent coordination is disabled")

        context = self.get_context()
        started = time.monotonic()
        coordination = create_coordination_state(
            context.conversation_id, max_steps=settings.coordination_max_steps,
        )

        self._log("Coordinating multi-agent execution: %s", agent_input.task)
        final = await coordination_graph.ainvoke({
            "coordinator": self,
            "agent_input": agent_input,
            "coordination": coordination,
        })

        plan: CoordinatorPlan = final["plan"]
        results: dict[AgentType, AgentOutput] = final["results"]
        synthesis: AgentOutput = final["synthesis"]
        memory_context = final.get("memory_context", "")

        if settings.conversation_persistence_enabled:
            await save_agent_conversation(build_agent_conversation(
                coordination,
                project_id=context.project_id,
                session_id=context.session_id,
                user_query=agent_input.task,
                plan=plan,
                final_response=_synthesis_text(synthesis),
            ))

        return self._ok({
            "plan": plan,
            "results": [
                {"agent": agent.value, "success": output.success, "data": output.result}
                for agent, output in results.items()
            ],
            "synthesis": synthesis.result,
            "memory_context_used": bool(memory_context),
            "execution_time": (time.monotonic() - started) * 1000,
            "coordination": get_coordination_summary(coordination),
        })

    # -------------------------------------------------------------------------
    # Pipeline steps
    # -------------------------------------------------------------------------

    async def create_plan(self, agent_input: AgentInput) -> CoordinatorPlan:
        """Keyword-based plan: memory first, synthesis last."""
        self.status = AgentStatus.PLANNING
        task = agent_input.task.lower()

        breakdown = [PlanTask(
            agent=AgentType.MEMORY,
            task="Retrieve relevant context from past conversations",
            priority=Priority.HIGH,
        )]

        if any(k in task for k in SEARCH_KEYWORDS):
            breakdown.append(PlanTask(
                agent=AgentType.SEARCH,
                task=f"Search project data: {agent_input.task}",
                priority=Priority.HIGH,
                dependencies=[AgentType.MEMORY],
            ))

        if any(k in task for k in ANALYSIS_KEYWORDS):
            depends_on = [t.agent for t in breakdown if t.agent == AgentType.SEARCH]
            breakdown.append(PlanTask(
                agent=AgentType.ANALYSIS,
                task=f"Analyze content: {agent_input.task}",
                priority=Priority.MEDIUM,
                dependencies=depends_on + [AgentType.MEMORY],
            ))

        breakdown.append(PlanTask(
            agent=AgentType.SYNTHESIS,
            task="Combine and format all findings into a coherent response",
            priority=Priority.CRITICAL,
            dependencies=[t.agent for t in breakdown],
        ))

        plan = CoordinatorPlan(
            strategy=determine_strategy(task),
            agents_involved=[t.agent for t in breakdown],
            estimated_steps=len(breakdown),
            task_breakdown=breakdown,
        )
        self._log(
            "Execution plan created (strategy=%s, agents=%s)",
            plan.strategy, [a.value for a in plan.agents_involved],
        )
        return plan

    async def retrieve_memory_context(self, agent_input: AgentInput) -> str:
        """Memory block for the synthesis prompt, or "" (never raises)."""
        memory_agent = self._agents.get(AgentType.MEMORY)
        if memory_agent is None or not settings.memory_enabled:
            return ""

        try:
            output = await memory_agent.execute(AgentInput(
                task="Get context",
                data={"query": agent_input.task},
            ))
        except Exception:
            logger.warning("Failed to retrieve memory context", exc_info=True)
            return ""

        if output.success and output.result and output.result.get("context"):
            return output.result["context"]
        return ""

    async def execute_plan(
        self,
        plan: CoordinatorPlan,
        agent_input: AgentInput,
        coordination: CoordinationState | None = None,
    ) -> dict[AgentType, AgentOutput]:
        """
        Run the plan's specialist tasks in order (synthesis excluded).

        Returns one output per agent type; a later task for the same type
        replaces the earlier output.
        """
        context = self.get_context()
        if coordination is None:
            coordination = create_coordination_state(
                context.conversation_id, max_steps=settings.coordination_max_steps,
            )
        self.status = AgentStatus.EXECUTING

        tasks = [t for t in plan.task_breakdown if t.agent != AgentType.SYNTHESIS]
        results: dict[AgentType, AgentOutput] = {}

        for index, entry in enumerate(tasks):
            if not has_step_budget(coordination):
                logger.warning(
                    "Step budget exhausted (%d steps); skipping %d remaining tasks",
                    coordination.max_steps, len(tasks) - index,
                )
                break

            agent = self._agents.get(entry.agent)
            if agent is None:
                logger.warning("Agent %s not found, skipping task", entry.agent.value)
                continue

            route_message(coordination, create_agent_message(
                AgentType.COORDINATOR,
                entry.agent,
                coordination.conversation_id,
                MessageType.REQUEST,
                entry.task,
                data=agent_input.data,
                context=agent_input.context,
                priority=entry.priority,
            ))
            self._log("Delegating to %s agent: %s", entry.agent.value, entry.task)

            try:
                output = await agent.execute(AgentInput(
                    task=entry.task,
                    data=agent_input.data,
                    context=agent_input.context,
                    priority=entry.priority,
                ))
            except Exception as e:
                logger.exception("%s agent raised", entry.agent.value)
                output = AgentOutput.fail(str(e) or type(e).__name__)

            results[entry.agent] = output
            record_agent_result(coordination, entry.agent, output)
            self._log("%s agent completed (success=%s)", entry.agent.value, output.success)

        return results

    async def synthesize_results(
        self,
        results: dict[AgentType, AgentOutput],
        agent_input: AgentInput,
        memory_context: str = "",
        coordination: CoordinationState | None = None,
    ) -> AgentOutput:
        """
        Merge specialist outputs via the Synthesis agent. Falls back to raw
        concatenation when the agent is missing, raises, or fails.
        """
        formatted = [
            {
                "agent": agent.value,
                "type": "success" if output.success else "error",
                "data": output.result,
                "summary": summarize_result(agent, output),
            }
            for agent, output in results.items()
        ]

        synthesis_agent = self._agents.get(AgentType.SYNTHESIS)
        if synthesis_agent is None:
            return self._fallback_synthesis(results, formatted)

        synthesis_input = AgentInput(
            task="Combine results",
            data={
                "user_query": agent_input.task,
                "results": formatted,
                "memory_context": memory_context,
            },
            context=agent_input.context,
        )
        if coordination is not None:
            route_message(coordination, create_agent_message(
                AgentType.COORDINATOR,
                AgentType.SYNTHESIS,
                coordination.conversation_id,
                MessageType.REQUEST,
                synthesis_input.task,
                context=agent_input.context,
                priority=Priority.CRITICAL,
            ))

        try:
            synthesis = await synthesis_agent.execute(synthesis_input)
        except Exception as e:
            logger.exception("Synthesis agent raised")
            synthesis = AgentOutput.fail(str(e) or type(e).__name__)

        if coordination is not None:
            record_agent_result(coordination, AgentType.SYNTHESIS, synthesis)

        if not synthesis.success:
            logger.warning("Synthesis failed (%s); using raw results", synthesis.error)
            return self._fallback_synthesis(results, formatted)
        return synthesis

    def _fallback_synthesis(
        self,
        results: dict[AgentType, AgentOutput],
        formatted: list[dict],
    ) -> AgentOutput:
        combined = "\n\n".join(
            f"**{agent.value}:** {json.dumps(output.result, default=str)}"
            for agent, output in results.items()
        )
        return self._ok({
            "synthesis": combined,
            "source_count": len(formatted),
            "sources": [
                {"agent": f["agent"], "type": f["type"], "summary": f["summary"]}
                for f in formatted
            ],
            "fallback": True,
        })

    async def store_memories(
        self,
        agent_input: AgentInput,
        synthesis: AgentOutput,
        results: dict[AgentType, AgentOutput],
    ) -> list[str]:
        """
        Record the query as a pattern memory, plus a fact memory when the
        search found something. Best-effort; returns the stored IDs.
        """
        memory_agent = self._agents.get(AgentType.MEMORY)
        if memory_agent is None or not settings.memory_enabled:
            return []

        writes = [{
            "content": f'User asked: "{agent_input.task}"',
            "type": "pattern",
            "tags": ["user-query", "multi-agent"],
            "confidence": 0.8,
            "source": "coordinator",
        }]

        search = results.get(AgentType.SEARCH)
        found = (search.result or {}).get("found", 0) if search and search.success else 0
        if found > 0:
            writes.append({
                "content": f'Search for "{agent_input.task}" found {found} relevant items',
                "type": "fact",
                "tags": ["search-result"],
                "confidence": 0.9,
                "source": "coordinator",
            })

        stored: list[str] = []
        for data in writes:
            try:
                output = await memory_agent.execute(AgentInput(task="Store memory", data=data))
            except Exception:
                logger.warning("Failed to store %s memory", data["type"], exc_info=True)
                continue
            if output.success:
                stored.append(output.result["memory_id"])
            else:
                logger.warning("Failed to store %s memory: %s", data["type"], output.error)
        return stored

    # -------------------------------------------------------------------------
    # Envelope delegation
    # -------------------------------------------------------------------------

    async def delegate_task(
        self,
        agent_type: AgentType,
        task: PlanTask | DelegationTask,
    ) -> AgentOutput:
        """Point-to-point delegation through the target's handle_message()."""
        agent = self._agents.get(agent_type)
        if agent is None:
            return self._fail(f"Agent {agent_type.value} not available")

        message = self.create_message(
            agent_type,
            MessageType.REQUEST,
            task.task,
            data=getattr(task, "data", None),
            context=getattr(task, "context", None),
            priority=task.priority,
        )
        response = await agent.handle_message(message)

        if response.type == MessageType.ERROR:
            return self._fail(response.payload.error or "Task failed")
        return self._ok(response.payload.data)

    async def cleanup(self) -> None:
        for agent in self._agents.values():
            await agent.cleanup()
        self._agents.clear()
        await super().cleanup()


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def determine_strategy(task_lower: str) -> str:
    if "compare" in task_lower or "contrast" in task_lower:
        return "multi-source-comparison"
    if "analyze" in task_lower or "analyse" in task_lower:
        return "deep-analysis"
    if "find" in task_lower or "search" in task_lower:
        return "information-retrieval"
    return "general-inquiry"


def summarize_result(agent: AgentType, output: AgentOutput) -> str:
    """One-line human summary of a specialist output."""
    if not output.success:
        return f"Failed: {output.error or 'Unknown error'}"

    result = output.result if isinstance(output.result, dict) else {}
    if agent == AgentType.SEARCH:
        return f"Found {result.get('found', 0)} results"
    if agent == AgentType.ANALYSIS:
        return f"Analysis completed for {result.get('filename') or 'item'}"
    if agent == AgentType.MEMORY:
        return f"Retrieved {result.get('found', 0)} memories"
    return "Completed"


def _synthesis_text(synthesis: AgentOutput) -> str:
    if isinstance(synthesis.result, dict):
        return str(synthesis.result.get("synthesis") or "")
    return ""


# ---------------------------------------------------------------------------
# Graph Construction
# ---------------------------------------------------------------------------
# Built after CoordinatorAgent exists: StateGraph resolves the state schema's
# type hints when it is constructed.

_builder = StateGraph(CoordinatorState)
_builder.add_node("create_plan", create_plan_node)
_builder.add_node("recall_memories", recall_memories_node)
_builder.add_node("execute_plan", execute_plan_node)
_builder.add_node("synthesize", synthesize_node)
_builder.add_node("store_memories", store_memories_node)

_builder.add_edge(START, "create_plan")
_builder.add_edge("create_plan", "recall_memories")
_builder.add_edge("recall_memories", "execute_plan")
_builder.add_edge("execute_plan", "synthesize")
_builder.add_edge("synthesize", "store_memories")
_builder.add_edge("store_memories", END)

coordination_graph = _builder.compile()
