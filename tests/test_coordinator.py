# =============================================================================
# Unit Tests — Coordinator
# =============================================================================
#
# Plan building, plan execution (failures, step budget), synthesis fallback,
# memory write-back, envelope delegation, and two end-to-end runs through
# the compiled LangGraph pipeline.
# =============================================================================

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from research_agents.agents.coordinator import (
    CoordinatorAgent,
    coordination_graph,
    determine_strategy,
    summarize_result,
)
from research_agents.config import settings
from research_agents.models.agents import (
    AgentInput,
    AgentOutput,
    AgentStatus,
    AgentType,
    DelegationTask,
    PlanTask,
    Priority,
)
from research_agents.models.memory import MemoryType, StoreMemoryInput
from research_agents.services.coordination import create_coordination_state
from research_agents.services.vectorstore import MEMORY_COLLECTION


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _coordinator(services, context) -> CoordinatorAgent:
    coordinator = CoordinatorAgent(services)
    _run(coordinator.initialize(context))
    return coordinator


def _plan(coordinator, task: str):
    return _run(coordinator.create_plan(AgentInput(task=task)))


# ---------------------------------------------------------------------------
# Test: Planning
# ---------------------------------------------------------------------------


class TestCreatePlan:

    def test_find_includes_search(self, services, context):
        plan = _plan(_coordinator(services, context), "find the safety diagram")

        assert plan.agents_involved == [AgentType.MEMORY, AgentType.SEARCH, AgentType.SYNTHESIS]
        assert plan.strategy == "information-retrieval"
        assert plan.estimated_steps == 3

    def test_plain_question_is_memory_and_synthesis(self, services, context):
        plan = _plan(_coordinator(services, context), "what did we decide last week?")

        assert plan.agents_involved == [AgentType.MEMORY, AgentType.SYNTHESIS]
        assert plan.strategy == "general-inquiry"

    @pytest.mark.parametrize("task", [
        "Find and compare the two deck drawings",
        "search then explain the pump curves",
        "look for cracks and analyze them",
    ])
    def test_memory_first_synthesis_last(self, services, context, task):
        plan = _plan(_coordinator(services, context), task)

        assert plan.agents_involved[0] == AgentType.MEMORY
        assert plan.agents_involved[-1] == AgentType.SYNTHESIS
        assert AgentType.SEARCH in plan.agents_involved
        assert AgentType.ANALYSIS in plan.agents_involved

    def test_declared_dependencies(self, services, context):
        plan = _plan(_coordinator(services, context), "find and analyze the report")
        tasks = {t.agent: t for t in plan.task_breakdown}

        assert tasks[AgentType.MEMORY].dependencies is None
        assert tasks[AgentType.MEMORY].priority == Priority.HIGH
        assert tasks[AgentType.SEARCH].dependencies == [AgentType.MEMORY]
        assert tasks[AgentType.ANALYSIS].dependencies == [AgentType.SEARCH, AgentType.MEMORY]
        assert tasks[AgentType.ANALYSIS].priority == Priority.MEDIUM
        assert tasks[AgentType.SYNTHESIS].dependencies == [
            AgentType.MEMORY, AgentType.SEARCH, AgentType.ANALYSIS,
        ]
        assert tasks[AgentType.SYNTHESIS].priority == Priority.CRITICAL
        assert tasks[AgentType.SEARCH].task == "Search project data: find and analyze the report"

    @pytest.mark.parametrize("task,strategy", [
        ("compare a and b", "multi-source-comparison"),
        ("contrast a and b", "multi-source-comparison"),
        ("analyse the logs", "deep-analysis"),
        ("search the logs", "information-retrieval"),
        ("hello", "general-inquiry"),
    ])
    def test_strategy(self, task, strategy):
        assert determine_strategy(task) == strategy


# ---------------------------------------------------------------------------
# Test: Plan Execution
# ---------------------------------------------------------------------------


class TestExecutePlan:

    def test_results_keyed_by_agent_without_synthesis(self, services, context):
        coordinator = _coordinator(services, context)
        plan = _plan(coordinator, "find and explain the pump curves")

        results = _run(coordinator.execute_plan(plan, AgentInput(task="find and explain the pump curves")))

        assert set(results) <= set(plan.agents_involved) - {AgentType.SYNTHESIS}
        assert set(results) == {AgentType.MEMORY, AgentType.SEARCH, AgentType.ANALYSIS}
        # No data_id given: analysis fails, the others succeed
        assert not results[AgentType.ANALYSIS].success
        assert results[AgentType.SEARCH].success

    def test_raising_agent_does_not_stop_plan(self, services, context):
        coordinator = _coordinator(services, context)
        search = coordinator._agents[AgentType.SEARCH]
        search.execute = AsyncMock(side_effect=RuntimeError("vector store offline"))
        plan = _plan(coordinator, "find and explain the pump curves")

        results = _run(coordinator.execute_plan(plan, AgentInput(task="find and explain the pump curves")))

        assert results[AgentType.SEARCH].error == "vector store offline"
        assert results[AgentType.SEARCH].result is None
        assert AgentType.ANALYSIS in results

    def test_duplicate_agent_keeps_latest(self, services, context):
        coordinator = _coordinator(services, context)
        plan = _plan(coordinator, "hello").model_copy(update={"task_breakdown": [
            PlanTask(agent=AgentType.SEARCH, task="web search", priority=Priority.HIGH),
            PlanTask(agent=AgentType.SEARCH, task="search pumps", priority=Priority.HIGH),
        ]})

        with patch.object(settings, "web_search_enabled", False):
            results = _run(coordinator.execute_plan(plan, AgentInput(task="x")))

        assert list(results) == [AgentType.SEARCH]
        assert results[AgentType.SEARCH].success

    def test_step_budget_stops_execution(self, services, context):
        coordinator = _coordinator(services, context)
        plan = _plan(coordinator, "find and explain the pump curves")
        state = create_coordination_state("C1", max_steps=1)

        results = _run(coordinator.execute_plan(plan, AgentInput(task="t"), state))

        assert list(results) == [AgentType.MEMORY]
        assert state.current_step == 1
        assert len(state.message_queue) == 1

    def test_delegations_are_routed(self, services, context):
        coordinator = _coordinator(services, context)
        plan = _plan(coordinator, "find pumps")
        state = create_coordination_state("C1")

        _run(coordinator.execute_plan(plan, AgentInput(task="find pumps", context="urgent"), state))

        assert [m.to_agent for m in state.message_queue] == [AgentType.MEMORY, AgentType.SEARCH]
        assert state.message_queue[1].payload.context == "urgent"
        assert state.active_agents[AgentType.SEARCH] == AgentStatus.COMPLETED


# ---------------------------------------------------------------------------
# Test: Synthesis and Summaries
# ---------------------------------------------------------------------------


class TestSynthesizeResults:

    def test_summaries(self):
        assert summarize_result(AgentType.SEARCH, AgentOutput.ok({"found": 3})) == "Found 3 results"
        assert summarize_result(
            AgentType.ANALYSIS, AgentOutput.ok({"filename": "deck.png"}),
        ) == "Analysis completed for deck.png"
        assert summarize_result(AgentType.MEMORY, AgentOutput.ok({"found": 2})) == "Retrieved 2 memories"
        assert summarize_result(AgentType.SEARCH, AgentOutput.fail("boom")) == "Failed: boom"
        assert summarize_result(AgentType.SYNTHESIS, AgentOutput.ok("x")) == "Completed"

    def test_fallback_when_synthesis_raises(self, services, context):
        coordinator = _coordinator(services, context)
        coordinator._agents[AgentType.SYNTHESIS].execute = AsyncMock(side_effect=RuntimeError("llm down"))
        results = {
            AgentType.SEARCH: AgentOutput.ok({"found": 1}),
            AgentType.ANALYSIS: AgentOutput.fail("Item not found or invalid"),
        }

        output = _run(coordinator.synthesize_results(results, AgentInput(task="q")))

        assert output.success
        assert output.result["synthesis"] == '**search:** {"found": 1}\n\n**analysis:** null'
        assert output.result["fallback"] is True

    def test_synthesis_exception_message_is_recorded(self, services, context):
        coordinator = _coordinator(services, context)
        coordinator._agents[AgentType.SYNTHESIS].execute = AsyncMock(side_effect=RuntimeError("llm down"))
        state = create_coordination_state("C1")

        _run(coordinator.synthesize_results(
            {AgentType.SEARCH: AgentOutput.ok({"found": 1})}, AgentInput(task="q"), coordination=state,
        ))

        assert state.results[AgentType.SYNTHESIS].error == "llm down"
        assert state.active_agents[AgentType.SYNTHESIS] == AgentStatus.FAILED

    def test_fallback_when_no_results(self, services, context):
        coordinator = _coordinator(services, context)

        output = _run(coordinator.synthesize_results({}, AgentInput(task="q")))

        assert output.success
        assert output.result["synthesis"] == ""

    def test_synthesis_receives_summaries(self, services, llm, context):
        coordinator = _coordinator(services, context)
        results = {AgentType.SEARCH: AgentOutput.ok({"found": 4})}

        output = _run(coordinator.synthesize_results(results, AgentInput(task="find pumps"), "MEMO"))

        assert output.success
        assert output.result["sources"] == [
            {"agent": "search", "type": "success", "summary": "Found 4 results"},
        ]
        assert "MEMO" in llm.calls[0]["prompt"]


# ---------------------------------------------------------------------------
# Test: Memory Write-back
# ---------------------------------------------------------------------------


class TestStoreMemories:

    def test_pattern_always_fact_when_found(self, services, context):
        coordinator = _coordinator(services, context)
        synthesis = AgentOutput.ok({"synthesis": "done"})

        stored = _run(coordinator.store_memories(
            AgentInput(task="find pumps"), synthesis,
            {AgentType.SEARCH: AgentOutput.ok({"found": 2})},
        ))

        assert len(stored) == 2
        store = services.get_memory_store()
        patterns = _run(store.get_by_type("P1", MemoryType.PATTERN))
        facts = _run(store.get_by_type("P1", MemoryType.FACT))
        assert patterns[0].content == 'User asked: "find pumps"'
        assert patterns[0].metadata.confidence == 0.8
        assert patterns[0].tags == ["user-query", "multi-agent"]
        assert facts[0].content == 'Search for "find pumps" found 2 relevant items'
        assert facts[0].metadata.confidence == 0.9

    def test_no_fact_without_search_hits(self, services, context):
        coordinator = _coordinator(services, context)

        stored = _run(coordinator.store_memories(
            AgentInput(task="hello"), AgentOutput.ok({}),
            {AgentType.SEARCH: AgentOutput.ok({"found": 0})},
        ))

        assert len(stored) == 1

    def test_failures_are_swallowed(self, services, context):
        coordinator = _coordinator(services, context)
        coordinator._agents[AgentType.MEMORY].execute = AsyncMock(side_effect=RuntimeError("down"))

        assert _run(coordinator.store_memories(AgentInput(task="hello"), AgentOutput.ok({}), {})) == []

    def test_disabled_memory(self, services, context, vector_store):
        coordinator = _coordinator(services, context)

        with patch.object(settings, "memory_enabled", False):
            assert _run(coordinator.store_memories(AgentInput(task="hello"), AgentOutput.ok({}), {})) == []
        assert _run(vector_store.count(MEMORY_COLLECTION)) == 0


# ---------------------------------------------------------------------------
# Test: Envelope Delegation
# ---------------------------------------------------------------------------


class TestDelegateTask:

    def test_matches_direct_execute(self, services, context):
        coordinator = _coordinator(services, context)
        task = DelegationTask(
            target_agent=AgentType.MEMORY,
            task="Store memory",
            data={"content": "Pump P2 is offline"},
        )

        output = _run(coordinator.delegate_task(AgentType.MEMORY, task))

        assert output.success
        assert output.result["type"] == "fact"

    def test_failure_propagates_error(self, services, context):
        coordinator = _coordinator(services, context)
        task = DelegationTask(target_agent=AgentType.ANALYSIS, task="analyze")

        output = _run(coordinator.delegate_task(AgentType.ANALYSIS, task))

        assert not output.success
        assert output.error == "No dataId provided for image analysis"

    def test_unknown_agent(self, services, context):
        coordinator = _coordinator(services, context)
        coordinator._agents.pop(AgentType.SEARCH)

        output = _run(coordinator.delegate_task(
            AgentType.SEARCH, PlanTask(agent=AgentType.SEARCH, task="x", priority=Priority.LOW),
        ))
        assert output.error == "Agent search not available"


# ---------------------------------------------------------------------------
# Test: End-to-end
# ---------------------------------------------------------------------------


class TestEndToEnd:

    def _seed(self, services):
        repository = services.get_project_data()
        _run(repository.add_project_item(
            "P1", "bridge-safety-diagram.txt", "Safety diagram for the bridge deck showing evacuation routes",
        ))
        _run(repository.add_project_item(
            "P1", "reactor-safety-diagram.txt", "Safety diagram of the reactor cooling loop",
        ))
        _run(repository.add_project_item("P1", "budget.txt", "Quarterly budget spreadsheet totals"))

    def test_graph_node_order(self):
        nodes = set(coordination_graph.get_graph().nodes)
        assert {"create_plan", "recall_memories", "execute_plan", "synthesize", "store_memories"} <= nodes

    def test_find_the_safety_diagram(self, services, llm, context):
        self._seed(services)
        coordinator = _coordinator(services, context)

        output = _run(coordinator.execute(AgentInput(task="find the safety diagram")))

        assert output.success
        assert coordinator.status == AgentStatus.COMPLETED
        result = output.result
        assert result["plan"].agents_involved == [
            AgentType.MEMORY, AgentType.SEARCH, AgentType.SYNTHESIS,
        ]
        search = next(r for r in result["results"] if r["agent"] == "search")
        assert search["data"]["found"] == 2

        text = result["synthesis"]["synthesis"]
        assert text
        assert "bridge-safety-diagram.txt" in text
        assert "reactor-safety-diagram.txt" in text

        assert result["coordination"]["steps_used"] == 3
        assert result["memory_context_used"] is False

        store = services.get_memory_store()
        facts = _run(store.get_by_type("P1", MemoryType.FACT))
        assert facts[0].content == 'Search for "find the safety diagram" found 2 relevant items'

    def test_second_run_recalls_memory(self, services, llm, context):
        self._seed(services)
        coordinator = _coordinator(services, context)
        _run(coordinator.execute(AgentInput(task="find the safety diagram")))

        output = _run(coordinator.execute(AgentInput(task="find the safety diagram")))

        assert output.result["memory_context_used"] is True
        assert "## Relevant Memories" in llm.calls[-1]["prompt"]
        patterns = _run(services.get_memory_store().get_by_type("P1", MemoryType.PATTERN))
        assert len(patterns) == 1

    def test_failing_specialist_still_synthesizes(self, services, llm, context):
        coordinator = _coordinator(services, context)
        coordinator._agents[AgentType.SEARCH].execute = AsyncMock(side_effect=RuntimeError("index corrupt"))

        output = _run(coordinator.execute(AgentInput(task="find the safety diagram")))

        assert output.success
        search = next(r for r in output.result["results"] if r["agent"] == "search")
        assert search == {"agent": "search", "success": False, "data": None}
        assert "FAILED: Failed: index corrupt" in llm.calls[-1]["prompt"]

    def test_zero_budget_falls_back(self, services, context):
        coordinator = _coordinator(services, context)

        with patch.object(settings, "coordination_max_steps", 0):
            output = _run(coordinator.execute(AgentInput(task="find the safety diagram")))

        assert output.success
        assert output.result["results"] == []
        assert output.result["synthesis"]["fallback"] is True

    def test_unrecoverable_error_fails_run(self, services, context):
        coordinator = _coordinator(services, context)

        with patch.object(CoordinatorAgent, "create_plan", AsyncMock(side_effect=RuntimeError("planner crashed"))):
            output = _run(coordinator.execute(AgentInput(task="find x")))

        assert not output.success
        assert output.error == "planner crashed"
        assert coordinator.status == AgentStatus.FAILED

    def test_disabled(self, services, context):
        coordinator = _coordinator(services, context)

        with patch.object(settings, "multi_agent_enabled", False):
            output = _run(coordinator.execute(AgentInput(task="find x")))

        assert output.error == "Multi-agent coordination is disabled"

    def test_memory_enrichment_across_runs(self, services, context):
        store = services.get_memory_store()
        entry = StoreMemoryInput(
            project_id="P1", session_id="S1", type=MemoryType.FACT,
            content="Reactor runs at 400C", confidence=0.9,
        )

        first = _run(store.store(entry))
        second = _run(store.store(entry))

        assert first == second
        memory = _run(store.get(first))
        assert memory.metadata.access_count == 0
        assert memory.metadata.confidence == 0.9

    def test_cleanup_resets_specialists(self, services, context):
        coordinator = _coordinator(services, context)
        specialists = list(coordinator._agents.values())

        _run(coordinator.cleanup())

        assert coordinator.status == AgentStatus.IDLE
        assert coordinator._agents == {}
        assert all(a.status == AgentStatus.IDLE for a in specialists)
