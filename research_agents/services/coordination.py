# =============================================================================
# Coordination State — Per-Run Bookkeeping for the Coordinator
# =============================================================================
#
# One CoordinationState exists per coordination run. It records every
# delegation the coordinator routes (message log), each specialist's status
# and output, and the step budget.
#
#   route_message()        request logged, target marked EXECUTING, step + 1
#   record_agent_result()  output stored, target marked COMPLETED / FAILED
#   has_step_budget()      False once current_step reaches max_steps
#
# The state itself is never persisted. A finished run is condensed into an
# AgentConversation (`build_agent_conversation`) and, when
# CONVERSATION_PERSISTENCE_ENABLED is set, saved to PostgreSQL. Persistence
# is best-effort: failures are logged and never reach the caller.
# =============================================================================

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import select

from research_agents.db.engine import get_async_session_factory
from research_agents.db.models import AgentConversationRecord
from research_agents.models.agents import (
    AgentConversation,
    AgentMessage,
    AgentOutput,
    AgentResult,
    AgentStatus,
    AgentType,
    CoordinatorPlan,
    MessagePayload,
    MessageType,
    Priority,
    utc_now,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_STEPS = 20


@dataclass
class CoordinationState:
    conversation_id: str
    active_agents: dict[AgentType, AgentStatus] = field(default_factory=dict)
    message_queue: list[AgentMessage] = field(default_factory=list)
    results: dict[AgentType, AgentOutput] = field(default_factory=dict)
    start_time: float = field(default_factory=time.monotonic)
    current_step: int = 0
    max_steps: int = DEFAULT_MAX_STEPS


def create_coordination_state(
    conversation_id: str,
    max_steps: int = DEFAULT_MAX_STEPS,
) -> CoordinationState:
    return CoordinationState(conversation_id=conversation_id, max_steps=max_steps)


def create_agent_message(
    from_agent: AgentType,
    to_agent: AgentType,
    conversation_id: str,
    message_type: MessageType,
    task: str,
    data: Any = None,
    context: str | None = None,
    priority: Priority | None = None,
    error: str | None = None,
) -> AgentMessage:
    timestamp_ms = int(time.time() * 1000)
    return AgentMessage(
        from_agent=from_agent,
        to_agent=to_agent,
        message_id=f"{from_agent.value}-{to_agent.value}-{timestamp_ms}-{uuid.uuid4().hex[:8]}",
        conversation_id=conversation_id,
        type=message_type,
        payload=MessagePayload(
            task=task, data=data, context=context, priority=priority, error=error,
        ),
    )


def route_message(state: CoordinationState, message: AgentMessage) -> None:
    """Log a delegation: target becomes EXECUTING and one step is spent."""
    logger.debug(
        "Routing message from %s to %s (step %d/%d)",
        message.from_agent.value, message.to_agent.value,
        state.current_step + 1, state.max_steps,
    )
    state.active_agents[message.to_agent] = AgentStatus.EXECUTING
    state.message_queue.append(message)
    state.current_step += 1

    if state.current_step == state.max_steps:
        logger.warning(
            "Max steps (%d) reached for conversation %s",
            state.max_steps, state.conversation_id,
        )


def has_step_budget(state: CoordinationState) -> bool:
    return state.current_step < state.max_steps


def record_agent_result(
    state: CoordinationState,
    agent_type: AgentType,
    output: AgentOutput,
) -> None:
    """Store an agent's output; a later output for the same type replaces it."""
    state.results[agent_type] = output
    state.active_agents[agent_type] = (
        AgentStatus.COMPLETED if output.success else AgentStatus.FAILED
    )


def get_messages_for_agent(state: CoordinationState, agent_type: AgentType) -> list[AgentMessage]:
    return [m for m in state.message_queue if m.to_agent == agent_type]


def get_messages_from_agent(state: CoordinationState, agent_type: AgentType) -> list[AgentMessage]:
    return [m for m in state.message_queue if m.from_agent == agent_type]


def are_all_agents_complete(state: CoordinationState) -> bool:
    return all(
        status in (AgentStatus.COMPLETED, AgentStatus.FAILED)
        for status in state.active_agents.values()
    )


def elapsed_ms(state: CoordinationState) -> float:
    return (time.monotonic() - state.start_time) * 1000


def get_coordination_summary(state: CoordinationState) -> dict:
    statuses = {agent.value: status.value for agent, status in state.active_agents.items()}
    return {
        "total_messages": len(state.message_queue),
        "total_duration": elapsed_ms(state),
        "steps_used": state.current_step,
        "max_steps": state.max_steps,
        "agent_statuses": statuses,
        "completed_agents": sum(
            1 for s in state.active_agents.values() if s == AgentStatus.COMPLETED
        ),
        "failed_agents": sum(
            1 for s in state.active_agents.values() if s == AgentStatus.FAILED
        ),
    }


def build_agent_conversation(
    state: CoordinationState,
    project_id: str,
    session_id: str,
    user_query: str,
    plan: CoordinatorPlan,
    final_response: str,
) -> AgentConversation:
    """Condense a finished run into its durable record."""
    agent_results = {
        agent.value: AgentResult(
            agent_type=agent,
            status="completed" if output.success else "failed",
            output=output.result,
            duration=output.metadata.duration,
            tokens_used=output.metadata.tokens_used,
            error=output.error,
        )
        for agent, output in state.results.items()
    }
    return AgentConversation(
        project_id=project_id,
        session_id=session_id,
        user_query=user_query,
        coordinator_plan=plan,
        agent_messages=list(state.message_queue),
        agent_results=agent_results,
        final_response=final_response,
        total_duration=elapsed_ms(state),
    )


# ---------------------------------------------------------------------------
# Persistence (PostgreSQL, best-effort)
# ---------------------------------------------------------------------------


async def save_agent_conversation(
    conversation: AgentConversation,
    session_factory=None,
) -> int | None:
    """Insert the run record. Returns its row ID, or None on failure."""
    dumped = conversation.model_dump(mode="json", by_alias=True)
    try:
        factory = session_factory or get_async_session_factory()
        async with factory() as session:
            record = AgentConversationRecord(
                project_id=conversation.project_id,
                session_id=conversation.session_id,
                user_query=conversation.user_query,
                coordinator_plan=dumped["coordinator_plan"],
                agent_messages=dumped["agent_messages"],
                agent_results=dumped["agent_results"],
                final_response=conversation.final_response,
                total_duration=conversation.total_duration,
                created_at=conversation.created_at,
            )
            session.add(record)
            await session.commit()
            logger.info("Saved agent conversation %d", record.id)
            return record.id
    except Exception:
        logger.exception("Failed to save agent conversation")
        return None


async def get_agent_conversations(
    project_id: str,
    limit: int = 10,
    session_factory=None,
) -> list[AgentConversation]:
    """Most recent runs for a project, newest first."""
    try:
        factory = session_factory or get_async_session_factory()
        async with factory() as session:
            stmt = (
                select(AgentConversationRecord)
                .where(AgentConversationRecord.project_id == project_id)
                .order_by(AgentConversationRecord.created_at.desc())
                .limit(limit)
            )
            records = (await session.execute(stmt)).scalars().all()
    except Exception:
        logger.exception("Failed to get agent conversations (project_id=%s)", project_id)
        return []
    return [_conversation_from_record(r) for r in records]


async def get_agent_analytics(
    project_id: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    session_factory=None,
) -> dict:
    """Aggregate statistics over stored runs (see `summarize_agent_analytics`)."""
    stmt = select(AgentConversationRecord)
    if project_id:
        stmt = stmt.where(AgentConversationRecord.project_id == project_id)
    if start_date:
        stmt = stmt.where(AgentConversationRecord.created_at >= start_date)
    if end_date:
        stmt = stmt.where(AgentConversationRecord.created_at <= end_date)

    try:
        factory = session_factory or get_async_session_factory()
        async with factory() as session:
            records = (await session.execute(stmt)).scalars().all()
    except Exception:
        logger.exception("Failed to get agent analytics")
        return summarize_agent_analytics([])
    return summarize_agent_analytics([_conversation_from_record(r) for r in records])


def summarize_agent_analytics(conversations: list[AgentConversation]) -> dict:
    """
    Per-run and per-agent statistics:
    - total_conversations, average_duration (ms)
    - agent_usage_count: runs in which each agent produced a result
    - success_rate: completed / total per agent
    - average_steps_per_conversation: routed messages per run
    """
    total = len(conversations)
    if total == 0:
        return {
            "total_conversations": 0,
            "average_duration": 0.0,
            "agent_usage_count": {},
            "success_rate": {},
            "average_steps_per_conversation": 0.0,
        }

    usage: dict[str, int] = {}
    successes: dict[str, int] = {}
    for conversation in conversations:
        for agent, result in conversation.agent_results.items():
            usage[agent] = usage.get(agent, 0) + 1
            if result.status == "completed":
                successes[agent] = successes.get(agent, 0) + 1

    return {
        "total_conversations": total,
        "average_duration": sum(c.total_duration for c in conversations) / total,
        "agent_usage_count": usage,
        "success_rate": {agent: successes.get(agent, 0) / count for agent, count in usage.items()},
        "average_steps_per_conversation": (
            sum(len(c.agent_messages) for c in conversations) / total
        ),
    }


def _conversation_from_record(record: AgentConversationRecord) -> AgentConversation:
    messages = [
        {**m, "from_agent": m.get("from", m.get("from_agent")), "to_agent": m.get("to", m.get("to_agent"))}
        for m in record.agent_messages or []
    ]
    return AgentConversation.model_validate({
        "project_id": record.project_id,
        "session_id": record.session_id,
        "user_query": record.user_query,
        "coordinator_plan": record.coordinator_plan,
        "agent_messages": messages,
        "agent_results": record.agent_results or {},
        "final_response": record.final_response,
        "total_duration": record.total_duration,
        "created_at": record.created_at or utc_now(),
    })
