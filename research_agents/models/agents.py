# =============================================================================
# Agent Schemas — Pydantic V2 Models for Multi-Agent Coordination
# =============================================================================
#
# These models are the contract between the coordinator and the specialist
# agents:
#
#   AgentInput ──▶ Agent.execute() ──▶ AgentOutput
#   AgentMessage ──▶ Agent.handle_message() ──▶ AgentMessage
#
#   CoordinatorPlan
#   └── PlanTask × N     (agent, task, priority, declared dependencies)
#
#   AgentConversation    (durable record of one finished coordination run)
#
# Envelope and plan models are frozen: once a message is sent or a plan is
# built, nothing downstream may rewrite it.
# =============================================================================

from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


def utc_now() -> datetime:
    """Timezone-aware 'now' used for every timestamp in the package."""
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class AgentType(str, enum.Enum):
    """The closed set of agent variants."""

    COORDINATOR = "coordinator"
    SEARCH = "search"
    ANALYSIS = "analysis"
    MEMORY = "memory"
    SYNTHESIS = "synthesis"


class AgentStatus(str, enum.Enum):
    """
    Agent lifecycle state.

    State machine:
        IDLE → PLANNING → EXECUTING → COMPLETED
                                    → FAILED

    WAITING is reserved for dependency-blocked execution and is not entered
    by the fixed pipeline.
    """

    IDLE = "idle"
    PLANNING = "planning"
    EXECUTING = "executing"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"


class MessageType(str, enum.Enum):
    REQUEST = "request"
    RESPONSE = "response"
    UPDATE = "update"
    ERROR = "error"


class Priority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# ---------------------------------------------------------------------------
# Scope and Invocation
# ---------------------------------------------------------------------------


class AgentContext(BaseModel):
    """
    Scope bound to an agent by `initialize()`.

    Every memory and search operation an agent performs is filtered by
    `project_id` (and, for session-recent memories, `session_id`).
    """

    project_id: str
    session_id: str
    conversation_id: str
    user_query: str = ""
    project_name: str | None = None
    project_description: str | None = None
    selected_data_ids: list[str] = Field(default_factory=list)


class AgentInput(BaseModel):
    """Unwrapped request handed to `Agent.execute()`."""

    task: str
    data: dict[str, Any] = Field(default_factory=dict)
    context: str | None = None
    priority: Priority | None = None


class AgentOutputMetadata(BaseModel):
    """Timing and accounting attached to every agent output."""

    duration: float = 0.0  # milliseconds since the agent was initialised
    tokens_used: int | None = None
    error: str | None = None

    model_config = ConfigDict(extra="allow")


class AgentOutput(BaseModel):
    """
    Result of one agent invocation.

    Never partially filled: a failed output always carries `result=None`
    and an error message in its metadata.
    """

    success: bool
    result: Any = None
    metadata: AgentOutputMetadata = Field(default_factory=AgentOutputMetadata)

    @model_validator(mode="after")
    def _failure_has_no_result(self) -> AgentOutput:
        if not self.success and self.result is not None:
            raise ValueError("A failed AgentOutput must have result=None")
        return self

    @classmethod
    def ok(cls, result: Any, duration: float = 0.0, **extra: Any) -> AgentOutput:
        return cls(
            success=True,
            result=result,
            metadata=AgentOutputMetadata(duration=duration, **extra),
        )

    @classmethod
    def fail(cls, error: str, duration: float = 0.0, **extra: Any) -> AgentOutput:
        return cls(
            success=False,
            result=None,
            metadata=AgentOutputMetadata(duration=duration, error=error, **extra),
        )

    @property
    def error(self) -> str | None:
        return self.metadata.error


# ---------------------------------------------------------------------------
# Message Envelope
# ---------------------------------------------------------------------------


class MessagePayload(BaseModel):
    task: str
    data: Any = None
    context: str | None = None
    priority: Priority | None = None
    error: str | None = None

    model_config = ConfigDict(frozen=True)


class AgentMessage(BaseModel):
    """
    Point-to-point envelope used for audited delegation.

    `from_agent` / `to_agent` are named to avoid shadowing the `from`
    keyword; they serialise as `from` / `to`.
    """

    from_agent: AgentType = Field(serialization_alias="from")
    to_agent: AgentType = Field(serialization_alias="to")
    message_id: str
    conversation_id: str
    type: MessageType
    payload: MessagePayload
    timestamp: datetime = Field(default_factory=utc_now)

    model_config = ConfigDict(frozen=True)


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------


class PlanTask(BaseModel):
    """One entry of a plan's task breakdown."""

    agent: AgentType
    task: str
    priority: Priority
    dependencies: list[AgentType] | None = None

    model_config = ConfigDict(frozen=True)


class CoordinatorPlan(BaseModel):
    """
    Execution plan built once per coordination run.

    `task_breakdown` order is the execution order; `dependencies` are
    recorded for display and analytics only.
    """

    strategy: str
    agents_involved: list[AgentType]
    estimated_steps: int
    task_breakdown: list[PlanTask]

    model_config = ConfigDict(frozen=True)


class DelegationTask(BaseModel):
    """Explicit point-to-point delegation request (see `delegate_task`)."""

    target_agent: AgentType
    task: str
    data: dict[str, Any] | None = None
    context: str | None = None
    priority: Priority = Priority.MEDIUM
    dependencies: list[AgentType] | None = None


# ---------------------------------------------------------------------------
# Durable Run Record
# ---------------------------------------------------------------------------


class AgentResult(BaseModel):
    agent_type: AgentType
    status: str  # "pending", "completed" or "failed"
    output: Any = None
    duration: float = 0.0
    tokens_used: int | None = None
    error: str | None = None


class AgentConversation(BaseModel):
    """Everything persisted about a finished coordination run."""

    project_id: str
    session_id: str
    user_query: str
    coordinator_plan: CoordinatorPlan
    agent_messages: list[AgentMessage] = Field(default_factory=list)
    agent_results: dict[str, AgentResult] = Field(default_factory=dict)
    final_response: str
    total_duration: float
    created_at: datetime = Field(default_factory=utc_now)
