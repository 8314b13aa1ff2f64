# =============================================================================
# Agent Base Class — Lifecycle, Envelopes, Collaborator Access
# =============================================================================
#
# Every agent (the coordinator and the four specialists) shares:
#
#   initialize(context)  bind project/session scope; IDLE → PLANNING
#   execute(input)       PLANNING → EXECUTING → COMPLETED | FAILED
#   handle_message(msg)  envelope adapter over execute()
#   cleanup()            release scope; → IDLE (idempotent)
#
# Subclasses implement `_dispatch()`. `execute()` turns anything it raises
# into a failed AgentOutput, so callers only ever branch on
# `output.success`.
#
# COLLABORATORS:
# AgentServices carries the vector store, embedder, LLM provider and web
# search client. Anything not injected is resolved on first use from the
# factories in `services/`, so an agent that never calls the LLM never
# needs an LLM API key. The coordinator shares one AgentServices with all
# of its specialists (and therefore one MemoryStore and its write locks).
# =============================================================================

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from research_agents.errors import AgentNotInitializedError
from research_agents.models.agents import (
    AgentContext,
    AgentInput,
    AgentMessage,
    AgentOutput,
    AgentStatus,
    AgentType,
    MessageType,
    Priority,
)
from research_agents.services.coordination import create_agent_message
from research_agents.services.embedder import EmbeddingService, get_embedding_service
from research_agents.services.llm import LLMProvider, get_llm_provider
from research_agents.services.memory import MemoryStore
from research_agents.services.project_data import ProjectDataRepository
from research_agents.services.vectorstore import VectorStore, get_vector_store
from research_agents.services.web_search import WebSearchService, get_web_search_service


@dataclass
class AgentServices:
    """Collaborator handles; None means "use the configured default"."""

    vector_store: VectorStore | None = None
    embedder: EmbeddingService | None = None
    llm: LLMProvider | None = None
    web_search: WebSearchService | None = None
    _memory_store: MemoryStore | None = None
    _project_data: ProjectDataRepository | None = None

    def get_vector_store(self) -> VectorStore:
        if self.vector_store is None:
            self.vector_store = get_vector_store()
        return self.vector_store

    def get_embedder(self) -> EmbeddingService:
        if self.embedder is None:
            self.embedder = get_embedding_service()
        return self.embedder

    def get_llm(self) -> LLMProvider:
        if self.llm is None:
            self.llm = get_llm_provider()
        return self.llm

    def get_web_search(self) -> WebSearchService:
        if self.web_search is None:
            self.web_search = get_web_search_service()
        return self.web_search

    def get_memory_store(self) -> MemoryStore:
        if self._memory_store is None:
            self._memory_store = MemoryStore(self.get_vector_store(), self.get_embedder())
        return self._memory_store

    def get_project_data(self) -> ProjectDataRepository:
        if self._project_data is None:
            self._project_data = ProjectDataRepository(
                self.get_vector_store(), self.get_embedder(),
            )
        return self._project_data


class Agent(ABC):
    """Abstract base for all agents."""

    agent_type: AgentType

    def __init__(self, services: AgentServices | None = None) -> None:
        self.services = services or AgentServices()
        self.status = AgentStatus.IDLE
        self._context: AgentContext | None = None
        self._start_time: float | None = None
        self._logger = logging.getLogger(type(self).__module__)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def initialize(self, context: AgentContext) -> None:
        self._context = context
        self.status = AgentStatus.PLANNING
        self._start_time = time.monotonic()
        self._log("Agent initialized for project %s", context.project_id)

    async def execute(self, agent_input: AgentInput) -> AgentOutput:
        """Run one task. Never raises; failures come back as failed outputs."""
        self._log("Executing task: %s", agent_input.task)
        self.status = AgentStatus.EXECUTING

        try:
            output = await self._dispatch(agent_input)
        except Exception as e:
            self._logger.exception("[%s] Task failed: %s", self.agent_type.value, agent_input.task)
            output = self._fail(str(e) or type(e).__name__)

        self.status = AgentStatus.COMPLETED if output.success else AgentStatus.FAILED
        return output

    @abstractmethod
    async def _dispatch(self, agent_input: AgentInput) -> AgentOutput:
        ...

    async def handle_message(self, message: AgentMessage) -> AgentMessage:
        """
        Execute the task carried by `message` and answer the sender.

        Success → RESPONSE with the result as payload data and context
        "success". Failure → ERROR with the error in the payload. Payload
        data must be a dict (or absent); anything else is answered with an
        ERROR without executing.
        """
        self._log("Received message from %s: %s", message.from_agent.value, message.payload.task)

        data = message.payload.data
        if data is not None and not isinstance(data, dict):
            return create_agent_message(
                self.agent_type,
                message.from_agent,
                message.conversation_id,
                MessageType.ERROR,
                message.payload.task,
                error=f"Message data must be an object, got {type(data).__name__}",
            )

        output = await self.execute(AgentInput(
            task=message.payload.task,
            data=data or {},
            context=message.payload.context,
            priority=message.payload.priority,
        ))

        if output.success:
            return create_agent_message(
                self.agent_type,
                message.from_agent,
                message.conversation_id,
                MessageType.RESPONSE,
                message.payload.task,
                data=output.result,
                context="success",
            )
        return create_agent_message(
            self.agent_type,
            message.from_agent,
            message.conversation_id,
            MessageType.ERROR,
            message.payload.task,
            error=output.error,
        )

    async def cleanup(self) -> None:
        self.status = AgentStatus.IDLE
        self._context = None
        self._log("Agent cleanup completed")

    # -------------------------------------------------------------------------
    # Helpers for subclasses
    # -------------------------------------------------------------------------

    def get_context(self) -> AgentContext:
        if self._context is None:
            raise AgentNotInitializedError(
                f"{self.agent_type.value} agent not initialized - context is undefined"
            )
        return self._context

    def create_message(
        self,
        to_agent: AgentType,
        message_type: MessageType,
        task: str,
        data: Any = None,
        context: str | None = None,
        priority: Priority = Priority.MEDIUM,
    ) -> AgentMessage:
        return create_agent_message(
            self.agent_type,
            to_agent,
            self.get_context().conversation_id,
            message_type,
            task,
            data=data,
            context=context,
            priority=priority,
        )

    def create_progress_update(
        self,
        to_agent: AgentType,
        task: str,
        progress: float,
        status: str,
    ) -> AgentMessage:
        return self.create_message(
            to_agent,
            MessageType.UPDATE,
            task,
            data={"progress": progress, "status": status},
        )

    def _elapsed_ms(self) -> float:
        if self._start_time is None:
            return 0.0
        return (time.monotonic() - self._start_time) * 1000

    def _ok(self, result: Any, **extra: Any) -> AgentOutput:
        return AgentOutput.ok(result, duration=self._elapsed_ms(), **extra)

    def _fail(self, error: str, **extra: Any) -> AgentOutput:
        return AgentOutput.fail(error, duration=self._elapsed_ms(), **extra)

    def _log(self, message: str, *args: Any) -> None:
        self._logger.info("[%s] " + message, self.agent_type.value, *args)
