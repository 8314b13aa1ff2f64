# =============================================================================
# Agents Package — Coordinator and Specialist Agents
# =============================================================================
#   - base.py: Agent lifecycle, message envelopes, shared collaborators
#   - search.py: semantic search over project data, similar items, web
#   - analysis.py: multimodal item analysis and tag comparison
#   - memory.py: agent façade over the associative memory store
#   - synthesis.py: merges specialist outputs into one answer
#   - coordinator.py: LangGraph pipeline plan → recall → execute →
#     synthesize → remember
#
# `create_agent()` is the single place an agent type becomes an instance.
# =============================================================================

from __future__ import annotations

from research_agents.agents.analysis import AnalysisAgent
from research_agents.agents.base import Agent, AgentServices
from research_agents.agents.coordinator import SPECIALIST_AGENTS, CoordinatorAgent
from research_agents.agents.memory import MemoryAgent
from research_agents.agents.search import SearchAgent
from research_agents.agents.synthesis import SynthesisAgent
from research_agents.errors import UnknownAgentTypeError
from research_agents.models.agents import AgentType

AGENT_REGISTRY: dict[AgentType, type[Agent]] = {
    **SPECIALIST_AGENTS,
    AgentType.COORDINATOR: CoordinatorAgent,
}


def create_agent(agent_type: AgentType | str, services: AgentServices | None = None) -> Agent:
    """Instantiate an agent by type; raises UnknownAgentTypeError otherwise."""
    try:
        agent_cls = AGENT_REGISTRY[AgentType(agent_type)]
    except (KeyError, ValueError):
        raise UnknownAgentTypeError(f"Unknown agent type: {agent_type}") from None
    return agent_cls(services)


__all__ = [
    "AGENT_REGISTRY",
    "Agent",
    "AgentServices",
    "AnalysisAgent",
    "CoordinatorAgent",
    "MemoryAgent",
    "SearchAgent",
    "SynthesisAgent",
    "create_agent",
]
