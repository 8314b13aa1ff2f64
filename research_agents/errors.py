"""Exceptions raised inside the agent package."""


class AgentError(Exception):
    """Base class for agent-level errors."""


class AgentNotInitializedError(AgentError):
    """An agent was used before `initialize()` bound its context."""


class UnknownAgentTypeError(AgentError, ValueError):
    """The registry has no constructor for the requested agent type."""


class WebSearchDisabledError(AgentError):
    """Web search was requested while the feature flag is off."""
