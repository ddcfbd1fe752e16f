"""Agent invocation adapters."""

from .invoker import (
    AgentInvoker,
    CallableAgentInvoker,
    MockAgentInvoker,
    as_agent_result,
)

__all__ = [
    "AgentInvoker",
    "CallableAgentInvoker",
    "MockAgentInvoker",
    "as_agent_result",
]
