"""Agent invocation port and simple adapters."""

from __future__ import annotations

import inspect
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Protocol, Union

from ..contracts import AgentResult, AgentStep, ExecutionContext
from ..errors import AgentInvocationError

logger = logging.getLogger(__name__)

AgentHandler = Callable[
    [AgentStep, ExecutionContext], Union[Any, Awaitable[Any]]
]


class AgentInvoker(Protocol):
    """Executes the work behind an agent step.

    Calls may take minutes, must honour ``deadline`` and must tolerate being
    made more than once for the same step: the engine retries failed calls
    and replays an interrupted step after a crash.
    """

    async def invoke(
        self, step: AgentStep, context: ExecutionContext, deadline: datetime
    ) -> AgentResult:
        """Run ``step`` and return its result, raising on failure."""


def as_agent_result(value: Any) -> AgentResult:
    if isinstance(value, AgentResult):
        return value
    return AgentResult(output=value)


class CallableAgentInvoker:
    """Dispatch each agent id to a plain (sync or async) callable."""

    def __init__(
        self,
        handlers: Optional[Mapping[str, AgentHandler]] = None,
        default: Optional[AgentHandler] = None,
    ) -> None:
        self.handlers: Dict[str, AgentHandler] = dict(handlers or {})
        self.default = default

    def register(self, agent_id: str, handler: AgentHandler) -> None:
        self.handlers[agent_id] = handler

    async def invoke(
        self, step: AgentStep, context: ExecutionContext, deadline: datetime
    ) -> AgentResult:
        handler = self.handlers.get(step.agent_id or "", self.default)
        if handler is None:
            raise AgentInvocationError(step.agent_id, "no handler registered")
        value = handler(step, context)
        if inspect.isawaitable(value):
            value = await value
        return as_agent_result(value)


class MockAgentInvoker:
    """Deterministic stand-in for real agents.

    Every call succeeds with a short text naming the agent and step, so
    whole workflows can be exercised without model credentials.
    """

    def __init__(self, variables: Optional[Mapping[str, Any]] = None) -> None:
        self.variables = dict(variables or {})
        self.calls: list[tuple[str, Optional[str]]] = []

    async def invoke(
        self, step: AgentStep, context: ExecutionContext, deadline: datetime
    ) -> AgentResult:
        self.calls.append((step.name, step.agent_id))
        subject = step.action or step.role or step.description or step.name
        output = f"[mock:{step.agent_id}] {subject}"
        if step.creates:
            output += f" -> {', '.join(step.creates)}"
        logger.debug(f"Mock agent {step.agent_id} handled step {step.name}")
        return AgentResult(
            output=output, variables=dict(self.variables), metadata={"mock": True}
        )
