"""Exception hierarchy for flowsmith."""

from __future__ import annotations

from typing import Optional


class FlowsmithError(Exception):
    """Base class for all flowsmith errors."""


class DefinitionError(FlowsmithError):
    """Raised when a workflow document cannot be turned into a definition."""

    def __init__(self, message: str, step_index: Optional[int] = None) -> None:
        if step_index is not None:
            message = f"step {step_index}: {message}"
        super().__init__(message)
        self.step_index = step_index


class DependencyError(FlowsmithError):
    """A step needs an artifact or collection that is not in the context."""

    def __init__(self, step_index: int, missing: list[str]) -> None:
        super().__init__(
            f"step {step_index} is missing required input(s): {', '.join(missing)}"
        )
        self.step_index = step_index
        self.missing = missing


class AgentInvocationError(FlowsmithError):
    """An agent call failed or ran past its deadline."""

    def __init__(self, agent_id: Optional[str], message: str) -> None:
        super().__init__(f"agent {agent_id or '<none>'} failed: {message}")
        self.agent_id = agent_id


class StateError(FlowsmithError):
    """Persisting workflow state failed."""


class RoutingError(FlowsmithError):
    """A routing decision does not match any declared option."""

    def __init__(self, step_index: int, decision: object, options: list[str]) -> None:
        super().__init__(
            f"step {step_index} routing decision {decision!r} "
            f"is not one of {options}"
        )
        self.step_index = step_index
        self.decision = decision


class InstanceNotFoundError(FlowsmithError, KeyError):
    """No workflow instance exists with the given id."""

    def __str__(self) -> str:  # KeyError quotes its argument
        return Exception.__str__(self)


class InvalidTransitionError(FlowsmithError):
    """A control operation is not valid for the instance's current state."""
