"""Routing decisions and condition predicates."""

from __future__ import annotations

import inspect
import logging
from typing import Any, Awaitable, Callable, Mapping, Optional, Union

from ..contracts import ExecutionContext, RoutingStep

logger = logging.getLogger(__name__)

DecisionProvider = Callable[
    [RoutingStep, ExecutionContext], Union[Optional[str], Awaitable[Optional[str]]]
]
Predicate = Callable[[ExecutionContext], bool]


def context_decision(step: RoutingStep, context: ExecutionContext) -> Optional[str]:
    """Default provider: the label stored in ``variables[step.name]``.

    Agents set it through ``AgentResult.variables``; callers can also pass it
    in when starting the workflow.
    """
    value = context.variables.get(step.name)
    return None if value is None else str(value)


def mapping_decision(decisions: Mapping[str, str]) -> DecisionProvider:
    """Provider backed by a fixed ``step name -> label`` mapping."""

    def _decide(step: RoutingStep, context: ExecutionContext) -> Optional[str]:
        return decisions.get(step.name)

    return _decide


async def resolve_decision(
    provider: DecisionProvider, step: RoutingStep, context: ExecutionContext
) -> Optional[str]:
    decision = provider(step, context)
    if inspect.isawaitable(decision):
        decision = await decision
    return decision


class ConditionEvaluator:
    """Evaluate a step ``condition`` against the execution context.

    A condition names a registered predicate or a variable, optionally
    prefixed with ``not``. Unknown variables are false.
    """

    def __init__(self, predicates: Optional[Mapping[str, Predicate]] = None) -> None:
        self.predicates: dict[str, Predicate] = dict(predicates or {})

    def register(self, name: str, predicate: Predicate) -> None:
        self.predicates[name] = predicate

    def evaluate(self, condition: str, context: ExecutionContext) -> bool:
        text = condition.strip()
        negate = False
        if text.startswith("not "):
            negate, text = True, text[4:].strip()
        elif text.startswith("!"):
            negate, text = True, text[1:].strip()

        if text in self.predicates:
            result = bool(self.predicates[text](context))
        else:
            result = _truthy(context.variables.get(text))
        logger.debug(f"Condition '{condition}' evaluated to {result != negate}")
        return result != negate


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in ("", "false", "no", "0", "off")
    return bool(value)
