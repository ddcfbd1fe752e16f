"""Validated in-memory view of a workflow definition."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from .contracts import RoutingStep, Step, WorkflowDefinition
from .definition.parser import agent_step_of
from .errors import DefinitionError

logger = logging.getLogger(__name__)


class StepGraph:
    """Ordered steps plus artifact and routing cross-references.

    Routing targets are resolved when the graph is built, so the engine
    never has to interpret a target reference at run time.
    """

    def __init__(self, definition: WorkflowDefinition) -> None:
        self.definition = definition
        self.steps: tuple[Step, ...] = definition.steps
        self.warnings: List[str] = []
        self.producers: Dict[str, List[int]] = {}
        self.consumers: Dict[str, List[int]] = {}
        self._by_name: Dict[str, int] = {}
        self._routes: Dict[int, Dict[str, int]] = {}

        for step in self.steps:
            if step.name in self._by_name:
                self.warnings.append(
                    f"duplicate step name '{step.name}' at index {step.index}; "
                    f"references resolve to index {self._by_name[step.name]}"
                )
            else:
                self._by_name[step.name] = step.index

            agent_step = agent_step_of(step)
            if agent_step is not None:
                for name in agent_step.creates:
                    self.producers.setdefault(name, []).append(step.index)
                for name in agent_step.requires:
                    self.consumers.setdefault(name, []).append(step.index)

        for step in self.steps:
            if isinstance(step, RoutingStep):
                self._routes[step.index] = {
                    label: self._resolve_route(step, label, ref)
                    for label, ref in step.options.items()
                }

        for warning in self.warnings:
            logger.warning(f"[{definition.id}] {warning}")

    def __len__(self) -> int:
        return len(self.steps)

    @property
    def definition_id(self) -> str:
        return self.definition.id

    def step_at(self, index: int) -> Step:
        return self.steps[index]

    def resolve(self, ref: str | int) -> Optional[int]:
        """Return the index a step reference points at, or ``None``.

        A reference is a step name, a numeric index, or ``step_<n>``.
        """
        if isinstance(ref, int):
            return ref if 0 <= ref < len(self.steps) else None
        if ref in self._by_name:
            return self._by_name[ref]
        text = ref[len("step_"):] if ref.startswith("step_") else ref
        if text.isdigit() and int(text) < len(self.steps):
            return int(text)
        return None

    def route_target(self, step: RoutingStep, label: str) -> int:
        return self._routes[step.index][label]

    def routes(self, step: RoutingStep) -> Dict[str, int]:
        return dict(self._routes[step.index])

    def _resolve_route(self, step: RoutingStep, label: str, ref: str) -> int:
        target = self.resolve(ref)
        if target is None:
            raise DefinitionError(
                f"route '{label}' points at unknown step '{ref}'", step.index
            )
        return target
