"""Parse declarative workflow documents into typed definitions."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Sequence

import yaml

from ..constants import DEFAULT_STEP_TIMEOUT_MS, KNOWN_AGENTS
from ..contracts import (
    AgentStep,
    ConditionalStep,
    CycleStep,
    ResolvedReference,
    RoutingStep,
    Step,
    WorkflowDefinition,
)
from ..errors import DefinitionError
from .inference import AgentInferenceTable
from .loader import load_yaml
from .references import ReferenceResolver

logger = logging.getLogger(__name__)

# Keys with a meaning of their own. Any other key on an entry is a
# candidate for the legacy ``agent_id: role description`` shorthand.
RESERVED_KEYS = frozenset(
    {
        "step",
        "name",
        "agent",
        "action",
        "role",
        "description",
        "notes",
        "creates",
        "requires",
        "uses",
        "command",
        "condition",
        "routes",
        "repeats",
        "optional",
        "timeout",
        "timeout_ms",
    }
)

_ROUTE_TARGET_KEYS = ("goto", "step", "target")


class DefinitionParser:
    """Turn a raw workflow document into a :class:`WorkflowDefinition`.

    Each entry of ``workflow.sequence`` is classified once, by shape:

    1. ``routes`` -> :class:`RoutingStep`
    2. ``repeats`` -> :class:`CycleStep` around the remaining fields
    3. ``condition`` -> :class:`ConditionalStep` around the remaining fields
    4. ``agent``, ``step`` or the ``{agent_id: "role"}`` shorthand ->
       :class:`AgentStep`

    Anything else is a :class:`DefinitionError`. A validation pass afterwards
    only produces warnings.
    """

    def __init__(
        self,
        inference: Optional[AgentInferenceTable] = None,
        default_timeout_ms: int = DEFAULT_STEP_TIMEOUT_MS,
        known_agents: Optional[Iterable[str]] = KNOWN_AGENTS,
        resolver: Optional[ReferenceResolver] = None,
    ) -> None:
        self.inference = inference or AgentInferenceTable()
        self.default_timeout_ms = default_timeout_ms
        self.known_agents = frozenset(known_agents) if known_agents else None
        self.resolver = resolver

    # ------------------------------------------------------------------
    def parse(
        self, document: Any, definition_id: Optional[str] = None
    ) -> WorkflowDefinition:
        """Parse ``document`` (the loaded YAML mapping)."""
        if not isinstance(document, Mapping) or not isinstance(
            document.get("workflow"), Mapping
        ):
            raise DefinitionError("invalid workflow format: missing 'workflow' root key")

        root = document["workflow"]
        workflow_id = str(root.get("id") or definition_id or "")
        if not workflow_id:
            raise DefinitionError("workflow has no 'id'")

        sequence = root.get("sequence")
        if not isinstance(sequence, Sequence) or isinstance(sequence, str) or not sequence:
            raise DefinitionError(f"workflow '{workflow_id}' has no steps")

        logger.info(f"Parsing workflow '{workflow_id}' with {len(sequence)} entries")

        warnings: list[str] = []
        steps = [
            self.parse_step(entry, index, warnings)
            for index, entry in enumerate(sequence)
        ]
        warnings.extend(self.validate(steps))
        for warning in warnings:
            logger.warning(f"[{workflow_id}] {warning}")

        handoffs = root.get("handoff_prompts") or root.get("handoff_notes") or {}
        if not isinstance(handoffs, Mapping):
            raise DefinitionError("'handoff_prompts' must be a mapping")
        guidance = root.get("decision_guidance") or {}
        if not isinstance(guidance, Mapping):
            raise DefinitionError("'decision_guidance' must be a mapping")

        return WorkflowDefinition(
            id=workflow_id,
            name=str(root.get("name") or workflow_id),
            description=str(root.get("description") or ""),
            type=str(root.get("type") or "standard"),
            project_types=tuple(str(p) for p in root.get("project_types") or ()),
            steps=tuple(steps),
            handoff_notes={str(k): str(v) for k, v in handoffs.items()},
            decision_guidance={str(k): v for k, v in guidance.items()},
            warnings=tuple(warnings),
        )

    def parse_step(self, entry: Any, index: int, warnings: list[str]) -> Step:
        """Classify a single sequence entry."""
        if not isinstance(entry, Mapping):
            raise DefinitionError(
                f"entry must be a mapping, got {type(entry).__name__}", index
            )

        if "routes" in entry:
            return self._routing_step(entry, index)

        if "repeats" in entry:
            repeat_over = entry["repeats"]
            if not isinstance(repeat_over, str) or not repeat_over:
                raise DefinitionError("'repeats' must name a collection variable", index)
            if "condition" in entry:
                warnings.append(
                    f"step {index} has both 'repeats' and 'condition'; "
                    "the condition is ignored"
                )
            inner = self._require_agent_step(
                _without(entry, "repeats", "condition"), index, warnings
            )
            return CycleStep(
                **_shared_fields(inner), repeat_over=repeat_over, inner=inner
            )

        if "condition" in entry:
            condition = entry["condition"]
            if not isinstance(condition, str) or not condition.strip():
                raise DefinitionError("'condition' must be a non-empty string", index)
            inner = self._require_agent_step(_without(entry, "condition"), index, warnings)
            return ConditionalStep(
                **_shared_fields(inner), condition=condition.strip(), inner=inner
            )

        return self._require_agent_step(entry, index, warnings)

    def validate(self, steps: Sequence[Step]) -> list[str]:
        """Return warnings for artifact ordering and unknown agents."""
        warnings: list[str] = []
        created: set[str] = set()
        for step in steps:
            if (
                self.known_agents is not None
                and step.agent_id
                and step.agent_id not in self.known_agents
            ):
                warnings.append(f"unknown agent '{step.agent_id}' in step {step.index}")

            agent_step = agent_step_of(step)
            if agent_step is None:
                continue
            for artifact in agent_step.requires:
                if artifact not in created:
                    warnings.append(
                        f"step {step.index} requires '{artifact}' but it is not "
                        "created by any previous step"
                    )
            created.update(agent_step.creates)
        return warnings

    # ------------------------------------------------------------------
    def _routing_step(self, entry: Mapping[str, Any], index: int) -> RoutingStep:
        routes = entry["routes"]
        if not isinstance(routes, Mapping) or not routes:
            raise DefinitionError("'routes' must be a non-empty mapping", index)
        options = {
            str(label): _route_target(target, str(label), index)
            for label, target in routes.items()
        }
        step_name = entry.get("step") or entry.get("name")
        agent_id = entry.get("agent")
        if agent_id is None and step_name:
            agent_id = self.inference.resolve(str(step_name))
        return RoutingStep(
            index=index,
            name=str(step_name) if step_name else _derived_name(index, agent_id or "router"),
            agent_id=str(agent_id) if agent_id else None,
            description=_description(entry),
            optional=_flag(entry.get("optional", False)),
            timeout_ms=self._timeout(entry, index),
            options=options,
        )

    def _require_agent_step(
        self, entry: Mapping[str, Any], index: int, warnings: list[str]
    ) -> AgentStep:
        step = self._agent_step(entry, index, warnings)
        if step is None:
            raise DefinitionError(
                f"cannot classify entry with keys {sorted(map(str, entry))}", index
            )
        return step

    def _agent_step(
        self, entry: Mapping[str, Any], index: int, warnings: list[str]
    ) -> Optional[AgentStep]:
        agent_id = entry.get("agent")
        role = entry.get("role")
        step_name = entry.get("step") or entry.get("name")

        if agent_id is None and step_name:
            agent_id = self.inference.resolve(str(step_name))

        if agent_id is None:
            extra = [key for key in entry if key not in RESERVED_KEYS]
            if len(extra) != 1 or not isinstance(entry[extra[0]], str):
                return None
            agent_id = str(extra[0])
            role = role or entry[extra[0]]

        agent_id = str(agent_id)
        uses = _optional_str(entry.get("uses"))
        return AgentStep(
            index=index,
            name=str(step_name) if step_name else _derived_name(index, agent_id),
            agent_id=agent_id,
            description=_description(entry),
            optional=_flag(entry.get("optional", False)),
            timeout_ms=self._timeout(entry, index),
            creates=_names(entry.get("creates"), "creates", index),
            requires=_names(entry.get("requires"), "requires", index),
            role=str(role) if role else _default_role(step_name, agent_id),
            action=_optional_str(entry.get("action")),
            uses=uses,
            command=_optional_str(entry.get("command")),
            reference=self._resolve(uses, index, warnings),
        )

    def _resolve(
        self, uses: Optional[str], index: int, warnings: list[str]
    ) -> Optional[ResolvedReference]:
        if uses is None or self.resolver is None:
            return None
        try:
            return self.resolver.resolve(uses)
        except DefinitionError as exc:
            warnings.append(f"step {index}: {exc}")
            return None

    def _timeout(self, entry: Mapping[str, Any], index: int) -> int:
        value = entry.get("timeout_ms", entry.get("timeout"))
        if value is None:
            return self.default_timeout_ms
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            raise DefinitionError(f"timeout must be a positive integer, got {value!r}", index)
        return value


def agent_step_of(step: Step) -> Optional[AgentStep]:
    """Return the agent step that actually runs for ``step``, if any."""
    if isinstance(step, AgentStep):
        return step
    if isinstance(step, (ConditionalStep, CycleStep)):
        return step.inner
    return None


def serialize_definition(definition: WorkflowDefinition) -> dict[str, Any]:
    """Render ``definition`` back into the document shape :meth:`parse` reads."""
    sequence: list[dict[str, Any]] = []
    for step in definition.steps:
        if isinstance(step, RoutingStep):
            entry: dict[str, Any] = {"step": step.name, "routes": dict(step.options)}
            if step.agent_id:
                entry["agent"] = step.agent_id
            if step.description:
                entry["notes"] = step.description
            if step.optional:
                entry["optional"] = True
            entry["timeout"] = step.timeout_ms
        else:
            entry = _agent_entry(agent_step_of(step))
            if isinstance(step, ConditionalStep):
                entry["condition"] = step.condition
            elif isinstance(step, CycleStep):
                entry["repeats"] = step.repeat_over
        sequence.append(entry)

    return {
        "workflow": {
            "id": definition.id,
            "name": definition.name,
            "description": definition.description,
            "type": definition.type,
            "project_types": list(definition.project_types),
            "handoff_prompts": dict(definition.handoff_notes),
            "decision_guidance": dict(definition.decision_guidance),
            "sequence": sequence,
        }
    }


def parse_definition_text(
    text: str,
    parser: Optional[DefinitionParser] = None,
    definition_id: Optional[str] = None,
) -> WorkflowDefinition:
    try:
        document = load_yaml(text)
    except yaml.YAMLError as exc:
        raise DefinitionError(f"invalid YAML: {exc}") from exc
    return (parser or DefinitionParser()).parse(document, definition_id=definition_id)


def load_definition(
    path: str | Path, parser: Optional[DefinitionParser] = None
) -> WorkflowDefinition:
    """Read and parse a workflow YAML file. The file stem is the fallback id."""
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise DefinitionError(f"cannot read workflow file {path}: {exc}") from exc
    logger.info(f"Loaded workflow file {path}")
    return parse_definition_text(text, parser=parser, definition_id=path.stem)


# ----------------------------------------------------------------------
def _agent_entry(step: AgentStep) -> dict[str, Any]:
    entry: dict[str, Any] = {"step": step.name, "agent": step.agent_id}
    if step.creates:
        entry["creates"] = list(step.creates)
    if step.requires:
        entry["requires"] = list(step.requires)
    for key in ("role", "action", "uses", "command"):
        value = getattr(step, key)
        if value:
            entry[key] = value
    if step.description:
        entry["notes"] = step.description
    if step.optional:
        entry["optional"] = True
    entry["timeout"] = step.timeout_ms
    return entry


def _shared_fields(inner: AgentStep) -> dict[str, Any]:
    return {
        "index": inner.index,
        "name": inner.name,
        "agent_id": inner.agent_id,
        "description": inner.description,
        "optional": inner.optional,
        "timeout_ms": inner.timeout_ms,
    }


def _without(entry: Mapping[str, Any], *keys: str) -> dict[str, Any]:
    return {k: v for k, v in entry.items() if k not in keys}


def _derived_name(index: int, agent_id: str) -> str:
    return f"step_{index}_{agent_id}"


def _default_role(step_name: Any, agent_id: str) -> str:
    if step_name:
        return " ".join(word.capitalize() for word in str(step_name).split("_") if word)
    return f"{agent_id.upper()} Agent"


def _description(entry: Mapping[str, Any]) -> str:
    value = entry.get("description") or entry.get("notes") or ""
    return str(value).strip()


def _flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "on", "1")
    return bool(value)


def _optional_str(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


def _names(value: Any, field: str, index: int) -> tuple[str, ...]:
    """Normalise ``creates``/``requires`` into an ordered, unique tuple."""
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if not isinstance(value, (list, tuple)):
        raise DefinitionError(f"'{field}' must be a string or a list", index)

    names: list[str] = []
    for item in value:
        if isinstance(item, (list, tuple)):
            names.extend(_names(item, field, index))
        elif isinstance(item, str):
            names.append(item)
        else:
            raise DefinitionError(f"'{field}' entries must be strings", index)
    return tuple(dict.fromkeys(names))


def _route_target(target: Any, label: str, index: int) -> str:
    if isinstance(target, bool):
        raise DefinitionError(f"route '{label}' has no target step", index)
    if isinstance(target, (str, int)):
        return str(target)
    if isinstance(target, Mapping):
        for key in _ROUTE_TARGET_KEYS:
            if target.get(key) is not None:
                return str(target[key])
    raise DefinitionError(f"route '{label}' has no target step", index)
