"""Core data contracts for flowsmith workflows and instances."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from .constants import DEFAULT_STEP_TIMEOUT_MS


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StepKind(str, Enum):
    AGENT = "agent"
    ROUTING = "routing"
    CONDITIONAL = "conditional"
    CYCLE = "cycle"


class _StepBase(BaseModel):
    """Fields shared by every step kind."""

    index: int = Field(..., ge=0)
    name: str
    agent_id: Optional[str] = None
    description: str = ""
    optional: bool = False
    timeout_ms: int = Field(default=DEFAULT_STEP_TIMEOUT_MS, gt=0)

    model_config = ConfigDict(frozen=True)


class ResolvedReference(BaseModel):
    """File a step's ``uses`` name resolved to."""

    ref: str
    kind: Literal["template", "task", "checklist"]
    path: str
    content: Any = None

    model_config = ConfigDict(frozen=True)


class AgentStep(_StepBase):
    """Invoke one agent, optionally producing and consuming artifacts."""

    kind: Literal["agent"] = "agent"
    creates: tuple[str, ...] = ()
    requires: tuple[str, ...] = ()
    role: Optional[str] = None
    action: Optional[str] = None
    uses: Optional[str] = None
    command: Optional[str] = None
    reference: Optional[ResolvedReference] = None


class RoutingStep(_StepBase):
    """Jump to one of several named steps based on a runtime decision."""

    kind: Literal["routing"] = "routing"
    options: Dict[str, str] = Field(default_factory=dict)


class ConditionalStep(_StepBase):
    """Run ``inner`` only when ``condition`` holds for the context."""

    kind: Literal["conditional"] = "conditional"
    condition: str
    inner: AgentStep


class CycleStep(_StepBase):
    """Run ``inner`` once per element of ``variables[repeat_over]``."""

    kind: Literal["cycle"] = "cycle"
    repeat_over: str
    inner: AgentStep


Step = Annotated[
    Union[AgentStep, RoutingStep, ConditionalStep, CycleStep],
    Field(discriminator="kind"),
]


class WorkflowDefinition(BaseModel):
    """Immutable, parsed description of a workflow."""

    id: str
    name: str
    description: str = ""
    type: str = "standard"
    project_types: tuple[str, ...] = ()
    steps: tuple[Step, ...]
    handoff_notes: Dict[str, str] = Field(default_factory=dict)
    decision_guidance: Dict[str, Any] = Field(default_factory=dict)
    warnings: tuple[str, ...] = ()

    model_config = ConfigDict(frozen=True)

    def step_names(self) -> list[str]:
        return [step.name for step in self.steps]


class Artifact(BaseModel):
    """Named output of a step. Never modified once created."""

    name: str
    content: Any = None
    content_ref: Optional[str] = None
    produced_by_step: int
    iteration: Optional[int] = None
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(frozen=True)


class ExecutionContext(BaseModel):
    """Data visible to steps while an instance runs."""

    artifacts: Dict[str, Artifact] = Field(default_factory=dict)
    variables: Dict[str, Any] = Field(default_factory=dict)
    inputs: Dict[str, Any] = Field(default_factory=dict)
    routing_decisions: Dict[str, str] = Field(default_factory=dict)

    @property
    def user_prompt(self) -> Optional[str]:
        return self.inputs.get("user_prompt") or self.inputs.get("prompt")

    def has_artifact(self, name: str) -> bool:
        return name in self.artifacts

    def missing_artifacts(self, names: tuple[str, ...]) -> list[str]:
        return [name for name in names if name not in self.artifacts]

    def add_artifact(self, artifact: Artifact) -> bool:
        """Add ``artifact`` unless the name is taken. Returns ``True`` if added."""
        if artifact.name in self.artifacts:
            return False
        self.artifacts[artifact.name] = artifact
        return True

    def artifact_content(self, name: str, default: Any = None) -> Any:
        artifact = self.artifacts.get(name)
        return artifact.content if artifact is not None else default


class WorkflowStatus(str, Enum):
    INITIALIZING = "initializing"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            WorkflowStatus.COMPLETED,
            WorkflowStatus.FAILED,
            WorkflowStatus.CANCELLED,
        )


class EntryStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    ROUTED = "routed"


class TimelineEntry(BaseModel):
    """Record of one step attempt, skip or routing decision."""

    step_index: int
    step_name: str
    agent_id: Optional[str] = None
    status: EntryStatus
    attempt: int = 1
    iteration: Optional[int] = None
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    duration_ms: Optional[float] = None
    error: Optional[str] = None
    route_taken: Optional[str] = None
    artifacts: List[str] = Field(default_factory=list)


class IssueSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Issue(BaseModel):
    """Diagnosis attached to an instance when something went wrong."""

    severity: IssueSeverity
    kind: str
    message: str
    step_index: Optional[int] = None
    created_at: datetime = Field(default_factory=utcnow)


class WorkflowInstance(BaseModel):
    """Mutable, persisted runtime record of one workflow execution."""

    instance_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    definition_id: str
    status: WorkflowStatus = WorkflowStatus.INITIALIZING
    current_step_index: int = 0
    cycle_iteration: int = 0
    cycle_outputs: List[Any] = Field(default_factory=list)
    steps_executed: int = 0
    context: ExecutionContext = Field(default_factory=ExecutionContext)
    history: List[TimelineEntry] = Field(default_factory=list)
    issues: List[Issue] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)

    def add_issue(
        self,
        severity: IssueSeverity,
        kind: str,
        message: str,
        step_index: Optional[int] = None,
    ) -> Issue:
        issue = Issue(
            severity=severity, kind=kind, message=message, step_index=step_index
        )
        self.issues.append(issue)
        return issue

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "WorkflowInstance":
        return cls.model_validate_json(data)


class AgentResult(BaseModel):
    """Successful outcome of an agent call."""

    output: Any = None
    variables: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ProgressEvent(BaseModel):
    """Notification emitted as an instance makes progress."""

    kind: str
    step_index: Optional[int] = None
    agent_id: Optional[str] = None
    status: str
    message: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
