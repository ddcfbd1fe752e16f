"""Step-by-step execution of a single workflow instance."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from ..agents.invoker import AgentInvoker, as_agent_result
from ..config import EngineSettings
from ..constants import CYCLE_INDEX_VARIABLE, CYCLE_ITEM_VARIABLE
from ..contracts import (
    AgentResult,
    AgentStep,
    Artifact,
    ConditionalStep,
    CycleStep,
    EntryStatus,
    ExecutionContext,
    IssueSeverity,
    ProgressEvent,
    RoutingStep,
    Step,
    TimelineEntry,
    WorkflowInstance,
    WorkflowStatus,
    utcnow,
)
from ..errors import (
    AgentInvocationError,
    DependencyError,
    InvalidTransitionError,
    RoutingError,
    StateError,
)
from ..events.base import BaseEventSink
from ..graph import StepGraph
from ..persistence.artifacts import ArtifactStore
from ..persistence.repository import StateStore
from ..utils import retry
from .decisions import ConditionEvaluator, DecisionProvider, context_decision, resolve_decision
from .recovery import RecoveryAction, RecoveryTracker, RetryPolicy

logger = logging.getLogger(__name__)


_TRANSITIONS = {
    WorkflowStatus.INITIALIZING: {WorkflowStatus.RUNNING, WorkflowStatus.CANCELLED},
    WorkflowStatus.RUNNING: {
        WorkflowStatus.PAUSED,
        WorkflowStatus.COMPLETED,
        WorkflowStatus.FAILED,
        WorkflowStatus.CANCELLED,
    },
    WorkflowStatus.PAUSED: {WorkflowStatus.RUNNING, WorkflowStatus.CANCELLED},
}


def transition(instance: WorkflowInstance, target: WorkflowStatus) -> None:
    """Move ``instance`` to ``target`` and stamp the matching timestamp."""
    current = instance.status
    if target not in _TRANSITIONS.get(current, ()):
        raise InvalidTransitionError(
            f"instance {instance.instance_id} cannot move from "
            f"{current.value} to {target.value}"
        )
    now = utcnow()
    instance.status = target
    if target == WorkflowStatus.RUNNING:
        if current == WorkflowStatus.INITIALIZING:
            instance.started_at = now
            instance.current_step_index = 0
        instance.paused_at = None
    elif target == WorkflowStatus.PAUSED:
        instance.paused_at = now
    else:
        instance.completed_at = now


def cycle_artifact_name(name: str, iteration: int) -> str:
    return f"{name}[{iteration}]"


@dataclass
class _Attempt:
    result: AgentResult
    attempt: int
    started_at: datetime


class ExecutionEngine:
    """Drive one workflow instance through its step graph.

    The engine is the single writer of its instance. Every state change is
    made on a copy, saved through the state store, and only then adopted,
    so the saved record is never behind what the loop believes.

    Pause and cancel are requests: they are applied between steps (and
    between cycle iterations), never in the middle of an agent call.
    """

    def __init__(
        self,
        graph: StepGraph,
        instance: WorkflowInstance,
        invoker: AgentInvoker,
        state_store: StateStore,
        event_sink: Optional[BaseEventSink] = None,
        artifact_store: Optional[ArtifactStore] = None,
        policy: Optional[RetryPolicy] = None,
        decision_provider: DecisionProvider = context_decision,
        conditions: Optional[ConditionEvaluator] = None,
        settings: Optional[EngineSettings] = None,
    ) -> None:
        if instance.definition_id != graph.definition_id:
            raise ValueError(
                f"instance {instance.instance_id} belongs to "
                f"'{instance.definition_id}', not '{graph.definition_id}'"
            )
        self.graph = graph
        self.instance = instance
        self.invoker = invoker
        self.state_store = state_store
        self.event_sink = event_sink
        self.artifact_store = artifact_store
        self.recovery = RecoveryTracker(policy or RetryPolicy())
        self.decision_provider = decision_provider
        self.conditions = conditions or ConditionEvaluator()
        self.settings = settings or EngineSettings()
        self.save_failed = False
        self._pause_requested = False
        self._cancel_requested = False

    @property
    def instance_id(self) -> str:
        return self.instance.instance_id

    @property
    def status(self) -> WorkflowStatus:
        return self.instance.status

    # ------------------------------------------------------------------
    # Control
    async def start(self) -> WorkflowInstance:
        """INITIALIZING -> RUNNING at step 0."""
        await self._commit(lambda inst: transition(inst, WorkflowStatus.RUNNING))
        logger.info(f"Workflow {self.graph.definition_id} started as {self.instance_id}")
        await self._emit("workflow_started", "running")
        return self.instance

    async def resume(self) -> WorkflowInstance:
        """PAUSED -> RUNNING; execution continues at the next unexecuted step.

        A RUNNING instance with no live loop (left behind by a crash) is
        accepted as-is.
        """
        if self.instance.status == WorkflowStatus.RUNNING:
            logger.info(
                f"Recovering {self.instance_id} at step {self.instance.current_step_index}"
            )
            return self.instance
        await self._commit(lambda inst: transition(inst, WorkflowStatus.RUNNING))
        logger.info(
            f"Resumed {self.instance_id} at step {self.instance.current_step_index}"
        )
        await self._emit("workflow_resumed", "running")
        return self.instance

    def request_pause(self) -> None:
        self._pause_requested = True

    def request_cancel(self) -> None:
        self._cancel_requested = True

    async def apply_requests(self) -> bool:
        """Apply pending pause/cancel requests. Returns ``True`` on a transition."""
        if self._cancel_requested:
            self._cancel_requested = False
            if not self.instance.status.is_terminal:
                await self._commit(lambda inst: transition(inst, WorkflowStatus.CANCELLED))
                logger.info(f"Cancelled {self.instance_id}")
                await self._emit("workflow_cancelled", "cancelled")
                return True
        if self._pause_requested:
            self._pause_requested = False
            if self.instance.status == WorkflowStatus.RUNNING:
                await self._commit(lambda inst: transition(inst, WorkflowStatus.PAUSED))
                logger.info(
                    f"Paused {self.instance_id} before step "
                    f"{self.instance.current_step_index}"
                )
                await self._emit("workflow_paused", "paused")
                return True
        return False

    # ------------------------------------------------------------------
    # Loop
    async def run(self) -> WorkflowInstance:
        """Execute steps until the instance completes, fails, pauses or is cancelled."""
        try:
            if self.instance.status == WorkflowStatus.INITIALIZING:
                await self.start()
            while True:
                await self.apply_requests()
                if self.instance.status != WorkflowStatus.RUNNING:
                    break

                index = self.instance.current_step_index
                if index >= len(self.graph):
                    await self._finish(WorkflowStatus.COMPLETED)
                    break
                if self.instance.steps_executed >= self.settings.max_steps:
                    await self._fail(
                        "budget",
                        f"step budget of {self.settings.max_steps} exhausted at step {index}",
                        index,
                    )
                    break

                await self._execute_step(self.graph.step_at(index))
        except StateError as exc:
            await self._on_state_error(exc)
        except Exception as exc:
            await self._on_unexpected_error(exc)
        return self.instance

    async def _execute_step(self, step: Step) -> None:
        if isinstance(step, RoutingStep):
            await self._route(step)
        elif isinstance(step, ConditionalStep):
            context = self.instance.context.model_copy(deep=True)
            try:
                holds = self.conditions.evaluate(step.condition, context)
            except Exception as exc:
                logger.exception(f"Condition evaluation failed for step {step.index}")
                await self._fail(
                    "condition",
                    f"step {step.index} condition '{step.condition}' failed: {exc}",
                    step.index,
                )
                return
            if holds:
                await self._run_agent_step(step, step.inner)
            else:
                await self._skip(step, f"condition '{step.condition}' is false")
        elif isinstance(step, CycleStep):
            await self._run_cycle(step)
        else:
            await self._run_agent_step(step, step)

    # ------------------------------------------------------------------
    # Step kinds
    async def _run_agent_step(self, step: Step, agent_step: AgentStep) -> None:
        if not await self._check_dependencies(step, agent_step):
            return
        await self._emit("step_started", "running", step)
        outcome = await self._invoke_with_recovery(step, agent_step)
        if outcome is None:
            return

        artifacts = await self._build_artifacts(step, agent_step.creates, outcome.result.output)

        def _apply(inst: WorkflowInstance) -> None:
            added = self._add_artifacts(inst, step, artifacts)
            inst.context.variables.update(outcome.result.variables)
            inst.history.append(
                self._entry(step, EntryStatus.COMPLETED, outcome, artifacts=added)
            )
            inst.current_step_index = step.index + 1
            inst.steps_executed += 1

        await self._commit(_apply)
        logger.info(f"Step {step.index} ({step.name}) completed for {self.instance_id}")
        await self._emit("step_completed", "completed", step)

    async def _run_cycle(self, step: CycleStep) -> None:
        items = self.instance.context.variables.get(step.repeat_over)
        if not isinstance(items, (list, tuple)):
            await self._dependency_failure(
                step, DependencyError(step.index, [step.repeat_over])
            )
            return
        if not await self._check_dependencies(step, step.inner):
            return

        start = self.instance.cycle_iteration
        if start == 0:
            await self._emit("step_started", "running", step)
        for iteration in range(start, len(items)):
            if iteration > start and await self.apply_requests():
                return
            outcome = await self._invoke_with_recovery(
                step, step.inner, iteration=iteration, item=items[iteration]
            )
            if outcome is None:
                return
            await self._commit_iteration(step, iteration, outcome)

        await self._complete_cycle(step)

    async def _commit_iteration(
        self, step: CycleStep, iteration: int, outcome: _Attempt
    ) -> None:
        merged = self.settings.cycle_artifacts == "merged"
        artifacts: list[Artifact] = []
        if not merged:
            names = tuple(cycle_artifact_name(n, iteration) for n in step.inner.creates)
            artifacts = await self._build_artifacts(
                step, names, outcome.result.output, iteration=iteration
            )

        def _apply(inst: WorkflowInstance) -> None:
            added = self._add_artifacts(inst, step, artifacts)
            if merged:
                inst.cycle_outputs.append(outcome.result.output)
            inst.context.variables.update(outcome.result.variables)
            inst.history.append(
                self._entry(
                    step, EntryStatus.COMPLETED, outcome, iteration=iteration, artifacts=added
                )
            )
            inst.cycle_iteration = iteration + 1

        await self._commit(_apply)
        logger.info(
            f"Step {step.index} ({step.name}) iteration {iteration} completed "
            f"for {self.instance_id}"
        )
        await self._emit("step_iteration_completed", "completed", step)

    async def _complete_cycle(self, step: CycleStep) -> None:
        artifacts: list[Artifact] = []
        if self.settings.cycle_artifacts == "merged" and step.inner.creates:
            artifacts = await self._build_artifacts(
                step, step.inner.creates, list(self.instance.cycle_outputs)
            )

        def _apply(inst: WorkflowInstance) -> None:
            self._add_artifacts(inst, step, artifacts)
            inst.cycle_iteration = 0
            inst.cycle_outputs = []
            inst.current_step_index = step.index + 1
            inst.steps_executed += 1

        await self._commit(_apply)
        await self._emit("step_completed", "completed", step)

    async def _route(self, step: RoutingStep) -> None:
        context = self.instance.context.model_copy(deep=True)
        try:
            decision = await resolve_decision(self.decision_provider, step, context)
        except Exception as exc:
            logger.exception(f"Decision provider failed for step {step.index}")
            await self._fail(
                "routing", f"step {step.index} decision provider failed: {exc}", step.index
            )
            return

        if not isinstance(decision, str) or decision not in step.options:
            error = RoutingError(step.index, decision, list(step.options))
            await self._fail("routing", str(error), step.index)
            return

        target = self.graph.route_target(step, decision)
        now = utcnow()

        def _apply(inst: WorkflowInstance) -> None:
            inst.context.routing_decisions[step.name] = decision
            inst.history.append(
                TimelineEntry(
                    step_index=step.index,
                    step_name=step.name,
                    agent_id=step.agent_id,
                    status=EntryStatus.ROUTED,
                    started_at=now,
                    completed_at=now,
                    duration_ms=0.0,
                    route_taken=decision,
                )
            )
            inst.current_step_index = target
            inst.steps_executed += 1

        await self._commit(_apply)
        logger.info(
            f"Step {step.index} ({step.name}) routed '{decision}' -> step {target}"
        )
        await self._emit("step_routed", decision, step)

    async def _skip(
        self, step: Step, reason: str, issue_kind: Optional[str] = None
    ) -> None:
        now = utcnow()

        def _apply(inst: WorkflowInstance) -> None:
            if issue_kind is not None:
                inst.add_issue(IssueSeverity.LOW, issue_kind, reason, step.index)
            inst.history.append(
                TimelineEntry(
                    step_index=step.index,
                    step_name=step.name,
                    agent_id=step.agent_id,
                    status=EntryStatus.SKIPPED,
                    started_at=now,
                    completed_at=now,
                    duration_ms=0.0,
                    error=reason,
                )
            )
            inst.cycle_iteration = 0
            inst.cycle_outputs = []
            inst.current_step_index = step.index + 1
            inst.steps_executed += 1

        await self._commit(_apply)
        logger.info(f"Step {step.index} ({step.name}) skipped: {reason}")
        await self._emit("step_skipped", "skipped", step, reason)

    # ------------------------------------------------------------------
    # Invocation and recovery
    async def _check_dependencies(self, step: Step, agent_step: AgentStep) -> bool:
        missing = self.instance.context.missing_artifacts(agent_step.requires)
        if not missing:
            return True
        await self._dependency_failure(step, DependencyError(step.index, missing))
        return False

    async def _dependency_failure(self, step: Step, error: DependencyError) -> None:
        decision = self.recovery.on_dependency_failure(step.optional)
        if decision.action == RecoveryAction.SKIP:
            await self._skip(step, str(error), issue_kind="dependency")
        else:
            logger.error(f"Dependency failure in {self.instance_id}: {error}")
            await self._fail("dependency", str(error), step.index)

    async def _invoke_with_recovery(
        self,
        step: Step,
        agent_step: AgentStep,
        iteration: Optional[int] = None,
        item: Any = None,
    ) -> Optional[_Attempt]:
        """Call the agent, retrying per policy.

        Returns ``None`` when the failure has been handled by pausing,
        failing or cancelling the instance.
        """
        key = (self.instance_id, step.index, iteration)
        while True:
            started_at = utcnow()
            try:
                result = await self._invoke(agent_step, iteration, item)
            except Exception as exc:
                error = (
                    exc
                    if isinstance(exc, AgentInvocationError)
                    else AgentInvocationError(agent_step.agent_id, str(exc) or type(exc).__name__)
                )
                logger.error(f"Step {step.index} ({step.name}) failed: {error}")
                decision = self.recovery.on_agent_failure(key)
                entry = TimelineEntry(
                    step_index=step.index,
                    step_name=step.name,
                    agent_id=agent_step.agent_id,
                    status=EntryStatus.FAILED,
                    attempt=decision.attempt,
                    iteration=iteration,
                    started_at=started_at,
                    completed_at=utcnow(),
                    duration_ms=_elapsed_ms(started_at),
                    error=str(error),
                )

                if decision.action == RecoveryAction.RETRY:
                    await self._commit(lambda inst: inst.history.append(entry))
                    await self._emit("step_retrying", "retrying", step, str(error))
                    await retry.schedule_retry(decision.delay_ms)
                    if self._cancel_requested:
                        await self.apply_requests()
                        return None
                    continue

                target = (
                    WorkflowStatus.PAUSED
                    if decision.action == RecoveryAction.PAUSE
                    else WorkflowStatus.FAILED
                )
                message = (
                    f"step {step.index} ({step.name}) failed after "
                    f"{decision.attempt} attempt(s): {error}"
                )

                def _apply(inst: WorkflowInstance) -> None:
                    inst.history.append(entry)
                    inst.add_issue(IssueSeverity.HIGH, "agent", message, step.index)
                    transition(inst, target)

                await self._commit(_apply)
                await self._emit("step_failed", "failed", step, str(error))
                await self._emit(f"workflow_{target.value}", target.value, message=message)
                return None

            attempt = self.recovery.attempts(key) + 1
            self.recovery.reset(key)
            return _Attempt(result=result, attempt=attempt, started_at=started_at)

    async def _invoke(
        self, agent_step: AgentStep, iteration: Optional[int], item: Any
    ) -> AgentResult:
        context = await self._invocation_context(agent_step, iteration, item)
        timeout_ms = agent_step.timeout_ms
        deadline = utcnow() + timedelta(milliseconds=timeout_ms)
        try:
            result = await asyncio.wait_for(
                self.invoker.invoke(agent_step, context, deadline), timeout_ms / 1000
            )
        except asyncio.TimeoutError as exc:
            raise AgentInvocationError(
                agent_step.agent_id, f"timed out after {timeout_ms}ms"
            ) from exc
        return as_agent_result(result)

    async def _invocation_context(
        self, agent_step: AgentStep, iteration: Optional[int], item: Any
    ) -> ExecutionContext:
        """Copy of the context handed to the agent, with inputs hydrated."""
        context = self.instance.context.model_copy(deep=True)
        if iteration is not None:
            context.variables[CYCLE_ITEM_VARIABLE] = item
            context.variables[CYCLE_INDEX_VARIABLE] = iteration
        if self.artifact_store is not None:
            for name in agent_step.requires:
                artifact = context.artifacts[name]
                if artifact.content_ref is not None and artifact.content is None:
                    content = await self.artifact_store.get(artifact.content_ref)
                    context.artifacts[name] = artifact.model_copy(update={"content": content})
        return context

    # ------------------------------------------------------------------
    # Artifacts
    async def _build_artifacts(
        self,
        step: Step,
        names: tuple[str, ...],
        content: Any,
        iteration: Optional[int] = None,
    ) -> list[Artifact]:
        artifacts = []
        for name in names:
            if self.instance.context.has_artifact(name):
                artifacts.append(
                    Artifact(name=name, content=None, produced_by_step=step.index, iteration=iteration)
                )
                continue
            ref = None
            if self.artifact_store is not None:
                try:
                    ref = await self.artifact_store.put(self.instance_id, name, content)
                except Exception as exc:
                    raise StateError(
                        f"failed to store artifact '{name}' for {self.instance_id}: {exc}"
                    ) from exc
            artifacts.append(
                Artifact(
                    name=name,
                    content=None if ref else content,
                    content_ref=ref,
                    produced_by_step=step.index,
                    iteration=iteration,
                )
            )
        return artifacts

    def _add_artifacts(
        self, inst: WorkflowInstance, step: Step, artifacts: list[Artifact]
    ) -> list[str]:
        added = []
        for artifact in artifacts:
            if inst.context.add_artifact(artifact):
                added.append(artifact.name)
            else:
                logger.warning(
                    f"Artifact '{artifact.name}' already exists in {self.instance_id}; "
                    f"output of step {step.index} not stored"
                )
                inst.add_issue(
                    IssueSeverity.LOW,
                    "artifact",
                    f"step {step.index} tried to overwrite artifact '{artifact.name}'",
                    step.index,
                )
        return added

    # ------------------------------------------------------------------
    # Persistence and notification
    async def _commit(self, update: Callable[[WorkflowInstance], Any]) -> WorkflowInstance:
        candidate = self.instance.model_copy(deep=True)
        update(candidate)
        candidate.updated_at = utcnow()
        try:
            await self.state_store.save(candidate)
        except Exception as exc:
            raise StateError(
                f"failed to save instance {self.instance_id}: {exc}"
            ) from exc
        self.instance = candidate
        return candidate

    async def _finish(self, status: WorkflowStatus) -> None:
        await self._commit(lambda inst: transition(inst, status))
        logger.info(f"Workflow {self.instance_id} {status.value}")
        await self._emit(f"workflow_{status.value}", status.value)

    async def _fail(self, kind: str, message: str, step_index: Optional[int]) -> None:
        def _apply(inst: WorkflowInstance) -> None:
            inst.add_issue(IssueSeverity.HIGH, kind, message, step_index)
            transition(inst, WorkflowStatus.FAILED)

        await self._commit(_apply)
        logger.error(f"Workflow {self.instance_id} failed: {message}")
        await self._emit("workflow_failed", "failed", message=message)

    async def _on_state_error(self, exc: StateError) -> None:
        """Stop without advancing; leave a resumable, diagnosed instance behind."""
        logger.error(str(exc))
        self.instance.add_issue(
            IssueSeverity.CRITICAL,
            "state",
            str(exc),
            self.instance.current_step_index,
        )
        if self.instance.status in (WorkflowStatus.RUNNING, WorkflowStatus.INITIALIZING):
            self.instance.status = WorkflowStatus.PAUSED
            self.instance.paused_at = utcnow()
        try:
            await self.state_store.save(self.instance)
        except Exception as save_exc:
            self.save_failed = True
            logger.error(
                f"Could not record state failure for {self.instance_id}: {save_exc}"
            )
        await self._emit("workflow_paused", "paused", message=str(exc))

    async def _on_unexpected_error(self, exc: Exception) -> None:
        """Fail the instance with a critical issue instead of leaving it RUNNING."""
        logger.exception(f"Unexpected error while executing {self.instance_id}")
        index = self.instance.current_step_index
        message = f"unexpected error at step {index}: {type(exc).__name__}: {exc}"

        def _apply(inst: WorkflowInstance) -> None:
            inst.add_issue(IssueSeverity.CRITICAL, "internal", message, index)
            if inst.status == WorkflowStatus.RUNNING:
                transition(inst, WorkflowStatus.FAILED)

        try:
            await self._commit(_apply)
        except StateError as state_exc:
            self.instance.add_issue(IssueSeverity.CRITICAL, "internal", message, index)
            await self._on_state_error(state_exc)
            return
        await self._emit("workflow_failed", "failed", message=message)

    async def _emit(
        self,
        kind: str,
        status: str,
        step: Optional[Step] = None,
        message: Optional[str] = None,
    ) -> None:
        if self.event_sink is None:
            return
        event = ProgressEvent(
            kind=kind,
            step_index=step.index if step else None,
            agent_id=step.agent_id if step else None,
            status=status,
            message=message,
        )
        try:
            await self.event_sink.emit(self.instance_id, event)
        except Exception as exc:
            logger.warning(f"Event sink failed for {kind} on {self.instance_id}: {exc}")

    def _entry(
        self,
        step: Step,
        status: EntryStatus,
        outcome: _Attempt,
        iteration: Optional[int] = None,
        artifacts: Optional[list[str]] = None,
    ) -> TimelineEntry:
        return TimelineEntry(
            step_index=step.index,
            step_name=step.name,
            agent_id=step.agent_id,
            status=status,
            attempt=outcome.attempt,
            iteration=iteration,
            started_at=outcome.started_at,
            completed_at=utcnow(),
            duration_ms=_elapsed_ms(outcome.started_at),
            artifacts=artifacts or [],
        )


def _elapsed_ms(started_at: datetime) -> float:
    return (utcnow() - started_at).total_seconds() * 1000
