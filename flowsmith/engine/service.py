"""Process-level control surface for running workflow instances."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Mapping, Optional

from ..agents.invoker import AgentInvoker
from ..config import EngineSettings, FlowsmithConfig
from ..contracts import ProgressEvent, WorkflowInstance, WorkflowStatus, utcnow
from ..definition.library import DefinitionLibrary
from ..errors import InstanceNotFoundError, InvalidTransitionError, StateError
from ..events.base import BaseEventSink
from ..graph import StepGraph
from ..persistence.artifacts import ArtifactStore, get_artifact_store
from ..persistence.repository import StateStore
from .decisions import ConditionEvaluator, DecisionProvider, Predicate, context_decision
from .executor import ExecutionEngine, transition
from .recovery import RetryPolicy

logger = logging.getLogger(__name__)


class EngineService:
    """Start, observe and control workflow instances.

    Each active instance is driven by one :class:`ExecutionEngine` running
    in its own asyncio task. A semaphore caps how many loops execute steps
    at once; queued instances wait in RUNNING until a slot frees up.
    """

    def __init__(
        self,
        definitions: DefinitionLibrary,
        invoker: AgentInvoker,
        state_store: StateStore,
        event_sink: Optional[BaseEventSink] = None,
        artifact_store: Optional[ArtifactStore] = None,
        policy: Optional[RetryPolicy] = None,
        settings: Optional[EngineSettings] = None,
        decision_provider: DecisionProvider = context_decision,
        predicates: Optional[Mapping[str, Predicate]] = None,
    ) -> None:
        self.definitions = definitions
        self.invoker = invoker
        self.state_store = state_store
        self.event_sink = event_sink
        self.artifact_store = artifact_store
        self.policy = policy or RetryPolicy()
        self.settings = settings or EngineSettings()
        self.decision_provider = decision_provider
        self.conditions = ConditionEvaluator(predicates)
        self._graphs: Dict[str, StepGraph] = {}
        self._engines: Dict[str, ExecutionEngine] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._detached: Dict[str, WorkflowInstance] = {}
        self._slots = asyncio.Semaphore(self.settings.max_concurrent_instances)

    @classmethod
    def from_config(
        cls,
        config: FlowsmithConfig,
        invoker: AgentInvoker,
        state_store: StateStore,
        event_sink: Optional[BaseEventSink] = None,
        **kwargs: Any,
    ) -> "EngineService":
        return cls(
            DefinitionLibrary.from_config(config),
            invoker,
            state_store,
            event_sink=event_sink,
            artifact_store=get_artifact_store(config.artifacts),
            policy=RetryPolicy.from_config(config.retry),
            settings=config.engine,
            **kwargs,
        )

    # ------------------------------------------------------------------
    def graph_for(self, definition_id: str) -> StepGraph:
        """Parse-once graph for ``definition_id``. Definition errors propagate."""
        graph = self._graphs.get(definition_id)
        if graph is None:
            graph = StepGraph(self.definitions.get(definition_id))
            self._graphs[definition_id] = graph
            self._graphs[graph.definition_id] = graph
        return graph

    def _engine_for(self, instance: WorkflowInstance) -> ExecutionEngine:
        engine = ExecutionEngine(
            self.graph_for(instance.definition_id),
            instance,
            self.invoker,
            self.state_store,
            event_sink=self.event_sink,
            artifact_store=self.artifact_store,
            policy=self.policy,
            decision_provider=self.decision_provider,
            conditions=self.conditions,
            settings=self.settings,
        )
        self._engines[instance.instance_id] = engine
        return engine

    def _is_live(self, instance_id: str) -> bool:
        task = self._tasks.get(instance_id)
        return task is not None and not task.done()

    async def _drive(self, engine: ExecutionEngine) -> WorkflowInstance:
        async with self._slots:
            instance = await engine.run()
        if engine.save_failed:
            self._detached[instance.instance_id] = instance
        else:
            self._detached.pop(instance.instance_id, None)
        return instance

    def _launch(self, engine: ExecutionEngine) -> None:
        instance_id = engine.instance_id
        task = asyncio.create_task(self._drive(engine), name=f"flowsmith-{instance_id}")
        self._tasks[instance_id] = task
        task.add_done_callback(lambda t: self._on_done(instance_id, t))

    def _on_done(self, instance_id: str, task: asyncio.Task) -> None:
        if task.cancelled():
            logger.warning(f"Execution task for {instance_id} was cancelled")
        elif task.exception() is not None:
            logger.error(
                f"Execution task for {instance_id} crashed",
                exc_info=task.exception(),
            )

    async def _load(self, instance_id: str) -> WorkflowInstance:
        engine = self._engines.get(instance_id)
        if engine is not None and self._is_live(instance_id):
            return engine.instance
        if instance_id in self._detached:
            return self._detached[instance_id]
        instance = await self.state_store.load(instance_id)
        if instance is None:
            raise InstanceNotFoundError(f"workflow instance {instance_id} not found")
        return instance

    async def _set_status(
        self, instance: WorkflowInstance, target: WorkflowStatus
    ) -> WorkflowInstance:
        """Persist a control transition for an instance no loop is driving.

        No step runs, so the definition is not needed.
        """
        candidate = instance.model_copy(deep=True)
        transition(candidate, target)
        candidate.updated_at = utcnow()
        try:
            await self.state_store.save(candidate)
        except Exception as exc:
            raise StateError(
                f"failed to save instance {candidate.instance_id}: {exc}"
            ) from exc
        self._detached.pop(candidate.instance_id, None)
        logger.info(f"Instance {candidate.instance_id} {target.value}")
        if self.event_sink is not None:
            event = ProgressEvent(kind=f"workflow_{target.value}", status=target.value)
            try:
                await self.event_sink.emit(candidate.instance_id, event)
            except Exception as exc:
                logger.warning(f"Event sink failed for {candidate.instance_id}: {exc}")
        return candidate

    # ------------------------------------------------------------------
    async def start_workflow(
        self,
        definition_id: str,
        inputs: Optional[Mapping[str, Any]] = None,
        variables: Optional[Mapping[str, Any]] = None,
    ) -> str:
        """Create an instance, persist it and start executing in the background."""
        graph = self.graph_for(definition_id)
        instance = WorkflowInstance(definition_id=graph.definition_id)
        instance.context.inputs.update(inputs or {})
        instance.context.variables.update(variables or {})

        engine = self._engine_for(instance)
        await engine.start()
        self._launch(engine)
        logger.info(f"Launched {instance.instance_id} for workflow {graph.definition_id}")
        return instance.instance_id

    async def pause(self, instance_id: str) -> WorkflowInstance:
        """Pause at the next step boundary. A no-op unless the instance is RUNNING."""
        instance = await self._load(instance_id)
        if instance.status != WorkflowStatus.RUNNING:
            logger.info(
                f"Pause ignored for {instance_id} in status {instance.status.value}"
            )
            return instance
        if self._is_live(instance_id):
            self._engines[instance_id].request_pause()
            return instance
        return await self._set_status(instance, WorkflowStatus.PAUSED)

    async def resume(self, instance_id: str) -> WorkflowInstance:
        """Continue a PAUSED instance, or recover a RUNNING one with no live loop."""
        if self._is_live(instance_id):
            raise InvalidTransitionError(f"instance {instance_id} is already executing")
        instance = await self._load(instance_id)
        if instance.status not in (WorkflowStatus.PAUSED, WorkflowStatus.RUNNING):
            raise InvalidTransitionError(
                f"cannot resume instance {instance_id} in status {instance.status.value}"
            )
        engine = self._engine_for(instance)
        await engine.resume()
        self._detached.pop(instance_id, None)
        self._launch(engine)
        return engine.instance

    async def cancel(self, instance_id: str) -> WorkflowInstance:
        """Cancel a non-terminal instance. Running steps are allowed to finish.

        Cancelling a terminal instance is a no-op.
        """
        instance = await self._load(instance_id)
        if instance.status.is_terminal:
            logger.info(
                f"Cancel ignored for {instance_id} in status {instance.status.value}"
            )
            return instance
        if self._is_live(instance_id):
            self._engines[instance_id].request_cancel()
            return instance
        return await self._set_status(instance, WorkflowStatus.CANCELLED)

    async def get_status(self, instance_id: str) -> WorkflowInstance:
        """Snapshot of the instance. Callers get a copy they may not mutate back."""
        instance = await self._load(instance_id)
        return instance.model_copy(deep=True)

    async def wait(
        self, instance_id: str, timeout: Optional[float] = None
    ) -> WorkflowInstance:
        """Wait for the instance's current execution task to stop."""
        task = self._tasks.get(instance_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout)
        return await self.get_status(instance_id)

    async def list_instances(
        self,
        status: Optional[WorkflowStatus] = None,
        definition_id: Optional[str] = None,
    ) -> list[WorkflowInstance]:
        instances = await self.state_store.list_instances()
        return [
            instance
            for instance in instances
            if (status is None or instance.status == status)
            and (definition_id is None or instance.definition_id == definition_id)
        ]

    async def shutdown(self) -> None:
        """Pause every live instance at its next step boundary and wait for it."""
        live = [iid for iid in self._tasks if self._is_live(iid)]
        for instance_id in live:
            self._engines[instance_id].request_pause()
        if live:
            await asyncio.gather(
                *(self._tasks[iid] for iid in live), return_exceptions=True
            )
        logger.info(f"Engine service stopped; {len(live)} instance(s) paused")
