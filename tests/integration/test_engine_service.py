import asyncio

import pytest

from flowsmith.agents import MockAgentInvoker
from flowsmith.config import EngineSettings, FlowsmithConfig
from flowsmith.contracts import AgentResult, Artifact, WorkflowInstance, WorkflowStatus
from flowsmith.engine import EngineService, RetryPolicy
from flowsmith.errors import DefinitionError, InstanceNotFoundError, InvalidTransitionError


class GatedInvoker:
    """Blocks every call until ``gate`` is set."""

    def __init__(self):
        self.gate = asyncio.Event()
        self.started = asyncio.Event()
        self.calls = []
        self.active = 0
        self.max_active = 0

    async def invoke(self, step, context, deadline):
        self.calls.append(step.name)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        self.started.set()
        try:
            await self.gate.wait()
        finally:
            self.active -= 1
        return AgentResult(output=f"{step.name} done")


def _service(library, invoker, store, sink=None, **kwargs):
    return EngineService(
        library, invoker, store, event_sink=sink, policy=RetryPolicy.immediate(), **kwargs
    )


@pytest.mark.asyncio
async def test_start_and_wait(library, store, sink):
    service = _service(library, MockAgentInvoker(), store, sink)
    instance_id = await service.start_workflow("brief-to-prd", {"prompt": "todo app"})

    instance = await service.wait(instance_id, timeout=5)
    assert instance.status == WorkflowStatus.COMPLETED
    assert instance.context.inputs == {"prompt": "todo app"}
    assert sink.kinds(instance_id)[0] == "workflow_started"

    completed = await service.list_instances(status=WorkflowStatus.COMPLETED)
    assert [i.instance_id for i in completed] == [instance_id]
    assert await service.list_instances(definition_id="other") == []


@pytest.mark.asyncio
async def test_get_status_returns_a_copy(library, store):
    service = _service(library, MockAgentInvoker(), store)
    instance_id = await service.start_workflow("brief-to-prd", {})
    await service.wait(instance_id)

    snapshot = await service.get_status(instance_id)
    snapshot.current_step_index = 0
    assert (await service.get_status(instance_id)).current_step_index == 2


@pytest.mark.asyncio
async def test_unknown_definition_and_instance(library, store):
    service = _service(library, MockAgentInvoker(), store)
    with pytest.raises(DefinitionError):
        await service.start_workflow("does-not-exist", {})
    with pytest.raises(InstanceNotFoundError):
        await service.get_status("missing")


@pytest.mark.asyncio
async def test_pause_takes_effect_at_step_boundary(library, store):
    invoker = GatedInvoker()
    service = _service(library, invoker, store)
    instance_id = await service.start_workflow("brief-to-prd", {})

    await invoker.started.wait()
    await service.pause(instance_id)
    assert (await service.get_status(instance_id)).status == WorkflowStatus.RUNNING
    invoker.gate.set()

    paused = await service.wait(instance_id, timeout=5)
    assert paused.status == WorkflowStatus.PAUSED
    assert paused.current_step_index == 1
    assert (await store.load(instance_id)).status == WorkflowStatus.PAUSED

    again = await service.pause(instance_id)
    assert again.status == WorkflowStatus.PAUSED

    await service.resume(instance_id)
    resumed = await service.wait(instance_id, timeout=5)
    assert resumed.status == WorkflowStatus.COMPLETED
    assert invoker.calls == ["step_0_analyst", "step_1_pm"]


@pytest.mark.asyncio
async def test_cancel_paused_and_terminal(library, store):
    invoker = GatedInvoker()
    service = _service(library, invoker, store)
    instance_id = await service.start_workflow("brief-to-prd", {})
    await invoker.started.wait()
    await service.pause(instance_id)
    invoker.gate.set()
    await service.wait(instance_id, timeout=5)

    cancelled = await service.cancel(instance_id)
    assert cancelled.status == WorkflowStatus.CANCELLED
    assert (await store.load(instance_id)).status == WorkflowStatus.CANCELLED

    again = await service.cancel(instance_id)
    assert again.status == WorkflowStatus.CANCELLED
    assert again.completed_at == cancelled.completed_at
    with pytest.raises(InvalidTransitionError):
        await service.resume(instance_id)


@pytest.mark.asyncio
async def test_cancel_running_instance(library, store):
    invoker = GatedInvoker()
    service = _service(library, invoker, store)
    instance_id = await service.start_workflow("brief-to-prd", {})
    await invoker.started.wait()

    await service.cancel(instance_id)
    invoker.gate.set()

    instance = await service.wait(instance_id, timeout=5)
    assert instance.status == WorkflowStatus.CANCELLED
    assert invoker.calls == ["step_0_analyst"]


@pytest.mark.asyncio
async def test_resume_running_instance_left_by_crash(library, store):
    stale = WorkflowInstance(
        definition_id="brief-to-prd", status=WorkflowStatus.RUNNING, current_step_index=1
    )
    stale.context.add_artifact(Artifact(name="project-brief.md", content="# Brief", produced_by_step=0))
    await store.save(stale)

    invoker = MockAgentInvoker()
    service = _service(library, invoker, store)
    await service.resume(stale.instance_id)
    instance = await service.wait(stale.instance_id, timeout=5)

    assert instance.status == WorkflowStatus.COMPLETED
    assert invoker.calls == [("step_1_pm", "pm")]


@pytest.mark.asyncio
async def test_concurrency_is_bounded(library, store):
    invoker = GatedInvoker()
    service = _service(
        library, invoker, store, settings=EngineSettings(max_concurrent_instances=1)
    )
    first = await service.start_workflow("brief-to-prd", {})
    second = await service.start_workflow("brief-to-prd", {})

    await invoker.started.wait()
    await asyncio.sleep(0.05)
    assert invoker.max_active == 1
    assert len(invoker.calls) == 1

    invoker.gate.set()
    for instance_id in (first, second):
        assert (await service.wait(instance_id, timeout=5)).status == WorkflowStatus.COMPLETED
    assert invoker.max_active == 1


@pytest.mark.asyncio
async def test_shutdown_pauses_live_instances(library, store):
    invoker = GatedInvoker()
    service = _service(library, invoker, store)
    instance_id = await service.start_workflow("brief-to-prd", {})
    await invoker.started.wait()

    shutdown = asyncio.create_task(service.shutdown())
    await asyncio.sleep(0)
    invoker.gate.set()
    await shutdown

    assert (await store.load(instance_id)).status == WorkflowStatus.PAUSED


@pytest.mark.asyncio
async def test_from_config(library, store, tmp_path):
    config = FlowsmithConfig()
    config.definitions.workflows_path = str(library.workflows_path)
    config.artifacts.backend = "file"
    config.artifacts.path = str(tmp_path / "artifacts")

    service = EngineService.from_config(config, MockAgentInvoker(), store)
    instance_id = await service.start_workflow("story-cycle", {}, {"stories": ["a"]})
    instance = await service.wait(instance_id, timeout=5)

    assert instance.status == WorkflowStatus.COMPLETED
    assert instance.context.artifacts["implementation[0]"].content_ref is not None
    assert list((tmp_path / "artifacts").rglob("*.json"))


@pytest.mark.asyncio
async def test_pause_and_cancel_on_completed_are_no_ops(library, store, sink):
    service = _service(library, MockAgentInvoker(), store, sink)
    instance_id = await service.start_workflow("brief-to-prd", {})
    await service.wait(instance_id, timeout=5)
    events = len(sink.kinds(instance_id))

    assert (await service.pause(instance_id)).status == WorkflowStatus.COMPLETED
    assert (await service.cancel(instance_id)).status == WorkflowStatus.COMPLETED
    assert (await store.load(instance_id)).status == WorkflowStatus.COMPLETED
    assert len(sink.kinds(instance_id)) == events


@pytest.mark.asyncio
async def test_cancel_stored_instance_without_its_definition(library, store, sink):
    orphan = WorkflowInstance(
        definition_id="retired-workflow", status=WorkflowStatus.PAUSED, current_step_index=3
    )
    await store.save(orphan)

    service = _service(library, MockAgentInvoker(), store, sink)
    cancelled = await service.cancel(orphan.instance_id)

    assert cancelled.status == WorkflowStatus.CANCELLED
    assert cancelled.completed_at is not None
    assert (await store.load(orphan.instance_id)).status == WorkflowStatus.CANCELLED
    assert sink.kinds(orphan.instance_id) == ["workflow_cancelled"]
