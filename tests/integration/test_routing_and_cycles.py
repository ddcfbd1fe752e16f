import pytest

from flowsmith.config import EngineSettings
from flowsmith.contracts import (
    AgentResult,
    EntryStatus,
    IssueSeverity,
    WorkflowInstance,
    WorkflowStatus,
)
from flowsmith.definition import load_definition
from flowsmith.engine import ConditionEvaluator, ExecutionEngine, RetryPolicy, mapping_decision
from flowsmith.graph import StepGraph


def _engine(definition, invoker, store, variables=None, **kwargs):
    instance = WorkflowInstance(definition_id=definition.id)
    instance.context.variables.update(variables or {})
    return ExecutionEngine(
        StepGraph(definition), instance, invoker, store, policy=RetryPolicy.immediate(), **kwargs
    )


def _visited(instance):
    return [(e.step_index, e.status) for e in instance.history]


@pytest.fixture
def brownfield(workflows_dir):
    return load_definition(workflows_dir / "brownfield.yaml")


@pytest.fixture
def story_cycle(workflows_dir):
    return load_definition(workflows_dir / "story-cycle.yaml")


@pytest.mark.asyncio
async def test_single_story_route(brownfield, store, scripted):
    invoker = scripted()
    instance = await _engine(
        brownfield,
        invoker,
        store,
        variables={"scope_router": "single_story", "story_done": "done"},
    ).run()

    assert instance.status == WorkflowStatus.COMPLETED
    assert _visited(instance) == [
        (0, EntryStatus.COMPLETED),
        (1, EntryStatus.ROUTED),
        (2, EntryStatus.COMPLETED),
        (3, EntryStatus.ROUTED),
        (6, EntryStatus.COMPLETED),
    ]
    assert instance.history[1].route_taken == "single_story"
    assert instance.context.routing_decisions == {"scope_router": "single_story", "story_done": "done"}
    assert invoker.calls == ["enhancement_classification", "quick_story", "finish"]


@pytest.mark.asyncio
async def test_decision_set_by_agent_and_condition(brownfield, store, scripted):
    invoker = scripted(
        {
            "enhancement_classification": [
                AgentResult(
                    output="major",
                    variables={"scope_router": "major_enhancement", "architecture_changes": True},
                )
            ]
        }
    )
    instance = await _engine(brownfield, invoker, store).run()

    assert instance.status == WorkflowStatus.COMPLETED
    assert invoker.calls == [
        "enhancement_classification",
        "project_analysis",
        "architecture",
        "finish",
    ]
    assert {"project-analysis.md", "architecture.md"} <= set(instance.context.artifacts)


@pytest.mark.asyncio
async def test_false_condition_skips_step(brownfield, store, scripted):
    invoker = scripted()
    instance = await _engine(
        brownfield,
        invoker,
        store,
        decision_provider=mapping_decision({"scope_router": "major_enhancement"}),
    ).run()

    assert instance.status == WorkflowStatus.COMPLETED
    assert (5, EntryStatus.SKIPPED) in _visited(instance)
    assert "architecture" not in invoker.calls
    assert "architecture.md" not in instance.context.artifacts


@pytest.mark.asyncio
async def test_routing_is_deterministic(brownfield, store, scripted):
    runs = []
    for _ in range(3):
        instance = await _engine(
            brownfield, scripted(), store, variables={"scope_router": "major_enhancement"}
        ).run()
        runs.append(_visited(instance))
    assert runs[0] == runs[1] == runs[2]


@pytest.mark.parametrize("decision", [None, "unknown_label"])
@pytest.mark.asyncio
async def test_invalid_decision_fails_instance(brownfield, store, scripted, decision):
    variables = {} if decision is None else {"scope_router": decision}
    instance = await _engine(brownfield, scripted(), store, variables=variables).run()

    assert instance.status == WorkflowStatus.FAILED
    assert instance.current_step_index == 1
    assert instance.issues[-1].kind == "routing"
    assert "single_story" in instance.issues[-1].message


@pytest.mark.asyncio
async def test_cycle_per_item_artifacts(story_cycle, store, scripted):
    stories = ["login", "signup", "logout"]
    invoker = scripted({"step_0_sm": [AgentResult(output="3 stories", variables={"stories": stories})]})
    instance = await _engine(story_cycle, invoker, store).run()

    assert instance.status == WorkflowStatus.COMPLETED
    assert invoker.calls == ["step_0_sm"] + ["develop_story"] * 3 + ["step_2_qa"]
    cycle_entries = [e for e in instance.history if e.step_index == 1]
    assert [e.iteration for e in cycle_entries] == [0, 1, 2]
    assert [e.artifacts for e in cycle_entries] == [
        ["implementation[0]"],
        ["implementation[1]"],
        ["implementation[2]"],
    ]
    items = [ctx.variables["cycle_item"] for ctx in invoker.contexts[1:4]]
    assert items == stories
    assert [ctx.variables["cycle_index"] for ctx in invoker.contexts[1:4]] == [0, 1, 2]
    assert "cycle_item" not in instance.context.variables
    assert instance.cycle_iteration == 0


@pytest.mark.asyncio
async def test_cycle_merged_artifact(story_cycle, store, scripted):
    invoker = scripted(
        {
            "step_0_sm": [AgentResult(output="2 stories", variables={"stories": ["a", "b"]})],
            "develop_story": ["impl a", "impl b"],
        }
    )
    instance = await _engine(
        story_cycle, invoker, store, settings=EngineSettings(cycle_artifacts="merged")
    ).run()

    assert instance.status == WorkflowStatus.COMPLETED
    assert instance.context.artifact_content("implementation") == ["impl a", "impl b"]
    assert "implementation[0]" not in instance.context.artifacts
    assert instance.cycle_outputs == []


@pytest.mark.asyncio
async def test_cycle_over_empty_collection(story_cycle, store, scripted):
    invoker = scripted({"step_0_sm": [AgentResult(output="none", variables={"stories": []})]})
    instance = await _engine(story_cycle, invoker, store).run()

    assert instance.status == WorkflowStatus.COMPLETED
    assert "develop_story" not in invoker.calls


@pytest.mark.asyncio
async def test_cycle_without_collection_fails(story_cycle, store, scripted):
    instance = await _engine(story_cycle, scripted(), store).run()

    assert instance.status == WorkflowStatus.FAILED
    assert instance.current_step_index == 1
    assert instance.issues[-1].kind == "dependency"
    assert "stories" in instance.issues[-1].message


@pytest.mark.asyncio
async def test_cycle_iteration_retry_budget(story_cycle, store, scripted):
    invoker = scripted(
        {
            "step_0_sm": [AgentResult(output="2", variables={"stories": ["a", "b"]})],
            "develop_story": ["impl a", RuntimeError("boom"), "impl b"],
        }
    )
    instance = await _engine(story_cycle, invoker, store).run()

    assert instance.status == WorkflowStatus.COMPLETED
    cycle_entries = [(e.iteration, e.status, e.attempt) for e in instance.history if e.step_index == 1]
    assert cycle_entries == [
        (0, EntryStatus.COMPLETED, 1),
        (1, EntryStatus.FAILED, 1),
        (1, EntryStatus.COMPLETED, 2),
    ]


@pytest.mark.asyncio
async def test_raising_predicate_fails_instance(brownfield, store, scripted):
    def architecture_changes(context):
        raise RuntimeError("predicate blew up")

    engine = _engine(
        brownfield,
        scripted(),
        store,
        variables={"scope_router": "major_enhancement"},
        conditions=ConditionEvaluator({"architecture_changes": architecture_changes}),
    )
    instance = await engine.run()

    assert instance.status == WorkflowStatus.FAILED
    assert instance.current_step_index == 5
    assert instance.issues[-1].kind == "condition"
    assert "predicate blew up" in instance.issues[-1].message
    assert (await store.load(instance.instance_id)).status == WorkflowStatus.FAILED


@pytest.mark.asyncio
async def test_unhashable_decision_fails_instance(brownfield, store, scripted):
    instance = await _engine(
        brownfield,
        scripted(),
        store,
        decision_provider=lambda step, context: {"label": "single_story"},
    ).run()

    assert instance.status == WorkflowStatus.FAILED
    assert instance.issues[-1].kind == "routing"


@pytest.mark.asyncio
async def test_unexpected_error_is_recorded(brownfield, store, scripted, monkeypatch):
    engine = _engine(brownfield, scripted(), store, variables={"scope_router": "single_story"})

    async def _broken_route(step):
        raise KeyError("lost")

    monkeypatch.setattr(engine, "_route", _broken_route)
    instance = await engine.run()

    assert instance.status == WorkflowStatus.FAILED
    assert instance.issues[-1].severity == IssueSeverity.CRITICAL
    assert instance.issues[-1].kind == "internal"
    assert "KeyError" in instance.issues[-1].message
    stored = await store.load(instance.instance_id)
    assert stored.status == WorkflowStatus.FAILED
    assert stored.issues[-1].kind == "internal"
