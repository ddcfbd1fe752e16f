from datetime import datetime, timezone

import pytest
from pydantic_ai import Agent
from pydantic_ai.models.test import TestModel as StubModel

from flowsmith.agents import CallableAgentInvoker, MockAgentInvoker
from flowsmith.agents.llm import PydanticAgentInvoker, build_prompt
from flowsmith.contracts import (
    AgentResult,
    AgentStep,
    Artifact,
    ExecutionContext,
    ResolvedReference,
)
from flowsmith.errors import AgentInvocationError

DEADLINE = datetime(2100, 1, 1, tzinfo=timezone.utc)

PM_STEP = AgentStep(
    index=1,
    name="create_prd",
    agent_id="pm",
    role="Product manager",
    action="write the PRD",
    creates=("prd.md",),
    requires=("project-brief.md",),
)


def _context():
    context = ExecutionContext(inputs={"user_prompt": "todo app"})
    context.add_artifact(Artifact(name="project-brief.md", content="# Brief", produced_by_step=0))
    return context


@pytest.mark.asyncio
async def test_callable_invoker_sync_and_async_handlers():
    async def pm(step, context):
        return AgentResult(output="prd", variables={"done": True})

    invoker = CallableAgentInvoker({"analyst": lambda step, context: "brief"})
    invoker.register("pm", pm)

    analyst_step = AgentStep(index=0, name="brief", agent_id="analyst")
    assert (await invoker.invoke(analyst_step, _context(), DEADLINE)).output == "brief"
    result = await invoker.invoke(PM_STEP, _context(), DEADLINE)
    assert result.variables == {"done": True}


@pytest.mark.asyncio
async def test_callable_invoker_missing_handler():
    invoker = CallableAgentInvoker()
    with pytest.raises(AgentInvocationError, match="no handler"):
        await invoker.invoke(PM_STEP, _context(), DEADLINE)

    invoker = CallableAgentInvoker(default=lambda step, context: "fallback")
    assert (await invoker.invoke(PM_STEP, _context(), DEADLINE)).output == "fallback"


@pytest.mark.asyncio
async def test_mock_invoker_is_deterministic():
    invoker = MockAgentInvoker(variables={"stories": ["a"]})
    first = await invoker.invoke(PM_STEP, _context(), DEADLINE)
    second = await invoker.invoke(PM_STEP, _context(), DEADLINE)

    assert first == second
    assert first.output == "[mock:pm] write the PRD -> prd.md"
    assert first.variables == {"stories": ["a"]}
    assert invoker.calls == [("create_prd", "pm"), ("create_prd", "pm")]


def test_build_prompt_includes_step_and_artifacts():
    prompt = build_prompt(PM_STEP, _context())
    assert "Role: Product manager" in prompt
    assert "User request: todo app" in prompt
    assert "--- project-brief.md ---\n# Brief" in prompt
    assert prompt.endswith("Produce: prd.md")


@pytest.mark.asyncio
async def test_pydantic_agent_invoker():
    invoker = PydanticAgentInvoker({"pm": Agent(StubModel(custom_output_text="# PRD"))})
    result = await invoker.invoke(PM_STEP, _context(), DEADLINE)
    assert result.output == "# PRD"
    assert result.metadata == {"agent": "pm"}

    with pytest.raises(AgentInvocationError, match="not configured"):
        await invoker.invoke(AgentStep(index=0, name="x", agent_id="qa"), _context(), DEADLINE)


def test_build_prompt_includes_resolved_reference():
    step = PM_STEP.model_copy(
        update={
            "uses": "prd-tmpl",
            "reference": ResolvedReference(
                ref="prd-tmpl",
                kind="template",
                path="templates/prd-tmpl.yaml",
                content={"sections": ["goals"]},
            ),
        }
    )
    prompt = build_prompt(step, _context())
    assert "--- template: prd-tmpl ---\nsections:\n- goals" in prompt
    assert "Use: prd-tmpl" not in prompt
