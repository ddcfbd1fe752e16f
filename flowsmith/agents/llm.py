"""Agent invoker backed by pydantic-ai agents."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Mapping

import yaml
from pydantic_ai import Agent

from ..config import AgentModelConfig
from ..contracts import AgentResult, AgentStep, ExecutionContext
from ..errors import AgentInvocationError

logger = logging.getLogger(__name__)


def build_prompt(step: AgentStep, context: ExecutionContext) -> str:
    """Render the instructions an agent receives for ``step``."""
    lines = []
    if step.role:
        lines.append(f"Role: {step.role}")
    if step.action:
        lines.append(f"Action: {step.action}")
    if step.description:
        lines.append(f"Notes: {step.description}")
    if step.reference is not None:
        content = step.reference.content
        if not isinstance(content, str):
            content = yaml.safe_dump(content, sort_keys=False).rstrip()
        lines.append(f"--- {step.reference.kind}: {step.reference.ref} ---\n{content}")
    elif step.uses:
        lines.append(f"Use: {step.uses}")
    if context.user_prompt:
        lines.append(f"User request: {context.user_prompt}")
    for name in step.requires:
        content = context.artifact_content(name)
        if content is not None:
            lines.append(f"--- {name} ---\n{content}")
    if step.creates:
        lines.append(f"Produce: {', '.join(step.creates)}")
    return "\n".join(lines) or step.name


class PydanticAgentInvoker:
    """Run each agent id through its own ``pydantic_ai.Agent``."""

    def __init__(self, agents: Mapping[str, Agent]) -> None:
        self.agents = dict(agents)

    @classmethod
    def from_config(cls, agents: Mapping[str, AgentModelConfig]) -> "PydanticAgentInvoker":
        return cls(
            {
                agent_id: Agent(conf.model, instructions=conf.instructions, name=agent_id)
                for agent_id, conf in agents.items()
            }
        )

    async def invoke(
        self, step: AgentStep, context: ExecutionContext, deadline: datetime
    ) -> AgentResult:
        agent = self.agents.get(step.agent_id or "")
        if agent is None:
            raise AgentInvocationError(step.agent_id, "agent is not configured")

        prompt = build_prompt(step, context)
        logger.info(f"Running agent {step.agent_id} for step {step.name}")
        result = await agent.run(prompt)
        output = result.output if hasattr(result, "output") else result
        return AgentResult(output=output, metadata={"agent": step.agent_id})
