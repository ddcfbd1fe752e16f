"""Workflow definition parsing and lookup."""

from __future__ import annotations

from .inference import AgentInferenceTable
from .library import DefinitionLibrary
from .loader import WorkflowLoader, load_yaml
from .parser import (
    DefinitionParser,
    agent_step_of,
    load_definition,
    parse_definition_text,
    serialize_definition,
)
from .references import ReferenceResolver

__all__ = [
    "AgentInferenceTable",
    "DefinitionLibrary",
    "DefinitionParser",
    "ReferenceResolver",
    "WorkflowLoader",
    "agent_step_of",
    "load_definition",
    "load_yaml",
    "parse_definition_text",
    "serialize_definition",
]
