"""Flowsmith: durable, resumable execution of multi-agent workflows."""

from .agents import CallableAgentInvoker, MockAgentInvoker
from .config import FlowsmithConfig, load_config
from .contracts import (
    AgentResult,
    WorkflowDefinition,
    WorkflowInstance,
    WorkflowStatus,
)
from .definition import DefinitionLibrary, DefinitionParser
from .engine import EngineService, ExecutionEngine, RetryPolicy
from .events import get_event_sink
from .graph import StepGraph
from .persistence import get_state_store

__version__ = "0.1.0"
__all__ = [
    "AgentResult",
    "CallableAgentInvoker",
    "DefinitionLibrary",
    "DefinitionParser",
    "EngineService",
    "ExecutionEngine",
    "FlowsmithConfig",
    "MockAgentInvoker",
    "RetryPolicy",
    "StepGraph",
    "WorkflowDefinition",
    "WorkflowInstance",
    "WorkflowStatus",
    "get_event_sink",
    "get_state_store",
    "load_config",
]
