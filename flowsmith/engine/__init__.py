"""Workflow execution: the per-instance loop and the service around it."""

from .decisions import ConditionEvaluator, context_decision, mapping_decision
from .executor import ExecutionEngine, transition
from .recovery import RecoveryAction, RecoveryDecision, RecoveryTracker, RetryPolicy
from .service import EngineService

__all__ = [
    "ConditionEvaluator",
    "EngineService",
    "ExecutionEngine",
    "RecoveryAction",
    "RecoveryDecision",
    "RecoveryTracker",
    "RetryPolicy",
    "context_decision",
    "mapping_decision",
    "transition",
]
