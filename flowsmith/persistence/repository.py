"""State store abstraction for workflow instance persistence."""

from __future__ import annotations

from typing import Protocol

from ..contracts import WorkflowInstance


class StateStore(Protocol):
    """Protocol for workflow state persistence backends.

    ``save`` replaces the whole record for the instance atomically.
    """

    async def save(self, instance: WorkflowInstance) -> None:
        """Persist the full instance record."""

    async def load(self, instance_id: str) -> WorkflowInstance | None:
        """Retrieve the instance by id."""

    async def list_instances(self) -> list[WorkflowInstance]:
        """Return all persisted instances."""
