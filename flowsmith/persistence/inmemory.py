"""In-memory implementation of the state store."""

from __future__ import annotations

from typing import Dict

from ..contracts import WorkflowInstance
from .repository import StateStore


class InMemoryStateStore(StateStore):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are kept as JSON snapshots so
    callers never share mutable state with the store.
    """

    def __init__(self) -> None:
        self._records: Dict[str, str] = {}
        self.save_count = 0

    async def save(self, instance: WorkflowInstance) -> None:
        self._records[instance.instance_id] = instance.to_json()
        self.save_count += 1

    async def load(self, instance_id: str) -> WorkflowInstance | None:
        record = self._records.get(instance_id)
        return WorkflowInstance.from_json(record) if record is not None else None

    async def list_instances(self) -> list[WorkflowInstance]:
        return [WorkflowInstance.from_json(r) for r in self._records.values()]
