"""Base event sink interface for progress notifications."""

from __future__ import annotations

import abc

from ..contracts import ProgressEvent


class BaseEventSink(metaclass=abc.ABCMeta):
    """Abstract base for progress event sinks.

    Emitting is fire-and-forget from the engine's point of view: the engine
    logs and ignores any exception raised here.
    """

    async def connect(self) -> None:
        """Open connection to the backend (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to the backend (no-op by default)."""
        pass

    @abc.abstractmethod
    async def emit(self, instance_id: str, event: ProgressEvent) -> None:
        """Deliver ``event`` for ``instance_id``."""
        raise NotImplementedError


class NullEventSink(BaseEventSink):
    """Discard every event."""

    async def emit(self, instance_id: str, event: ProgressEvent) -> None:
        pass
