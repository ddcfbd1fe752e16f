"""In-memory event sink for tests and single-process use."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import AsyncIterator, DefaultDict, List, Optional

from ..contracts import ProgressEvent
from .base import BaseEventSink


class InMemoryEventSink(BaseEventSink):
    """Record events per instance and fan them out to subscribers."""

    def __init__(self) -> None:
        self.events: DefaultDict[str, List[ProgressEvent]] = defaultdict(list)
        self._subscribers: DefaultDict[str, List[asyncio.Queue]] = defaultdict(list)

    async def emit(self, instance_id: str, event: ProgressEvent) -> None:
        self.events[instance_id].append(event)
        for queue in self._subscribers[instance_id]:
            queue.put_nowait(event)

    def kinds(self, instance_id: str) -> list[str]:
        return [event.kind for event in self.events[instance_id]]

    async def subscribe(
        self, instance_id: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[ProgressEvent]:
        """Yield events for ``instance_id`` as they are emitted.

        Args:
            instance_id: The instance to follow
            lifespan: Maximum time in seconds to wait for events. If None, runs indefinitely.
        """
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers[instance_id].append(queue)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan else None
        try:
            while True:
                timeout = None
                if deadline is not None:
                    timeout = deadline - loop.time()
                    if timeout <= 0:
                        break
                try:
                    event = await asyncio.wait_for(queue.get(), timeout)
                except asyncio.TimeoutError:
                    break
                yield event
        finally:
            self._subscribers[instance_id].remove(queue)
