"""Event sink factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..config import FlowsmithConfig, load_config
from .base import BaseEventSink, NullEventSink
from .inmemory import InMemoryEventSink


def get_event_sink(
    backend: Optional[str] = None, config: Optional[FlowsmithConfig] = None
) -> BaseEventSink:
    """Factory function to get the configured event sink."""

    config = config or load_config()
    backend = (
        backend
        or os.getenv("FLOWSMITH_EVENTS")
        or config.events.backend
    ).lower()

    if backend == "inmemory":
        return InMemoryEventSink()
    elif backend == "none":
        return NullEventSink()
    elif backend == "redis":
        from .redis import RedisEventSink

        redis_conf = config.events.redis
        return RedisEventSink(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
        )
    else:
        raise ValueError(f"Unsupported event backend: {backend}")


__all__ = ["BaseEventSink", "InMemoryEventSink", "NullEventSink", "get_event_sink"]
