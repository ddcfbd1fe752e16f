"""Redis event sink for cross-process progress notifications."""

from __future__ import annotations

from typing import Any, Optional

import redis.asyncio as redis

from ..constants import EVENT_CHANNEL_PREFIX
from ..contracts import ProgressEvent
from .base import BaseEventSink


class RedisEventSink(BaseEventSink):
    """Publish events as JSON on ``flowsmith:<instance_id>`` channels."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self._redis: Optional[Any] = None

    @staticmethod
    def channel_for(instance_id: str) -> str:
        return f"{EVENT_CHANNEL_PREFIX}:{instance_id}"

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def emit(self, instance_id: str, event: ProgressEvent) -> None:
        if not self._redis:
            await self.connect()
        await self._redis.publish(self.channel_for(instance_id), event.model_dump_json())
