"""Redis list transport with a per-topic processing list.

Messages move atomically from ``{namespace}:{topic}`` to
``{namespace}:{topic}:processing`` when a worker takes them and leave the
processing list on ack. Whatever is still there when a worker connects was
in flight in a crashed process and goes back on the queue.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional, Tuple

import redis.asyncio as redis
from pydantic import ValidationError

from ..contracts import RunMessage
from .base import BaseTransport

logger = logging.getLogger(__name__)


class RedisTransport(BaseTransport[Tuple[str, str]]):
    """Run wake-ups over Redis lists; raw messages are ``(topic, payload)``."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        namespace: str = "repflow",
        poll_timeout: float = 1.0,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.namespace = namespace
        self.poll_timeout = poll_timeout
        self._client: Optional[Any] = None

    def _queue(self, topic: str) -> str:
        return f"{self.namespace}:{topic}"

    def _processing(self, topic: str) -> str:
        return f"{self.namespace}:{topic}:processing"

    async def _redis(self) -> Any:
        if self._client is None:
            await self.connect()
        return self._client

    async def connect(self) -> None:
        if self._client is not None:
            return
        client = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await client.ping()
        self._client = client

    async def disconnect(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def publish(self, topic: str, message: RunMessage) -> None:
        client = await self._redis()
        await client.rpush(self._queue(topic), message.to_json())

    async def recover(self, topic: str) -> int:
        """Put messages left in the processing list back on the queue."""
        client = await self._redis()
        moved = 0
        while await client.lmove(self._processing(topic), self._queue(topic), "RIGHT", "LEFT"):
            moved += 1
        if moved:
            logger.warning(f"Requeued {moved} unacknowledged messages on {topic}")
        return moved

    async def depth(self, topic: str) -> int:
        client = await self._redis()
        return await client.llen(self._queue(topic))

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[Tuple[str, str], RunMessage]]:
        client = await self._redis()
        await self.recover(topic)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan else None

        while deadline is None or loop.time() < deadline:
            payload = await client.blmove(
                self._queue(topic), self._processing(topic), self.poll_timeout, "LEFT", "RIGHT"
            )
            if payload is None:
                continue
            try:
                message = RunMessage.from_json(payload)
            except (ValueError, ValidationError) as e:
                logger.error(f"Dropping unreadable message on {topic}: {e}")
                await client.lrem(self._processing(topic), 1, payload)
                continue
            yield (topic, payload), message

    async def ack(self, raw_message: Tuple[str, str]) -> None:
        topic, payload = raw_message
        client = await self._redis()
        await client.lrem(self._processing(topic), 1, payload)

    async def nack(self, raw_message: Tuple[str, str], requeue: bool = True) -> None:
        topic, payload = raw_message
        client = await self._redis()
        async with client.pipeline(transaction=True) as pipe:
            pipe.lrem(self._processing(topic), 1, payload)
            if requeue:
                pipe.rpush(self._queue(topic), payload)
            await pipe.execute()
