"""Single-process wake-up queue for tests and local runs."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, List, Optional, Tuple

from ..contracts import RunMessage
from .base import BaseTransport

logger = logging.getLogger(__name__)

RawRunMessage = Tuple[str, RunMessage]


class InMemoryTransport(BaseTransport[RawRunMessage]):
    """Wake-ups held in process memory; lost on exit.

    Raw messages pair the serialized payload with the parsed message so
    :meth:`drain` callers need not decode anything.
    """

    def __init__(self, poll_interval: float = 0.1) -> None:
        self.poll_interval = poll_interval
        self._queues: Dict[str, Deque[RawRunMessage]] = defaultdict(deque)
        self._lock = asyncio.Lock()

    async def publish(self, topic: str, message: RunMessage) -> None:
        async with self._lock:
            self._queues[topic].append((message.to_json(), message))

    async def _take(self, topic: str) -> Optional[RawRunMessage]:
        async with self._lock:
            queue = self._queues[topic]
            return queue.popleft() if queue else None

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawRunMessage, RunMessage]]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan else None

        while deadline is None or loop.time() < deadline:
            raw_message = await self._take(topic)
            if raw_message is None:
                await asyncio.sleep(self.poll_interval)
                continue
            yield raw_message, raw_message[1]

    async def drain(self, topic: str) -> List[RawRunMessage]:
        """Remove and return everything queued on ``topic``."""
        async with self._lock:
            items = list(self._queues[topic])
            self._queues[topic].clear()
        return items

    async def depth(self, topic: str) -> int:
        async with self._lock:
            return len(self._queues[topic])

    async def ack(self, raw_message: RawRunMessage) -> None:
        # Taking the message off the deque already settled it.
        return None

    async def nack(self, raw_message: RawRunMessage, requeue: bool = True) -> None:
        # Requeueing here would spin run_until_idle on a run that keeps
        # crashing; the ledger redelivers it on the next scheduler tick.
        logger.debug(f"Dropped wake-up for run {raw_message[1].run_id} after a failed delivery")
