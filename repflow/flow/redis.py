"""Redis-backed flow state shared by every worker process."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, List, Optional

import redis.asyncio as redis

from .store import DebouncedEvent, FlowStore

logger = logging.getLogger(__name__)

_THROTTLE = """
redis.call('ZREMRANGEBYSCORE', KEYS[1], '-inf', ARGV[2])
if redis.call('ZCARD', KEYS[1]) < tonumber(ARGV[3]) then
  redis.call('ZADD', KEYS[1], ARGV[1], ARGV[4])
  redis.call('PEXPIRE', KEYS[1], ARGV[5])
  return 1
end
return 0
"""

_ACQUIRE = """
redis.call('ZREMRANGEBYSCORE', KEYS[1], '-inf', ARGV[3])
if redis.call('ZSCORE', KEYS[1], ARGV[1]) then
  redis.call('ZADD', KEYS[1], ARGV[4], ARGV[1])
  return 1
end
local head = redis.call('LINDEX', KEYS[2], 0)
if redis.call('ZCARD', KEYS[1]) < tonumber(ARGV[2]) and ((not head) or head == ARGV[1]) then
  if head then
    redis.call('LPOP', KEYS[2])
  end
  redis.call('ZADD', KEYS[1], ARGV[4], ARGV[1])
  return 1
end
if not redis.call('LPOS', KEYS[2], ARGV[1]) then
  redis.call('RPUSH', KEYS[2], ARGV[1])
end
return 0
"""

_RELEASE = """
redis.call('ZREM', KEYS[1], ARGV[1])
redis.call('LREM', KEYS[2], 0, ARGV[1])
if redis.call('ZCARD', KEYS[1]) < tonumber(ARGV[2]) then
  return redis.call('LINDEX', KEYS[2], 0)
end
return false
"""

_POP_DUE = """
local scopes = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1])
local out = {}
for _, scope in ipairs(scopes) do
  local value = redis.call('HGET', KEYS[2], scope)
  redis.call('ZREM', KEYS[1], scope)
  redis.call('HDEL', KEYS[2], scope)
  if value then
    table.insert(out, value)
  end
end
return out
"""


class RedisFlowStore(FlowStore):
    """Flow state in Redis; every operation is a single Lua script or transaction."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        namespace: str = "repflow:flow",
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.namespace = namespace
        self._redis: Optional[Any] = None
        self._scripts: dict = {}

    async def connect(self) -> None:
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()
        self._scripts = {
            "throttle": self._redis.register_script(_THROTTLE),
            "acquire": self._redis.register_script(_ACQUIRE),
            "release": self._redis.register_script(_RELEASE),
            "pop_due": self._redis.register_script(_POP_DUE),
        }

    async def close(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def _script(self, name: str) -> Any:
        if not self._redis:
            await self.connect()
        return self._scripts[name]

    def _key(self, *parts: str) -> str:
        return ":".join((self.namespace,) + parts)

    async def throttle_hit(self, scope: str, limit: int, period: float, now: datetime, member: str) -> bool:
        script = await self._script("throttle")
        ts = now.timestamp()
        allowed = await script(
            keys=[self._key("throttle", scope)],
            args=[ts, ts - period, limit, member, int(period * 1000) + 1000],
        )
        return bool(allowed)

    async def debounce_put(self, pending: DebouncedEvent) -> None:
        if not self._redis:
            await self.connect()
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hset(self._key("debounce", "pending"), pending.scope, pending.model_dump_json())
            pipe.zadd(self._key("debounce", "due"), {pending.scope: pending.due_at.timestamp()})
            await pipe.execute()

    async def debounce_pop_due(self, now: datetime) -> List[DebouncedEvent]:
        script = await self._script("pop_due")
        values = await script(
            keys=[self._key("debounce", "due"), self._key("debounce", "pending")],
            args=[now.timestamp()],
        )
        due = [DebouncedEvent.model_validate(json.loads(v)) for v in values]
        return sorted(due, key=lambda p: p.due_at)

    async def acquire(self, scope: str, run_id: str, limit: int, now: datetime, lease: float) -> bool:
        script = await self._script("acquire")
        ts = now.timestamp()
        acquired = await script(
            keys=[self._key("active", scope), self._key("waiting", scope)],
            args=[run_id, limit, ts, ts + lease],
        )
        return bool(acquired)

    async def release(self, scope: str, run_id: str, limit: int) -> str | None:
        script = await self._script("release")
        head = await script(
            keys=[self._key("active", scope), self._key("waiting", scope)],
            args=[run_id, limit],
        )
        return head or None
