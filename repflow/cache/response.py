from __future__ import annotations

import asyncio
import inspect
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Literal, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, Field
from pydantic_core import to_jsonable_python

from ..constants import DEFAULT_CACHE_TTLS, MEMORY_CACHE_SIZE
from ..db import CachedResponse, Database
from ..generation import GenerationResult, TokenUsage
from ..utils.clock import Clock, SystemClock
from ..utils.tasks import BackgroundTasks
from .lru import LRUCache
from .pricing import PriceTable

logger = logging.getLogger(__name__)

Producer = Callable[[], Union[GenerationResult, Awaitable[GenerationResult]]]


class CacheEntry(BaseModel):
    key: str
    value: Any
    cache_type: str
    entity_id: Optional[str] = None
    context_hash: str = ""
    model_used: Optional[str] = None
    usage: TokenUsage = Field(default_factory=TokenUsage)
    generation_ms: Optional[int] = None
    created_at: datetime
    expires_at: datetime
    hit_count: int = 0
    source: Literal["memory", "store", "generated"] = "memory"


class CacheStats(BaseModel):
    hits: int
    misses: int
    memory_hits: int
    store_hits: int
    hit_rate: float
    estimated_cost_saved: float
    avg_retrieval_ms: float
    memory_entries: int
    memory_capacity: int
    evictions: int
    write_errors: int
    pending_writes: int


class ResponseCache:
    """Two-tier cache for expensive generated artifacts.

    Tier 1 is a bounded in-process LRU, tier 2 the durable row store. Reads
    fall through tier 1 to tier 2 and warm tier 1 on the way back; writes go
    to tier 1 synchronously and to tier 2 as a detached task.
    """

    def __init__(
        self,
        store: Optional[Database] = None,
        capacity: int = MEMORY_CACHE_SIZE,
        ttl_seconds: Optional[Mapping[str, int]] = None,
        default_ttl: int = 3600,
        prices: Optional[PriceTable] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._store = store
        self._memory: LRUCache[CacheEntry] = LRUCache(capacity)
        self._ttls: Dict[str, int] = dict(DEFAULT_CACHE_TTLS)
        if ttl_seconds:
            self._ttls.update(ttl_seconds)
        self._default_ttl = default_ttl
        self.prices = prices or PriceTable()
        self._clock = clock or SystemClock()
        self._writes = BackgroundTasks("cache")
        # key -> (lock, callers holding or waiting on it)
        self._inflight: Dict[str, Tuple[asyncio.Lock, int]] = {}
        self.reset_stats()

    def reset_stats(self) -> None:
        self._memory_hits = 0
        self._store_hits = 0
        self._misses = 0
        self._cost_saved = 0.0
        self._retrieval_ms = 0.0

    def ttl_for(self, cache_type: str) -> int:
        return self._ttls.get(cache_type, self._default_ttl)

    # ------------------------------------------------------------------
    async def get(self, key: str) -> Optional[CacheEntry]:
        """Return an unexpired entry or ``None`` on a miss."""
        started = time.perf_counter()
        now = self._clock.now()
        entry = self._memory.get(key, now)
        if entry is not None:
            self._memory_hits += 1
            self._record_hit(entry, started)
            return entry.model_copy(update={"source": "memory"})

        if self._store is not None:
            try:
                row = await self._store.get_cached(key, now)
            except Exception as exc:
                logger.warning(f"Cache store read failed for {key}: {exc}")
                row = None
            if row is not None:
                entry = self._from_row(row)
                self._memory.set(key, entry, entry.expires_at)
                self._writes.spawn(self._store.touch_cached(key, now), label=f"touch {key}")
                self._store_hits += 1
                self._record_hit(entry, started)
                return entry

        self._misses += 1
        return None

    def set(
        self,
        key: str,
        value: Any,
        *,
        cache_type: str,
        entity_id: Optional[str] = None,
        ttl: Optional[float] = None,
        model_used: Optional[str] = None,
        usage: Optional[TokenUsage] = None,
        generation_ms: Optional[int] = None,
        context_hash: str = "",
    ) -> CacheEntry:
        """Store ``value``; the durable write happens in the background."""
        now = self._clock.now()
        seconds = ttl if ttl is not None else self.ttl_for(cache_type)
        entry = CacheEntry(
            key=key,
            value=to_jsonable_python(value),
            cache_type=cache_type,
            entity_id=entity_id,
            context_hash=context_hash or key.rsplit(":", 1)[-1],
            model_used=model_used,
            usage=usage or TokenUsage(),
            generation_ms=generation_ms,
            created_at=now,
            expires_at=now + timedelta(seconds=seconds),
        )
        self._memory.set(key, entry, entry.expires_at)
        if self._store is not None:
            self._writes.spawn(self._persist(entry), label=f"write {key}")
        return entry

    async def get_or_generate(
        self,
        key: str,
        produce: Producer,
        *,
        cache_type: str,
        entity_id: Optional[str] = None,
        ttl: Optional[float] = None,
    ) -> CacheEntry:
        """Serve from cache or call ``produce`` once per key, even under races."""
        entry = await self.get(key)
        if entry is not None:
            return entry

        lock, users = self._inflight.get(key) or (asyncio.Lock(), 0)
        self._inflight[key] = (lock, users + 1)
        try:
            async with lock:
                entry = self._memory.get(key, self._clock.now())
                if entry is not None:
                    return entry.model_copy(update={"source": "memory"})
                result = produce()
                if inspect.isawaitable(result):
                    result = await result
                entry = self.set(
                    key,
                    result.output,
                    cache_type=cache_type,
                    entity_id=entity_id,
                    ttl=ttl,
                    model_used=result.model,
                    usage=result.usage,
                    generation_ms=result.duration_ms,
                )
                return entry.model_copy(update={"source": "generated"})
        finally:
            lock, users = self._inflight[key]
            if users > 1:
                self._inflight[key] = (lock, users - 1)
            else:
                del self._inflight[key]

    # ------------------------------------------------------------------
    async def delete(self, key: str) -> int:
        self._memory.delete(key)
        if self._store is None:
            return 0
        return await self._store.delete_cached(key)

    async def invalidate_prefix(self, prefix: str) -> int:
        """Drop every durable entry under ``prefix``; the fast tier is cleared whole."""
        self._memory.clear()
        if self._store is None:
            return 0
        removed = await self._store.delete_cached_prefix(prefix)
        logger.info(f"Invalidated {removed} cache entries under {prefix}")
        return removed

    async def invalidate_entity(self, entity_id: str) -> int:
        self._memory.clear()
        if self._store is None:
            return 0
        removed = await self._store.delete_cached_entity(entity_id)
        logger.info(f"Invalidated {removed} cache entries for entity {entity_id}")
        return removed

    async def cleanup_expired(self) -> int:
        if self._store is None:
            return 0
        return await self._store.delete_expired_cached(self._clock.now())

    async def warm(self, limit: int = 100) -> int:
        """Preload the most-hit durable entries into the fast tier."""
        if self._store is None:
            return 0
        rows = await self._store.top_cached(self._clock.now(), limit=min(limit, self._memory.capacity))
        for row in rows:
            entry = self._from_row(row)
            self._memory.set(entry.key, entry, entry.expires_at)
        logger.info(f"Warmed {len(rows)} cache entries")
        return len(rows)

    async def flush(self) -> None:
        """Wait for pending background writes."""
        await self._writes.drain()

    def stats(self) -> CacheStats:
        hits = self._memory_hits + self._store_hits
        total = hits + self._misses
        return CacheStats(
            hits=hits,
            misses=self._misses,
            memory_hits=self._memory_hits,
            store_hits=self._store_hits,
            hit_rate=hits / total if total else 0.0,
            estimated_cost_saved=round(self._cost_saved, 6),
            avg_retrieval_ms=self._retrieval_ms / hits if hits else 0.0,
            memory_entries=len(self._memory),
            memory_capacity=self._memory.capacity,
            evictions=self._memory.evictions,
            write_errors=self._writes.error_count,
            pending_writes=self._writes.pending,
        )

    # ------------------------------------------------------------------
    def _record_hit(self, entry: CacheEntry, started: float) -> None:
        self._cost_saved += self.prices.estimate(entry.usage, entry.model_used)
        self._retrieval_ms += (time.perf_counter() - started) * 1000

    async def _persist(self, entry: CacheEntry) -> None:
        await self._store.upsert_cached(
            {
                "cache_key": entry.key,
                "cache_type": entry.cache_type,
                "entity_id": entry.entity_id,
                "context_hash": entry.context_hash,
                "response": entry.value,
                "model_used": entry.model_used,
                "input_tokens": entry.usage.input_tokens,
                "output_tokens": entry.usage.output_tokens,
                "cached_tokens": entry.usage.cached_tokens,
                "total_cost": self.prices.estimate(entry.usage, entry.model_used),
                "generation_ms": entry.generation_ms,
                "expires_at": entry.expires_at,
                "created_at": entry.created_at,
            }
        )

    @staticmethod
    def _from_row(row: CachedResponse) -> CacheEntry:
        return CacheEntry(
            key=row.cache_key,
            value=row.response,
            cache_type=row.cache_type,
            entity_id=row.entity_id,
            context_hash=row.context_hash,
            model_used=row.model_used,
            usage=TokenUsage(
                input_tokens=row.input_tokens,
                output_tokens=row.output_tokens,
                cached_tokens=row.cached_tokens,
            ),
            generation_ms=row.generation_ms,
            created_at=row.created_at,
            expires_at=row.expires_at,
            hit_count=row.hit_count,
            source="store",
        )
