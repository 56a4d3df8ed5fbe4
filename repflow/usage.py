"""Usage tracking for generator calls."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from .cache.pricing import PriceTable
from .db import Database, UsageRecord
from .generation import TokenUsage
from .utils.clock import Clock, SystemClock

logger = logging.getLogger(__name__)


class UsageEvent(BaseModel):
    user_id: str
    endpoint: str
    model: str
    usage: TokenUsage = TokenUsage()
    feature: Optional[str] = None
    member_id: Optional[str] = None
    duration_ms: Optional[int] = None
    cache_hit: bool = False
    details: Dict[str, Any] = Field(default_factory=dict)

    @property
    def counts_as_generation(self) -> bool:
        return "generate-workout" in self.endpoint

    @property
    def counts_as_chat(self) -> bool:
        return "chat" in self.endpoint


class UsageTracker:
    """Persists usage rows and bumps quota counters.

    Tracking never breaks the caller: failures are logged and ``track``
    returns ``None``.
    """

    def __init__(
        self,
        db: Database,
        prices: Optional[PriceTable] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._db = db
        self._prices = prices or PriceTable()
        self._clock = clock or SystemClock()

    def cost_of(self, event: UsageEvent) -> float:
        return round(self._prices.estimate(event.usage, event.model), 6)

    async def track(self, event: UsageEvent) -> Optional[UsageRecord]:
        details = dict(event.details)
        if event.feature:
            details.setdefault("feature", event.feature)
        if event.member_id:
            details.setdefault("member_id", event.member_id)
        record = UsageRecord(
            user_id=event.user_id,
            endpoint=event.endpoint,
            model=event.model,
            input_tokens=event.usage.input_tokens,
            output_tokens=event.usage.output_tokens,
            cached_tokens=event.usage.cached_tokens,
            total_cost=self.cost_of(event),
            duration_ms=event.duration_ms,
            cache_hit=event.cache_hit,
            details=details,
            created_at=self._clock.now(),
        )
        try:
            await self._db.record_usage(
                record,
                generation_increment=1 if event.counts_as_generation else 0,
                chat_increment=1 if event.counts_as_chat else 0,
            )
        except Exception as exc:
            logger.error(f"Failed to track usage for {event.user_id} on {event.endpoint}: {exc}")
            return None
        logger.debug(
            f"Tracked {event.usage.total_tokens} tokens (${record.total_cost:.6f}) "
            f"for {event.user_id} on {event.endpoint}"
        )
        return record
