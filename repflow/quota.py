"""Per-user generation and chat quotas."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, Literal, Optional

from pydantic import BaseModel

from .constants import QUOTA_PERIOD_DAYS
from .db import Database, QuotaCounter
from .utils.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

QuotaKind = Literal["workout", "chat"]

UNLIMITED = 999999


class PlanLimits(BaseModel):
    generations: int
    chats: int


PLAN_LIMITS: Dict[str, PlanLimits] = {
    "free": PlanLimits(generations=5, chats=100),
    "pro": PlanLimits(generations=UNLIMITED, chats=UNLIMITED),
}


def limits_for(plan: str) -> PlanLimits:
    return PLAN_LIMITS.get(plan, PLAN_LIMITS["free"])


class QuotaCheck(BaseModel):
    allowed: bool
    remaining: int
    limit: int
    plan: str
    upgrade_required: bool
    period_end: Optional[datetime] = None


class QuotaService:
    def __init__(
        self,
        db: Database,
        clock: Optional[Clock] = None,
        period_days: int = QUOTA_PERIOD_DAYS,
    ) -> None:
        self._db = db
        self._clock = clock or SystemClock()
        self._period_days = period_days

    async def ensure(self, user_id: str, plan: str = "free") -> QuotaCounter:
        """Create the user's counter if missing and roll it over if its period ended."""
        now = self._clock.now()
        limits = limits_for(plan)
        await self._db.ensure_quota(
            user_id, plan, limits.generations, limits.chats, now, self._period_days
        )
        await self._db.reset_expired_quotas(now, self._period_days, user_id=user_id)
        quota = await self._db.get_quota(user_id)
        if quota is None:
            raise LookupError(f"Quota row for {user_id} vanished")
        return quota

    async def check(self, user_id: str, kind: QuotaKind) -> QuotaCheck:
        quota = await self.ensure(user_id)
        if quota.plan == "pro":
            return QuotaCheck(
                allowed=True,
                remaining=UNLIMITED,
                limit=UNLIMITED,
                plan="pro",
                upgrade_required=False,
                period_end=quota.period_end,
            )
        if kind == "workout":
            limit, used = quota.generation_limit, quota.generation_count
        else:
            limit, used = quota.chat_limit, quota.chat_count
        remaining = max(0, limit - used)
        return QuotaCheck(
            allowed=remaining > 0,
            remaining=remaining,
            limit=limit,
            plan=quota.plan,
            upgrade_required=remaining == 0,
            period_end=quota.period_end,
        )

    async def sync_limits(self, user_id: str, plan: str) -> None:
        """Apply ``plan``'s limits without touching the current counts."""
        limits = limits_for(plan)
        await self._db.sync_quota_limits(
            user_id, plan, limits.generations, limits.chats, self._clock.now(), self._period_days
        )
        logger.info(f"Synced quota limits for {user_id} to plan {plan}")

    async def reset_expired(self) -> int:
        count = await self._db.reset_expired_quotas(self._clock.now(), self._period_days)
        if count:
            logger.info(f"Reset {count} expired quota periods")
        return count
