"""Cron scheduler and ledger housekeeping loop."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from croniter import croniter

from .config import SchedulerConfig
from .contracts import Event, RunRecord
from .dispatch import EventRouter
from .events import cron_event_name
from .persistence import WorkflowRepository
from .registry import WorkflowRegistry
from .utils.clock import Clock, SystemClock, ensure_utc

logger = logging.getLogger(__name__)


def latest_fire_time(expression: str, now: datetime) -> datetime:
    """Most recent instant at or before ``now`` matching ``expression``."""
    now = ensure_utc(now)
    previous = croniter(expression, now).get_prev(datetime)
    following = croniter(expression, previous).get_next(datetime)
    if following <= now:
        previous = following
    return ensure_utc(previous)


class CronScheduler:
    """Fires cron workflows at most once per tick and keeps the ledger moving."""

    def __init__(
        self,
        workflows: WorkflowRegistry,
        repository: WorkflowRepository,
        router: EventRouter,
        clock: Optional[Clock] = None,
        config: Optional[SchedulerConfig] = None,
    ) -> None:
        self._workflows = workflows
        self._repository = repository
        self._router = router
        self._clock = clock or SystemClock()
        self.config = config or SchedulerConfig()
        self._stopped = asyncio.Event()
        for defn in workflows.cron_workflows():
            if not croniter.is_valid(defn.cron):
                raise ValueError(f"Invalid cron expression for {defn.id}: {defn.cron!r}")

    async def tick(self, now: Optional[datetime] = None) -> List[RunRecord]:
        """Fire due schedules and run one housekeeping pass."""
        now = ensure_utc(now or self._clock.now())
        grace = timedelta(seconds=self.config.misfire_grace_seconds)
        started: List[RunRecord] = []

        for defn in self._workflows.cron_workflows():
            due = latest_fire_time(defn.cron, now)
            if now - due > grace:
                logger.debug(f"Skipping missed tick {due.isoformat()} of {defn.id}")
                continue
            if not await self._repository.claim_schedule_tick(defn.id, due):
                continue
            logger.info(f"Cron tick {due.isoformat()} for {defn.id}")
            event = Event(
                id=f"cron:{defn.id}:{due.isoformat()}",
                name=cron_event_name(defn.id),
                data={"scheduled_at": due.isoformat()},
                ts=now,
            )
            started.extend(await self._router.route(event))

        started.extend(await self._router.release_debounced())
        await self._router.requeue_stale(self.config.stale_run_seconds)
        await self._router.wake_due(self.config.redeliver_seconds)
        return started

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Tick every ``poll_seconds`` until stopped or ``lifespan`` elapses."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan else None
        self._stopped.clear()
        while not self._stopped.is_set():
            try:
                await self.tick()
            except Exception as exc:
                logger.exception(f"Scheduler tick failed: {exc}")
            timeout = self.config.poll_seconds
            if deadline is not None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                timeout = min(timeout, remaining)
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                pass

    def stop(self) -> None:
        self._stopped.set()

    def next_fire_times(self, now: Optional[datetime] = None, count: int = 1) -> Dict[str, List[datetime]]:
        now = ensure_utc(now or self._clock.now())
        upcoming: Dict[str, List[datetime]] = {}
        for defn in self._workflows.cron_workflows():
            itr = croniter(defn.cron, now)
            upcoming[defn.id] = [ensure_utc(itr.get_next(datetime)) for _ in range(count)]
        return upcoming
