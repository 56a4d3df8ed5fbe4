from __future__ import annotations

import logging
from datetime import timedelta
from enum import Enum
from typing import List, Optional

from ..contracts import Event, WorkflowDefinition
from ..utils.clock import Clock, SystemClock
from .store import DebouncedEvent, FlowStore

logger = logging.getLogger(__name__)

NO_KEY = "_"


class Admission(str, Enum):
    ADMITTED = "admitted"
    DEBOUNCED = "debounced"
    THROTTLED = "throttled"


class FlowController:
    """Applies a workflow's concurrency, debounce and throttle policy.

    Debounce and throttle are independent: when a workflow declares both,
    the throttle window is consulted first and only admitted events reach
    the debounce buffer.
    """

    def __init__(self, store: FlowStore, clock: Optional[Clock] = None, lease_seconds: float = 900.0) -> None:
        self.store = store
        self._clock = clock or SystemClock()
        self._lease = lease_seconds

    @staticmethod
    def scope(defn: WorkflowDefinition, event: Optional[Event] = None, key: Optional[str] = None) -> str:
        if event is None or key is None:
            return defn.id
        value = event.lookup(key)
        return f"{defn.id}:{NO_KEY if value is None else value}"

    async def admit(self, defn: WorkflowDefinition, event: Event) -> Admission:
        now = self._clock.now()
        policy = defn.policy
        if policy.throttle is not None:
            scope = self.scope(defn, event, policy.throttle.key)
            allowed = await self.store.throttle_hit(
                scope, policy.throttle.limit, policy.throttle.period, now, member=event.id
            )
            if not allowed:
                logger.info(f"Throttled {event.name} ({event.id}) for {defn.id} on {scope}")
                return Admission.THROTTLED
        if policy.debounce is not None:
            scope = self.scope(defn, event, policy.debounce.key)
            await self.store.debounce_put(
                DebouncedEvent(
                    workflow_id=defn.id,
                    scope=scope,
                    event=event,
                    due_at=now + timedelta(seconds=policy.debounce.period),
                )
            )
            logger.debug(f"Debounced {event.name} ({event.id}) for {defn.id} on {scope}")
            return Admission.DEBOUNCED
        return Admission.ADMITTED

    async def due_debounced(self) -> List[DebouncedEvent]:
        return await self.store.debounce_pop_due(self._clock.now())

    async def acquire(self, defn: WorkflowDefinition, run_id: str) -> bool:
        if defn.policy.concurrency is None:
            return True
        return await self.store.acquire(
            self.scope(defn), run_id, defn.policy.concurrency.limit, self._clock.now(), self._lease
        )

    async def release(self, defn: WorkflowDefinition, run_id: str) -> str | None:
        """Free a slot; returns the run that should be woken next, if any."""
        if defn.policy.concurrency is None:
            return None
        return await self.store.release(self.scope(defn), run_id, defn.policy.concurrency.limit)
