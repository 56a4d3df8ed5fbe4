"""Event router: turns events into admitted, queued runs."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from .contracts import Event, RunMessage, RunRecord, RunStatus, WorkflowDefinition, run_id_for
from .events import EventRegistry
from .flow import Admission, FlowController
from .persistence import WorkflowRepository
from .registry import WorkflowRegistry
from .transports import BaseTransport
from .utils.clock import Clock, SystemClock

logger = logging.getLogger(__name__)


class EventRouter:
    """Matches events to subscribed workflows and starts admitted runs."""

    def __init__(
        self,
        workflows: WorkflowRegistry,
        events: EventRegistry,
        repository: WorkflowRepository,
        flow: FlowController,
        transport: BaseTransport,
        topic: str = "runs",
        clock: Optional[Clock] = None,
    ) -> None:
        self._workflows = workflows
        self._events = events
        self._repository = repository
        self._flow = flow
        self._transport = transport
        self._topic = topic
        self._clock = clock or SystemClock()

    async def send(
        self, name: str, data: Optional[Dict[str, Any]] = None, id: Optional[str] = None
    ) -> List[RunRecord]:
        """Build an event and route it."""
        event = Event(name=name, data=data or {}, ts=self._clock.now())
        if id is not None:
            event.id = id
        return await self.route(event)

    async def route(self, event: Event) -> List[RunRecord]:
        """Fan ``event`` out to every subscribed workflow the flow policy admits.

        Raises:
            UnknownEventError: the event name is not registered.
            InvalidEventPayload: the data does not match the registered schema.
        """
        event = self._events.validate(event)
        subscribers = self._workflows.subscribers(event.name)
        if not subscribers:
            logger.debug(f"No workflows subscribed to {event.name}")
            return []

        runs: List[RunRecord] = []
        for defn in subscribers:
            admission = await self._flow.admit(defn, event)
            if admission is Admission.ADMITTED:
                runs.append(await self.start_run(defn, event))
        return runs

    async def start_run(self, defn: WorkflowDefinition, event: Event) -> RunRecord:
        """Create the run for (workflow, event) once and publish its wake-up."""
        now = self._clock.now()
        run = RunRecord(
            run_id=run_id_for(defn.id, event.id),
            workflow_id=defn.id,
            event=event,
            status=RunStatus.QUEUED,
            created_at=now,
            updated_at=now,
        )
        if not await self._repository.create_run(run):
            existing = await self._repository.get_run(run.run_id)
            logger.debug(f"Run {run.run_id} already exists for {defn.id}; not starting again")
            return existing or run
        logger.info(f"Queued run {run.run_id} of {defn.id} for {event.name} ({event.id})")
        await self.publish(run.run_id, defn.id, "start")
        return run

    async def publish(self, run_id: str, workflow_id: str, reason: str = "wake") -> None:
        now = self._clock.now()
        await self._transport.publish(
            self._topic,
            RunMessage(run_id=run_id, workflow_id=workflow_id, reason=reason, sent_at=now),
        )
        await self._repository.mark_dispatched(run_id, now)

    async def release_debounced(self) -> List[RunRecord]:
        """Start runs for debounced events whose quiet period is over."""
        runs: List[RunRecord] = []
        for pending in await self._flow.due_debounced():
            if pending.workflow_id not in self._workflows:
                logger.warning(f"Dropping debounced event for unknown workflow {pending.workflow_id}")
                continue
            defn = self._workflows.get(pending.workflow_id)
            runs.append(await self.start_run(defn, pending.event))
        return runs

    async def wake_due(self, redeliver_after: float = 120.0, limit: int = 100) -> int:
        """Publish wake-ups for queued runs whose timer or backoff has elapsed."""
        now = self._clock.now()
        due = await self._repository.due_runs(
            now, now - timedelta(seconds=redeliver_after), limit=limit
        )
        for run in due:
            reason = "wake" if run.wake_at is not None else "redeliver"
            await self.publish(run.run_id, run.workflow_id, reason)
        if due:
            logger.debug(f"Woke {len(due)} due runs")
        return len(due)

    async def requeue_stale(self, stale_after: float) -> int:
        now: datetime = self._clock.now()
        count = await self._repository.requeue_stale_runs(
            now - timedelta(seconds=stale_after), now
        )
        if count:
            logger.warning(f"Requeued {count} runs stuck in running for over {stale_after}s")
        return count
