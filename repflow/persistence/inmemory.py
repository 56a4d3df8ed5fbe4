"""In-memory implementation of the run ledger."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from pydantic_core import to_jsonable_python

from ..contracts import RunRecord, RunStatus, StepResultRecord, StepStatus
from ..errors import FailureKind
from .repository import WorkflowRepository


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store run state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._runs: Dict[str, RunRecord] = {}
        self._steps: Dict[Tuple[str, str], StepResultRecord] = {}
        self._watermarks: Dict[str, datetime] = {}

    # ------------------------------------------------------------------
    async def create_run(self, run: RunRecord) -> bool:
        if run.run_id in self._runs:
            return False
        self._runs[run.run_id] = run.model_copy(deep=True)
        return True

    async def get_run(self, run_id: str) -> RunRecord | None:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def list_runs(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 100,
    ) -> list[RunRecord]:
        runs = [
            r
            for r in self._runs.values()
            if (workflow_id is None or r.workflow_id == workflow_id)
            and (status is None or r.status == status)
        ]
        runs.sort(key=lambda r: r.created_at, reverse=True)
        return [r.model_copy(deep=True) for r in runs[:limit]]

    async def claim_run(self, run_id: str, now: datetime) -> RunRecord | None:
        run = self._runs.get(run_id)
        if run is None or run.status != RunStatus.QUEUED:
            return None
        if run.wake_at is not None and run.wake_at > now:
            return None
        run.status = RunStatus.RUNNING
        run.attempt += 1
        run.started_at = run.started_at or now
        run.wake_at = None
        run.updated_at = now
        return run.model_copy(deep=True)

    async def suspend_run(self, run_id: str, wake_at: datetime, now: datetime) -> bool:
        run = self._runs.get(run_id)
        if run is None or run.status != RunStatus.RUNNING:
            return False
        run.status = RunStatus.QUEUED
        run.wake_at = wake_at
        run.dispatched_at = None
        run.updated_at = now
        return True

    async def complete_run(self, run_id: str, output: Any, now: datetime) -> bool:
        run = self._runs.get(run_id)
        if run is None or run.is_terminal:
            return False
        run.status = RunStatus.COMPLETED
        run.output = to_jsonable_python(output)
        run.completed_at = now
        run.updated_at = now
        return True

    async def fail_run(
        self, run_id: str, error: str, failure_kind: FailureKind, now: datetime
    ) -> bool:
        run = self._runs.get(run_id)
        if run is None or run.is_terminal:
            return False
        run.status = RunStatus.FAILED
        run.error = error
        run.failure_kind = failure_kind
        run.completed_at = now
        run.updated_at = now
        return True

    # ------------------------------------------------------------------
    async def get_step_results(self, run_id: str) -> Dict[str, StepResultRecord]:
        return {
            name: record.model_copy(deep=True)
            for (rid, name), record in self._steps.items()
            if rid == run_id
        }

    async def save_step_result(
        self,
        run_id: str,
        step_name: str,
        output: Any,
        now: datetime,
        completes_run: bool = False,
    ) -> bool:
        key = (run_id, step_name)
        existing = self._steps.get(key)
        if existing is not None and existing.status == StepStatus.COMPLETED:
            return False
        self._steps[key] = StepResultRecord(
            run_id=run_id,
            step_name=step_name,
            status=StepStatus.COMPLETED,
            output=to_jsonable_python(output),
            failures=existing.failures if existing else 0,
            completes_run=completes_run,
            wake_at=existing.wake_at if existing else None,
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )
        return True

    async def record_step_failure(
        self, run_id: str, step_name: str, error: str, now: datetime
    ) -> int:
        key = (run_id, step_name)
        existing = self._steps.get(key)
        if existing is None:
            existing = StepResultRecord(
                run_id=run_id,
                step_name=step_name,
                status=StepStatus.FAILED,
                created_at=now,
                updated_at=now,
            )
            self._steps[key] = existing
        elif existing.status == StepStatus.COMPLETED:
            return existing.failures
        existing.status = StepStatus.FAILED
        existing.error = error
        existing.failures += 1
        existing.updated_at = now
        return existing.failures

    async def mark_step_sleeping(
        self, run_id: str, step_name: str, wake_at: datetime, now: datetime
    ) -> datetime:
        key = (run_id, step_name)
        existing = self._steps.get(key)
        if existing is not None and existing.wake_at is not None:
            return existing.wake_at
        self._steps[key] = StepResultRecord(
            run_id=run_id,
            step_name=step_name,
            status=StepStatus.SLEEPING,
            wake_at=wake_at,
            failures=existing.failures if existing else 0,
            created_at=now,
            updated_at=now,
        )
        return wake_at

    # ------------------------------------------------------------------
    async def due_runs(
        self, now: datetime, redeliver_before: datetime, limit: int = 100
    ) -> list[RunRecord]:
        due = [
            r
            for r in self._runs.values()
            if r.status == RunStatus.QUEUED
            and (r.wake_at is None or r.wake_at <= now)
            and (r.dispatched_at is None or r.dispatched_at <= redeliver_before)
        ]
        due.sort(key=lambda r: r.created_at)
        return [r.model_copy(deep=True) for r in due[:limit]]

    async def mark_dispatched(self, run_id: str, now: datetime) -> None:
        run = self._runs.get(run_id)
        if run is not None:
            run.dispatched_at = now

    async def requeue_stale_runs(self, cutoff: datetime, now: datetime) -> int:
        count = 0
        for run in self._runs.values():
            if run.status == RunStatus.RUNNING and run.updated_at < cutoff:
                run.status = RunStatus.QUEUED
                run.dispatched_at = None
                run.updated_at = now
                count += 1
        return count

    async def claim_schedule_tick(self, schedule_id: str, tick: datetime) -> bool:
        last = self._watermarks.get(schedule_id)
        if last is not None and last >= tick:
            return False
        self._watermarks[schedule_id] = tick
        return True
