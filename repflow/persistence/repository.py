"""Repository abstraction for the run and step-result ledger."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional, Protocol

from ..contracts import RunRecord, StepResultRecord
from ..errors import FailureKind


class WorkflowRepository(Protocol):
    """Protocol for run ledger backends.

    Every mutation is conditional so concurrent workers can share one
    ledger: inserts are insert-if-absent, status changes check the current
    status, and completed step results are never overwritten.
    """

    async def create_run(self, run: RunRecord) -> bool:
        """Insert ``run`` unless its id exists. Returns whether it was inserted."""

    async def get_run(self, run_id: str) -> RunRecord | None:
        """Retrieve a run by id."""

    async def list_runs(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 100,
    ) -> list[RunRecord]:
        """Return runs, newest first."""

    async def claim_run(self, run_id: str, now: datetime) -> RunRecord | None:
        """Move a due queued run to running and bump its attempt."""

    async def suspend_run(self, run_id: str, wake_at: datetime, now: datetime) -> bool:
        """Put a running run back in the queue until ``wake_at``."""

    async def complete_run(self, run_id: str, output: Any, now: datetime) -> bool:
        """Mark a non-terminal run completed."""

    async def fail_run(
        self, run_id: str, error: str, failure_kind: FailureKind, now: datetime
    ) -> bool:
        """Mark a non-terminal run failed."""

    async def get_step_results(self, run_id: str) -> Dict[str, StepResultRecord]:
        """Return every stored step result for a run, keyed by step name."""

    async def save_step_result(
        self,
        run_id: str,
        step_name: str,
        output: Any,
        now: datetime,
        completes_run: bool = False,
    ) -> bool:
        """Record a successful step unless one is already recorded."""

    async def record_step_failure(
        self, run_id: str, step_name: str, error: str, now: datetime
    ) -> int:
        """Count a failed attempt of a step and return the total failures."""

    async def mark_step_sleeping(
        self, run_id: str, step_name: str, wake_at: datetime, now: datetime
    ) -> datetime:
        """Persist a timer's wake instant on first reach; return the stored one."""

    async def due_runs(
        self, now: datetime, redeliver_before: datetime, limit: int = 100
    ) -> list[RunRecord]:
        """Queued runs that are due and not recently dispatched."""

    async def mark_dispatched(self, run_id: str, now: datetime) -> None:
        """Record that a wake-up message was published for a run."""

    async def requeue_stale_runs(self, cutoff: datetime, now: datetime) -> int:
        """Return running runs untouched since ``cutoff`` to the queue."""

    async def claim_schedule_tick(self, schedule_id: str, tick: datetime) -> bool:
        """Advance a schedule's watermark to ``tick`` if it is behind."""
