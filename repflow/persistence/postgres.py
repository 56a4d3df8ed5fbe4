"""PostgreSQL implementation of the run ledger."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, Optional

import asyncpg

from ..contracts import Event, RunRecord, StepResultRecord
from ..errors import FailureKind
from .models import dump_json
from .repository import WorkflowRepository

_RUN_COLUMNS = (
    "run_id, workflow_id, event, status, attempt, wake_at, dispatched_at, output, "
    "error, failure_kind, created_at, started_at, completed_at, updated_at"
)


def _json(value: Any) -> Any:
    return json.loads(value) if isinstance(value, str) else value


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist the run ledger using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
                run_id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                event JSONB NOT NULL,
                status TEXT NOT NULL,
                attempt INTEGER NOT NULL DEFAULT 0,
                wake_at TIMESTAMPTZ,
                dispatched_at TIMESTAMPTZ,
                output JSONB,
                error TEXT,
                failure_kind TEXT,
                created_at TIMESTAMPTZ NOT NULL,
                started_at TIMESTAMPTZ,
                completed_at TIMESTAMPTZ,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS runs_status_wake ON runs (status, wake_at)"
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS step_results (
                run_id TEXT NOT NULL,
                step_name TEXT NOT NULL,
                status TEXT NOT NULL,
                output JSONB,
                error TEXT,
                failures INTEGER NOT NULL DEFAULT 0,
                completes_run BOOLEAN NOT NULL DEFAULT FALSE,
                wake_at TIMESTAMPTZ,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL,
                PRIMARY KEY (run_id, step_name)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schedule_watermarks (
                schedule_id TEXT PRIMARY KEY,
                last_fired_at TIMESTAMPTZ NOT NULL
            )
            """
        )

    @staticmethod
    def _to_run(row: asyncpg.Record) -> RunRecord:
        return RunRecord(
            run_id=row["run_id"],
            workflow_id=row["workflow_id"],
            event=Event.model_validate(_json(row["event"])),
            status=row["status"],
            attempt=row["attempt"],
            wake_at=row["wake_at"],
            dispatched_at=row["dispatched_at"],
            output=_json(row["output"]),
            error=row["error"],
            failure_kind=row["failure_kind"],
            created_at=row["created_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _to_step(row: asyncpg.Record) -> StepResultRecord:
        return StepResultRecord(
            run_id=row["run_id"],
            step_name=row["step_name"],
            status=row["status"],
            output=_json(row["output"]),
            error=row["error"],
            failures=row["failures"],
            completes_run=row["completes_run"],
            wake_at=row["wake_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    async def _fetchrow(self, query: str, *params: Any) -> asyncpg.Record | None:
        conn = await self._connect()
        try:
            return await conn.fetchrow(query, *params)
        finally:
            await conn.close()

    async def _fetch(self, query: str, *params: Any) -> list[asyncpg.Record]:
        conn = await self._connect()
        try:
            return await conn.fetch(query, *params)
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    async def create_run(self, run: RunRecord) -> bool:
        row = await self._fetchrow(
            f"""
            INSERT INTO runs ({_RUN_COLUMNS})
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)
            ON CONFLICT (run_id) DO NOTHING
            RETURNING run_id
            """,
            run.run_id,
            run.workflow_id,
            run.event.model_dump_json(),
            run.status.value,
            run.attempt,
            run.wake_at,
            run.dispatched_at,
            dump_json(run.output),
            run.error,
            run.failure_kind.value if run.failure_kind else None,
            run.created_at,
            run.started_at,
            run.completed_at,
            run.updated_at,
        )
        return row is not None

    async def get_run(self, run_id: str) -> RunRecord | None:
        row = await self._fetchrow(
            f"SELECT {_RUN_COLUMNS} FROM runs WHERE run_id = $1", run_id
        )
        return self._to_run(row) if row else None

    async def list_runs(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 100,
    ) -> list[RunRecord]:
        clauses, params = [], []
        if workflow_id is not None:
            params.append(workflow_id)
            clauses.append(f"workflow_id = ${len(params)}")
        if status is not None:
            params.append(str(getattr(status, "value", status)))
            clauses.append(f"status = ${len(params)}")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        rows = await self._fetch(
            f"SELECT {_RUN_COLUMNS} FROM runs {where} ORDER BY created_at DESC LIMIT ${len(params)}",
            *params,
        )
        return [self._to_run(r) for r in rows]

    async def claim_run(self, run_id: str, now: datetime) -> RunRecord | None:
        row = await self._fetchrow(
            f"""
            UPDATE runs
            SET status = 'running', attempt = attempt + 1,
                started_at = COALESCE(started_at, $2), wake_at = NULL, updated_at = $2
            WHERE run_id = $1 AND status = 'queued' AND (wake_at IS NULL OR wake_at <= $2)
            RETURNING {_RUN_COLUMNS}
            """,
            run_id,
            now,
        )
        return self._to_run(row) if row else None

    async def suspend_run(self, run_id: str, wake_at: datetime, now: datetime) -> bool:
        row = await self._fetchrow(
            """
            UPDATE runs SET status = 'queued', wake_at = $2, dispatched_at = NULL, updated_at = $3
            WHERE run_id = $1 AND status = 'running'
            RETURNING run_id
            """,
            run_id,
            wake_at,
            now,
        )
        return row is not None

    async def complete_run(self, run_id: str, output: Any, now: datetime) -> bool:
        row = await self._fetchrow(
            """
            UPDATE runs SET status = 'completed', output = $2, completed_at = $3, updated_at = $3
            WHERE run_id = $1 AND status NOT IN ('completed', 'failed')
            RETURNING run_id
            """,
            run_id,
            dump_json(output),
            now,
        )
        return row is not None

    async def fail_run(
        self, run_id: str, error: str, failure_kind: FailureKind, now: datetime
    ) -> bool:
        row = await self._fetchrow(
            """
            UPDATE runs SET status = 'failed', error = $2, failure_kind = $3,
                completed_at = $4, updated_at = $4
            WHERE run_id = $1 AND status NOT IN ('completed', 'failed')
            RETURNING run_id
            """,
            run_id,
            error,
            FailureKind(failure_kind).value,
            now,
        )
        return row is not None

    # ------------------------------------------------------------------
    async def get_step_results(self, run_id: str) -> Dict[str, StepResultRecord]:
        rows = await self._fetch("SELECT * FROM step_results WHERE run_id = $1", run_id)
        return {row["step_name"]: self._to_step(row) for row in rows}

    async def save_step_result(
        self,
        run_id: str,
        step_name: str,
        output: Any,
        now: datetime,
        completes_run: bool = False,
    ) -> bool:
        row = await self._fetchrow(
            """
            INSERT INTO step_results
                (run_id, step_name, status, output, failures, completes_run, created_at, updated_at)
            VALUES ($1, $2, 'completed', $3, 0, $4, $5, $5)
            ON CONFLICT (run_id, step_name) DO UPDATE SET
                status = 'completed', output = EXCLUDED.output, error = NULL,
                completes_run = EXCLUDED.completes_run, updated_at = EXCLUDED.updated_at
            WHERE step_results.status <> 'completed'
            RETURNING step_name
            """,
            run_id,
            step_name,
            dump_json(output),
            completes_run,
            now,
        )
        return row is not None

    async def record_step_failure(
        self, run_id: str, step_name: str, error: str, now: datetime
    ) -> int:
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.execute(
                    """
                    INSERT INTO step_results
                        (run_id, step_name, status, error, failures, created_at, updated_at)
                    VALUES ($1, $2, 'failed', $3, 1, $4, $4)
                    ON CONFLICT (run_id, step_name) DO UPDATE SET
                        status = 'failed', error = EXCLUDED.error,
                        failures = step_results.failures + 1, updated_at = EXCLUDED.updated_at
                    WHERE step_results.status <> 'completed'
                    """,
                    run_id,
                    step_name,
                    error,
                    now,
                )
                failures = await conn.fetchval(
                    "SELECT failures FROM step_results WHERE run_id = $1 AND step_name = $2",
                    run_id,
                    step_name,
                )
        finally:
            await conn.close()
        return failures or 0

    async def mark_step_sleeping(
        self, run_id: str, step_name: str, wake_at: datetime, now: datetime
    ) -> datetime:
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.execute(
                    """
                    INSERT INTO step_results
                        (run_id, step_name, status, wake_at, created_at, updated_at)
                    VALUES ($1, $2, 'sleeping', $3, $4, $4)
                    ON CONFLICT (run_id, step_name) DO UPDATE SET
                        status = 'sleeping', wake_at = EXCLUDED.wake_at,
                        updated_at = EXCLUDED.updated_at
                    WHERE step_results.wake_at IS NULL AND step_results.status <> 'completed'
                    """,
                    run_id,
                    step_name,
                    wake_at,
                    now,
                )
                stored = await conn.fetchval(
                    "SELECT wake_at FROM step_results WHERE run_id = $1 AND step_name = $2",
                    run_id,
                    step_name,
                )
        finally:
            await conn.close()
        return stored or wake_at

    # ------------------------------------------------------------------
    async def due_runs(
        self, now: datetime, redeliver_before: datetime, limit: int = 100
    ) -> list[RunRecord]:
        rows = await self._fetch(
            f"""
            SELECT {_RUN_COLUMNS} FROM runs
            WHERE status = 'queued'
              AND (wake_at IS NULL OR wake_at <= $1)
              AND (dispatched_at IS NULL OR dispatched_at <= $2)
            ORDER BY created_at
            LIMIT $3
            """,
            now,
            redeliver_before,
            limit,
        )
        return [self._to_run(r) for r in rows]

    async def mark_dispatched(self, run_id: str, now: datetime) -> None:
        await self._fetchrow(
            "UPDATE runs SET dispatched_at = $2 WHERE run_id = $1 RETURNING run_id",
            run_id,
            now,
        )

    async def requeue_stale_runs(self, cutoff: datetime, now: datetime) -> int:
        rows = await self._fetch(
            """
            UPDATE runs SET status = 'queued', dispatched_at = NULL, updated_at = $2
            WHERE status = 'running' AND updated_at < $1
            RETURNING run_id
            """,
            cutoff,
            now,
        )
        return len(rows)

    async def claim_schedule_tick(self, schedule_id: str, tick: datetime) -> bool:
        row = await self._fetchrow(
            """
            INSERT INTO schedule_watermarks (schedule_id, last_fired_at) VALUES ($1, $2)
            ON CONFLICT (schedule_id) DO UPDATE SET last_fired_at = EXCLUDED.last_fired_at
            WHERE schedule_watermarks.last_fired_at < EXCLUDED.last_fired_at
            RETURNING schedule_id
            """,
            schedule_id,
            tick,
        )
        return row is not None
