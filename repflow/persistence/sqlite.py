"""SQLite implementation of the run ledger."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from ..contracts import Event, RunRecord, StepResultRecord
from ..errors import FailureKind
from .models import decode_ts, dump_json, encode_ts, load_json
from .repository import WorkflowRepository

_RUN_COLUMNS = (
    "run_id, workflow_id, event, status, attempt, wake_at, dispatched_at, output, "
    "error, failure_kind, created_at, started_at, completed_at, updated_at"
)


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist the run ledger using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=30)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
                run_id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                event TEXT NOT NULL,
                status TEXT NOT NULL,
                attempt INTEGER NOT NULL DEFAULT 0,
                wake_at TEXT,
                dispatched_at TEXT,
                output TEXT,
                error TEXT,
                failure_kind TEXT,
                created_at TEXT NOT NULL,
                started_at TEXT,
                completed_at TEXT,
                updated_at TEXT NOT NULL
            )
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS runs_status_wake ON runs (status, wake_at)")
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS step_results (
                run_id TEXT NOT NULL,
                step_name TEXT NOT NULL,
                status TEXT NOT NULL,
                output TEXT,
                error TEXT,
                failures INTEGER NOT NULL DEFAULT 0,
                completes_run INTEGER NOT NULL DEFAULT 0,
                wake_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (run_id, step_name)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS schedule_watermarks (
                schedule_id TEXT PRIMARY KEY,
                last_fired_at TEXT NOT NULL
            )
            """
        )
        self._conn.commit()

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def _execute_then_fetch(
        self, statement: str, params: tuple, query: str, query_params: tuple
    ) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(statement, params)
            cur.execute(query, query_params)
            row = cur.fetchone()
            self._conn.commit()
            return row

    @staticmethod
    def _to_run(row: sqlite3.Row) -> RunRecord:
        return RunRecord(
            run_id=row["run_id"],
            workflow_id=row["workflow_id"],
            event=Event.model_validate_json(row["event"]),
            status=row["status"],
            attempt=row["attempt"],
            wake_at=decode_ts(row["wake_at"]),
            dispatched_at=decode_ts(row["dispatched_at"]),
            output=load_json(row["output"]),
            error=row["error"],
            failure_kind=row["failure_kind"],
            created_at=decode_ts(row["created_at"]),
            started_at=decode_ts(row["started_at"]),
            completed_at=decode_ts(row["completed_at"]),
            updated_at=decode_ts(row["updated_at"]),
        )

    @staticmethod
    def _to_step(row: sqlite3.Row) -> StepResultRecord:
        return StepResultRecord(
            run_id=row["run_id"],
            step_name=row["step_name"],
            status=row["status"],
            output=load_json(row["output"]),
            error=row["error"],
            failures=row["failures"],
            completes_run=bool(row["completes_run"]),
            wake_at=decode_ts(row["wake_at"]),
            created_at=decode_ts(row["created_at"]),
            updated_at=decode_ts(row["updated_at"]),
        )

    # ------------------------------------------------------------------
    # Repository API
    async def create_run(self, run: RunRecord) -> bool:
        inserted = await asyncio.to_thread(
            self._execute,
            f"INSERT INTO runs ({_RUN_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(run_id) DO NOTHING",
            run.run_id,
            run.workflow_id,
            run.event.model_dump_json(),
            run.status.value,
            run.attempt,
            encode_ts(run.wake_at),
            encode_ts(run.dispatched_at),
            dump_json(run.output),
            run.error,
            run.failure_kind.value if run.failure_kind else None,
            encode_ts(run.created_at),
            encode_ts(run.started_at),
            encode_ts(run.completed_at),
            encode_ts(run.updated_at),
        )
        return inserted > 0

    async def get_run(self, run_id: str) -> RunRecord | None:
        row = await asyncio.to_thread(
            self._fetchone, f"SELECT {_RUN_COLUMNS} FROM runs WHERE run_id = ?", run_id
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
            clauses.append("workflow_id = ?")
            params.append(workflow_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(str(getattr(status, "value", status)))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_RUN_COLUMNS} FROM runs {where} ORDER BY created_at DESC LIMIT ?",
            *params,
            limit,
        )
        return [self._to_run(r) for r in rows]

    async def claim_run(self, run_id: str, now: datetime) -> RunRecord | None:
        ts = encode_ts(now)
        claimed = await asyncio.to_thread(
            self._execute,
            """
            UPDATE runs
            SET status = 'running', attempt = attempt + 1,
                started_at = COALESCE(started_at, ?), wake_at = NULL, updated_at = ?
            WHERE run_id = ? AND status = 'queued' AND (wake_at IS NULL OR wake_at <= ?)
            """,
            ts,
            ts,
            run_id,
            ts,
        )
        if not claimed:
            return None
        return await self.get_run(run_id)

    async def suspend_run(self, run_id: str, wake_at: datetime, now: datetime) -> bool:
        updated = await asyncio.to_thread(
            self._execute,
            """
            UPDATE runs SET status = 'queued', wake_at = ?, dispatched_at = NULL, updated_at = ?
            WHERE run_id = ? AND status = 'running'
            """,
            encode_ts(wake_at),
            encode_ts(now),
            run_id,
        )
        return updated > 0

    async def complete_run(self, run_id: str, output: Any, now: datetime) -> bool:
        ts = encode_ts(now)
        updated = await asyncio.to_thread(
            self._execute,
            """
            UPDATE runs SET status = 'completed', output = ?, completed_at = ?, updated_at = ?
            WHERE run_id = ? AND status NOT IN ('completed', 'failed')
            """,
            dump_json(output),
            ts,
            ts,
            run_id,
        )
        return updated > 0

    async def fail_run(
        self, run_id: str, error: str, failure_kind: FailureKind, now: datetime
    ) -> bool:
        ts = encode_ts(now)
        updated = await asyncio.to_thread(
            self._execute,
            """
            UPDATE runs SET status = 'failed', error = ?, failure_kind = ?,
                completed_at = ?, updated_at = ?
            WHERE run_id = ? AND status NOT IN ('completed', 'failed')
            """,
            error,
            FailureKind(failure_kind).value,
            ts,
            ts,
            run_id,
        )
        return updated > 0

    # ------------------------------------------------------------------
    async def get_step_results(self, run_id: str) -> Dict[str, StepResultRecord]:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT * FROM step_results WHERE run_id = ?", run_id
        )
        return {row["step_name"]: self._to_step(row) for row in rows}

    async def save_step_result(
        self,
        run_id: str,
        step_name: str,
        output: Any,
        now: datetime,
        completes_run: bool = False,
    ) -> bool:
        ts = encode_ts(now)
        saved = await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO step_results
                (run_id, step_name, status, output, failures, completes_run, created_at, updated_at)
            VALUES (?, ?, 'completed', ?, 0, ?, ?, ?)
            ON CONFLICT(run_id, step_name) DO UPDATE SET
                status = 'completed', output = excluded.output, error = NULL,
                completes_run = excluded.completes_run, updated_at = excluded.updated_at
            WHERE step_results.status != 'completed'
            """,
            run_id,
            step_name,
            dump_json(output),
            int(completes_run),
            ts,
            ts,
        )
        return saved > 0

    async def record_step_failure(
        self, run_id: str, step_name: str, error: str, now: datetime
    ) -> int:
        ts = encode_ts(now)
        row = await asyncio.to_thread(
            self._execute_then_fetch,
            """
            INSERT INTO step_results
                (run_id, step_name, status, error, failures, created_at, updated_at)
            VALUES (?, ?, 'failed', ?, 1, ?, ?)
            ON CONFLICT(run_id, step_name) DO UPDATE SET
                status = 'failed', error = excluded.error,
                failures = step_results.failures + 1, updated_at = excluded.updated_at
            WHERE step_results.status != 'completed'
            """,
            (run_id, step_name, error, ts, ts),
            "SELECT failures FROM step_results WHERE run_id = ? AND step_name = ?",
            (run_id, step_name),
        )
        return row["failures"] if row else 0

    async def mark_step_sleeping(
        self, run_id: str, step_name: str, wake_at: datetime, now: datetime
    ) -> datetime:
        ts = encode_ts(now)
        row = await asyncio.to_thread(
            self._execute_then_fetch,
            """
            INSERT INTO step_results
                (run_id, step_name, status, wake_at, created_at, updated_at)
            VALUES (?, ?, 'sleeping', ?, ?, ?)
            ON CONFLICT(run_id, step_name) DO UPDATE SET
                status = 'sleeping', wake_at = excluded.wake_at, updated_at = excluded.updated_at
            WHERE step_results.wake_at IS NULL AND step_results.status != 'completed'
            """,
            (run_id, step_name, encode_ts(wake_at), ts, ts),
            "SELECT wake_at FROM step_results WHERE run_id = ? AND step_name = ?",
            (run_id, step_name),
        )
        stored = decode_ts(row["wake_at"]) if row else None
        return stored or wake_at

    # ------------------------------------------------------------------
    async def due_runs(
        self, now: datetime, redeliver_before: datetime, limit: int = 100
    ) -> list[RunRecord]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"""
            SELECT {_RUN_COLUMNS} FROM runs
            WHERE status = 'queued'
              AND (wake_at IS NULL OR wake_at <= ?)
              AND (dispatched_at IS NULL OR dispatched_at <= ?)
            ORDER BY created_at
            LIMIT ?
            """,
            encode_ts(now),
            encode_ts(redeliver_before),
            limit,
        )
        return [self._to_run(r) for r in rows]

    async def mark_dispatched(self, run_id: str, now: datetime) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE runs SET dispatched_at = ? WHERE run_id = ?",
            encode_ts(now),
            run_id,
        )

    async def requeue_stale_runs(self, cutoff: datetime, now: datetime) -> int:
        return await asyncio.to_thread(
            self._execute,
            """
            UPDATE runs SET status = 'queued', dispatched_at = NULL, updated_at = ?
            WHERE status = 'running' AND updated_at < ?
            """,
            encode_ts(now),
            encode_ts(cutoff),
        )

    async def claim_schedule_tick(self, schedule_id: str, tick: datetime) -> bool:
        claimed = await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO schedule_watermarks (schedule_id, last_fired_at) VALUES (?, ?)
            ON CONFLICT(schedule_id) DO UPDATE SET last_fired_at = excluded.last_fired_at
            WHERE schedule_watermarks.last_fired_at < excluded.last_fired_at
            """,
            schedule_id,
            encode_ts(tick),
        )
        return claimed > 0
