from datetime import datetime, timedelta, timezone

import pytest

from repflow.contracts import Event, RunRecord, RunStatus, StepStatus
from repflow.errors import FailureKind
from repflow.persistence import (
    InMemoryWorkflowRepository,
    PostgresWorkflowRepository,
    SQLiteWorkflowRepository,
    get_repository,
    open_repository,
)

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


@pytest.fixture(params=["inmemory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "sqlite":
        return SQLiteWorkflowRepository(tmp_path / "runs.db")
    return InMemoryWorkflowRepository()


def _run(run_id="run-1", **kwargs):
    return RunRecord(
        run_id=run_id,
        workflow_id="member-snapshot-update",
        event=Event(name="member/snapshot-update", data={"member_id": "m1"}, id="evt-1", ts=NOW),
        created_at=NOW,
        updated_at=NOW,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_run_lifecycle(repo):
    assert await repo.create_run(_run())
    assert not await repo.create_run(_run())

    claimed = await repo.claim_run("run-1", NOW)
    assert claimed is not None
    assert claimed.status == RunStatus.RUNNING
    assert claimed.attempt == 1
    # already running
    assert await repo.claim_run("run-1", NOW) is None

    assert await repo.complete_run("run-1", {"ok": True}, NOW)
    assert not await repo.fail_run("run-1", "late", FailureKind.FATAL, NOW)

    run = await repo.get_run("run-1")
    assert run.status == RunStatus.COMPLETED
    assert run.output == {"ok": True}
    assert run.event.data == {"member_id": "m1"}
    assert [r.run_id for r in await repo.list_runs(status="completed")] == ["run-1"]
    assert await repo.list_runs(workflow_id="other") == []


@pytest.mark.asyncio
async def test_completed_step_results_are_never_overwritten(repo):
    await repo.create_run(_run())
    assert await repo.save_step_result("run-1", "load", {"n": 1}, NOW)
    assert not await repo.save_step_result("run-1", "load", {"n": 2}, NOW)

    results = await repo.get_step_results("run-1")
    assert results["load"].status == StepStatus.COMPLETED
    assert results["load"].output == {"n": 1}


@pytest.mark.asyncio
async def test_failures_accumulate_until_success(repo):
    await repo.create_run(_run())
    assert await repo.record_step_failure("run-1", "call", "boom", NOW) == 1
    assert await repo.record_step_failure("run-1", "call", "boom", NOW) == 2
    await repo.save_step_result("run-1", "call", "done", NOW)

    step = (await repo.get_step_results("run-1"))["call"]
    assert step.status == StepStatus.COMPLETED
    assert step.failures == 2
    assert step.output == "done"


@pytest.mark.asyncio
async def test_sleep_keeps_first_wake_instant(repo):
    await repo.create_run(_run())
    first = NOW + timedelta(minutes=5)
    assert await repo.mark_step_sleeping("run-1", "wait", first, NOW) == first
    later = NOW + timedelta(minutes=8)
    assert await repo.mark_step_sleeping("run-1", "wait", later, NOW + timedelta(minutes=3)) == first


@pytest.mark.asyncio
async def test_suspended_run_is_due_only_after_wake(repo):
    await repo.create_run(_run())
    await repo.claim_run("run-1", NOW)
    wake = NOW + timedelta(minutes=5)
    assert await repo.suspend_run("run-1", wake, NOW)

    assert await repo.claim_run("run-1", NOW) is None
    assert await repo.due_runs(NOW, redeliver_before=NOW) == []

    due = await repo.due_runs(wake, redeliver_before=wake)
    assert [r.run_id for r in due] == ["run-1"]
    await repo.mark_dispatched("run-1", wake)
    assert await repo.due_runs(wake, redeliver_before=wake - timedelta(seconds=1)) == []
    assert (await repo.claim_run("run-1", wake)).attempt == 2


@pytest.mark.asyncio
async def test_stale_running_runs_are_requeued(repo):
    await repo.create_run(_run())
    await repo.claim_run("run-1", NOW)
    later = NOW + timedelta(hours=1)
    assert await repo.requeue_stale_runs(later - timedelta(minutes=15), later) == 1
    assert (await repo.get_run("run-1")).status == RunStatus.QUEUED


@pytest.mark.asyncio
async def test_schedule_watermark_claims_each_tick_once(repo):
    assert await repo.claim_schedule_tick("cleanup", NOW)
    assert not await repo.claim_schedule_tick("cleanup", NOW)
    assert not await repo.claim_schedule_tick("cleanup", NOW - timedelta(days=1))
    assert await repo.claim_schedule_tick("cleanup", NOW + timedelta(days=1))


@pytest.mark.asyncio
async def test_sqlite_ledger_survives_reopen(tmp_path):
    path = tmp_path / "runs.db"
    first = SQLiteWorkflowRepository(path)
    await first.create_run(_run())
    await first.save_step_result("run-1", "load", [1, 2], NOW)

    reopened = SQLiteWorkflowRepository(path)
    assert (await reopened.get_run("run-1")).workflow_id == "member-snapshot-update"
    assert (await reopened.get_step_results("run-1"))["load"].output == [1, 2]


def test_get_repository_selects_backend(tmp_path):
    assert isinstance(get_repository(), InMemoryWorkflowRepository)
    assert get_repository() is get_repository()

    assert isinstance(get_repository(database_url=f"sqlite://{tmp_path / 'x.db'}"), SQLiteWorkflowRepository)

    with pytest.raises(ValueError):
        get_repository(database_url="mysql://nope")


def test_open_repository_accepts_driver_qualified_urls(tmp_path):
    repo = open_repository(f"sqlite+aiosqlite://{tmp_path / 'shared.db'}")
    assert isinstance(repo, SQLiteWorkflowRepository)
    assert repo.db_path == str(tmp_path / "shared.db")

    pg = open_repository("postgresql+asyncpg://user:pw@db:5432/repflow")
    assert isinstance(pg, PostgresWorkflowRepository)
    assert pg._dsn == "postgresql://user:pw@db:5432/repflow"

    assert isinstance(open_repository(None), InMemoryWorkflowRepository)
    with pytest.raises(ValueError):
        open_repository("not-a-url")
