"""Cron scheduling: once per tick, misfire grace and upcoming fire times."""

from datetime import datetime, timezone

import pytest

from repflow.contracts import OutcomeStatus, RunStatus, Step, workflow
from repflow.scheduler import latest_fire_time


def _cron(expression="*/15 * * * *", id="refresh", body=None):
    body = body or (lambda ctx: ctx.data["scheduled_at"])
    return workflow(id, cron=expression, concurrency=1, steps=[Step.run("tick", body)])


def test_latest_fire_time_includes_exact_match():
    at = datetime(2026, 3, 2, 9, 15, tzinfo=timezone.utc)
    assert latest_fire_time("*/15 * * * *", at) == at
    assert latest_fire_time("*/15 * * * *", at.replace(minute=29, second=59)) == at


@pytest.mark.asyncio
async def test_each_tick_fires_at_most_once(make_orchestrator, clock):
    fired = []
    orch = make_orchestrator([_cron(body=lambda ctx: fired.append(ctx.data["scheduled_at"]))])

    [run] = await orch.tick()
    assert run.event.name == "cron/refresh"
    assert await orch.tick() == []
    clock.advance(seconds=59)
    assert await orch.tick() == []
    await orch.run_until_idle()

    clock.advance(minutes=14, seconds=1)
    [later] = await orch.tick()
    assert later.event.data["scheduled_at"] == "2026-03-02T09:15:00+00:00"

    [outcome] = await orch.run_until_idle()
    assert outcome.run_id == later.run_id
    assert fired == ["2026-03-02T09:00:00+00:00", "2026-03-02T09:15:00+00:00"]


@pytest.mark.asyncio
async def test_redelivered_finished_run_does_not_execute_again(make_orchestrator, clock):
    fired = []
    orch = make_orchestrator([_cron(body=lambda ctx: fired.append(ctx.data["scheduled_at"]))])
    [run] = await orch.tick()
    [first] = await orch.run_until_idle()
    assert first.status == OutcomeStatus.COMPLETED

    # a duplicate wake-up, as a transport redelivery would produce
    await orch.router.publish(run.run_id, run.workflow_id, "redeliver")
    [again] = await orch.run_until_idle()
    assert again.run_id == run.run_id
    assert again.status == OutcomeStatus.COMPLETED
    assert again.steps_executed == []
    assert fired == ["2026-03-02T09:00:00+00:00"]
    assert (await orch.repository.get_run(run.run_id)).status == RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_two_schedulers_sharing_a_ledger_fire_once(make_orchestrator, clock):
    first = make_orchestrator([_cron()])
    second = make_orchestrator([_cron()], repository=first.repository)
    assert len(await first.tick()) == 1
    assert await second.tick() == []


@pytest.mark.asyncio
async def test_missed_tick_outside_grace_is_skipped(make_orchestrator, clock):
    orch = make_orchestrator([_cron("0 3 * * *", id="cache-cleanup")])
    clock.set(datetime(2026, 3, 2, 3, 4, tzinfo=timezone.utc))
    assert len(await orch.tick()) == 1

    orch = make_orchestrator([_cron("0 3 * * *", id="cache-cleanup")])
    clock.set(datetime(2026, 3, 3, 3, 6, tzinfo=timezone.utc))
    assert await orch.tick() == []


def test_next_fire_times(make_orchestrator):
    orch = make_orchestrator([_cron("0 0 1 * *", id="quota-reset")])
    upcoming = orch.scheduler.next_fire_times(count=2)
    assert upcoming == {
        "quota-reset": [
            datetime(2026, 4, 1, tzinfo=timezone.utc),
            datetime(2026, 5, 1, tzinfo=timezone.utc),
        ]
    }


def test_invalid_cron_is_rejected(make_orchestrator):
    with pytest.raises(ValueError):
        make_orchestrator([_cron("every tuesday")])
