"""Event routing: validation, fan-out, idempotent run creation and debounce."""

import pytest

from repflow.contracts import DebouncePolicy, RunStatus, Step, run_id_for, workflow
from repflow.errors import InvalidEventPayload, UnknownEventError


def _noop(ctx):
    return ctx.data


@pytest.mark.asyncio
async def test_unknown_event_is_rejected(make_orchestrator):
    orch = make_orchestrator([workflow("w", event="member/snapshot-update", steps=[Step.run("a", _noop)])])
    with pytest.raises(UnknownEventError):
        await orch.send("member/does-not-exist", {})


@pytest.mark.asyncio
async def test_invalid_payload_creates_no_run(make_orchestrator):
    orch = make_orchestrator([workflow("w", event="member/snapshot-update", steps=[Step.run("a", _noop)])])
    with pytest.raises(InvalidEventPayload):
        await orch.send("member/snapshot-update", {"memberId": "m1"})
    assert await orch.repository.list_runs() == []


def test_workflow_on_unregistered_event_fails_at_startup(make_orchestrator):
    with pytest.raises(UnknownEventError):
        make_orchestrator([workflow("w", event="nobody/emits-this", steps=[Step.run("a", _noop)])])


@pytest.mark.asyncio
async def test_event_fans_out_to_every_subscriber(make_orchestrator):
    notify = workflow("goal-completed", event="pg/goals.updated", steps=[Step.run("notify", _noop)])
    refresh = workflow("goal-snapshot", event="pg/goals.updated", steps=[Step.run("refresh", _noop)])
    other = workflow("w", event="member/snapshot-update", steps=[Step.run("a", _noop)])
    orch = make_orchestrator([notify, refresh, other])

    runs = await orch.send(
        "pg/goals.updated",
        {"new": {"id": "g1", "member_id": "m1", "status": "completed"}, "old": None},
    )
    assert sorted(r.workflow_id for r in runs) == ["goal-completed", "goal-snapshot"]
    outcomes = await orch.run_until_idle()
    assert all(o.status == "completed" for o in outcomes)
    assert len(outcomes) == 2


@pytest.mark.asyncio
async def test_redelivered_event_does_not_duplicate_runs(make_orchestrator):
    orch = make_orchestrator([workflow("w", event="member/snapshot-update", steps=[Step.run("a", _noop)])])
    first = await orch.send("member/snapshot-update", {"member_id": "m1"}, id="evt-1")
    second = await orch.send("member/snapshot-update", {"member_id": "m1"}, id="evt-1")

    assert first[0].run_id == second[0].run_id == run_id_for("w", "evt-1")
    assert len(await orch.repository.list_runs()) == 1
    assert len(await orch.run_until_idle()) == 1


@pytest.mark.asyncio
async def test_payload_is_normalized_through_schema(make_orchestrator):
    orch = make_orchestrator([workflow("w", event="member/snapshot-update", steps=[Step.run("a", _noop)])])
    [run] = await orch.send("member/snapshot-update", {"member_id": "m1", "source": "api"})
    assert run.event.data == {"member_id": "m1", "source": "api"}


@pytest.mark.asyncio
async def test_rapid_changes_for_one_member_yield_one_snapshot_run(make_orchestrator, clock):
    built = []
    snapshot = workflow(
        "snapshot-on-record",
        event="pg/personal_records.inserted",
        debounce=DebouncePolicy(key="event.data.new.member_id", period="5s"),
        steps=[Step.run("build", lambda ctx: built.append(ctx.data["new"]["id"]))],
    )
    orch = make_orchestrator([snapshot])

    for record_id in ("pr-1", "pr-2"):
        runs = await orch.send(
            "pg/personal_records.inserted",
            {"new": {"id": record_id, "member_id": "m1", "exercise_id": "squat", "value": 225}},
        )
        assert runs == []
        clock.advance(seconds=1)

    await orch.tick()
    assert await orch.repository.list_runs() == []

    clock.advance(seconds=4)
    [run] = await orch.tick()
    assert run.workflow_id == "snapshot-on-record"
    await orch.run_until_idle()

    assert built == ["pr-2"]
    assert (await orch.repository.get_run(run.run_id)).status == RunStatus.COMPLETED
