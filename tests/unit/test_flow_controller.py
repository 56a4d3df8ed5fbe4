"""Concurrency, debounce and throttle policy tests."""

import pytest

from repflow.contracts import DebouncePolicy, Event, Step, ThrottlePolicy, workflow
from repflow.flow import Admission, FlowController, InMemoryFlowStore


def _noop(ctx):
    return None


def _workflow(**policy):
    return workflow("w", event="member/snapshot-update", steps=[Step.run("a", _noop)], **policy)


def _event(member_id, **extra):
    return Event(name="member/snapshot-update", data={"member_id": member_id, **extra})


@pytest.mark.asyncio
async def test_concurrency_limit_queues_in_fifo_order(clock):
    store = InMemoryFlowStore()
    flow = FlowController(store, clock)
    defn = _workflow(concurrency=1)

    assert await flow.acquire(defn, "r1")
    assert not await flow.acquire(defn, "r2")
    assert not await flow.acquire(defn, "r3")
    assert store.active_runs("w") == {"r1"}
    assert store.waiting_runs("w") == ["r2", "r3"]

    # r3 cannot jump the queue even when it asks again
    assert await flow.release(defn, "r1") == "r2"
    assert not await flow.acquire(defn, "r3")
    assert await flow.acquire(defn, "r2")
    assert await flow.release(defn, "r2") == "r3"
    assert await flow.acquire(defn, "r3")
    assert await flow.release(defn, "r3") is None


@pytest.mark.asyncio
async def test_reacquire_by_active_run_is_idempotent(clock):
    flow = FlowController(InMemoryFlowStore(), clock)
    defn = _workflow(concurrency=2)
    assert await flow.acquire(defn, "r1")
    assert await flow.acquire(defn, "r1")
    assert await flow.acquire(defn, "r2")
    assert not await flow.acquire(defn, "r3")


@pytest.mark.asyncio
async def test_expired_lease_frees_the_slot(clock):
    store = InMemoryFlowStore()
    flow = FlowController(store, clock, lease_seconds=60)
    defn = _workflow(concurrency=1)
    assert await flow.acquire(defn, "crashed")
    clock.advance(seconds=61)
    assert await flow.acquire(defn, "next")


@pytest.mark.asyncio
async def test_no_concurrency_policy_always_acquires(clock):
    flow = FlowController(InMemoryFlowStore(), clock)
    defn = _workflow()
    assert await flow.acquire(defn, "r1")
    assert await flow.acquire(defn, "r2")
    assert await flow.release(defn, "r1") is None


@pytest.mark.asyncio
async def test_debounce_keeps_only_the_last_event(clock):
    flow = FlowController(InMemoryFlowStore(), clock)
    defn = _workflow(debounce=DebouncePolicy(key="event.data.member_id", period="30s"))

    for i in range(3):
        assert await flow.admit(defn, _event("m1", n=i)) is Admission.DEBOUNCED
        clock.advance(seconds=10)
    assert await flow.admit(defn, _event("m2")) is Admission.DEBOUNCED

    # last m1 event arrived at t=20s, so it is due at t=50s
    clock.advance(seconds=19)
    assert await flow.due_debounced() == []
    clock.advance(seconds=1)
    due = await flow.due_debounced()
    assert [d.event.data for d in due] == [{"member_id": "m1", "n": 2}]
    assert due[0].scope == "w:m1"

    clock.advance(seconds=10)
    due = await flow.due_debounced()
    assert [d.event.data["member_id"] for d in due] == ["m2"]
    assert await flow.due_debounced() == []


@pytest.mark.asyncio
async def test_throttle_drops_events_over_the_window_limit(clock):
    flow = FlowController(InMemoryFlowStore(), clock)
    defn = _workflow(throttle=ThrottlePolicy(key="event.data.member_id", limit=2, period="1m"))

    assert await flow.admit(defn, _event("m1")) is Admission.ADMITTED
    assert await flow.admit(defn, _event("m1")) is Admission.ADMITTED
    assert await flow.admit(defn, _event("m1")) is Admission.THROTTLED
    assert await flow.admit(defn, _event("m2")) is Admission.ADMITTED

    clock.advance(seconds=61)
    assert await flow.admit(defn, _event("m1")) is Admission.ADMITTED


@pytest.mark.asyncio
async def test_throttle_runs_before_debounce(clock):
    flow = FlowController(InMemoryFlowStore(), clock)
    defn = _workflow(
        throttle=ThrottlePolicy(key="event.data.member_id", limit=1, period="1m"),
        debounce=DebouncePolicy(key="event.data.member_id", period="5s"),
    )
    assert await flow.admit(defn, _event("m1", n=1)) is Admission.DEBOUNCED
    assert await flow.admit(defn, _event("m1", n=2)) is Admission.THROTTLED

    clock.advance(seconds=5)
    due = await flow.due_debounced()
    assert [d.event.data["n"] for d in due] == [1]


def test_scope_uses_placeholder_for_missing_key():
    defn = _workflow()
    assert FlowController.scope(defn) == "w"
    event = Event(name="x", data={"new": {"member_id": "m9"}})
    assert FlowController.scope(defn, event, "event.data.new.member_id") == "w:m9"
    assert FlowController.scope(defn, event, "event.data.old.member_id") == "w:_"
