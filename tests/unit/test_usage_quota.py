"""Usage tracking and per-user quotas against a SQLite row store."""

import pytest

from repflow.generation import TokenUsage
from repflow.quota import UNLIMITED, QuotaService, limits_for
from repflow.usage import UsageEvent, UsageTracker


def test_unknown_plan_gets_free_limits():
    assert limits_for("enterprise") == limits_for("free")
    assert limits_for("pro").generations == UNLIMITED


@pytest.mark.asyncio
async def test_free_plan_runs_out_of_generations(store, clock):
    quotas = QuotaService(store, clock)
    tracker = UsageTracker(store, clock=clock)

    first = await quotas.check("u1", "workout")
    assert first.allowed and first.remaining == 5 and first.plan == "free"

    for _ in range(5):
        await tracker.track(UsageEvent(user_id="u1", endpoint="generate-workout-background", model="gpt-5.2"))

    check = await quotas.check("u1", "workout")
    assert not check.allowed
    assert check.upgrade_required
    # chat budget is counted separately
    assert (await quotas.check("u1", "chat")).remaining == 100


@pytest.mark.asyncio
async def test_usage_rows_record_tokens_and_cost(store, clock):
    quotas = QuotaService(store, clock)
    await quotas.ensure("u1")
    tracker = UsageTracker(store, clock=clock)

    record = await tracker.track(
        UsageEvent(
            user_id="u1",
            endpoint="coach-chat",
            model="gpt-5.2",
            usage=TokenUsage(input_tokens=1_000_000, output_tokens=0),
            member_id="m1",
        )
    )
    assert record.total_cost == pytest.approx(1.75)
    assert record.details == {"member_id": "m1"}

    [stored] = await store.list_usage("u1")
    assert stored.endpoint == "coach-chat"
    quota = await store.get_quota("u1")
    assert quota.chat_count == 1
    assert quota.generation_count == 0
    assert quota.tokens_used == 1_000_000


@pytest.mark.asyncio
async def test_tracking_failure_is_swallowed(clock):
    class BrokenStore:
        async def record_usage(self, record, generation_increment=0, chat_increment=0):
            raise ConnectionError("store down")

    tracker = UsageTracker(BrokenStore(), clock=clock)
    assert await tracker.track(UsageEvent(user_id="u1", endpoint="chat", model="gpt-5.2")) is None


@pytest.mark.asyncio
async def test_sync_limits_keeps_counts(store, clock):
    quotas = QuotaService(store, clock)
    tracker = UsageTracker(store, clock=clock)
    await quotas.ensure("u1")
    await tracker.track(UsageEvent(user_id="u1", endpoint="generate-workout", model="gpt-5.2"))

    await quotas.sync_limits("u1", "pro")
    quota = await store.get_quota("u1")
    assert quota.plan == "pro"
    assert quota.generation_limit == UNLIMITED
    assert quota.generation_count == 1
    assert (await quotas.check("u1", "workout")).allowed

    await quotas.sync_limits("u2", "pro")
    assert (await store.get_quota("u2")).plan == "pro"


@pytest.mark.asyncio
async def test_expired_periods_reset(store, clock):
    quotas = QuotaService(store, clock)
    tracker = UsageTracker(store, clock=clock)
    await quotas.ensure("u1")
    await tracker.track(UsageEvent(user_id="u1", endpoint="generate-workout", model="gpt-5.2"))

    clock.advance(days=29)
    assert await quotas.reset_expired() == 0
    clock.advance(days=1)
    assert await quotas.reset_expired() == 1

    quota = await store.get_quota("u1")
    assert quota.generation_count == 0
    assert quota.period_start == clock.now()
