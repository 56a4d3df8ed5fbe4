"""Scheduled housekeeping and member snapshot workflows."""

from __future__ import annotations

from datetime import timedelta
from typing import List

from ..contracts import Complete, Step, WorkflowDefinition, workflow
from ..events import BatchSnapshotUpdate, MemberSnapshotUpdate
from ..quota import QuotaService
from .members import stale_members, update_member_snapshot, update_snapshots

# Days each kind of user content is kept.
RETENTION_DAYS = {
    "coach_message": 90,
    "message": 365,
    "activity": 730,
    "notification": 90,
}

STALE_SNAPSHOT_AGE = timedelta(minutes=30)
ABANDONED_SESSION_AGE = timedelta(hours=24)


def _retention_step(kind: str) -> Step:
    async def clean(ctx):
        cutoff = ctx.now() - timedelta(days=RETENTION_DAYS[kind])
        deleted = await ctx.services.require_db().delete_rows_before(kind, cutoff)
        ctx.logger.info(f"Deleted {deleted} {kind} rows older than {cutoff.date()}")
        return {"deleted": deleted}

    return Step.run(f"clean-{kind.replace('_', '-')}", clean)


def _retention_totals(ctx):
    results = {step: ctx[step] for step in ctx.results}
    return {"total_deleted": sum(r["deleted"] for r in results.values()), "results": results}


async def _find_stale(ctx):
    return await stale_members(ctx.services.require_db(), ctx.now(), STALE_SNAPSHOT_AGE)


async def _refresh_stale(ctx):
    member_ids = ctx["find-stale-members"]
    if not member_ids:
        ctx.logger.info("No stale snapshots to update")
        return Complete(output={"updated": 0, "errors": 0})
    return await update_snapshots(ctx.services.require_db(), member_ids, ctx.now())


async def _clean_response_cache(ctx):
    cache = ctx.services.cache
    if cache is None:
        return {"deleted": await ctx.services.require_db().delete_expired_cached(ctx.now())}
    return {"deleted": await cache.cleanup_expired()}


async def _mark_abandoned_sessions(ctx):
    db = ctx.services.require_db()
    now = ctx.now()
    cutoff = (now - ABANDONED_SESSION_AGE).isoformat()
    updated = 0
    for row in await db.list_rows("workout_session", status="in_progress"):
        started = row.data.get("started_at")
        if started and started < cutoff:
            await db.put_row("workout_session", row.key, {**row.data, "status": "abandoned"}, now)
            updated += 1
    return {"updated": updated}


async def _reset_quotas(ctx):
    quotas = ctx.services.quotas or QuotaService(ctx.services.require_db(), ctx.services.clock)
    return {"reset": await quotas.reset_expired()}


async def _update_one(ctx):
    payload = ctx.parse(MemberSnapshotUpdate)
    snapshot = await update_member_snapshot(ctx.services.require_db(), payload.member_id, ctx.now())
    return {"member_id": payload.member_id, "snapshot_version": snapshot["snapshot_version"]}


async def _update_batch(ctx):
    payload = ctx.parse(BatchSnapshotUpdate)
    if not payload.member_ids:
        return Complete(output={"updated": 0, "errors": 0, "message": "No member IDs provided"})
    result = await update_snapshots(ctx.services.require_db(), payload.member_ids, ctx.now())
    ctx.logger.info(f"Batch snapshot update: {result['updated']} updated, {result['errors']} errors")
    return {**result, "total": len(payload.member_ids)}


def maintenance_workflows() -> List[WorkflowDefinition]:
    return [
        workflow(
            "cron-data-retention",
            name="Data Retention Cleanup",
            cron="0 4 * * *",
            retries=3,
            steps=[_retention_step(kind) for kind in RETENTION_DAYS],
            finish=_retention_totals,
            description="Delete user content past its retention period.",
        ),
        workflow(
            "cron-snapshots-refresh",
            name="Refresh Member Snapshots",
            cron="*/15 * * * *",
            retries=2,
            concurrency=1,
            steps=[
                Step.run("find-stale-members", _find_stale),
                Step.run("update-snapshots", _refresh_stale),
            ],
            finish=lambda ctx: ctx["update-snapshots"],
        ),
        workflow(
            "cron-cache-cleanup",
            name="Cache Cleanup",
            cron="0 3 * * *",
            retries=2,
            steps=[
                Step.run("clean-ai-cache", _clean_response_cache),
                Step.run("mark-abandoned-sessions", _mark_abandoned_sessions),
            ],
        ),
        workflow(
            "cron-reset-ai-quotas",
            name="Reset Expired AI Quotas",
            cron="0 0 * * *",
            retries=1,
            steps=[Step.run("reset-expired-quotas", _reset_quotas)],
        ),
        workflow(
            "member-snapshot-update",
            name="Update Member Snapshot",
            event="member/snapshot-update",
            retries=2,
            concurrency=10,
            steps=[Step.run("update-snapshot", _update_one)],
            finish=lambda ctx: ctx["update-snapshot"],
        ),
        workflow(
            "member-batch-snapshot-update",
            name="Batch Member Snapshot Update",
            event="member/batch-snapshot-update",
            retries=2,
            concurrency=3,
            steps=[Step.run("update-batches", _update_batch)],
            finish=lambda ctx: ctx["update-batches"],
        ),
    ]
