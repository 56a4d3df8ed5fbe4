"""Member snapshots and notifications shared by the domain workflows.

Domain records live in the row store as ``(kind, key) -> data``:
``member``, ``goal``, ``workout_session``, ``personal_record``,
``limitation``, ``challenge``, ``context_note``, ``member_metric``,
``snapshot`` (keyed by member id), ``member_embedding`` (``{member}:{section}``),
``progress_report`` (``{member}:{period end}``) and ``notification``
(keyed by idempotency key).
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from ..db import Database
from ..notify import Notification
from ..utils.clock import ensure_utc
from .fitness import calculate_streak, muscle_recovery

logger = logging.getLogger(__name__)

SNAPSHOT_BATCH_SIZE = 10
RECENT_SESSIONS = 14


async def get_member(db: Database, member_id: str) -> Optional[Dict[str, Any]]:
    return await db.get_row("member", member_id)


def empty_snapshot(member_id: str, now: datetime) -> Dict[str, Any]:
    return {
        "member_id": member_id,
        "active_goals": [],
        "active_limitations": [],
        "personal_records": [],
        "muscle_recovery": {},
        "weekly_workout_avg": 0.0,
        "current_streak": 0,
        "longest_streak": 0,
        "last_workout_date": None,
        "last_updated": now.isoformat(),
        "snapshot_version": 1,
    }


async def update_member_snapshot(db: Database, member_id: str, now: datetime) -> Dict[str, Any]:
    """Recompute and upsert one member's context snapshot."""
    goals, limitations, records, sessions = await asyncio.gather(
        db.list_rows("goal", member_id=member_id, status="active"),
        db.list_rows("limitation", member_id=member_id, active=True),
        db.list_rows("personal_record", member_id=member_id),
        db.list_rows("workout_session", member_id=member_id),
    )
    recent = sorted((s.data for s in sessions), key=lambda s: s.get("date") or "", reverse=True)
    recent = recent[:RECENT_SESSIONS]
    completed = [s for s in recent if s.get("status") == "completed"]

    activity = [
        {"date": s["end_time"], "muscle_groups": s.get("muscle_groups") or []}
        for s in completed[:7]
        if s.get("end_time")
    ]
    two_weeks_ago = (now - timedelta(days=14)).date().isoformat()
    weekly_avg = len([s for s in completed if (s.get("date") or "") >= two_weeks_ago]) / 2
    streak = calculate_streak([s["date"] for s in completed if s.get("date")], now.date())

    existing = await db.get_row("snapshot", member_id) or {}
    snapshot = {
        "member_id": member_id,
        "active_goals": [
            {
                "id": g.data.get("id", g.key),
                "title": g.data.get("title", ""),
                "category": g.data.get("category"),
                "target_value": g.data.get("target_value") or 0,
                "current_value": g.data.get("current_value") or 0,
                "progress_percent": _progress(g.data),
            }
            for g in goals[:10]
        ],
        "active_limitations": [
            {
                "type": l.data.get("type"),
                "description": l.data.get("description", ""),
                "severity": l.data.get("severity") or "moderate",
            }
            for l in limitations
        ],
        "personal_records": [
            {
                "exercise": r.data.get("exercise_name") or "Unknown",
                "value": r.data.get("value"),
                "unit": r.data.get("unit", "lbs"),
                "rep_max": r.data.get("rep_max"),
            }
            for r in records[:20]
        ],
        "muscle_recovery": {
            muscle: state.model_dump() for muscle, state in muscle_recovery(activity, now).items()
        },
        "weekly_workout_avg": weekly_avg,
        "current_streak": streak.current,
        "longest_streak": max(streak.longest, existing.get("longest_streak", 0)),
        "last_workout_date": recent[0].get("end_time") if recent else None,
        "last_updated": now.isoformat(),
        "snapshot_version": existing.get("snapshot_version", 0) + 1,
    }
    await db.put_row("snapshot", member_id, snapshot, now)
    return snapshot


def _progress(goal: Dict[str, Any]) -> float:
    target = goal.get("target_value")
    if not target:
        return 0.0
    return (goal.get("current_value") or 0) / target * 100


async def update_snapshots(db: Database, member_ids: Sequence[str], now: datetime) -> Dict[str, Any]:
    """Update snapshots in parallel batches; one member's failure does not stop the rest."""
    results: List[Dict[str, Any]] = []
    for start in range(0, len(member_ids), SNAPSHOT_BATCH_SIZE):
        batch = list(member_ids[start : start + SNAPSHOT_BATCH_SIZE])
        outcomes = await asyncio.gather(
            *(update_member_snapshot(db, member_id, now) for member_id in batch),
            return_exceptions=True,
        )
        for member_id, outcome in zip(batch, outcomes):
            if isinstance(outcome, Exception):
                logger.warning(f"Failed to update snapshot for {member_id}: {outcome}")
                results.append({"member_id": member_id, "success": False, "error": str(outcome)})
            else:
                results.append({"member_id": member_id, "success": True})
    updated = sum(1 for r in results if r["success"])
    return {"updated": updated, "errors": len(results) - updated, "results": results}


async def stale_members(db: Database, now: datetime, max_age: timedelta, limit: int = 50) -> List[str]:
    """Members with no snapshot or one older than ``max_age``."""
    cutoff = now - max_age
    stale: List[str] = []
    for member in await db.list_rows("member"):
        snapshot = await db.get_row("snapshot", member.key)
        if snapshot is None or ensure_utc(datetime.fromisoformat(snapshot["last_updated"])) < cutoff:
            stale.append(member.key)
            if len(stale) >= limit:
                break
    return stale


async def create_notification(services: Any, notification: Notification, now: datetime) -> bool:
    """Store the in-app notification once and hand it to the notifier.

    Returns whether the row was new. Delivery is attempted either way so a
    retry after a failed send still reaches the user; receivers dedupe on
    the idempotency key.
    """
    created = await services.require_db().put_row(
        "notification",
        notification.idempotency_key,
        notification.model_dump(mode="json"),
        now,
        if_absent=True,
    )
    await services.notifier.send(notification)
    return created
