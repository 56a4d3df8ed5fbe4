"""Workflows reacting to database change events and user notifications."""

from __future__ import annotations

from typing import Any, Dict, List

from ..contracts import Complete, DebouncePolicy, Step, ThrottlePolicy, WorkflowDefinition, workflow
from ..events import (
    ChallengeParticipantRow,
    ChangePayload,
    CircleMemberRow,
    GoalAchieved,
    GoalRow,
    PersonalRecordRow,
    StreakMilestone,
    WorkoutSessionRow,
)
from ..notify import Notification
from .fitness import CHALLENGE_STREAK_MILESTONES, STREAK_MILESTONES, calculate_streak
from .members import create_notification, empty_snapshot, get_member

STREAK_HISTORY_LIMIT = 400

STREAK_MESSAGES = {
    7: "One week strong!",
    14: "Two weeks of consistency!",
    30: "A whole month! You're on fire!",
    50: "50 days! Incredible dedication!",
    100: "100 days! You're a legend!",
    365: "ONE YEAR! You're unstoppable!",
}


def skipped(reason: str) -> Complete:
    return Complete(output={"skipped": True, "reason": reason})


def _notification(ctx, step: str, **fields: Any) -> Notification:
    return Notification(idempotency_key=f"{ctx.run_id}:{step}", **fields)


def _snapshot_update(member_id: str):
    return ("member/snapshot-update", {"member_id": member_id})


def _has_user(ctx) -> bool:
    return bool((ctx.get("get-member") or {}).get("user_id"))


# goals ------------------------------------------------------------------

def _goal(ctx) -> ChangePayload[GoalRow]:
    return ctx.parse(ChangePayload[GoalRow])


async def _goal_completed_member(ctx):
    change = _goal(ctx)
    if change.new.status != "completed" or (change.old and change.old.status == "completed"):
        return skipped("Status not changed to completed")
    member = await get_member(ctx.services.require_db(), change.new.member_id)
    if not member or not member.get("user_id"):
        return skipped("Member has no user_id")
    ctx.logger.info(f"Goal {change.new.id} completed: {change.new.title}")
    return member


async def _goal_completed_notify(ctx):
    goal = _goal(ctx).new
    notification = _notification(
        ctx,
        "create-notification",
        user_id=ctx["get-member"]["user_id"],
        kind="achievement",
        title="Goal Achieved!",
        body=f"Congratulations! You've achieved your goal: {goal.title}",
        data={"goal_id": goal.id, "member_id": goal.member_id},
    )
    return await create_notification(ctx.services, notification, ctx.now())


async def _goal_created_member(ctx):
    goal = _goal(ctx).new
    member = await get_member(ctx.services.require_db(), goal.member_id)
    if not member:
        return skipped("Member not found")
    return member


def _milestone_request(ctx):
    goal = _goal(ctx).new
    member = ctx["get-member"]
    return (
        "ai/generate-milestones",
        {
            "user_id": member["user_id"],
            "circle_id": member.get("circle_id"),
            "member_id": goal.member_id,
            "goal_id": goal.id,
        },
    )


# workout sessions -------------------------------------------------------

def _session(ctx) -> ChangePayload[WorkoutSessionRow]:
    return ctx.parse(ChangePayload[WorkoutSessionRow])


async def _workout_member(ctx):
    change = _session(ctx)
    if change.new.status != "completed" or (change.old and change.old.status == "completed"):
        return skipped("Status not changed to completed")
    member = await get_member(ctx.services.require_db(), change.new.member_id)
    if not member:
        return skipped("Member not found")
    ctx.logger.info(f"Workout {change.new.id} completed by {change.new.member_id}")
    return member


async def _check_streak(ctx):
    member_id = _session(ctx).new.member_id
    rows = await ctx.services.require_db().list_rows(
        "workout_session", member_id=member_id, status="completed"
    )
    dates = sorted((r.data["date"] for r in rows if r.data.get("date")), reverse=True)
    streak = calculate_streak(dates[:STREAK_HISTORY_LIMIT], ctx.now().date())
    return streak.model_dump()


async def _update_streak_snapshot(ctx):
    db = ctx.services.require_db()
    member_id = _session(ctx).new.member_id
    now = ctx.now()
    current = ctx["check-streak"]["current"]
    snapshot = await db.get_row("snapshot", member_id) or empty_snapshot(member_id, now)
    longest = max(current, snapshot.get("longest_streak", 0))
    snapshot.update(current_streak=current, longest_streak=longest, last_updated=now.isoformat())
    await db.put_row("snapshot", member_id, snapshot, now)
    return {"current_streak": current, "longest_streak": longest}


def _is_streak_milestone(ctx) -> bool:
    return _has_user(ctx) and ctx["check-streak"]["current"] in STREAK_MILESTONES


def _streak_event(ctx):
    return (
        "notification/streak-milestone",
        {
            "user_id": ctx["get-member"]["user_id"],
            "member_id": _session(ctx).new.member_id,
            "streak_days": ctx["check-streak"]["current"],
        },
    )


# circle members ---------------------------------------------------------

def _new_member(ctx) -> CircleMemberRow:
    return ctx.parse(ChangePayload[CircleMemberRow]).new


async def _initial_snapshot(ctx):
    member = _new_member(ctx)
    now = ctx.now()
    created = await ctx.services.require_db().put_row(
        "snapshot", member.id, empty_snapshot(member.id, now), now, if_absent=True
    )
    return {"created": created}


def _member_has_user(ctx) -> bool:
    return bool(_new_member(ctx).user_id)


def _embeddings_request(ctx):
    member = _new_member(ctx)
    return (
        "ai/generate-embeddings",
        {"user_id": member.user_id, "circle_id": member.circle_id, "member_id": member.id},
    )


# personal records -------------------------------------------------------

def _record(ctx) -> PersonalRecordRow:
    return ctx.parse(ChangePayload[PersonalRecordRow]).new


async def _record_details(ctx):
    record = _record(ctx)
    db = ctx.services.require_db()
    member = await get_member(db, record.member_id)
    exercise = await db.get_row("exercise", record.exercise_id)
    if not member or not member.get("user_id") or not exercise:
        return skipped("Member or exercise not found")
    return {"member": member, "exercise": exercise}


async def _record_notify(ctx):
    record = _record(ctx)
    details = ctx["get-details"]
    rep_max = f" ({record.rep_max}RM)" if record.rep_max else ""
    notification = _notification(
        ctx,
        "create-notification",
        user_id=details["member"]["user_id"],
        kind="achievement",
        title="New Personal Record!",
        body=f"You set a new PR on {details['exercise'].get('name', 'an exercise')}: "
        f"{record.value:g} {record.unit}{rep_max}",
        data={"pr_id": record.id, "member_id": record.member_id, "exercise_id": record.exercise_id},
    )
    return await create_notification(ctx.services, notification, ctx.now())


# challenge participants -------------------------------------------------

def _participant(ctx) -> ChangePayload[ChallengeParticipantRow]:
    return ctx.parse(ChangePayload[ChallengeParticipantRow])


def _hit_challenge_milestone(change: ChangePayload[ChallengeParticipantRow]) -> bool:
    old_streak = change.old.current_streak if change.old else 0
    return (
        change.new.current_streak in CHALLENGE_STREAK_MILESTONES
        and old_streak not in CHALLENGE_STREAK_MILESTONES
    )


async def _get_challenge(ctx):
    change = _participant(ctx)
    old_day = change.old.current_day if change.old else None
    if not _hit_challenge_milestone(change) and change.new.current_day == old_day:
        return skipped("No significant change")
    challenge = await ctx.services.require_db().get_row("challenge", change.new.challenge_id)
    if not challenge:
        return skipped("Challenge not found")
    return challenge


async def _challenge_notify(ctx):
    participant = _participant(ctx).new
    streak = participant.current_streak
    notification = _notification(
        ctx,
        "create-streak-notification",
        user_id=participant.user_id,
        kind="challenge",
        title=f"{streak}-Day Streak!",
        body=f"You're on fire in \"{ctx['get-challenge'].get('name', 'your challenge')}\"! Keep it going!",
        data={"challenge_id": participant.challenge_id, "participant_id": participant.id, "streak": streak},
    )
    return await create_notification(ctx.services, notification, ctx.now())


def _challenge_result(ctx) -> Dict[str, Any]:
    change = _participant(ctx)
    hit = _hit_challenge_milestone(change)
    return {
        "success": True,
        "participant_id": change.new.id,
        "milestone": change.new.current_streak if hit else None,
    }


# notifications ----------------------------------------------------------

async def _goal_achieved(ctx):
    payload = ctx.parse(GoalAchieved)
    notification = _notification(
        ctx,
        "create-notification",
        user_id=payload.user_id,
        kind="achievement",
        title="Goal Achieved!",
        body=f"Congratulations! You've achieved your goal: {payload.goal_title}",
        data={"goal_id": payload.goal_id, "member_id": payload.member_id},
    )
    return await create_notification(ctx.services, notification, ctx.now())


async def _streak_milestone(ctx):
    payload = ctx.parse(StreakMilestone)
    message = STREAK_MESSAGES.get(payload.streak_days)
    if message is None:
        return skipped("Not a milestone")
    notification = _notification(
        ctx,
        "create-notification",
        user_id=payload.user_id,
        kind="streak",
        title=f"{payload.streak_days}-Day Streak!",
        body=message,
        data={"streak_days": payload.streak_days, "member_id": payload.member_id},
    )
    return await create_notification(ctx.services, notification, ctx.now())


def change_workflows() -> List[WorkflowDefinition]:
    return [
        workflow(
            "db-goal-completed",
            name="Goal Completed",
            event="pg/goals.updated",
            retries=2,
            steps=[
                Step.run("get-member", _goal_completed_member),
                Step.run("create-notification", _goal_completed_notify),
                Step.send_event(
                    "trigger-snapshot-update", lambda ctx: _snapshot_update(_goal(ctx).new.member_id)
                ),
            ],
            finish=lambda ctx: {"success": True, "goal_id": _goal(ctx).new.id},
        ),
        workflow(
            "db-goal-created",
            name="Goal Created",
            event="pg/goals.inserted",
            retries=2,
            steps=[
                Step.run("get-member", _goal_created_member),
                Step.send_event(
                    "trigger-milestones",
                    _milestone_request,
                    when=lambda ctx: bool(_goal(ctx).new.target_value) and _has_user(ctx),
                ),
            ],
            finish=lambda ctx: {"success": True, "goal_id": _goal(ctx).new.id},
        ),
        workflow(
            "db-workout-completed",
            name="Workout Completed",
            event="pg/workout_sessions.updated",
            retries=2,
            debounce=DebouncePolicy(key="event.data.new.member_id", period="30s"),
            steps=[
                Step.run("get-member", _workout_member),
                Step.send_event(
                    "trigger-snapshot-update", lambda ctx: _snapshot_update(_session(ctx).new.member_id)
                ),
                Step.run("check-streak", _check_streak, when=_has_user),
                Step.run("update-streak-snapshot", _update_streak_snapshot, when=_has_user),
                Step.send_event("notify-streak", _streak_event, when=_is_streak_milestone),
            ],
            finish=lambda ctx: {"success": True, "session_id": _session(ctx).new.id},
        ),
        workflow(
            "db-member-created",
            name="Member Created",
            event="pg/circle_members.inserted",
            retries=2,
            steps=[
                Step.run("create-initial-snapshot", _initial_snapshot),
                Step.sleep("wait-for-profile-data", "5m", when=_member_has_user),
                Step.send_event("trigger-embeddings", _embeddings_request, when=_member_has_user),
            ],
            finish=lambda ctx: {"success": True, "member_id": _new_member(ctx).id},
        ),
        workflow(
            "db-pr-created",
            name="Personal Record Created",
            event="pg/personal_records.inserted",
            retries=2,
            steps=[
                Step.run("get-details", _record_details),
                Step.run("create-notification", _record_notify),
                Step.send_event(
                    "trigger-snapshot-update", lambda ctx: _snapshot_update(_record(ctx).member_id)
                ),
            ],
            finish=lambda ctx: {"success": True, "pr_id": _record(ctx).id},
        ),
        workflow(
            "db-challenge-progress",
            name="Challenge Progress Updated",
            event="pg/challenge_participants.updated",
            retries=2,
            throttle=ThrottlePolicy(key="event.data.new.challenge_id", limit=10, period="1m"),
            steps=[
                Step.run("get-challenge", _get_challenge),
                Step.run(
                    "create-streak-notification",
                    _challenge_notify,
                    when=lambda ctx: _hit_challenge_milestone(_participant(ctx)),
                ),
            ],
            finish=_challenge_result,
        ),
        workflow(
            "notification-goal-achieved",
            name="Goal Achievement Notification",
            event="notification/goal-achieved",
            retries=2,
            steps=[Step.run("create-notification", _goal_achieved)],
            finish=lambda ctx: {"success": True},
        ),
        workflow(
            "notification-streak-milestone",
            name="Streak Milestone Notification",
            event="notification/streak-milestone",
            retries=2,
            steps=[Step.run("create-notification", _streak_milestone)],
            finish=lambda ctx: {"success": True},
        ),
    ]
