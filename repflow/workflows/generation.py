"""Background generation of workout plans and goal milestones."""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field
from pydantic_core import to_jsonable_python

from ..cache import make_cache_key
from ..contracts import Complete, RunFailure, Step, WorkflowDefinition, workflow
from ..errors import FatalError
from ..events import GenerateMilestones, GenerateWorkout
from ..generation import TokenUsage
from ..usage import UsageEvent
from .fitness import MemberPRs, PersonalRecord, all_rx_weights, should_use_gender_rx

WORKOUT_INSTRUCTIONS = (
    "You are a strength and conditioning coach. Program safe, effective group "
    "workouts that respect each member's limitations and recovery state."
)


class MemberPrescription(BaseModel):
    member_name: str
    weight: Optional[str] = None
    rpe_target: Optional[float] = None


class PlannedExercise(BaseModel):
    name: str
    sets: int
    reps: str
    rest_seconds: int
    notes: Optional[str] = None
    muscle_groups: List[str] = Field(default_factory=list)
    superset_group: Optional[int] = None
    member_prescriptions: Optional[List[MemberPrescription]] = None


class WorkoutPlan(BaseModel):
    name: str
    description: str
    exercises: List[PlannedExercise]
    warmup: Optional[List[str]] = None
    cooldown: Optional[List[str]] = None
    estimated_duration: int
    difficulty: str
    focus_areas: List[str] = Field(default_factory=list)
    coaching_notes: Optional[str] = None


class Milestone(BaseModel):
    title: str
    description: str
    target_value: Optional[float] = None
    target_date: Optional[str] = None
    celebration_message: str
    difficulty_level: Literal["easy", "moderate", "challenging"]


class MilestonePlan(BaseModel):
    milestones: List[Milestone]


def exercise_count_for(duration: int) -> tuple[int, int]:
    """Recommended (min, max) exercises for a session length in minutes."""
    if duration <= 20:
        return 3, 5
    if duration <= 30:
        return 4, 6
    if duration <= 45:
        return 5, 8
    if duration <= 60:
        return 6, 10
    return 8, 12


# workout ------------------------------------------------------------------

async def cached_generation(ctx, key: str, produce, cache_type: str, entity_id: Optional[str]) -> Dict[str, Any]:
    """Generated value with its accounting, through the response cache when one is configured."""
    cache = ctx.services.cache
    if cache is None:
        result = await produce()
        return {
            "value": to_jsonable_python(result.output),
            "model": result.model,
            "usage": result.usage,
            "duration_ms": result.duration_ms,
            "source": "generated",
        }
    entry = await cache.get_or_generate(key, produce, cache_type=cache_type, entity_id=entity_id)
    return {
        "value": entry.value,
        "model": entry.model_used,
        "usage": entry.usage,
        "duration_ms": entry.generation_ms,
        "source": entry.source,
    }


def _request(ctx) -> GenerateWorkout:
    return ctx.parse(GenerateWorkout)


def _has_job(ctx) -> bool:
    return bool(_request(ctx).job_id)


async def _mark_generating(ctx):
    await ctx.services.require_db().update_job(_request(ctx).job_id, ctx.now(), status="generating")
    return True


async def _check_quota(ctx):
    request = _request(ctx)
    if ctx.services.quotas is None:
        return None
    quota = await ctx.services.quotas.check(request.user_id, "workout")
    if not quota.allowed:
        raise FatalError(
            f"AI quota exceeded: all {quota.limit} workout generations used this period"
        )
    return quota.model_dump(mode="json")


async def _gather_context(ctx):
    request = _request(ctx)
    db = ctx.services.require_db()
    members = []
    for member_id in request.member_ids:
        member = await db.get_row("member", member_id) or {"id": member_id}
        snapshot = await db.get_row("snapshot", member_id) or {}
        records = await db.list_rows("personal_record", member_id=member_id)
        members.append(
            {
                "id": member_id,
                "name": member.get("name", ""),
                "gender": request.options.get("member_genders", {}).get(member_id)
                or member.get("gender"),
                "snapshot": snapshot,
                "personal_records": [
                    {
                        "exercise_name": r.data.get("exercise_name", ""),
                        "value": r.data.get("value", 0),
                        "unit": r.data.get("unit", "lbs"),
                        "rep_max": r.data.get("rep_max") or 1,
                    }
                    for r in records
                ],
            }
        )
    return {"members": members, "use_gender_rx": should_use_gender_rx(len(request.member_ids))}


def _member_prompt(member: Dict[str, Any]) -> str:
    snapshot = member.get("snapshot") or {}
    lines = [f"Member: {member.get('name') or member['id']}"]
    goals = [g.get("title") for g in snapshot.get("active_goals", [])]
    if goals:
        lines.append(f"Goals: {', '.join(goals)}")
    limitations = [l.get("description") for l in snapshot.get("active_limitations", [])]
    if limitations:
        lines.append(f"Limitations: {', '.join(limitations)}")
    fatigued = [
        muscle
        for muscle, state in (snapshot.get("muscle_recovery") or {}).items()
        if not state.get("ready_to_train", True)
    ]
    if fatigued:
        lines.append(f"Still recovering: {', '.join(fatigued)}")
    for pr in member.get("personal_records", [])[:5]:
        lines.append(f"PR: {pr['exercise_name']} {pr['value']} {pr['unit']} ({pr['rep_max']}RM)")
    return "\n".join(lines)


def _build_prompt(ctx):
    request = _request(ctx)
    context = ctx["gather-context"]
    options = request.options
    focus = options.get("focus", "full_body")
    intensity = options.get("intensity", "moderate")
    duration = int(options.get("target_duration", 45))
    low, high = exercise_count_for(duration)
    sections = [
        "## Member Context",
        "\n\n---\n\n".join(_member_prompt(m) for m in context["members"]),
    ]
    if context["use_gender_rx"]:
        sections.append(
            f"## Weight Prescription Format (Group of {len(request.member_ids)} members)\n"
            "Use standard Rx-style weights; per-gender Rx weights are calculated afterwards."
        )
    sections.append(
        "## Workout Requirements\n"
        f"- Focus: {focus}\n"
        f"- Intensity: {intensity}\n"
        f"- Target Duration: {duration} minutes\n"
        f"- Include Warmup: {options.get('include_warmup', True)}\n"
        f"- Include Cooldown: {options.get('include_cooldown', True)}\n"
        f"You MUST generate at least {low} exercises (ideally {low}-{high})."
    )
    return {"prompt": "\n\n".join(sections), "intensity": intensity}


async def _generate_workout(ctx):
    request = _request(ctx)
    prompt = ctx["build-prompt"]["prompt"]
    generator = ctx.services.require_generator()
    key = make_cache_key(
        "workout_generation",
        request.circle_id,
        {"member_ids": sorted(request.member_ids), "prompt": prompt},
    )

    async def produce():
        return await generator.generate(prompt, WorkoutPlan, instructions=WORKOUT_INSTRUCTIONS)

    entry = await cached_generation(ctx, key, produce, "workout_generation", request.circle_id)
    ctx.logger.info(f"Workout plan from {entry['source']} ({key})")
    return {
        "plan": entry["value"],
        "model": entry["model"],
        "usage": entry["usage"].model_dump(),
        "duration_ms": entry["duration_ms"],
        "cache_hit": entry["source"] != "generated",
    }


def _calculate_rx(ctx):
    plan = WorkoutPlan.model_validate(ctx["generate-workout"]["plan"])
    members = [
        MemberPRs(
            id=m["id"],
            name=m.get("name", ""),
            gender=m.get("gender"),
            personal_records=[PersonalRecord(**pr) for pr in m["personal_records"]],
        )
        for m in ctx["gather-context"]["members"]
    ]
    rx = all_rx_weights((e.name for e in plan.exercises), members, ctx["build-prompt"]["intensity"])
    return {name: weights.model_dump() for name, weights in rx.items()}


async def _save_plan(ctx):
    request = _request(ctx)
    plan = ctx["generate-workout"]["plan"]
    rx = ctx.get("calculate-rx-weights") or {}
    plan_id = request.job_id or ctx.run_id
    exercises = [{**e, "order": i, "rx_weights": rx.get(e["name"])} for i, e in enumerate(plan["exercises"])]
    await ctx.services.require_db().put_row(
        "workout_plan",
        plan_id,
        {
            "id": plan_id,
            "circle_id": request.circle_id,
            "name": plan["name"],
            "description": plan["description"],
            "difficulty": plan["difficulty"],
            "estimated_duration": plan["estimated_duration"],
            "exercises": exercises,
            "ai_generated": True,
        },
        ctx.now(),
    )
    return plan_id


async def _mark_complete(ctx):
    plan = ctx["generate-workout"]["plan"]
    now = ctx.now()
    await ctx.services.require_db().update_job(
        _request(ctx).job_id,
        now,
        status="complete",
        completed_at=now,
        result={
            "plan_id": ctx["save-plan"],
            "name": plan["name"],
            "exercise_count": len(plan["exercises"]),
            "estimated_duration": plan["estimated_duration"],
        },
    )
    return True


async def _track_workout_usage(ctx):
    if ctx.services.usage is None:
        return None
    generated = ctx["generate-workout"]
    record = await ctx.services.usage.track(
        UsageEvent(
            user_id=_request(ctx).user_id,
            endpoint="ai/generate-workout/background",
            feature="workout_generation",
            model=generated["model"] or ctx.services.config.cache.default_model,
            usage=TokenUsage(**generated["usage"]) if not generated["cache_hit"] else TokenUsage(),
            duration_ms=generated["duration_ms"],
            cache_hit=generated["cache_hit"],
            details={
                "exercise_count": len(generated["plan"]["exercises"]),
                "use_gender_rx": ctx["gather-context"]["use_gender_rx"],
            },
        )
    )
    return record.id if record is not None else None


def _workout_result(ctx):
    plan = ctx["generate-workout"]["plan"]
    return {
        "success": True,
        "plan_id": ctx["save-plan"],
        "workout": {
            "name": plan["name"],
            "description": plan["description"],
            "exercise_count": len(plan["exercises"]),
            "estimated_duration": plan["estimated_duration"],
        },
    }


async def _mark_job_failed(ctx, failure: RunFailure):
    job_id = ctx.data.get("job_id")
    if not job_id or ctx.services.db is None:
        return
    now = ctx.now()
    await ctx.services.db.update_job(
        job_id, now, status="failed", completed_at=now, error=failure.error
    )


# milestones -------------------------------------------------------------

async def _fetch_goals(ctx):
    request = ctx.parse(GenerateMilestones)
    db = ctx.services.require_db()
    member = await db.get_row("member", request.member_id)
    if member is None:
        raise FatalError(f"Member not found: {request.member_id}")
    if request.goal_id:
        goal = await db.get_row("goal", request.goal_id)
        goals = [goal] if goal and goal.get("member_id") == request.member_id else []
    else:
        goals = [r.data for r in await db.list_rows("goal", member_id=request.member_id, status="active")]
    if not goals:
        return Complete(output={"success": True, "message": "No goals to generate milestones for"})
    return {"member": member, "goals": goals}


async def _generate_milestones(ctx):
    data = ctx["fetch-member-goals"]
    generator = ctx.services.require_generator()
    results = []
    for goal in data["goals"]:
        prompt = (
            "Generate 3-5 incremental milestones for this fitness goal:\n"
            f"Goal: {goal.get('title')}\n"
            f"Category: {goal.get('category')}\n"
            f"Target: {goal.get('target_value')} {goal.get('target_unit', '')}\n"
            f"Current: {goal.get('current_value') or 0} {goal.get('target_unit', '')}\n"
            f"Target Date: {goal.get('target_date') or 'Not set'}\n"
            f"Member context: {data['member'].get('name', '')}"
        )
        key = make_cache_key("milestone_generation", goal.get("id"), {"prompt": prompt})

        async def produce(prompt=prompt):
            return await generator.generate(prompt, MilestonePlan)

        entry = await cached_generation(ctx, key, produce, "milestone_generation", goal.get("id"))
        milestones = entry["value"]["milestones"]
        await ctx.services.require_db().put_row(
            "milestones", str(goal.get("id")), {"goal_id": goal.get("id"), "milestones": milestones}, ctx.now()
        )
        results.append({"goal_id": goal.get("id"), "milestones": len(milestones)})
    return results


def generation_workflows() -> List[WorkflowDefinition]:
    return [
        workflow(
            "ai-generate-workout-background",
            name="Background AI Workout Generation",
            event="ai/generate-workout",
            retries=1,
            concurrency=5,
            steps=[
                Step.run("mark-generating", _mark_generating, when=_has_job),
                Step.run("check-quota", _check_quota),
                Step.run("gather-context", _gather_context),
                Step.run("build-prompt", _build_prompt),
                Step.run("generate-workout", _generate_workout),
                Step.run(
                    "calculate-rx-weights",
                    _calculate_rx,
                    when=lambda ctx: ctx["gather-context"]["use_gender_rx"],
                ),
                Step.run("save-plan", _save_plan),
                Step.run("mark-complete", _mark_complete, when=_has_job),
                Step.run("track-usage", _track_workout_usage),
            ],
            finish=_workout_result,
            on_failure=_mark_job_failed,
        ),
        workflow(
            "ai-generate-milestones",
            name="Generate Goal Milestones",
            event="ai/generate-milestones",
            retries=2,
            concurrency=3,
            steps=[
                Step.run("fetch-member-goals", _fetch_goals),
                Step.run("generate-milestones", _generate_milestones),
            ],
            finish=lambda ctx: {
                "success": True,
                "results": ctx["generate-milestones"],
                "total_milestones": sum(r["milestones"] for r in ctx["generate-milestones"]),
            },
        ),
    ]
