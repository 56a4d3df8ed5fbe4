"""Coaching pipelines: member embeddings, post-workout analysis and weekly reports.

Every model call goes through the response cache, so a retried step or a
member whose data has not changed costs nothing, and is recorded with the
usage tracker against the member's user.
"""

from __future__ import annotations

from collections import Counter
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..cache import make_cache_key
from ..contracts import Complete, Step, WorkflowDefinition, workflow
from ..errors import FatalError
from ..events import AnalyzeWorkout, GenerateEmbeddings, WeeklyProgressReport
from ..generation import TokenUsage
from ..usage import UsageEvent
from ..utils.clock import ensure_utc
from .changes import skipped
from .generation import cached_generation
from .members import get_member

EMBEDDING_TYPES = ("profile", "goals", "workout_history", "preferences", "limitations")
REPORT_ACTIVITY_WINDOW = timedelta(days=14)
REPORT_PERIOD = timedelta(days=7)


class WorkoutAnalysis(BaseModel):
    volume_assessment: str = Field(description="Overall training volume analysis")
    progress_notes: List[str] = Field(default_factory=list, description="Specific progress observations")
    recovery_recommendation: str = Field(description="Recovery advice for the next 24-48 hours")
    next_workout_suggestion: str = Field(description="What to focus on next session")
    highlights: List[str] = Field(default_factory=list, description="Positive highlights from the workout")


class ProgressReport(BaseModel):
    summary: str = Field(description="Three or four sentences on the week")
    highlights: List[str] = Field(default_factory=list)
    focus_next_week: str = ""


def _day(value: Any) -> str:
    return str(value or "")[:10]


def _newest(rows, limit: int, field: str = "date") -> List[Dict[str, Any]]:
    data = [r.data for r in rows]
    return sorted(data, key=lambda d: _day(d.get(field)), reverse=True)[:limit]


def _generated(entry: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "model": entry["model"],
        "usage": entry["usage"].model_dump(),
        "duration_ms": entry["duration_ms"],
        "cache_hit": entry["source"] != "generated",
    }


async def _track(ctx, user_id: Optional[str], endpoint: str, feature: str, generated, **details):
    """One usage row for ``generated``; cache hits are recorded without tokens."""
    if ctx.services.usage is None or not user_id:
        return None
    record = await ctx.services.usage.track(
        UsageEvent(
            user_id=user_id,
            endpoint=endpoint,
            feature=feature,
            member_id=details.pop("member_id", None),
            model=generated["model"] or ctx.services.config.cache.default_model,
            usage=TokenUsage() if generated["cache_hit"] else TokenUsage(**generated["usage"]),
            duration_ms=generated["duration_ms"],
            cache_hit=generated["cache_hit"],
            details=details,
        )
    )
    return record.id if record is not None else None


# embeddings -------------------------------------------------------------

def _embedding_request(ctx) -> GenerateEmbeddings:
    return ctx.parse(GenerateEmbeddings)


async def _verify_member(ctx):
    request = _embedding_request(ctx)
    member = await get_member(ctx.services.require_db(), request.member_id)
    if member is None or (request.circle_id and member.get("circle_id") != request.circle_id):
        raise FatalError(f"Member {request.member_id} not found in circle {request.circle_id}")
    return member


async def _gather_member_data(ctx):
    member_id = _embedding_request(ctx).member_id
    db = ctx.services.require_db()
    notes = await db.list_rows("context_note", member_id=member_id)
    return {
        "metrics": _newest(await db.list_rows("member_metric", member_id=member_id), 10),
        "goals": [r.data for r in await db.list_rows("goal", member_id=member_id)],
        "workouts": _newest(await db.list_rows("workout_session", member_id=member_id), 20),
        "limitations": [r.data for r in await db.list_rows("limitation", member_id=member_id)],
        "notes": [r.data for r in reversed(notes)][:30],
    }


def _age(born: Optional[str], today: date) -> Optional[int]:
    if not born:
        return None
    birthday = date.fromisoformat(_day(born))
    return today.year - birthday.year - ((today.month, today.day) < (birthday.month, birthday.day))


def profile_content(member: Dict[str, Any], metrics: Optional[Dict[str, Any]], today: date) -> str:
    content = f"Member Profile: {member.get('name') or member.get('id')}"
    age = _age(member.get("date_of_birth"), today)
    if age:
        content += f", {age} years old"
    if member.get("gender"):
        content += f", {member['gender']}"
    metrics = metrics or {}
    if metrics.get("weight"):
        content += f". Weight: {metrics['weight']} lbs"
    if metrics.get("height"):
        feet, inches = divmod(int(metrics["height"]), 12)
        content += f". Height: {feet}'{inches}\""
    if metrics.get("fitness_level"):
        content += f". Fitness level: {metrics['fitness_level']}"
    if metrics.get("body_fat_percentage"):
        content += f". Body fat: {metrics['body_fat_percentage']}%"
    return content


def goals_content(goals: List[Dict[str, Any]]) -> str:
    active = [g for g in goals if g.get("status") == "active"]
    completed = [g for g in goals if g.get("status") == "completed"]
    lines = ["Fitness Goals:", f"Active goals ({len(active)}):"]
    for g in active:
        line = f"- {g.get('title')} ({g.get('category')})"
        if g.get("target_value") and g.get("target_unit"):
            line += f": target {g['target_value']} {g['target_unit']}"
        if g.get("current_value"):
            line += f", current {g['current_value']}"
        lines.append(line)
    if completed:
        lines.append(f"\nCompleted goals ({len(completed)}):")
        lines.extend(f"- {g.get('title')} ({g.get('category')})" for g in completed[:5])
    return "\n".join(lines)


def workout_history_content(workouts: List[Dict[str, Any]]) -> str:
    completed = [w for w in workouts if w.get("status") == "completed"]
    ratings = [w["rating"] for w in completed if w.get("rating")]
    average = sum(ratings) / len(ratings) if ratings else 0
    lines = [
        "Workout History:",
        f"Total sessions: {len(completed)}",
        f"Average rating: {average:.1f}/5",
        "",
        "Recent workouts:",
    ]
    for w in completed[:10]:
        line = f"- {w.get('name', 'Workout')} ({_day(w.get('date'))})"
        if w.get("rating"):
            line += f" - Rating: {w['rating']}/5"
        lines.append(line)
    return "\n".join(lines)


def preferences_content(notes: List[Dict[str, Any]]) -> str:
    lines = ["User Preferences and Feedback:"]
    moods = Counter(n["mood"] for n in notes if n.get("mood"))
    if moods:
        lines.append(f"Common moods: {', '.join(m for m, _ in moods.most_common(3))}")
    energy = [n["energy_level"] for n in notes if n.get("energy_level") is not None]
    if energy:
        lines.append(f"Average energy level: {sum(energy) / len(energy):.1f}/5")
    pain = [n["pain_level"] for n in notes if n.get("pain_level")]
    if pain:
        lines.append(f"Reports pain in {len(pain)} entries, avg: {sum(pain) / len(pain):.1f}/10")
    tags = Counter(t for n in notes for t in n.get("tags") or [])
    if tags:
        lines.append(f"Common tags: {', '.join(t for t, _ in tags.most_common(5))}")
    return "\n".join(lines)


def limitations_content(limitations: List[Dict[str, Any]]) -> str:
    lines = ["Physical Limitations and Injuries:"]
    for l in limitations:
        if not l.get("active", True):
            continue
        line = f"- {l.get('type')}: {l.get('description', '')}"
        if l.get("severity"):
            line += f" (Severity: {l['severity']})"
        if l.get("affected_areas"):
            line += f" - Affects: {', '.join(l['affected_areas'])}"
        lines.append(line)
    resolved = [l.get("type") for l in limitations if not l.get("active", True)]
    if resolved:
        lines.append(f"\nResolved issues: {', '.join(resolved)}")
    return "\n".join(lines)


def _build_embedding_content(ctx):
    member = ctx["verify-member"]
    data = ctx["gather-member-data"]
    metrics = data["metrics"][0] if data["metrics"] else None
    sections = {"profile": profile_content(member, metrics, ctx.now().date())}
    if data["goals"]:
        sections["goals"] = goals_content(data["goals"])
    if data["workouts"]:
        sections["workout_history"] = workout_history_content(data["workouts"])
    if data["notes"]:
        sections["preferences"] = preferences_content(data["notes"])
    if data["limitations"]:
        sections["limitations"] = limitations_content(data["limitations"])
    return sections


async def _delete_embeddings(ctx):
    db = ctx.services.require_db()
    member_id = _embedding_request(ctx).member_id
    rows = await db.list_rows("member_embedding", member_id=member_id)
    return {"deleted": await db.delete_rows("member_embedding", [r.key for r in rows])}


def _embedding_step(kind: str) -> Step:
    async def embed(ctx):
        member_id = _embedding_request(ctx).member_id
        content = ctx["build-embedding-content"][kind]
        embedder = ctx.services.require_embedder()
        key = make_cache_key("member_embedding", member_id, {"type": kind, "content": content})

        async def produce():
            return await embedder.embed(content)

        entry = await cached_generation(ctx, key, produce, "member_embedding", member_id)
        await ctx.services.require_db().put_row(
            "member_embedding",
            f"{member_id}:{kind}",
            {
                "member_id": member_id,
                "type": kind,
                "content": content,
                "embedding": entry["value"],
                "model": entry["model"],
            },
            ctx.now(),
        )
        return {"type": kind, **_generated(entry)}

    return Step.run(
        f"embed-{kind.replace('_', '-')}",
        embed,
        when=lambda ctx: kind in ctx["build-embedding-content"],
    )


def _embedded(ctx) -> List[Dict[str, Any]]:
    return [ctx[step] for step in ctx.results if step.startswith("embed-")]


async def _track_embedding_usage(ctx):
    embedded = _embedded(ctx)
    fresh = [e for e in embedded if not e["cache_hit"]]
    usage = TokenUsage(input_tokens=sum(e["usage"]["input_tokens"] for e in fresh))
    generated = {
        "model": embedded[0]["model"] if embedded else None,
        "usage": usage.model_dump(),
        "duration_ms": sum(e["duration_ms"] or 0 for e in fresh),
        "cache_hit": not fresh,
    }
    request = _embedding_request(ctx)
    return await _track(
        ctx,
        request.user_id,
        "ai/generate-embeddings",
        "embeddings",
        generated,
        member_id=request.member_id,
        sections=len(embedded),
    )


def _embeddings_result(ctx):
    embedded = _embedded(ctx)
    return {
        "success": True,
        "member_id": _embedding_request(ctx).member_id,
        "embeddings": [e["type"] for e in embedded],
        "message": f"Generated {len(embedded)} embeddings for member",
    }


# post-workout analysis --------------------------------------------------

def _analysis_request(ctx) -> AnalyzeWorkout:
    return ctx.parse(AnalyzeWorkout)


async def _fetch_session(ctx):
    session = await ctx.services.require_db().get_row("workout_session", _analysis_request(ctx).session_id)
    if session is None:
        return skipped("Session not found")
    return session


async def _fetch_analysis_context(ctx):
    request = _analysis_request(ctx)
    db = ctx.services.require_db()
    today = ctx.now().date().isoformat()
    sessions = [
        r for r in await db.list_rows("workout_session", member_id=request.member_id)
        if _day(r.data.get("date")) <= today
    ]
    notes = await db.list_rows("context_note", member_id=request.member_id)
    records = await db.list_rows("personal_record", member_id=request.member_id, session_id=request.session_id)
    member = await get_member(db, request.member_id) or {}
    return {
        "recent_sessions": len(_newest(sessions, 5)),
        "recent_notes": [r.data for r in reversed(notes)][:5],
        "session_prs": [r.data for r in records],
        "user_id": member.get("user_id"),
    }


def exercise_summary(exercise: Dict[str, Any]) -> str:
    sets = exercise.get("sets") or []
    done = sum(1 for s in sets if s.get("completed"))
    heaviest = max((s.get("actual_weight") or 0 for s in sets), default=0)
    reps = round(sum(s.get("actual_reps") or 0 for s in sets) / len(sets)) if sets else 0
    return f"{exercise.get('name', 'Unknown')}: {done}/{len(sets)} sets, max {heaviest}lbs, avg {reps} reps"


def _session_minutes(session: Dict[str, Any]) -> str:
    started, ended = session.get("started_at"), session.get("ended_at")
    if not started or not ended:
        return "unknown"
    elapsed = ensure_utc(datetime.fromisoformat(ended)) - ensure_utc(datetime.fromisoformat(started))
    return str(round(elapsed.total_seconds() / 60))


def analysis_prompt(member_id: str, session: Dict[str, Any], context: Dict[str, Any]) -> str:
    exercises = "\n".join(exercise_summary(e) for e in session.get("exercises") or []) or "No exercises recorded"
    prompt = (
        f"Analyze this workout session for member {member_id}:\n\n"
        f"Workout: {session.get('name', 'Workout')}\n"
        f"Date: {_day(session.get('date'))}\n"
        f"Duration: {_session_minutes(session)} minutes\n"
        f"Rating: {session.get('rating') or 'not rated'}/5\n\n"
        f"Exercises:\n{exercises}\n"
    )
    if context["session_prs"]:
        records = "\n".join(
            f"- {pr.get('exercise_name', 'Unknown')}: {pr.get('value')} {pr.get('unit', 'lbs')}"
            + (f" ({pr['rep_max']}RM)" if pr.get("rep_max") else "")
            for pr in context["session_prs"]
        )
        prompt += f"\nNEW PERSONAL RECORDS SET THIS SESSION:\n{records}\n"
    moods = ", ".join(
        f"{n.get('mood') or 'unknown'} mood, energy {n.get('energy_level')}/5" for n in context["recent_notes"]
    )
    prompt += (
        f"\nRecent mood/energy from notes:\n{moods or 'None'}\n\n"
        f"Recent workout count: {context['recent_sessions']} sessions this week\n\n"
        "Provide a brief, encouraging analysis with actionable recovery and next-session "
        "recommendations. If new PRs were set, celebrate them!"
    )
    return prompt


async def _generate_analysis(ctx):
    request = _analysis_request(ctx)
    prompt = analysis_prompt(request.member_id, ctx["fetch-session"], ctx["fetch-context"])
    generator = ctx.services.require_generator()
    key = make_cache_key("workout_analysis", request.session_id, {"prompt": prompt})

    async def produce():
        return await generator.generate(prompt, WorkoutAnalysis)

    entry = await cached_generation(ctx, key, produce, "workout_analysis", request.session_id)
    return {"analysis": entry["value"], **_generated(entry)}


async def _track_analysis_usage(ctx):
    request = _analysis_request(ctx)
    return await _track(
        ctx,
        ctx["fetch-context"]["user_id"],
        "ai/analyze-workout",
        "session_summary",
        ctx["generate-analysis"],
        member_id=request.member_id,
        session_id=request.session_id,
    )


def feedback_text(analysis: WorkoutAnalysis) -> str:
    parts = [
        ". ".join(analysis.highlights) + "." if analysis.highlights else "",
        analysis.volume_assessment,
        ". ".join(analysis.progress_notes) + "." if analysis.progress_notes else "",
        f"Recovery: {analysis.recovery_recommendation}" if analysis.recovery_recommendation else "",
        f"Next session: {analysis.next_workout_suggestion}" if analysis.next_workout_suggestion else "",
    ]
    return "\n\n".join(p for p in parts if p)


async def _save_analysis(ctx):
    request = _analysis_request(ctx)
    analysis = WorkoutAnalysis.model_validate(ctx["generate-analysis"]["analysis"])
    db = ctx.services.require_db()
    now = ctx.now()
    await db.put_row(
        "context_note",
        f"{request.session_id}:ai_analysis",
        {
            "member_id": request.member_id,
            "entity_type": "workout_session",
            "entity_id": request.session_id,
            "content": (
                f"AI Analysis: {analysis.volume_assessment}\n\n"
                f"Progress: {'; '.join(analysis.progress_notes)}\n\n"
                f"Recovery: {analysis.recovery_recommendation}\n\n"
                f"Next session: {analysis.next_workout_suggestion}"
            ),
            "tags": ["ai_analysis", "post_workout"],
        },
        now,
    )
    session = await db.get_row("workout_session", request.session_id) or ctx["fetch-session"]
    await db.put_row(
        "workout_session", request.session_id, {**session, "ai_feedback": feedback_text(analysis)}, now
    )
    return True


# weekly progress reports ------------------------------------------------

async def _find_active_members(ctx):
    since = (ctx.now() - REPORT_ACTIVITY_WINDOW).date().isoformat()
    sessions = await ctx.services.require_db().list_rows("workout_session")
    members = sorted(
        {r.data["member_id"] for r in sessions if r.data.get("member_id") and _day(r.data.get("date")) >= since}
    )
    if not members:
        return Complete(output={"success": True, "reports_requested": 0, "message": "No active members"})
    return members


def _report_requests(ctx):
    period_end = ctx.data.get("scheduled_at") or ctx.now().isoformat()
    return [
        ("ai/weekly-progress-report", {"member_id": member_id, "period_end": period_end})
        for member_id in ctx["find-active-members"]
    ]


def _report_request(ctx) -> WeeklyProgressReport:
    return ctx.parse(WeeklyProgressReport)


async def _gather_week(ctx):
    request = _report_request(ctx)
    end = ensure_utc(datetime.fromisoformat(request.period_end))
    start = end - REPORT_PERIOD
    first, last = start.date().isoformat(), end.date().isoformat()
    db = ctx.services.require_db()

    sessions = [
        r.data for r in await db.list_rows("workout_session", member_id=request.member_id)
        if first <= _day(r.data.get("date")) <= last
    ]
    if not sessions:
        return skipped("No workouts this week")
    notes = [
        r.data for r in await db.list_rows("context_note", member_id=request.member_id)
        if ensure_utc(r.created_at) >= start
    ]
    records = [
        r for r in await db.list_rows("personal_record", member_id=request.member_id)
        if (_day(r.data.get("date")) or r.created_at.date().isoformat()) >= first
    ]
    energy = [n.get("energy_level") or 0 for n in notes]
    moods = [n["mood"] for n in notes if n.get("mood")]
    member = await get_member(db, request.member_id) or {}
    return {
        "period_start": start.isoformat(),
        "workouts_completed": len(sessions),
        "highly_rated": sum(1 for s in sessions if (s.get("rating") or 0) >= 4),
        "avg_energy": round(sum(energy) / len(energy), 1) if energy else 0,
        "avg_mood": moods[0] if moods else "unknown",
        "prs_set": len(records),
        "consistency_score": round(len(sessions) / 7 * 100),
        "user_id": member.get("user_id"),
    }


def report_prompt(stats: Dict[str, Any]) -> str:
    return (
        "Generate a brief, encouraging weekly fitness progress report.\n\n"
        "This week's stats:\n"
        f"- {stats['workouts_completed']} workouts completed\n"
        f"- {stats['highly_rated']} highly-rated sessions\n"
        f"- Average energy: {stats['avg_energy']:.1f}/5\n"
        f"- Predominant mood: {stats['avg_mood']}\n"
        f"- New PRs set: {stats['prs_set']}\n\n"
        "Write 3-4 sentences summarizing the week, highlighting wins, and suggesting focus "
        "for next week. Keep it positive, specific, and actionable. No generic platitudes."
    )


async def _generate_report(ctx):
    request = _report_request(ctx)
    prompt = report_prompt(ctx["gather-week"])
    generator = ctx.services.require_generator()
    key = make_cache_key(
        "progress_report", request.member_id, {"period_end": request.period_end, "prompt": prompt}
    )

    async def produce():
        return await generator.generate(prompt, ProgressReport)

    entry = await cached_generation(ctx, key, produce, "progress_report", request.member_id)
    return {"report": entry["value"], **_generated(entry)}


async def _save_report(ctx):
    request = _report_request(ctx)
    stats = ctx["gather-week"]
    report = ctx["generate-report"]["report"]
    key = f"{request.member_id}:{_day(request.period_end)}"
    await ctx.services.require_db().put_row(
        "progress_report",
        key,
        {
            "member_id": request.member_id,
            "report_type": "weekly",
            "period_start": stats["period_start"],
            "period_end": request.period_end,
            "summary": report["summary"],
            "insights": report.get("highlights", []),
            "recommendations": [report["focus_next_week"]] if report.get("focus_next_week") else [],
            "metrics": {k: v for k, v in stats.items() if k not in ("period_start", "user_id")},
        },
        ctx.now(),
    )
    return key


async def _track_report_usage(ctx):
    request = _report_request(ctx)
    return await _track(
        ctx,
        ctx["gather-week"]["user_id"],
        "ai/weekly-progress-report",
        "session_summary",
        ctx["generate-report"],
        member_id=request.member_id,
    )


def coaching_workflows() -> List[WorkflowDefinition]:
    return [
        workflow(
            "ai-generate-embeddings",
            name="Generate Member Embeddings",
            event="ai/generate-embeddings",
            retries=2,
            concurrency=5,
            steps=[
                Step.run("verify-member", _verify_member),
                Step.run("gather-member-data", _gather_member_data),
                Step.run("build-embedding-content", _build_embedding_content),
                Step.run("delete-existing-embeddings", _delete_embeddings),
                *[_embedding_step(kind) for kind in EMBEDDING_TYPES],
                Step.run("track-usage", _track_embedding_usage),
            ],
            finish=_embeddings_result,
            description="Embed each section of a member's profile for semantic search.",
        ),
        workflow(
            "ai-analyze-workout",
            name="Post-Workout AI Analysis",
            event="ai/analyze-workout",
            retries=2,
            concurrency=10,
            steps=[
                Step.run("fetch-session", _fetch_session),
                Step.run("fetch-context", _fetch_analysis_context),
                Step.run("generate-analysis", _generate_analysis),
                Step.run("track-usage", _track_analysis_usage),
                Step.run("save-analysis", _save_analysis),
            ],
            finish=lambda ctx: {
                "success": True,
                "session_id": _analysis_request(ctx).session_id,
                "analysis": ctx["generate-analysis"]["analysis"],
            },
        ),
        workflow(
            "cron-weekly-progress-reports",
            name="Request Weekly AI Progress Reports",
            cron="0 20 * * 0",
            retries=2,
            concurrency=1,
            steps=[
                Step.run("find-active-members", _find_active_members),
                Step.send_event("request-reports", _report_requests),
            ],
            finish=lambda ctx: {"success": True, "reports_requested": len(ctx["find-active-members"])},
        ),
        workflow(
            "ai-weekly-progress-report",
            name="Generate Weekly AI Progress Report",
            event="ai/weekly-progress-report",
            retries=2,
            concurrency=5,
            steps=[
                Step.run("gather-week", _gather_week),
                Step.run("generate-report", _generate_report),
                Step.run("save-report", _save_report),
                Step.run("track-usage", _track_report_usage),
            ],
            finish=lambda ctx: {"success": True, "report_id": ctx["save-report"]},
        ),
    ]
