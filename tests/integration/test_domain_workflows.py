"""The platform's own workflows end to end on a SQLite row store."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from repflow.contracts import OutcomeStatus, RunStatus
from repflow.db import GenerationJob
from repflow.errors import FailureKind
from repflow.generation import GenerationResult, TokenUsage
from repflow.notify import LogNotifier
from repflow.runtime import build_services
from repflow.usage import UsageEvent
from repflow.workflows import default_workflows
from repflow.workflows.coaching import ProgressReport, WorkoutAnalysis
from repflow.workflows.generation import PlannedExercise, WorkoutPlan


class FakeGenerator:
    """Returns a fixed plan and counts calls."""

    def __init__(self):
        self.prompts = []

    async def generate(self, prompt, schema, instructions=None):
        self.prompts.append(prompt)
        if schema is WorkoutPlan:
            output = WorkoutPlan(
                name="Leg Day",
                description="Squats and lunges",
                exercises=[
                    PlannedExercise(name="Back Squat", sets=5, reps="5", rest_seconds=120),
                    PlannedExercise(name="Walking Lunge", sets=3, reps="12", rest_seconds=60),
                ],
                estimated_duration=45,
                difficulty="intermediate",
            )
        elif schema is WorkoutAnalysis:
            output = WorkoutAnalysis(
                volume_assessment="Solid lower-body volume",
                progress_notes=["Squat moved well"],
                recovery_recommendation="Sleep and stretch",
                next_workout_suggestion="Upper body push",
                highlights=["New squat PR"],
            )
        elif schema is ProgressReport:
            output = ProgressReport(
                summary="Three strong sessions this week.",
                highlights=["Consistent training"],
                focus_next_week="Add a mobility day",
            )
        else:
            output = schema.model_validate(
                {
                    "milestones": [
                        {
                            "title": f"Step {i}",
                            "description": "Keep going",
                            "celebration_message": "Nice!",
                            "difficulty_level": "easy",
                        }
                        for i in range(3)
                    ]
                }
            )
        return GenerationResult(
            output=output,
            usage=TokenUsage(input_tokens=1200, output_tokens=800),
            model="gpt-5.2",
            duration_ms=2300,
        )


class FakeEmbedder:
    """Embeds text as its length; records every text it was asked for."""

    def __init__(self):
        self.texts = []

    async def embed(self, text):
        self.texts.append(text)
        return GenerationResult(
            output=[float(len(text)), 0.5],
            usage=TokenUsage(input_tokens=len(text.split())),
            model="text-embedding-3-small",
            duration_ms=40,
        )


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def services(store, clock, config, generator, embedder):
    return build_services(
        config, db=store, generator=generator, notifier=LogNotifier(), clock=clock, embedder=embedder
    )


@pytest.fixture
def orch(make_orchestrator, services):
    return make_orchestrator(default_workflows(), services=services)


def _of(outcomes, workflow_id):
    return [o for o in outcomes if o.workflow_id == workflow_id]


async def _member(store, clock, member_id="m1", user_id="u1", **data):
    await store.put_row(
        "member",
        member_id,
        {"id": member_id, "user_id": user_id, "circle_id": "c1", "name": member_id.upper(), **data},
        clock.now(),
    )


@pytest.mark.asyncio
async def test_goal_completion_notifies_and_refreshes_snapshot(orch, store, services, clock):
    await _member(store, clock)
    await store.put_row("goal", "g1", {"id": "g1", "member_id": "m1", "title": "Squat 300", "status": "completed"}, clock.now())

    [run] = await orch.send(
        "pg/goals.updated",
        {
            "new": {"id": "g1", "member_id": "m1", "title": "Squat 300", "status": "completed"},
            "old": {"id": "g1", "member_id": "m1", "title": "Squat 300", "status": "active"},
        },
    )
    outcomes = await orch.run_until_idle()

    [goal] = _of(outcomes, "db-goal-completed")
    assert goal.output == {"success": True, "goal_id": "g1"}
    assert [n.title for n in services.notifier.sent] == ["Goal Achieved!"]
    assert await store.get_row("notification", f"{run.run_id}:create-notification") is not None

    [snapshot_run] = _of(outcomes, "member-snapshot-update")
    assert snapshot_run.status == OutcomeStatus.COMPLETED
    snapshot = await store.get_row("snapshot", "m1")
    assert snapshot["snapshot_version"] == 1


@pytest.mark.asyncio
async def test_goal_update_without_completion_is_skipped(orch, store, services, clock):
    await _member(store, clock)
    await orch.send(
        "pg/goals.updated",
        {"new": {"id": "g1", "member_id": "m1", "status": "active"}, "old": {"id": "g1", "member_id": "m1"}},
    )
    [outcome] = await orch.run_until_idle()
    assert outcome.output == {"skipped": True, "reason": "Status not changed to completed"}
    assert services.notifier.sent == []


@pytest.mark.asyncio
async def test_seventh_workout_in_a_row_celebrates_streak(orch, store, services, clock):
    await _member(store, clock)
    today = clock.now().date()
    for offset in range(7):
        day = (today - timedelta(days=offset)).isoformat()
        await store.put_row(
            "workout_session",
            f"s{offset}",
            {"id": f"s{offset}", "member_id": "m1", "status": "completed", "date": day},
            clock.now(),
        )

    change = {
        "new": {"id": "s0", "member_id": "m1", "status": "completed", "date": today.isoformat()},
        "old": {"id": "s0", "member_id": "m1", "status": "in_progress"},
    }
    assert await orch.send("pg/workout_sessions.updated", change) == []
    assert await orch.send("pg/workout_sessions.updated", change) == []

    clock.advance(seconds=30)
    started = await orch.tick()
    assert [r.workflow_id for r in started if r.workflow_id == "db-workout-completed"] == ["db-workout-completed"]
    outcomes = await orch.run_until_idle()

    [workout] = _of(outcomes, "db-workout-completed")
    assert workout.output == {"success": True, "session_id": "s0"}
    assert len(_of(outcomes, "notification-streak-milestone")) == 1
    assert "7-Day Streak!" in [n.title for n in services.notifier.sent]

    snapshot = await store.get_row("snapshot", "m1")
    assert snapshot["current_streak"] == 7
    assert snapshot["longest_streak"] == 7


@pytest.mark.asyncio
async def test_new_member_waits_for_profile_then_requests_embeddings(orch, store, embedder, clock):
    await _member(store, clock, "m9", "u9", name="Sam")
    [run] = await orch.send(
        "pg/circle_members.inserted", {"new": {"id": "m9", "circle_id": "c1", "user_id": "u9", "name": "Sam"}}
    )
    [outcome] = _of(await orch.run_until_idle(), "db-member-created")
    assert outcome.status == OutcomeStatus.SUSPENDED
    assert (await store.get_row("snapshot", "m9"))["snapshot_version"] == 1

    clock.advance(minutes=5)
    await orch.tick()
    outcomes = await orch.run_until_idle()
    [done] = _of(outcomes, "db-member-created")
    assert done.output == {"success": True, "member_id": "m9"}
    steps = await orch.repository.get_step_results(run.run_id)
    assert steps["trigger-embeddings"].output == [f"{run.run_id}:trigger-embeddings:0"]

    [embedded] = _of(outcomes, "ai-generate-embeddings")
    assert embedded.output["embeddings"] == ["profile"]
    assert embedder.texts == ["Member Profile: Sam"]


def _generate_request(job_id, user_id="u1"):
    return {
        "user_id": user_id,
        "circle_id": "c1",
        "member_ids": ["m1", "m2", "m3", "m4"],
        "job_id": job_id,
        "options": {"focus": "legs", "intensity": "moderate", "target_duration": 45},
    }


async def _circle(store, clock):
    genders = {"m1": "male", "m2": "male", "m3": "female", "m4": "female"}
    for member_id, gender in genders.items():
        await _member(store, clock, member_id, gender=gender)
    await store.put_row(
        "personal_record",
        "pr1",
        {"member_id": "m1", "exercise_name": "Back Squat", "value": 300, "unit": "lbs"},
        clock.now(),
    )


@pytest.mark.asyncio
async def test_background_generation_completes_job_and_reuses_cache(orch, store, services, generator, clock):
    await _circle(store, clock)
    for job_id in ("job-1", "job-2"):
        await store.create_job(GenerationJob(id=job_id, user_id="u1", params={}, created_at=clock.now(), updated_at=clock.now()))

    [run] = await orch.send("ai/generate-workout", _generate_request("job-1"))
    [outcome] = _of(await orch.run_until_idle(), "ai-generate-workout-background")
    assert outcome.status == OutcomeStatus.COMPLETED
    assert outcome.output["plan_id"] == "job-1"
    assert outcome.output["workout"]["exercise_count"] == 2

    job = await store.get_job("job-1")
    assert job.status == "complete"
    assert job.result["plan_id"] == "job-1"

    plan = await store.get_row("workout_plan", "job-1")
    squat = plan["exercises"][0]
    assert squat["name"] == "Back Squat"
    assert squat["rx_weights"]["rx_men"] == "195 lbs"  # 300 x 65%
    assert squat["rx_weights"]["rx_women"] == "155 lbs"

    await orch.send("ai/generate-workout", _generate_request("job-2"))
    [second] = _of(await orch.run_until_idle(), "ai-generate-workout-background")
    assert second.status == OutcomeStatus.COMPLETED
    assert len(generator.prompts) == 1
    steps = await orch.repository.get_step_results(second.run_id)
    assert steps["generate-workout"].output["cache_hit"]

    usage = await store.list_usage("u1")
    assert sorted(u.cache_hit for u in usage) == [False, True]
    assert (await store.get_quota("u1")).generation_count == 2
    await services.cache.flush()


@pytest.mark.asyncio
async def test_generation_over_quota_fails_job(orch, store, services, generator, clock, sink):
    await _circle(store, clock)
    await store.create_job(GenerationJob(id="job-9", user_id="u2", params={}, created_at=clock.now(), updated_at=clock.now()))
    await services.quotas.ensure("u2")
    for _ in range(5):
        await services.usage.track(UsageEvent(user_id="u2", endpoint="generate-workout", model="gpt-5.2"))

    await orch.send("ai/generate-workout", _generate_request("job-9", user_id="u2"))
    [outcome] = _of(await orch.run_until_idle(), "ai-generate-workout-background")

    assert outcome.status == OutcomeStatus.FAILED
    assert outcome.failure_kind is FailureKind.FATAL
    job = await store.get_job("job-9")
    assert job.status == "failed"
    assert "AI quota exceeded" in job.error
    assert generator.prompts == []
    assert sink.captured[0][1]["job_id"] == "job-9"


@pytest.mark.asyncio
async def test_milestones_for_goal(orch, store, clock):
    await _member(store, clock)
    await store.put_row(
        "goal",
        "g1",
        {"id": "g1", "member_id": "m1", "title": "Run 5k", "status": "active", "target_value": 5},
        clock.now(),
    )
    await orch.send("ai/generate-milestones", {"user_id": "u1", "member_id": "m1", "goal_id": "g1"})
    [outcome] = _of(await orch.run_until_idle(), "ai-generate-milestones")
    assert outcome.output == {"success": True, "results": [{"goal_id": "g1", "milestones": 3}], "total_milestones": 3}
    assert len((await store.get_row("milestones", "g1"))["milestones"]) == 3


@pytest.mark.asyncio
async def test_milestones_without_goals_finish_early(orch, store, clock):
    await _member(store, clock)
    await orch.send("ai/generate-milestones", {"user_id": "u1", "member_id": "m1"})
    [outcome] = _of(await orch.run_until_idle(), "ai-generate-milestones")
    assert outcome.output == {"success": True, "message": "No goals to generate milestones for"}


@pytest.mark.asyncio
async def test_subscription_created_syncs_plan_and_welcomes(orch, store, services):
    await orch.send("billing/subscription.created", {"user_id": "u1", "tier": "pro", "is_trialing": True})
    [outcome] = _of(await orch.run_until_idle(), "billing-subscription-created")
    assert outcome.output == {"user_id": "u1", "tier": "pro", "is_trialing": True}
    assert (await store.get_quota("u1")).plan == "pro"
    assert [n.title for n in services.notifier.sent] == ["Your pro trial has started"]


@pytest.mark.asyncio
async def test_cancellation_sends_winback_emails_on_schedule(orch, store, services, clock):
    await services.quotas.sync_limits("u1", "pro")
    [run] = await orch.send("billing/subscription.canceled", {"user_id": "u1", "previous_tier": "pro"})

    [first] = _of(await orch.run_until_idle(), "billing-subscription-canceled")
    assert first.status == OutcomeStatus.SUSPENDED
    assert (await store.get_quota("u1")).plan == "free"
    assert services.notifier.sent == []

    clock.advance(days=3)
    await orch.tick()
    [second] = _of(await orch.run_until_idle(), "billing-subscription-canceled")
    assert second.status == OutcomeStatus.SUSPENDED
    assert [n.title for n in services.notifier.sent] == ["We miss you"]

    clock.advance(days=11)
    await orch.tick()
    [third] = _of(await orch.run_until_idle(), "billing-subscription-canceled")
    assert third.status == OutcomeStatus.COMPLETED
    assert [n.title for n in services.notifier.sent] == ["We miss you", "Come back to pro"]
    assert services.notifier.sent[1].idempotency_key == f"{run.run_id}:send-winback-day14"


@pytest.mark.asyncio
async def test_nightly_retention_deletes_old_content(orch, store, clock):
    old = clock.now() - timedelta(days=100)
    await store.put_row("coach_message", "old", {"text": "hi"}, clock.now(), created_at=old)
    await store.put_row("coach_message", "new", {"text": "hey"}, clock.now())
    await store.put_row("message", "kept", {"text": "yo"}, clock.now(), created_at=old)

    clock.set(datetime(2026, 3, 3, 4, 0, tzinfo=timezone.utc))
    started = await orch.tick()
    assert "cron-data-retention" in [r.workflow_id for r in started]

    [outcome] = _of(await orch.run_until_idle(), "cron-data-retention")
    assert outcome.output["total_deleted"] == 1
    assert outcome.output["results"]["clean-coach-message"] == {"deleted": 1}
    assert await store.get_row("coach_message", "old") is None
    assert await store.get_row("message", "kept") is not None
    assert (await orch.repository.get_run(outcome.run_id)).status == RunStatus.COMPLETED



async def _profile(store, clock):
    await _member(store, clock, gender="female", date_of_birth="1990-06-15")
    await store.put_row(
        "goal", "g1", {"id": "g1", "member_id": "m1", "title": "Squat 300", "category": "strength", "status": "active"}, clock.now()
    )
    await store.put_row(
        "workout_session",
        "s1",
        {"id": "s1", "member_id": "m1", "name": "Leg Day", "status": "completed", "date": "2026-03-01", "rating": 5},
        clock.now(),
    )
    await store.put_row(
        "limitation", "l1", {"member_id": "m1", "type": "injury", "description": "Sore knee", "active": True}, clock.now()
    )


@pytest.mark.asyncio
async def test_member_embeddings_replace_old_rows_and_reuse_cache(orch, store, services, embedder, clock):
    await _profile(store, clock)
    await store.put_row("member_embedding", "m1:preferences", {"member_id": "m1", "type": "preferences"}, clock.now())
    request = {"user_id": "u1", "circle_id": "c1", "member_id": "m1"}

    await orch.send("ai/generate-embeddings", request)
    [first] = _of(await orch.run_until_idle(), "ai-generate-embeddings")
    assert first.status == OutcomeStatus.COMPLETED
    assert first.output["embeddings"] == ["profile", "goals", "workout_history", "limitations"]

    profile = await store.get_row("member_embedding", "m1:profile")
    assert profile["content"] == "Member Profile: M1, 35 years old, female"
    assert profile["embedding"] == [float(len(profile["content"])), 0.5]
    assert "Sore knee" in (await store.get_row("member_embedding", "m1:limitations"))["content"]
    assert await store.get_row("member_embedding", "m1:preferences") is None
    assert len(embedder.texts) == 4

    await orch.send("ai/generate-embeddings", request)
    [second] = _of(await orch.run_until_idle(), "ai-generate-embeddings")
    assert second.status == OutcomeStatus.COMPLETED
    assert len(embedder.texts) == 4

    usage = sorted(await store.list_usage("u1"), key=lambda u: u.cache_hit)
    assert [(u.endpoint, u.cache_hit) for u in usage] == [
        ("ai/generate-embeddings", False),
        ("ai/generate-embeddings", True),
    ]
    assert usage[0].input_tokens > 0
    assert usage[1].input_tokens == 0
    await services.cache.flush()


@pytest.mark.asyncio
async def test_embeddings_for_member_of_another_circle_fail_without_retry(orch, store, embedder, clock):
    await _member(store, clock)
    await orch.send("ai/generate-embeddings", {"user_id": "u1", "circle_id": "c2", "member_id": "m1"})
    [outcome] = _of(await orch.run_until_idle(), "ai-generate-embeddings")
    assert outcome.status == OutcomeStatus.FAILED
    assert outcome.failure_kind is FailureKind.FATAL
    assert embedder.texts == []


class SlowEmbedder(FakeEmbedder):
    def __init__(self):
        super().__init__()
        self.active = 0
        self.peak = 0

    async def embed(self, text):
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(0.2)
            return await super().embed(text)
        finally:
            self.active -= 1


@pytest.mark.asyncio
async def test_embedding_runs_respect_the_concurrency_limit(make_orchestrator, store, clock, config):
    embedder = SlowEmbedder()
    services = build_services(config, db=store, clock=clock, embedder=embedder)
    orch = make_orchestrator(default_workflows(), services=services)
    runs = []
    for i in range(6):
        await _member(store, clock, f"m{i}", f"u{i}")
        runs += await orch.send("ai/generate-embeddings", {"user_id": f"u{i}", "member_id": f"m{i}"})

    outcomes = await asyncio.gather(*(orch.execute(run.run_id) for run in runs))
    statuses = [o.status for o in outcomes]
    assert statuses.count(OutcomeStatus.COMPLETED) == 5
    assert statuses.count(OutcomeStatus.WAITING) == 1
    assert embedder.peak == 5

    await orch.run_until_idle()
    for run in runs:
        assert (await orch.repository.get_run(run.run_id)).status == RunStatus.COMPLETED
    assert len(embedder.texts) == 6


async def _finished_session(store, clock):
    await _member(store, clock)
    await store.put_row(
        "workout_session",
        "s1",
        {
            "id": "s1",
            "member_id": "m1",
            "name": "Leg Day",
            "status": "completed",
            "date": "2026-03-02",
            "rating": 5,
            "started_at": "2026-03-02T07:00:00+00:00",
            "ended_at": "2026-03-02T08:05:00+00:00",
            "exercises": [
                {
                    "name": "Back Squat",
                    "sets": [
                        {"completed": True, "actual_weight": 225, "actual_reps": 5},
                        {"completed": True, "actual_weight": 235, "actual_reps": 5},
                        {"completed": False, "actual_weight": 245, "actual_reps": 3},
                    ],
                }
            ],
        },
        clock.now(),
    )
    await store.put_row(
        "personal_record",
        "pr1",
        {"member_id": "m1", "session_id": "s1", "exercise_name": "Back Squat", "value": 235, "unit": "lbs", "rep_max": 5},
        clock.now(),
    )


@pytest.mark.asyncio
async def test_workout_analysis_saves_feedback_and_tracks_usage(orch, store, services, generator, clock):
    await _finished_session(store, clock)

    await orch.send("ai/analyze-workout", {"session_id": "s1", "member_id": "m1"})
    [outcome] = _of(await orch.run_until_idle(), "ai-analyze-workout")

    assert outcome.status == OutcomeStatus.COMPLETED
    assert outcome.output["analysis"]["volume_assessment"] == "Solid lower-body volume"
    [prompt] = generator.prompts
    assert "Back Squat: 2/3 sets, max 245lbs, avg 4 reps" in prompt
    assert "Duration: 65 minutes" in prompt
    assert "- Back Squat: 235 lbs (5RM)" in prompt

    session = await store.get_row("workout_session", "s1")
    assert session["ai_feedback"].startswith("New squat PR.")
    assert "Recovery: Sleep and stretch" in session["ai_feedback"]
    note = await store.get_row("context_note", "s1:ai_analysis")
    assert note["tags"] == ["ai_analysis", "post_workout"]

    [usage] = await store.list_usage("u1")
    assert usage.endpoint == "ai/analyze-workout"
    assert usage.details["feature"] == "session_summary"
    assert usage.input_tokens == 1200
    await services.cache.flush()


@pytest.mark.asyncio
async def test_analysis_of_missing_session_is_skipped(orch, generator):
    await orch.send("ai/analyze-workout", {"session_id": "nope", "member_id": "m1"})
    [outcome] = _of(await orch.run_until_idle(), "ai-analyze-workout")
    assert outcome.output == {"skipped": True, "reason": "Session not found"}
    assert generator.prompts == []


@pytest.mark.asyncio
async def test_weekly_reports_fan_out_to_active_members(orch, store, services, generator, clock):
    clock.set(datetime(2026, 3, 8, 20, 0, tzinfo=timezone.utc))
    await _member(store, clock, "m1", "u1")
    await _member(store, clock, "m2", "u2")
    await _member(store, clock, "m3", "u3")
    sessions = [("a", "m1", "2026-03-07", 5), ("b", "m1", "2026-03-02", 3), ("c", "m2", "2026-02-26", 4), ("d", "m3", "2026-02-10", 4)]
    for key, member_id, day, rating in sessions:
        await store.put_row(
            "workout_session", key, {"id": key, "member_id": member_id, "status": "completed", "date": day, "rating": rating}, clock.now()
        )
    await store.put_row("context_note", "n1", {"member_id": "m1", "mood": "energized", "energy_level": 4}, clock.now())

    started = await orch.tick()
    assert "cron-weekly-progress-reports" in [r.workflow_id for r in started]
    outcomes = await orch.run_until_idle()

    [cron] = _of(outcomes, "cron-weekly-progress-reports")
    assert cron.output == {"success": True, "reports_requested": 2}
    reports = {o.output.get("report_id"): o.output for o in _of(outcomes, "ai-weekly-progress-report")}
    assert reports[None] == {"skipped": True, "reason": "No workouts this week"}
    assert reports["m1:2026-03-08"]["success"] is True

    report = await store.get_row("progress_report", "m1:2026-03-08")
    assert report["summary"] == "Three strong sessions this week."
    assert report["recommendations"] == ["Add a mobility day"]
    assert report["metrics"] == {
        "workouts_completed": 2,
        "highly_rated": 1,
        "avg_energy": 4.0,
        "avg_mood": "energized",
        "prs_set": 0,
        "consistency_score": 29,
    }
    [prompt] = generator.prompts
    assert "- 2 workouts completed" in prompt

    [usage] = await store.list_usage("u1")
    assert usage.endpoint == "ai/weekly-progress-report"
    assert await store.list_usage("u2") == []
    await services.cache.flush()
