"""Typed event registry and the payload schemas of the platform's events.

Every event name the router accepts is registered here with a pydantic
model. Unknown names and payloads that do not validate are rejected at the
router boundary, before any run is created.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Generic, Iterator, List, Literal, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .constants import CRON_EVENT_PREFIX
from .contracts import Event
from .errors import InvalidEventPayload, UnknownEventError

logger = logging.getLogger(__name__)

RowT = TypeVar("RowT", bound=BaseModel)
PayloadT = TypeVar("PayloadT", bound=BaseModel)


class Payload(BaseModel):
    """Base for event payloads; unknown keys are kept."""

    model_config = ConfigDict(extra="allow")


class Row(BaseModel):
    model_config = ConfigDict(extra="allow")


class ChangePayload(BaseModel, Generic[RowT]):
    """Database change: the row before and after (``None`` on insert/delete)."""

    new: Optional[RowT] = None
    old: Optional[RowT] = None


class GoalRow(Row):
    id: str
    member_id: str
    title: str = ""
    status: str = "active"
    target_value: Optional[float] = None
    current_value: Optional[float] = None


class WorkoutSessionRow(Row):
    id: str
    member_id: str
    name: str = ""
    status: str = "planned"
    date: Optional[str] = None


class CircleMemberRow(Row):
    id: str
    circle_id: str
    user_id: Optional[str] = None
    name: str = ""


class PersonalRecordRow(Row):
    id: str
    member_id: str
    exercise_id: str
    value: float
    unit: str = "lbs"
    rep_max: Optional[int] = None


class ChallengeParticipantRow(Row):
    id: str
    challenge_id: str
    user_id: str
    member_id: Optional[str] = None
    current_streak: int = 0
    current_day: int = 0
    status: str = "active"


class CronTick(Payload):
    scheduled_at: Optional[str] = None


class MemberSnapshotUpdate(Payload):
    member_id: str


class BatchSnapshotUpdate(Payload):
    member_ids: List[str]


class GenerateWorkout(Payload):
    user_id: str
    circle_id: str
    member_ids: List[str]
    job_id: Optional[str] = None
    options: Dict[str, Any] = Field(default_factory=dict)


class GenerateMilestones(Payload):
    user_id: str
    member_id: str
    circle_id: Optional[str] = None
    goal_id: Optional[str] = None


class GenerateEmbeddings(Payload):
    user_id: str
    member_id: str
    circle_id: Optional[str] = None


class AnalyzeWorkout(Payload):
    session_id: str
    member_id: str


class WeeklyProgressReport(Payload):
    member_id: str
    period_end: str


class GoalAchieved(Payload):
    user_id: str
    member_id: str
    goal_id: str
    goal_title: str = ""


class StreakMilestone(Payload):
    user_id: str
    member_id: str
    streak_days: int


class SubscriptionCreated(Payload):
    user_id: str
    tier: str
    interval: str = "month"
    is_trialing: bool = False
    trial_end: Optional[str] = None


class SubscriptionCanceled(Payload):
    user_id: str
    previous_tier: str
    canceled_at: Optional[str] = None


class PlanChanged(Payload):
    user_id: str
    previous_tier: str
    new_tier: str
    interval: str = "month"


class TrialEnding(Payload):
    user_id: str
    trial_end: Optional[str] = None


class TrialConverted(Payload):
    user_id: str
    tier: str


class PaymentFailed(Payload):
    user_id: str
    invoice_id: str
    attempt_count: int = 1


class PaymentActionRequired(Payload):
    user_id: str
    invoice_id: str
    hosted_invoice_url: Optional[str] = None


class EventRegistry:
    """Maps event names to payload models."""

    def __init__(self) -> None:
        self._schemas: Dict[str, Type[BaseModel]] = {}

    def register(self, name: str, model: Type[BaseModel] = Payload) -> Type[BaseModel]:
        existing = self._schemas.get(name)
        if existing is not None and existing is not model:
            raise ValueError(f"Event {name} already registered with {existing.__name__}")
        self._schemas[name] = model
        return model

    def __contains__(self, name: object) -> bool:
        return name in self._schemas

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._schemas))

    def schema(self, name: str) -> Type[BaseModel]:
        try:
            return self._schemas[name]
        except KeyError:
            raise UnknownEventError(name) from None

    def parse(self, event: Event, model: Optional[Type[PayloadT]] = None) -> PayloadT:
        """Validate ``event.data`` and return it as a model instance."""
        schema = model or self.schema(event.name)
        try:
            return schema.model_validate(event.data)
        except ValidationError as exc:
            raise InvalidEventPayload(event.name, str(exc)) from exc

    def validate(self, event: Event) -> Event:
        """Return ``event`` with data normalized through its schema."""
        payload = self.parse(event)
        data = payload.model_dump(mode="json")
        return event.model_copy(update={"data": data})


def cron_event_name(workflow_id: str) -> str:
    return f"{CRON_EVENT_PREFIX}{workflow_id}"


ChangeOp = Literal["inserted", "updated", "deleted"]


def change_event_name(table: str, op: ChangeOp) -> str:
    return f"pg/{table}.{op}"


def default_event_registry() -> EventRegistry:
    """Registry with every event the platform emits or consumes."""
    registry = EventRegistry()
    changes = {
        "goals": GoalRow,
        "workout_sessions": WorkoutSessionRow,
        "circle_members": CircleMemberRow,
        "personal_records": PersonalRecordRow,
        "challenge_participants": ChallengeParticipantRow,
    }
    for table, row in changes.items():
        for op in ("inserted", "updated", "deleted"):
            registry.register(change_event_name(table, op), ChangePayload[row])

    registry.register("member/snapshot-update", MemberSnapshotUpdate)
    registry.register("member/batch-snapshot-update", BatchSnapshotUpdate)
    registry.register("ai/generate-workout", GenerateWorkout)
    registry.register("ai/generate-milestones", GenerateMilestones)
    registry.register("ai/generate-embeddings", GenerateEmbeddings)
    registry.register("ai/analyze-workout", AnalyzeWorkout)
    registry.register("ai/weekly-progress-report", WeeklyProgressReport)
    registry.register("notification/goal-achieved", GoalAchieved)
    registry.register("notification/streak-milestone", StreakMilestone)
    registry.register("billing/subscription.created", SubscriptionCreated)
    registry.register("billing/subscription.canceled", SubscriptionCanceled)
    registry.register("billing/plan.changed", PlanChanged)
    registry.register("billing/trial.ending", TrialEnding)
    registry.register("billing/trial.converted", TrialConverted)
    registry.register("billing/payment.failed", PaymentFailed)
    registry.register("billing/payment.action_required", PaymentActionRequired)
    return registry
