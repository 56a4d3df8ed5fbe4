"""Core contracts: events, workflow definitions, runs and step results."""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Literal,
    Optional,
    Sequence,
    Tuple,
    Union,
)

from pydantic import BaseModel, Field, field_validator

from .constants import CRON_EVENT_PREFIX
from .errors import FailureKind
from .utils.clock import utcnow
from .utils.durations import Duration, parse_duration

if TYPE_CHECKING:
    from .execute import StepContext

logger = logging.getLogger(__name__)

_MISSING = object()


class Event(BaseModel):
    """A named payload that may start workflow runs."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    data: Dict[str, Any] = Field(default_factory=dict)
    ts: datetime = Field(default_factory=utcnow)

    def lookup(self, path: str, default: Any = None) -> Any:
        """Resolve a dotted path such as ``event.data.new.member_id``."""
        parts = path.split(".")
        if parts and parts[0] == "event":
            parts = parts[1:]
        current: Any = self.model_dump(mode="json")
        for part in parts:
            if isinstance(current, dict):
                current = current.get(part, _MISSING)
            else:
                current = _MISSING
            if current is _MISSING or current is None:
                return default
        return current


class CronTrigger(BaseModel):
    cron: str


class EventTrigger(BaseModel):
    event: str


Trigger = Union[CronTrigger, EventTrigger]


def _seconds(value: Any) -> float:
    return parse_duration(value)


class ConcurrencyPolicy(BaseModel):
    """At most ``limit`` runs of one workflow execute at the same time."""

    limit: int = Field(ge=1)


class DebouncePolicy(BaseModel):
    """Start only the last event seen for ``key`` once ``period`` passes quietly."""

    key: str
    period: float

    normalize_period = field_validator("period", mode="before")(_seconds)


class ThrottlePolicy(BaseModel):
    """Admit at most ``limit`` runs per ``key`` within a rolling ``period``."""

    key: str
    limit: int = Field(ge=1)
    period: float

    normalize_period = field_validator("period", mode="before")(_seconds)


class WorkflowPolicy(BaseModel):
    max_retries: int = Field(default=3, ge=0)
    concurrency: Optional[ConcurrencyPolicy] = None
    debounce: Optional[DebouncePolicy] = None
    throttle: Optional[ThrottlePolicy] = None


class StepKind(str, Enum):
    RUN = "run"
    SLEEP = "sleep"
    SEND_EVENT = "send_event"


StepFn = Callable[["StepContext"], Any]
Guard = Callable[["StepContext"], bool]
EventSpec = Union[Event, Tuple[str, Dict[str, Any]], Dict[str, Any]]


@dataclass(frozen=True)
class Step:
    """A named unit of work; the executor memoizes its result per run.

    Use the ``run``, ``sleep`` and ``send_event`` constructors rather than
    building instances directly.
    """

    name: str
    kind: StepKind
    fn: Optional[StepFn] = None
    duration: Optional[float] = None
    until: Optional[Callable[["StepContext"], datetime]] = None
    build: Optional[Callable[["StepContext"], Any]] = None
    when: Optional[Guard] = None

    @classmethod
    def run(cls, name: str, fn: StepFn, when: Optional[Guard] = None) -> "Step":
        return cls(name=name, kind=StepKind.RUN, fn=fn, when=when)

    @classmethod
    def sleep(
        cls,
        name: str,
        duration: Optional[Duration] = None,
        until: Optional[Callable[["StepContext"], datetime]] = None,
        when: Optional[Guard] = None,
    ) -> "Step":
        if (duration is None) == (until is None):
            raise ValueError("sleep step needs exactly one of duration or until")
        seconds = parse_duration(duration) if duration is not None else None
        return cls(name=name, kind=StepKind.SLEEP, duration=seconds, until=until, when=when)

    @classmethod
    def send_event(
        cls,
        name: str,
        build: Callable[["StepContext"], Union[EventSpec, Sequence[EventSpec], None]],
        when: Optional[Guard] = None,
    ) -> "Step":
        return cls(name=name, kind=StepKind.SEND_EVENT, build=build, when=when)


class Complete(BaseModel):
    """Returned from a step to finish the run early with ``output``."""

    output: Any = None


@dataclass(frozen=True)
class RunFailure:
    """Details handed to a workflow's ``on_failure`` hook."""

    run_id: str
    step_name: Optional[str]
    error: str
    failure_kind: FailureKind


@dataclass(frozen=True)
class WorkflowDefinition:
    """Declarative workflow: trigger, policy and ordered steps."""

    id: str
    name: str
    trigger: Trigger
    policy: WorkflowPolicy
    steps: Tuple[Step, ...]
    finish: Optional[Callable[["StepContext"], Any]] = None
    on_failure: Optional[Callable[["StepContext", RunFailure], Union[None, Awaitable[None]]]] = None
    description: str = ""

    def __post_init__(self) -> None:
        names = [s.name for s in self.steps]
        duplicates = {n for n in names if names.count(n) > 1}
        if duplicates:
            raise ValueError(f"Workflow {self.id} has duplicate step names: {sorted(duplicates)}")
        if not self.steps:
            raise ValueError(f"Workflow {self.id} has no steps")

    @property
    def event_name(self) -> str:
        if isinstance(self.trigger, CronTrigger):
            return f"{CRON_EVENT_PREFIX}{self.id}"
        return self.trigger.event

    @property
    def cron(self) -> Optional[str]:
        return self.trigger.cron if isinstance(self.trigger, CronTrigger) else None


def workflow(
    id: str,
    *,
    steps: Sequence[Step],
    name: Optional[str] = None,
    cron: Optional[str] = None,
    event: Optional[str] = None,
    retries: int = 3,
    concurrency: Optional[int] = None,
    debounce: Optional[DebouncePolicy] = None,
    throttle: Optional[ThrottlePolicy] = None,
    finish: Optional[Callable[["StepContext"], Any]] = None,
    on_failure: Optional[Callable[["StepContext", RunFailure], Any]] = None,
    description: str = "",
) -> WorkflowDefinition:
    """Build a :class:`WorkflowDefinition` from keyword arguments."""
    if (cron is None) == (event is None):
        raise ValueError("workflow needs exactly one of cron or event")
    trigger: Trigger = CronTrigger(cron=cron) if cron is not None else EventTrigger(event=event)
    policy = WorkflowPolicy(
        max_retries=retries,
        concurrency=ConcurrencyPolicy(limit=concurrency) if concurrency else None,
        debounce=debounce,
        throttle=throttle,
    )
    return WorkflowDefinition(
        id=id,
        name=name or id.replace("-", " ").title(),
        trigger=trigger,
        policy=policy,
        steps=tuple(steps),
        finish=finish,
        on_failure=on_failure,
        description=description,
    )


class RunStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.FAILED})


class RunRecord(BaseModel):
    """Persisted state of one run of a workflow for one event."""

    run_id: str
    workflow_id: str
    event: Event
    status: RunStatus = RunStatus.QUEUED
    attempt: int = 0
    wake_at: Optional[datetime] = None
    dispatched_at: Optional[datetime] = None
    output: Any = None
    error: Optional[str] = None
    failure_kind: Optional[FailureKind] = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class StepStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SLEEPING = "sleeping"


class StepResultRecord(BaseModel):
    """Memoized outcome of one named step within a run."""

    run_id: str
    step_name: str
    status: StepStatus
    output: Any = None
    error: Optional[str] = None
    failures: int = 0
    completes_run: bool = False
    wake_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


def run_id_for(workflow_id: str, event_id: str) -> str:
    """Deterministic run id so a re-delivered event never creates a second run."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"repflow:{workflow_id}:{event_id}"))


class RunMessage(BaseModel):
    """Transport message telling a worker that a run may make progress."""

    run_id: str
    workflow_id: str
    reason: Literal["start", "wake", "slot", "redeliver"] = "start"
    sent_at: datetime = Field(default_factory=utcnow)

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "RunMessage":
        return cls.model_validate(json.loads(data))


class OutcomeStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SUSPENDED = "suspended"
    WAITING = "waiting"
    SKIPPED = "skipped"


class RunOutcome(BaseModel):
    """What a single ``StepExecutor.execute`` call achieved."""

    run_id: str
    workflow_id: Optional[str] = None
    status: OutcomeStatus
    output: Any = None
    error: Optional[str] = None
    failure_kind: Optional[FailureKind] = None
    wake_at: Optional[datetime] = None
    steps_executed: List[str] = Field(default_factory=list)
