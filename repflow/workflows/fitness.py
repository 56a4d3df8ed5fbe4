"""Training math used inside workflow steps."""

from __future__ import annotations

import re
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Union

from pydantic import BaseModel, Field

from ..utils.clock import ensure_utc

STREAK_MILESTONES = (7, 14, 30, 50, 100, 365)

CHALLENGE_STREAK_MILESTONES = (7, 14, 21, 30)

# Groups larger than this get gender-averaged Rx weights instead of
# per-member prescriptions.
INDIVIDUAL_RX_THRESHOLD = 3

INTENSITY_PERCENTAGE = {
    "light": 0.55,
    "moderate": 0.65,
    "hard": 0.75,
    "max": 0.85,
}

# Standard Rx weights in lbs (men, women) used when nobody has a PR.
STANDARD_RX_WEIGHTS = {
    "back squat": (225, 155),
    "front squat": (185, 125),
    "overhead squat": (135, 95),
    "deadlift": (315, 225),
    "clean": (135, 95),
    "clean and jerk": (135, 95),
    "power clean": (135, 95),
    "snatch": (95, 65),
    "power snatch": (95, 65),
    "bench press": (185, 105),
    "overhead press": (115, 75),
    "push press": (115, 75),
    "thruster": (95, 65),
    "wall ball": (20, 14),
    "kettlebell swing": (53, 35),
    "dumbbell snatch": (50, 35),
    "sumo deadlift high pull": (75, 55),
    "barbell row": (135, 95),
    "hip thrust": (225, 135),
    "goblet squat": (53, 35),
    "dumbbell press": (50, 30),
    "dumbbell curl": (35, 20),
    "dumbbell row": (50, 30),
    "lunges": (135, 95),
    "bulgarian split squat": (95, 65),
}

RECOVERY_HOURS = {
    "chest": 48,
    "back": 48,
    "shoulders": 48,
    "biceps": 36,
    "triceps": 36,
    "quadriceps": 72,
    "hamstrings": 72,
    "glutes": 48,
    "calves": 36,
    "core": 24,
}


class PersonalRecord(BaseModel):
    exercise_name: str
    value: float
    unit: str = "lbs"
    rep_max: Optional[int] = None


class MemberPRs(BaseModel):
    id: str
    name: str = ""
    gender: Optional[str] = None
    personal_records: List[PersonalRecord] = Field(default_factory=list)


class RxWeights(BaseModel):
    rx_men: Optional[str] = None
    rx_women: Optional[str] = None
    calculation: str


class MuscleRecovery(BaseModel):
    status: str
    hours_since_worked: Optional[int] = None
    ready_to_train: bool


class Streak(BaseModel):
    current: int = 0
    longest: int = 0


def estimate_one_rep_max(weight: float, reps: int) -> float:
    """Epley estimate, reps capped at 10."""
    reps = min(reps, 10)
    if reps <= 1:
        return weight
    return weight * (1 + reps / 30)


def round_to_nearest_5(value: float) -> int:
    return int(5 * round(value / 5))


def normalize_exercise_name(name: str) -> str:
    return re.sub(r"[^a-z0-9 ]", "", name.lower().strip())


def find_pr(exercise_name: str, records: Sequence[PersonalRecord]) -> Optional[PersonalRecord]:
    """Exact name match first, then containment either way."""
    wanted = normalize_exercise_name(exercise_name)
    for pr in records:
        if normalize_exercise_name(pr.exercise_name) == wanted:
            return pr
    for pr in records:
        name = normalize_exercise_name(pr.exercise_name)
        if name and (name in wanted or wanted in name):
            return pr
    return None


def should_use_gender_rx(member_count: int) -> bool:
    return member_count > INDIVIDUAL_RX_THRESHOLD


def _average_one_rep_max(exercise_name: str, members: Iterable[MemberPRs]) -> Optional[float]:
    estimates = []
    for member in members:
        pr = find_pr(exercise_name, member.personal_records)
        if pr is not None:
            estimates.append(estimate_one_rep_max(pr.value, pr.rep_max or 1))
    if not estimates:
        return None
    return sum(estimates) / len(estimates)


def gender_rx(exercise_name: str, members: Sequence[MemberPRs], intensity: str = "moderate") -> RxWeights:
    """Working weights per gender from the group's averaged estimated 1RMs."""
    pct = INTENSITY_PERCENTAGE.get(intensity, 0.65)
    standard = STANDARD_RX_WEIGHTS.get(normalize_exercise_name(exercise_name))
    parts = []
    rx: Dict[str, Optional[str]] = {"male": None, "female": None}
    for gender, label, column in (("male", "Men", 0), ("female", "Women", 1)):
        average = _average_one_rep_max(exercise_name, [m for m in members if m.gender == gender])
        if average is not None:
            working = round_to_nearest_5(average * pct)
            rx[gender] = f"{working} lbs"
            parts.append(f"{label}: {round(average)} avg 1RM x {round(pct * 100)}% = {working} lbs")
        elif standard is not None:
            rx[gender] = f"{standard[column]} lbs"
            parts.append(f"{label}: Standard Rx {standard[column]} lbs (no PR data)")
        else:
            parts.append(f"{label}: No PR data or standard Rx available")
    return RxWeights(rx_men=rx["male"], rx_women=rx["female"], calculation=" | ".join(parts))


def all_rx_weights(
    exercise_names: Iterable[str], members: Sequence[MemberPRs], intensity: str = "moderate"
) -> Dict[str, RxWeights]:
    return {name: gender_rx(name, members, intensity) for name in exercise_names}


def muscle_recovery(
    activity: Iterable[Mapping[str, object]], now: datetime
) -> Dict[str, MuscleRecovery]:
    """Recovery state per muscle group.

    ``activity`` items carry ``date`` (datetime or ISO text) and
    ``muscle_groups``; a muscle is fatigued until 75% of its window has
    passed, then recovering until the window is over.
    """
    last_worked: Dict[str, datetime] = {}
    for item in activity:
        when = _as_datetime(item["date"])
        for muscle in item.get("muscle_groups") or ():
            key = str(muscle).lower()
            if key not in last_worked or when > last_worked[key]:
                last_worked[key] = when

    result: Dict[str, MuscleRecovery] = {}
    for muscle, required in RECOVERY_HOURS.items():
        worked = last_worked.get(muscle)
        if worked is None:
            result[muscle] = MuscleRecovery(status="ready", ready_to_train=True)
            continue
        hours = int((ensure_utc(now) - worked).total_seconds() // 3600)
        if hours >= required:
            status = "ready"
        elif hours >= required * 0.75:
            status = "recovering"
        else:
            status = "fatigued"
        result[muscle] = MuscleRecovery(
            status=status, hours_since_worked=hours, ready_to_train=hours >= required
        )
    return result


def calculate_streak(dates: Iterable[Union[str, date, datetime]], today: date) -> Streak:
    """Consecutive training days.

    The current streak counts back from today, or from yesterday when
    nothing was logged today yet.
    """
    days = sorted({_as_date(d) for d in dates}, reverse=True)
    if not days:
        return Streak()

    longest = run = 1
    for newer, older in zip(days, days[1:]):
        if newer - older == timedelta(days=1):
            run += 1
            longest = max(longest, run)
        else:
            run = 1

    current = 0
    if days[0] >= today - timedelta(days=1):
        current = 1
        for newer, older in zip(days, days[1:]):
            if newer - older != timedelta(days=1):
                break
            current += 1
    return Streak(current=current, longest=max(longest, current))


def _as_datetime(value: object) -> datetime:
    if isinstance(value, datetime):
        return ensure_utc(value)
    return ensure_utc(datetime.fromisoformat(str(value)))


def _as_date(value: Union[str, date, datetime]) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])
