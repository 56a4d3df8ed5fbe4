"""The platform's own workflows."""

from typing import List

from ..contracts import WorkflowDefinition
from .billing import billing_workflows, plan_for_tier
from .changes import change_workflows
from .coaching import coaching_workflows
from .fitness import (
    calculate_streak,
    estimate_one_rep_max,
    gender_rx,
    muscle_recovery,
    should_use_gender_rx,
)
from .generation import generation_workflows
from .maintenance import maintenance_workflows
from .members import create_notification, update_member_snapshot, update_snapshots


def default_workflows() -> List[WorkflowDefinition]:
    """Every workflow the platform registers at startup."""
    return [
        *maintenance_workflows(),
        *change_workflows(),
        *generation_workflows(),
        *coaching_workflows(),
        *billing_workflows(),
    ]


__all__ = [
    "billing_workflows",
    "calculate_streak",
    "change_workflows",
    "coaching_workflows",
    "create_notification",
    "default_workflows",
    "estimate_one_rep_max",
    "gender_rx",
    "generation_workflows",
    "maintenance_workflows",
    "muscle_recovery",
    "plan_for_tier",
    "should_use_gender_rx",
    "update_member_snapshot",
    "update_snapshots",
]
