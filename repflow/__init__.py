"""repflow: Durable workflow orchestration for a fitness coaching platform."""

from .contracts import Complete, Event, RunOutcome, RunRecord, Step, WorkflowDefinition, workflow
from .dispatch import EventRouter
from .errors import FatalError, TransientError
from .execute import StepContext, StepExecutor
from .persistence import get_repository
from .registry import WorkflowRegistry
from .runtime import Orchestrator, Services, build_orchestrator
from .scheduler import CronScheduler
from .transports import get_transport

__version__ = "0.1.0"
__all__ = [
    "Complete",
    "CronScheduler",
    "Event",
    "EventRouter",
    "FatalError",
    "Orchestrator",
    "RunOutcome",
    "RunRecord",
    "Services",
    "Step",
    "StepContext",
    "StepExecutor",
    "TransientError",
    "WorkflowDefinition",
    "WorkflowRegistry",
    "build_orchestrator",
    "get_repository",
    "get_transport",
    "workflow",
]
