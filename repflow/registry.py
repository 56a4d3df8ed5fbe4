"""Startup registry of workflow definitions."""

from __future__ import annotations

import logging
from typing import Dict, Iterable, Iterator, List

from .contracts import WorkflowDefinition
from .errors import DuplicateWorkflowError, RepflowError, WorkflowNotFound

logger = logging.getLogger(__name__)


class WorkflowRegistry:
    """Holds every workflow known to this process.

    Definitions are registered once at startup; after ``freeze`` the set is
    read-only.
    """

    def __init__(self, workflows: Iterable[WorkflowDefinition] = ()) -> None:
        self._workflows: Dict[str, WorkflowDefinition] = {}
        self._by_event: Dict[str, List[WorkflowDefinition]] = {}
        self._frozen = False
        for defn in workflows:
            self.register(defn)

    def register(self, defn: WorkflowDefinition) -> WorkflowDefinition:
        if self._frozen:
            raise RepflowError(f"Registry is frozen; cannot register {defn.id}")
        if defn.id in self._workflows:
            raise DuplicateWorkflowError(defn.id)
        self._workflows[defn.id] = defn
        self._by_event.setdefault(defn.event_name, []).append(defn)
        logger.debug(f"Registered workflow {defn.id} on {defn.event_name}")
        return defn

    def freeze(self) -> None:
        self._frozen = True

    def get(self, workflow_id: str) -> WorkflowDefinition:
        try:
            return self._workflows[workflow_id]
        except KeyError:
            raise WorkflowNotFound(workflow_id) from None

    def subscribers(self, event_name: str) -> List[WorkflowDefinition]:
        return list(self._by_event.get(event_name, []))

    def cron_workflows(self) -> List[WorkflowDefinition]:
        return [w for w in self._workflows.values() if w.cron is not None]

    def event_names(self) -> List[str]:
        return sorted(self._by_event)

    def __contains__(self, workflow_id: object) -> bool:
        return workflow_id in self._workflows

    def __iter__(self) -> Iterator[WorkflowDefinition]:
        return iter(self._workflows.values())

    def __len__(self) -> int:
        return len(self._workflows)
