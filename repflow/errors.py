"""Error taxonomy and the operator-facing error sink."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict, Optional, Protocol

logger = logging.getLogger(__name__)


class FailureKind(str, Enum):
    """Why a run ended in the failed state."""

    FATAL = "fatal"
    EXHAUSTED = "exhausted"


class RepflowError(Exception):
    """Base class for all repflow errors."""


class TransientError(RepflowError):
    """A failure expected to succeed if tried again later."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class FatalError(RepflowError):
    """A failure that will never succeed on retry."""


class UnknownEventError(FatalError):
    """Raised for events whose name has not been registered."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown event: {name}")
        self.name = name


class InvalidEventPayload(FatalError):
    """Raised when an event's data does not match its registered schema."""

    def __init__(self, name: str, detail: str) -> None:
        super().__init__(f"Invalid payload for {name}: {detail}")
        self.name = name
        self.detail = detail


class DuplicateWorkflowError(RepflowError):
    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"Workflow already registered: {workflow_id}")
        self.workflow_id = workflow_id


class WorkflowNotFound(RepflowError):
    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"Workflow not registered: {workflow_id}")
        self.workflow_id = workflow_id


def describe_error(error: BaseException) -> str:
    """Render an exception as ``Type: message`` for storage."""
    message = str(error)
    name = type(error).__name__
    return f"{name}: {message}" if message else name


class ErrorSink(Protocol):
    """Destination for terminal run failures."""

    def capture(self, error: BaseException, context: Dict[str, Any]) -> None:
        """Record ``error`` with its run context."""


class LoggingErrorSink:
    """Error sink that writes terminal failures to the log."""

    def __init__(self, log: Optional[logging.Logger] = None) -> None:
        self._logger = log or logger

    def capture(self, error: BaseException, context: Dict[str, Any]) -> None:
        tags = " ".join(f"{k}={v}" for k, v in context.items() if v is not None)
        self._logger.error(
            f"Run failed: {describe_error(error)} [{tags}]",
            exc_info=(type(error), error, error.__traceback__),
        )
