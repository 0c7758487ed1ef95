"""
Task error taxonomy.

PERMANENT errors are never retried. DEPENDENCY errors mean a precondition
failed; they are not retried and their failure propagates to dependents.
TRANSIENT errors are everything else and are retried with backoff.
"""

from enum import Enum
from typing import Optional

import requests

from ..intents.state_machine import InvalidTransitionError


class ErrorType(str, Enum):
    TRANSIENT = "TRANSIENT"
    PERMANENT = "PERMANENT"
    DEPENDENCY = "DEPENDENCY"


TRANSIENT_PATTERNS = (
    "API rate limit",
    "Network timeout",
    "Service unavailable",
    "Invalid JSON response",
)

DEPENDENCY_PATTERNS = (
    "Page has no intent assignment",
    "Page has no semantic features",
    "Semantic features not ready",
)

PERMANENT_PATTERNS = (
    "Intent not found",
    "Page not found",
    "Merge validation failed",
)


class TaskError(Exception):
    """Base class for task failures that carry their own classification."""

    error_type = ErrorType.TRANSIENT


class TransientTaskError(TaskError):
    error_type = ErrorType.TRANSIENT


class PermanentTaskError(TaskError):
    error_type = ErrorType.PERMANENT


class DependencyTaskError(TaskError):
    error_type = ErrorType.DEPENDENCY


class SoftRequeue(Exception):
    """A dependency's output is not visible yet; retry from the back of the queue.

    Not a failure: the scheduler moves the task behind its peers and only
    turns it into a DEPENDENCY failure once the requeue budget is spent.
    """


def classify_error(error: BaseException) -> ErrorType:
    """Classify an exception raised by a task body."""
    if isinstance(error, TaskError):
        return error.error_type
    if isinstance(error, InvalidTransitionError):
        return ErrorType.PERMANENT
    if isinstance(error, (requests.Timeout, requests.ConnectionError)):
        return ErrorType.TRANSIENT
    return classify_message(str(error))


def classify_message(message: Optional[str]) -> ErrorType:
    message = message or ""
    if any(p in message for p in TRANSIENT_PATTERNS):
        return ErrorType.TRANSIENT
    if any(p in message for p in DEPENDENCY_PATTERNS):
        return ErrorType.DEPENDENCY
    if any(p in message for p in PERMANENT_PATTERNS):
        return ErrorType.PERMANENT
    return ErrorType.TRANSIENT
