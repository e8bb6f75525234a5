"""Outcome classification shared by every reconciliation step.

Steps never sleep or loop on their own. They report ``ok``, ``retryable`` or
``terminal`` and leave scheduling to the service reconciler.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from azure.core.exceptions import (
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)

# Status codes the APIs use for throttling, conflicts with in-flight updates
# and server-side trouble
RETRYABLE_STATUS_CODES = frozenset({408, 409, 423, 425, 429})


class Condition(str, Enum):
    """Classification of a step outcome."""

    OK = "ok"
    RETRYABLE = "retryable"
    TERMINAL = "terminal"


@dataclass(frozen=True)
class StepResult:
    """Outcome of one reconciliation step."""

    condition: Condition
    message: str = ""
    # Hint for how long to wait before re-invoking; None means the default
    requeue_after: float | None = None

    @property
    def ok(self) -> bool:
        return self.condition == Condition.OK

    @classmethod
    def success(cls, message: str = "") -> StepResult:
        return cls(Condition.OK, message)

    @classmethod
    def retry(cls, message: str, requeue_after: float | None = None) -> StepResult:
        return cls(Condition.RETRYABLE, message, requeue_after)

    @classmethod
    def terminal(cls, message: str) -> StepResult:
        return cls(Condition.TERMINAL, message)


@dataclass(frozen=True)
class Result:
    """What the work queue should do with a resource after an invocation."""

    requeue: bool = False
    requeue_after: float | None = None

    @classmethod
    def done(cls) -> Result:
        return cls()

    @classmethod
    def now(cls) -> Result:
        return cls(requeue=True)

    @classmethod
    def after(cls, seconds: float) -> Result:
        return cls(requeue_after=seconds)


def classify_exception(error: BaseException) -> Condition:
    """Decide whether a failed external call is worth retrying."""
    if isinstance(error, TimeoutError):
        return Condition.RETRYABLE
    if isinstance(error, (ServiceRequestError, ServiceResponseError)):
        return Condition.RETRYABLE
    if isinstance(error, ResourceNotFoundError):
        return Condition.TERMINAL
    if isinstance(error, HttpResponseError):
        status = error.status_code
        if status is None or status >= 500 or status in RETRYABLE_STATUS_CODES:
            return Condition.RETRYABLE
        return Condition.TERMINAL
    return Condition.TERMINAL


def result_from_exception(action: str, error: BaseException) -> StepResult:
    """Wrap an exception raised during ``action`` as a step result."""
    message = f"{action}: {error}"
    if classify_exception(error) == Condition.RETRYABLE:
        return StepResult.retry(message)
    return StepResult.terminal(message)
