"""
Error taxonomy shared by every pipeline stage.

``ErrorKind`` tags a ChatResponse so callers can tell a resolution miss from
a transient failure from unsafe input.  Only the conditions that must stop
a request are raised as exceptions; misses and empty results are returned
as tagged responses.
"""
from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    RESOLUTION_MISS = "resolution_miss"
    UNSAFE_QUERY = "unsafe_query"
    EXECUTION_FAILURE = "execution_failure"
    PLANNING_FAILURE = "planning_failure"
    EMPTY_RESULT = "empty_result"
    TIMEOUT = "timeout"


class CopilotError(Exception):
    """Base class for all copilot errors."""

    kind: ErrorKind = ErrorKind.EXECUTION_FAILURE
    retryable: bool = False

    def to_dict(self) -> dict:
        return {"error_kind": self.kind.value, "detail": str(self), "retryable": self.retryable}


class UnsafeQueryError(CopilotError):
    """A statement failed the read-only gate. Never downgraded."""

    kind = ErrorKind.UNSAFE_QUERY

    def __init__(self, violations: list[str], keyword: str | None = None):
        self.violations = violations
        self.keyword = keyword
        super().__init__("Unsafe query rejected: " + " ".join(violations))


class ExecutionError(CopilotError):
    """Transport failure or in-band error object from the query executor."""

    kind = ErrorKind.EXECUTION_FAILURE

    def __init__(self, message: str, code: str | None = None):
        self.message = message
        self.code = code
        super().__init__(f"{message} (code={code})" if code else message)


class QueryTimeoutError(ExecutionError):
    """An executor or LLM call exceeded its time budget."""

    kind = ErrorKind.TIMEOUT
    retryable = True


class PlanningError(CopilotError):
    """A query plan could not be built or parsed."""

    kind = ErrorKind.PLANNING_FAILURE
