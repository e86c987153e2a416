"""
Structured error types for the flume pipeline runner.

Every failure a run can surface is a ``FlumeError``. Each error carries a
category, an explicit retry flag, an ``ErrorContext`` naming the flow and
step it belongs to, and the underlying cause when it wraps a foreign
exception. Callers can tell "bad input" (``ValidationError``) from "bad
dependency" (``MissingDependencyError``) from "slow downstream"
(``StepTimeoutError``) without parsing messages.

Architecture:
    ::

        ┌──────────────────────────────────────────────────────────────┐
        │                         FlumeError                           │
        │        (category, retryable, context, cause)                 │
        ├──────────────────────────────────────────────────────────────┤
        │                                                              │
        │  ValidationError      FlowDefinitionError   MergeConflictError│
        │  (VALIDATION)         (CONFIG)              (MERGE)           │
        │                                                              │
        │  FlowExecutionError                 StepTimeoutError          │
        │  (ORCHESTRATION)                    (TIMEOUT, TimeoutError)   │
        │     │                                                        │
        │  StepExecutionError  MissingDependencyError  FlowCancelledError│
        └──────────────────────────────────────────────────────────────┘

Retry semantics:
    ``ValidationError`` is never retried, whatever the step's retry policy
    says. Every other error is retried per the step's ``RetryPolicy`` and
    its ``should_retry`` predicate. The ``retryable`` flag is informational
    and is what ``is_retryable()`` reports to callers that drive their own
    retries.

Examples:
    >>> err = ValidationError.single("email", "Email is required")
    >>> err.field
    'email'
    >>> err.to_dict()["issues"][0]["message"]
    'Email is required'

    >>> err = StepTimeoutError("too slow", flow_name="checkout", step_name="charge", timeout=2.0)
    >>> isinstance(err, TimeoutError)
    True

Tags:
    error-handling, exception-hierarchy, retry-logic, error-context, flume
"""

from __future__ import annotations

import builtins
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing."""

    VALIDATION = "VALIDATION"  # Input rejected by a validate step
    CONFIG = "CONFIG"  # Malformed flow definition or policy
    ORCHESTRATION = "ORCHESTRATION"  # Step or flow execution failure
    DEPENDENCY = "DEPENDENCY"  # Required collaborator missing from deps
    TIMEOUT = "TIMEOUT"  # Flow or step deadline exceeded
    CANCELLED = "CANCELLED"  # External cancellation signal
    MERGE = "MERGE"  # Conflicting keys under error-on-conflict
    INTERNAL = "INTERNAL"  # Bugs, unexpected state


@dataclass
class ErrorContext:
    """
    Structured metadata attached to an error.

    Attributes:
        flow: Name of the flow where the error occurred
        step: Name of the step being executed
        correlation_id: Correlation identifier of the run
        metadata: Additional key-value pairs
    """

    flow: str | None = None
    step: str | None = None
    correlation_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result: dict[str, Any] = {}
        for key in ("flow", "step", "correlation_id"):
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class FlumeError(Exception):
    """
    Base exception for all flume errors.

    Subclasses set ``default_category`` and ``default_retryable`` to give
    their domain sensible defaults.

    Example:
        >>> err = FlumeError("boom").with_context(flow="signup", step="save")
        >>> err.context.step
        'save'
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> FlumeError:
        """
        Add context to this error (fluent API).

        Known fields are set only when still empty, so the innermost
        attribution wins when an error crosses several layers.
        """
        for key, value in kwargs.items():
            if value is None:
                continue
            if hasattr(self.context, key) and key != "metadata":
                if getattr(self.context, key) is None:
                    setattr(self.context, key, value)
            else:
                self.context.metadata.setdefault(key, value)
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = repr(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# VALIDATION ERRORS
# =============================================================================


@dataclass(frozen=True)
class ValidationIssue:
    """A single rejected field."""

    field: str
    message: str
    value: Any = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"field": self.field, "message": self.message}
        if self.value is not None:
            result["value"] = self.value
        return result


class ValidationError(FlumeError):
    """
    Input rejected by a validate step.

    Never retryable - the input must be fixed. The engine aborts the step
    on the first raise even when a retry policy is attached.

    ``issues`` accepts a list of ``ValidationIssue``, a single field name,
    or nothing (recorded as field ``"unknown"``).
    """

    default_category = ErrorCategory.VALIDATION
    default_retryable = False

    def __init__(
        self,
        message: str,
        issues: Iterable[ValidationIssue] | str | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        if isinstance(issues, str):
            self.issues: list[ValidationIssue] = [ValidationIssue(field=issues, message=message)]
        elif issues is not None:
            self.issues = list(issues)
        else:
            self.issues = [ValidationIssue(field="unknown", message=message)]

    @classmethod
    def single(cls, field: str, message: str, value: Any = None) -> ValidationError:
        """Create an error for one rejected field."""
        return cls(message, [ValidationIssue(field=field, message=message, value=value)])

    @classmethod
    def multiple(cls, issues: Iterable[ValidationIssue]) -> ValidationError:
        """Create an error summarising several rejected fields."""
        issues = list(issues)
        fields = ", ".join(issue.field for issue in issues)
        return cls(f"Validation failed: {fields}", issues)

    @property
    def field(self) -> str | None:
        """Field of the first issue."""
        return self.issues[0].field if self.issues else None

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["issues"] = [issue.to_dict() for issue in self.issues]
        return result


# =============================================================================
# DEFINITION ERRORS
# =============================================================================


class FlowDefinitionError(FlumeError):
    """A flow, step or policy is malformed. Raised at build time."""

    default_category = ErrorCategory.CONFIG
    default_retryable = False


class DuplicateStepError(FlowDefinitionError):
    """Two or more steps in one flow share a name."""

    def __init__(self, flow_name: str, duplicates: list[str]):
        self.flow_name = flow_name
        self.duplicates = duplicates
        names = ", ".join(duplicates)
        super().__init__(
            f"Flow '{flow_name}' has duplicate step names: {names}. "
            "Each step must have a unique name.",
            context=ErrorContext(flow=flow_name),
        )


# =============================================================================
# EXECUTION ERRORS
# =============================================================================


class FlowExecutionError(FlumeError):
    """A step or flow failed while running."""

    default_category = ErrorCategory.ORCHESTRATION
    default_retryable = False

    def __init__(
        self,
        message: str,
        flow_name: str | None = None,
        step_name: str | None = None,
        *,
        cause: BaseException | None = None,
        **kwargs: Any,
    ):
        context = kwargs.pop("context", None) or ErrorContext(flow=flow_name, step=step_name)
        super().__init__(message, context=context, cause=cause, **kwargs)

    @property
    def flow_name(self) -> str | None:
        return self.context.flow

    @property
    def step_name(self) -> str | None:
        return self.context.step


class StepExecutionError(FlowExecutionError):
    """Wraps a non-flume exception raised by a step handler."""

    def __init__(self, flow_name: str, step_name: str, cause: BaseException):
        super().__init__(
            f"Step '{step_name}' in flow '{flow_name}' failed: {cause}",
            flow_name,
            step_name,
            cause=cause,
        )


class MissingDependencyError(FlowExecutionError):
    """A step needs a collaborator the dependency bag does not expose."""

    default_category = ErrorCategory.DEPENDENCY

    def __init__(
        self,
        message: str,
        flow_name: str | None = None,
        step_name: str | None = None,
        *,
        capability: str,
    ):
        self.capability = capability
        super().__init__(message, flow_name, step_name)


class FlowCancelledError(FlowExecutionError):
    """The caller's cancellation signal fired before the run finished."""

    default_category = ErrorCategory.CANCELLED


class StepTimeoutError(FlumeError, builtins.TimeoutError):
    """
    A flow or step deadline was exceeded.

    Also a builtin ``TimeoutError`` so generic timeout handling catches it.

    Attributes:
        timeout: Configured limit in seconds
    """

    default_category = ErrorCategory.TIMEOUT
    default_retryable = True

    def __init__(
        self,
        message: str,
        flow_name: str | None = None,
        step_name: str | None = None,
        timeout: float | None = None,
    ):
        self.timeout = timeout
        super().__init__(message, context=ErrorContext(flow=flow_name, step=step_name))

    @property
    def flow_name(self) -> str | None:
        return self.context.flow

    @property
    def step_name(self) -> str | None:
        return self.context.step

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.timeout is not None:
            result["timeout"] = self.timeout
        return result


# =============================================================================
# MERGE ERRORS
# =============================================================================


class MergeConflictError(FlumeError):
    """Two partial results wrote the same key under error-on-conflict."""

    default_category = ErrorCategory.MERGE
    default_retryable = False

    def __init__(self, key: str, message: str | None = None):
        self.key = key
        super().__init__(message or f"Key conflict detected in merge: '{key}'")


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def is_retryable(error: BaseException) -> bool:
    """Check if an error is retryable."""
    if isinstance(error, FlumeError):
        return error.retryable
    return False


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "FlumeError",
    "ValidationIssue",
    "ValidationError",
    "FlowDefinitionError",
    "DuplicateStepError",
    "FlowExecutionError",
    "StepExecutionError",
    "MissingDependencyError",
    "FlowCancelledError",
    "StepTimeoutError",
    "MergeConflictError",
    "is_retryable",
]
