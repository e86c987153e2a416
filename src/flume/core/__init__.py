"""Flume Core -- errors, logging, settings and the dependency-bag contract.

Everything the execution engine needs from its surroundings lives here and
nothing here knows about steps or flows.

Architecture::

    errors.py          Structured error hierarchy (FlumeError, ValidationError)
    logging.py         structlog configuration + scoped LogContext
    settings.py        FlumeSettings (pydantic-settings, FLUME_* env vars)
    dependencies.py    Dependency bag capabilities (db, event_publisher)
    events/            Event normalization + InMemoryEventPublisher
"""

from flume.core.dependencies import (
    Dependencies,
    EventPublisher,
    InMemoryDatabase,
    TransactionalDatabase,
    get_capability,
)
from flume.core.errors import (
    DuplicateStepError,
    ErrorCategory,
    ErrorContext,
    FlowCancelledError,
    FlowDefinitionError,
    FlowExecutionError,
    FlumeError,
    MergeConflictError,
    MissingDependencyError,
    StepExecutionError,
    StepTimeoutError,
    ValidationError,
    ValidationIssue,
    is_retryable,
)
from flume.core.events import InMemoryEventPublisher
from flume.core.logging import LogContext, configure_logging, get_logger
from flume.core.settings import FlumeSettings, get_settings

__all__ = [
    # errors
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
    # logging
    "configure_logging",
    "get_logger",
    "LogContext",
    # settings
    "FlumeSettings",
    "get_settings",
    # dependencies
    "Dependencies",
    "EventPublisher",
    "TransactionalDatabase",
    "get_capability",
    "InMemoryDatabase",
    "InMemoryEventPublisher",
]
