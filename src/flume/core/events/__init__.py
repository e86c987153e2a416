"""Flow events published by event steps.

An event step's handler builds zero, one or many events. Each event is a
mapping with an ``eventType`` key plus arbitrary fields. Before it reaches
the publisher the engine stamps it with the run's ``correlationId``::

    {"eventType": "order.placed", "orderId": "o-1", "correlationId": "9f2c..."}

The key names are a wire contract shared with consumers outside Python, so
they keep their original camelCase spelling.

Modules
-------
memory      InMemoryEventPublisher -- channel subscriptions, single process
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from flume.core.events.memory import InMemoryEventPublisher

__all__ = [
    "EVENT_TYPE_KEY",
    "CORRELATION_ID_KEY",
    "FlowEvent",
    "InMemoryEventPublisher",
    "enrich_event",
    "normalize_events",
]

FlowEvent = Mapping[str, Any]

EVENT_TYPE_KEY = "eventType"
CORRELATION_ID_KEY = "correlationId"


def normalize_events(produced: Any) -> list[FlowEvent]:
    """Flatten a handler's return value into the events worth publishing.

    ``None`` yields nothing, a mapping yields itself, any other iterable
    (list, tuple, generator) yields its items. Strings and bytes are
    rejected. Entries that are empty or carry no ``eventType`` are dropped.
    """
    if produced is None:
        return []
    if isinstance(produced, Mapping):
        candidates: Iterable[Any] = [produced]
    elif isinstance(produced, Iterable) and not isinstance(produced, (str, bytes, bytearray)):
        candidates = produced
    else:
        raise TypeError(
            f"Event handlers must return a mapping, an iterable of mappings or None, "
            f"got {type(produced).__name__}"
        )
    return [
        event
        for event in candidates
        if isinstance(event, Mapping) and event.get(EVENT_TYPE_KEY)
    ]


def enrich_event(event: FlowEvent, correlation_id: str | None) -> dict[str, Any]:
    """Return a copy of ``event`` carrying the run's correlation id."""
    return {**event, CORRELATION_ID_KEY: correlation_id}
