"""
In-memory event publisher.

Single-process runs and test suites need a publisher that delivers events
immediately without external infrastructure. Every published event is also
kept in ``published`` so tests can assert on what a flow emitted.

Tags:
    flume, events, in-memory, asyncio, testing, single-node
"""

from __future__ import annotations

import asyncio
import inspect
import uuid
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any

from flume.core.logging import get_logger

__all__ = ["InMemoryEventPublisher"]

logger = get_logger(__name__)

ChannelHandler = Callable[[str, Mapping[str, Any]], Awaitable[None] | None]


@dataclass
class Subscription:
    """Internal subscription record."""

    id: str
    channel: str
    handler: ChannelHandler

    def matches(self, channel: str) -> bool:
        if self.channel == "*":
            return True
        if self.channel.endswith(".*"):
            return channel.startswith(self.channel[:-2] + ".")
        return self.channel == channel


class InMemoryEventPublisher:
    """In-process publisher satisfying the ``EventPublisher`` capability.

    Subscribers are called concurrently. A failing subscriber is logged and
    does not stop delivery to the others or fail the publish.

    Example::

        bus = InMemoryEventPublisher()

        async def audit(channel, event):
            print(channel, event["eventType"])

        bus.subscribe("orders", audit)
        await bus.publish("orders", {"eventType": "order.placed"})
        assert bus.events_for("orders")[0]["eventType"] == "order.placed"
    """

    def __init__(self) -> None:
        self._subscriptions: dict[str, Subscription] = {}
        self._closed = False
        self.published: list[tuple[str, dict[str, Any]]] = []

    async def publish(self, channel: str, event: Mapping[str, Any]) -> None:
        """Record ``event`` and deliver it to every matching subscriber."""
        if self._closed:
            raise RuntimeError("Event publisher is closed")

        self.published.append((channel, dict(event)))

        handlers = [sub for sub in self._subscriptions.values() if sub.matches(channel)]
        if not handlers:
            return

        async def safe_call(sub: Subscription) -> None:
            try:
                outcome = sub.handler(channel, event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.warning(
                    "event_handler_error",
                    subscription_id=sub.id,
                    channel=channel,
                    event_type=event.get("eventType"),
                    error=str(e),
                )

        await asyncio.gather(*(safe_call(sub) for sub in handlers))

    def subscribe(self, channel: str, handler: ChannelHandler) -> str:
        """Subscribe to a channel (``*`` and ``prefix.*`` patterns allowed).

        Returns:
            Subscription ID
        """
        sub_id = f"sub_{uuid.uuid4().hex[:12]}"
        self._subscriptions[sub_id] = Subscription(id=sub_id, channel=channel, handler=handler)
        return sub_id

    def unsubscribe(self, subscription_id: str) -> None:
        """Remove a subscription."""
        self._subscriptions.pop(subscription_id, None)

    def close(self) -> None:
        """Mark publisher as closed and clear subscriptions."""
        self._closed = True
        self._subscriptions.clear()

    def events_for(self, channel: str) -> list[dict[str, Any]]:
        """Events published to ``channel``, in publish order."""
        return [event for ch, event in self.published if ch == channel]

    @property
    def subscription_count(self) -> int:
        """Number of active subscriptions."""
        return len(self._subscriptions)
