"""Dependency bag capabilities.

A run receives a caller-owned dependency bag. The engine never constructs,
pools or disposes anything in it; it only looks up two optional
capabilities by presence:

- ``db``: a ``TransactionalDatabase`` used by transaction steps
- ``event_publisher``: an ``EventPublisher`` used by event steps

Any object works as a bag (attribute lookup) and so does a plain mapping
(key lookup). ``Dependencies`` is a convenience dataclass to subclass::

    @dataclass
    class CheckoutDeps(Dependencies):
        payments: PaymentGateway | None = None

    deps = CheckoutDeps(db=engine, event_publisher=bus, payments=gateway)
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol, TypeVar, runtime_checkable

T = TypeVar("T")

DB_CAPABILITY = "db"
PUBLISHER_CAPABILITY = "event_publisher"


@runtime_checkable
class TransactionalDatabase(Protocol):
    """Wraps a unit of work in commit/rollback semantics.

    ``transaction`` calls ``fn(tx)``, awaits it, commits on success and
    rolls back on error. It may itself be sync or async.
    """

    def transaction(self, fn: Callable[[Any], Awaitable[T]]) -> Awaitable[T] | T: ...


@runtime_checkable
class EventPublisher(Protocol):
    """Publishes one event to a named channel. May be sync or async."""

    def publish(self, channel: str, event: Mapping[str, Any]) -> Awaitable[None] | None: ...


@dataclass
class Dependencies:
    """Base dependency bag with the two optional engine capabilities."""

    db: TransactionalDatabase | None = None
    event_publisher: EventPublisher | None = None


def get_capability(deps: Any, name: str) -> Any:
    """Return capability ``name`` from ``deps``, or ``None`` when absent."""
    if deps is None:
        return None
    if isinstance(deps, Mapping):
        return deps.get(name)
    return getattr(deps, name, None)


# =============================================================================
# In-memory database
# =============================================================================


class InMemoryTransaction:
    """Unit of work handed to a transaction step as ``tx``.

    Writes are buffered and only become visible in the database on commit.
    """

    def __init__(self, database: InMemoryDatabase):
        self._database = database
        self.pending: list[tuple[str, dict[str, Any]]] = []

    def insert(self, table: str, row: Mapping[str, Any]) -> None:
        self.pending.append((table, dict(row)))

    def rows(self, table: str) -> list[dict[str, Any]]:
        """Committed rows plus this transaction's pending rows."""
        return self._database.rows(table) + [row for t, row in self.pending if t == table]


class InMemoryDatabase:
    """``TransactionalDatabase`` keeping tables as lists of dicts.

    Commits on success, discards pending writes and re-raises on error.

    Example::

        db = InMemoryDatabase()

        async def save(ctx, tx):
            tx.insert("orders", {"id": ctx.input["order_id"]})
            return {"saved": True}

        await runner.execute("orders", [Step.transaction("save", save)], deps=Dependencies(db=db))
        assert db.rows("orders") == [{"id": "o-1"}]
    """

    def __init__(self) -> None:
        self.tables: dict[str, list[dict[str, Any]]] = {}
        self.commits = 0
        self.rollbacks = 0

    async def transaction(self, fn: Callable[[InMemoryTransaction], Awaitable[T]]) -> T:
        tx = InMemoryTransaction(self)
        try:
            result = await fn(tx)
        except BaseException:
            self.rollbacks += 1
            raise
        for table, row in tx.pending:
            self.tables.setdefault(table, []).append(row)
        self.commits += 1
        return result

    def rows(self, table: str) -> list[dict[str, Any]]:
        return list(self.tables.get(table, []))


__all__ = [
    "DB_CAPABILITY",
    "PUBLISHER_CAPABILITY",
    "Dependencies",
    "EventPublisher",
    "InMemoryDatabase",
    "InMemoryTransaction",
    "TransactionalDatabase",
    "get_capability",
]
