"""Cooperative cancellation signals.

A ``CancellationSignal`` is a one-shot flag with a reason. Handlers read it
from ``ctx.signal`` to stop work early; nothing is forcibly interrupted.

The engine builds a small tree of signals per run::

    external signal ─┐
                     ├─ any() ─► run signal ─┐
    flow deadline ───┘                       ├─ any() ─► step signal (ctx.signal)
                          step deadline ─────┘

Examples:
    >>> signal = CancellationSignal()
    >>> _ = signal.add_callback(lambda reason: print("stopped:", reason))
    >>> signal.abort("user pressed ctrl-c")
    stopped: user pressed ctrl-c
    >>> signal.aborted
    True

    Deadline signal (needs a running event loop):

    >>> deadline = CancellationSignal.after(5.0)
    >>> combined = CancellationSignal.any(caller_signal, deadline)

Tags:
    cancellation, asyncio, cooperative, deadline, flume
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

from flume.core.errors import FlowCancelledError
from flume.core.logging import get_logger

logger = get_logger(__name__)

AbortCallback = Callable[[Any], None]


class CancellationSignal:
    """One-shot cancellation flag carrying a reason.

    Attributes:
        aborted: True once ``abort`` has been called
        reason: Whatever was passed to ``abort`` (often an exception)
    """

    def __init__(self) -> None:
        self.aborted = False
        self.reason: Any = None
        self._callbacks: list[AbortCallback] = []
        self._event: asyncio.Event | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._detach: list[Callable[[], None]] = []

    def __repr__(self) -> str:
        state = f"aborted, reason={self.reason!r}" if self.aborted else "active"
        return f"CancellationSignal({state})"

    def abort(self, reason: Any = None) -> None:
        """Abort the signal. Only the first call has any effect."""
        if self.aborted:
            return
        self.aborted = True
        self.reason = reason if reason is not None else "Operation aborted"
        if self._event is not None:
            self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback(self.reason)
            except Exception as e:
                logger.warning("signal.callback_failed", error=str(e))
        self.dispose()

    def raise_if_aborted(self) -> None:
        """Raise the abort reason if the signal was aborted.

        Exceptions are raised as they are. Any other reason is wrapped in a
        ``FlowCancelledError``.
        """
        if not self.aborted:
            return
        if isinstance(self.reason, BaseException):
            raise self.reason
        raise FlowCancelledError(str(self.reason))

    def add_callback(self, callback: AbortCallback) -> Callable[[], None]:
        """Call ``callback(reason)`` on abort, immediately if already aborted.

        Returns:
            A function removing the callback again.
        """
        if self.aborted:
            callback(self.reason)
            return lambda: None
        self._callbacks.append(callback)

        def remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return remove

    async def wait(self) -> Any:
        """Wait until the signal is aborted and return the reason."""
        if not self.aborted:
            if self._event is None:
                self._event = asyncio.Event()
            await self._event.wait()
        return self.reason

    def dispose(self) -> None:
        """Cancel a pending deadline timer and detach from parent signals."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        detach, self._detach = self._detach, []
        for remove in detach:
            remove()

    @classmethod
    def after(cls, seconds: float, reason: Any = None) -> CancellationSignal:
        """Signal that aborts itself ``seconds`` from now.

        Args:
            seconds: Delay before aborting
            reason: Abort reason; defaults to a builtin ``TimeoutError``
        """
        signal = cls()
        if reason is None:
            reason = TimeoutError(f"Deadline of {seconds}s exceeded")
        loop = asyncio.get_running_loop()
        signal._timer = loop.call_later(seconds, signal.abort, reason)
        return signal

    @classmethod
    def any(cls, *signals: CancellationSignal | None) -> CancellationSignal:
        """Signal that aborts as soon as any of ``signals`` aborts.

        ``None`` entries are ignored. The combined signal takes the reason of
        whichever input aborted first.
        """
        combined = cls()
        for signal in signals:
            if signal is None:
                continue
            if signal.aborted:
                combined.abort(signal.reason)
                break
            combined._detach.append(signal.add_callback(combined.abort))
        return combined


__all__ = ["CancellationSignal"]
