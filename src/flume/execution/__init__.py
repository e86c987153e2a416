"""Execution primitives used by the flow runner.

Modules
-------
retry         RetryContext + BackoffSchedule -- capped multiplicative backoff
timeout       Deadline + race_with_timeout -- timer race without cancellation
cancellation  CancellationSignal -- cooperative abort flag with a reason
"""

from flume.execution.cancellation import CancellationSignal
from flume.execution.retry import BackoffSchedule, RetryContext
from flume.execution.timeout import Deadline, TimeoutExpired, race_with_timeout

__all__ = [
    "BackoffSchedule",
    "CancellationSignal",
    "Deadline",
    "RetryContext",
    "TimeoutExpired",
    "race_with_timeout",
]
