"""Environment-driven settings for flume.

``FlumeSettings`` holds the process-wide defaults a run falls back to when
the caller does not pass explicit options: deadlines, error policy and
logging. Values come from ``FLUME_*`` environment variables or a ``.env``
file.

Examples:
    >>> import os
    >>> os.environ["FLUME_STEP_TIMEOUT"] = "2.5"
    >>> get_settings.cache_clear()
    >>> get_settings().step_timeout
    2.5

Tags:
    settings, configuration, pydantic, environment, flume
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class FlumeSettings(BaseSettings):
    """Defaults for flow execution and logging.

    Fields
    ──────
    log_level                        : Structlog log level
    json_logs                        : JSON (True), console (False), auto (None)
    timeout                          : Flow deadline in seconds
    step_timeout                     : Default per-step deadline in seconds
    throw_on_error                   : Raise on failure instead of returning partial state
    throw_on_missing_database        : Missing ``db`` aborts transaction steps
    throw_on_missing_event_publisher : Missing ``event_publisher`` aborts event steps
    """

    model_config = SettingsConfigDict(
        env_prefix="FLUME_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    json_logs: bool | None = None

    # ── Deadlines ────────────────────────────────────────────────
    timeout: float | None = Field(default=None, gt=0)
    step_timeout: float | None = Field(default=None, gt=0)

    # ── Error policy ─────────────────────────────────────────────
    throw_on_error: bool = True
    throw_on_missing_database: bool = True
    throw_on_missing_event_publisher: bool = True


@lru_cache(maxsize=1)
def get_settings() -> FlumeSettings:
    """Return the cached process-wide settings."""
    return FlumeSettings()


__all__ = ["FlumeSettings", "get_settings"]
