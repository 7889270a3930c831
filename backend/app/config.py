"""Runtime configuration loaded from environment variables."""

import os
from functools import lru_cache

from pydantic import BaseModel


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return int(value)


class TracePolicy(BaseModel):
    """Age thresholds (seconds) for the trace cleanup sweeps.

    - stale: a running trace for the same entry prompt older than this is failed
      before a new trace is started.
    - conflict: when a new trace collides with a running one older than this,
      the running one is force-cleaned and the insert retried once.
    - orphan: running traces older than this are failed by the orphan sweep.
    """

    stale_seconds: int = 120
    conflict_seconds: int = 30
    orphan_seconds: int = 1800


class RateLimitPolicy(BaseModel):
    """Fixed-window request limit per user and endpoint."""

    max_requests: int = 60
    window_seconds: int = 60


class Settings(BaseModel):
    """Process-wide settings."""

    database_path: str = "./data/workbench.db"
    openai_base_url: str = "https://api.openai.com/v1"
    openai_webhook_secret: str | None = None
    trace_policy: TracePolicy = TracePolicy()
    rate_limit: RateLimitPolicy = RateLimitPolicy()
    pending_orphan_seconds: int = 7200
    pending_retention_days: int = 30
    heartbeat_seconds: int = 10
    generation_timeout_seconds: int = 300
    aux_timeout_seconds: int = 30
    maintenance_interval_seconds: int = 300

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables, falling back to defaults."""
        return cls(
            database_path=os.getenv("DATABASE_PATH", "./data/workbench.db"),
            openai_base_url=os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1").rstrip("/"),
            openai_webhook_secret=os.getenv("OPENAI_WEBHOOK_SECRET") or None,
            trace_policy=TracePolicy(
                stale_seconds=_env_int("TRACE_STALE_SECONDS", 120),
                conflict_seconds=_env_int("TRACE_CONFLICT_SECONDS", 30),
                orphan_seconds=_env_int("TRACE_ORPHAN_SECONDS", 1800),
            ),
            rate_limit=RateLimitPolicy(
                max_requests=_env_int("RATE_LIMIT_MAX_REQUESTS", 60),
                window_seconds=_env_int("RATE_LIMIT_WINDOW_SECONDS", 60),
            ),
            pending_orphan_seconds=_env_int("PENDING_ORPHAN_SECONDS", 7200),
            heartbeat_seconds=_env_int("RUN_HEARTBEAT_SECONDS", 10),
            generation_timeout_seconds=_env_int("GENERATION_TIMEOUT_SECONDS", 300),
            aux_timeout_seconds=_env_int("AUX_TIMEOUT_SECONDS", 30),
            maintenance_interval_seconds=_env_int("MAINTENANCE_INTERVAL_SECONDS", 300),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the cached process settings."""
    return Settings.from_env()
