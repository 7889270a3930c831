"""Fixed-window request rate limiting backed by the database."""

import logging
import math
import time
from datetime import datetime, timezone

from app.config import RateLimitPolicy, get_settings
from app.db import TraceStore, trace_store
from app.errors import RateLimitError

logger = logging.getLogger(__name__)


class RateLimiter:
    """Counts requests per user and endpoint in fixed time windows."""

    def __init__(self, policy: RateLimitPolicy | None = None, store: TraceStore | None = None):
        self.policy = policy or get_settings().rate_limit
        self.store = store or trace_store

    def window_start(self, now: float | None = None) -> str:
        """ISO start of the window containing `now` (epoch seconds)."""
        now = time.time() if now is None else now
        window = self.policy.window_seconds
        start = math.floor(now / window) * window
        return datetime.fromtimestamp(start, tz=timezone.utc).isoformat()

    async def check(self, user_id: str, endpoint: str) -> int:
        """Count one request and return the remaining allowance.

        Raises:
            RateLimitError: If the window's allowance is exhausted
        """
        count = await self.store.increment_rate_counter(user_id, endpoint, self.window_start())
        if count > self.policy.max_requests:
            logger.warning(f"Rate limit exceeded for user {user_id} on {endpoint} ({count})")
            raise RateLimitError(
                "Rate limit exceeded",
                retry_after=self.policy.window_seconds,
            )
        return self.policy.max_requests - count
