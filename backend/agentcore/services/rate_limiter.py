from __future__ import annotations

import logging
import math

from agentcore.monitoring.metrics import RATE_LIMIT_REJECTIONS
from agentcore.services.errors import RateLimitExceeded
from agentcore.services.kv_store import KeyValueStore

logger = logging.getLogger(__name__)

_WINDOW_SECONDS = 60


class RateLimiter:
    """Fixed-window request limiter keyed by (user, model)."""

    def __init__(self, store: KeyValueStore, requests_per_minute: int = 60, enabled: bool = True) -> None:
        self.store = store
        self.requests_per_minute = requests_per_minute
        self.enabled = enabled

    @staticmethod
    def key_for(user_id, model_id) -> str:
        return f"rate_limit_user_{user_id}_model_{model_id}"

    def check(self, user_id, model_id, limit: int | None = None) -> int:
        """Count one request; return how many remain in the window or raise RateLimitExceeded."""
        if not self.enabled:
            return -1
        allowed = limit or self.requests_per_minute
        count, reset_in = self.store.incr(self.key_for(user_id, model_id), _WINDOW_SECONDS)
        if count > allowed:
            retry_after = max(1, math.ceil(reset_in))
            RATE_LIMIT_REJECTIONS.inc()
            logger.warning(
                "Rate limit exceeded",
                extra={"user_id": user_id, "retry_after": retry_after},
            )
            raise RateLimitExceeded(
                f"Rate limit of {allowed} requests/minute exceeded. Retry in {retry_after}s.",
                retry_after=retry_after,
            )
        return allowed - count
