"""Rate limiting.

`limiter` guards routes by client address (slowapi). `AttemptLimiter`
throttles keyed attempts inside services, such as logins per ip+email,
on a moving window.
"""

from __future__ import annotations

import os

from limits import RateLimitItemPerMinute
from limits.storage import MemoryStorage
from limits.strategies import MovingWindowRateLimiter
from slowapi import Limiter
from slowapi.util import get_remote_address

RATE_LIMIT_ENABLED = os.getenv("RATE_LIMIT_ENABLED", "true").lower() in ("1", "true", "yes")

limiter = Limiter(key_func=get_remote_address, enabled=RATE_LIMIT_ENABLED)


class AttemptLimiter:
    def __init__(self, max_attempts: int, window_minutes: int, enabled: bool = True):
        self.item = RateLimitItemPerMinute(max_attempts, window_minutes)
        self.storage = MemoryStorage()
        self.strategy = MovingWindowRateLimiter(self.storage)
        self.enabled = enabled

    def hit(self, key: str) -> bool:
        """Record an attempt; False once the window is exhausted."""
        if not self.enabled:
            return True
        return self.strategy.hit(self.item, key)
