"""Upload authorization — signed-in callers only, non-admins limited per hour.

In-memory fixed window per caller: the first upload opens a window, and once
`limit` uploads land inside it further ones are refused until it resets.
State lives in this process only.
"""

import math
import os
import threading
import time
from typing import Callable, Optional
from pydantic import BaseModel
from loguru import logger

from config.errors import AuthError, RateLimitError
from config.schemas import Caller

UPLOAD_RATE_LIMIT = int(os.getenv("UPLOAD_RATE_LIMIT", "10"))
WINDOW_SEC = 60 * 60


class RateLimitResult(BaseModel):
    allowed: bool
    remaining: int
    reset_time: float
    retry_after: Optional[int] = None


class RateLimiter:
    def __init__(self, limit: int = UPLOAD_RATE_LIMIT, window_sec: float = WINDOW_SEC,
                 clock: Callable[[], float] = time.time):
        self.limit = limit
        self.window_sec = window_sec
        self._clock = clock
        self._entries: dict[str, tuple[int, float]] = {}
        self._lock = threading.Lock()

    def hit(self, key: str) -> RateLimitResult:
        """Count one request for key and report whether it is allowed."""
        now = self._clock()
        with self._lock:
            self._evict_expired(now)
            count, reset_time = self._entries.get(key, (0, now + self.window_sec))

            if count >= self.limit:
                return RateLimitResult(
                    allowed=False, remaining=0, reset_time=reset_time,
                    retry_after=math.ceil(reset_time - now),
                )

            count += 1
            self._entries[key] = (count, reset_time)
            return RateLimitResult(allowed=True, remaining=self.limit - count, reset_time=reset_time)

    def status(self, key: str) -> RateLimitResult:
        """Current standing for key without counting a request."""
        now = self._clock()
        with self._lock:
            count, reset_time = self._entries.get(key, (0, now + self.window_sec))
        if now > reset_time:
            count, reset_time = 0, now + self.window_sec
        retry_after = math.ceil(reset_time - now) if count >= self.limit else None
        return RateLimitResult(
            allowed=count < self.limit,
            remaining=max(0, self.limit - count),
            reset_time=reset_time,
            retry_after=retry_after,
        )

    def reset(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def _evict_expired(self, now: float) -> None:
        expired = [k for k, (_, reset_time) in self._entries.items() if now > reset_time]
        for k in expired:
            del self._entries[k]


def format_retry_message(retry_after: int) -> str:
    minutes = math.ceil(retry_after / 60)
    return f"Upload limit reached. You can upload again in {minutes} minute{'s' if minutes != 1 else ''}."


class UploadAuthorizer:
    """Authorizer collaborator: requires a caller, rate-limits non-admins."""

    def __init__(self, limiter: RateLimiter | None = None):
        self.limiter = limiter or RateLimiter()

    def check(self, caller: Caller | None) -> None:
        if caller is None or not caller.id:
            raise AuthError("Unauthorized")
        if caller.is_admin:
            return

        result = self.limiter.hit(caller.id)
        if not result.allowed:
            logger.warning(f"Upload rate limit hit for caller {caller.id} (retry in {result.retry_after}s)")
            raise RateLimitError(format_retry_message(result.retry_after), retry_after=result.retry_after)
