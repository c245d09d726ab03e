"""Sliding-window rate limiting for mutation endpoints.

Each ``(actor_id, action_kind)`` pair keeps the timestamps of its accepted
requests inside the trailing window. A request is admitted while fewer than
``limit(action_kind)`` remain; otherwise the caller is told how long until
the oldest one ages out.
"""

import threading
import time
import uuid
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional

import redis

from app.core_settings import Settings, get_settings
from app.domain.errors import RateLimited
from shared.core import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after_ms: int = 0


class InMemoryRateLimitStore:
    """Per-process windows; lost on restart, which only makes limits looser."""

    def __init__(self):
        self._windows: Dict[str, Deque[int]] = defaultdict(deque)
        self._lock = threading.Lock()

    def hit(self, key: str, limit: int, window_ms: int, now_ms: int) -> RateLimitDecision:
        with self._lock:
            window = self._windows[key]
            cutoff = now_ms - window_ms
            while window and window[0] <= cutoff:
                window.popleft()

            if len(window) < limit:
                window.append(now_ms)
                return RateLimitDecision(allowed=True)

            if not window:
                # a zero limit closes the action entirely
                return RateLimitDecision(allowed=False, retry_after_ms=window_ms)
            retry_after = window[0] + window_ms - now_ms
            return RateLimitDecision(allowed=False, retry_after_ms=min(max(retry_after, 0), window_ms))

    def reset(self):
        with self._lock:
            self._windows.clear()


# Prune, count and record in one round trip so concurrent callers cannot
# both take the last slot.
SLIDING_WINDOW_LUA = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
if redis.call('ZCARD', key) < limit then
  redis.call('ZADD', key, now, ARGV[4])
  redis.call('PEXPIRE', key, window)
  return {1, 0}
end
local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
if oldest[2] == nil then
  return {0, window}
end
return {0, tonumber(oldest[2]) + window - now}
"""


class RedisRateLimitStore:
    """Windows shared by every replica, one sorted set per key."""

    def __init__(self, client: "redis.Redis"):
        self.client = client
        self._script = client.register_script(SLIDING_WINDOW_LUA)

    @classmethod
    def from_url(cls, url: str) -> "RedisRateLimitStore":
        return cls(redis.from_url(url, decode_responses=True))

    def hit(self, key: str, limit: int, window_ms: int, now_ms: int) -> RateLimitDecision:
        member = f"{now_ms}-{uuid.uuid4().hex}"
        allowed, retry_after = self._script(keys=[key], args=[now_ms, window_ms, limit, member])
        if int(allowed):
            return RateLimitDecision(allowed=True)
        return RateLimitDecision(allowed=False, retry_after_ms=min(max(int(retry_after), 0), window_ms))

    def reset(self):
        for key in self.client.scan_iter(match="ratelimit:*"):
            self.client.delete(key)


class RateLimiter:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        store=None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings or get_settings()
        self._fallback = InMemoryRateLimitStore()
        self.store = store or self._fallback
        self._clock = clock

    @property
    def window_ms(self) -> int:
        return self.settings.RATE_LIMIT_WINDOW_SECONDS * 1000

    def check(self, actor_id: str, action_kind: str) -> RateLimitDecision:
        key = f"ratelimit:{action_kind}:{actor_id}"
        limit = self.settings.rate_limit_for(action_kind)
        now_ms = int(self._clock() * 1000)
        try:
            return self.store.hit(key, limit, self.window_ms, now_ms)
        except redis.RedisError as e:
            logger.warning(f"Rate limit store unavailable, using in-process window: {e}")
            return self._fallback.hit(key, limit, self.window_ms, now_ms)

    def enforce(self, actor_id: str, action_kind: str) -> None:
        decision = self.check(actor_id, action_kind)
        if not decision.allowed:
            logger.info(
                f"Rate limit hit for {action_kind}",
                extra={"extra_fields": {"action_kind": action_kind, "retry_after_ms": decision.retry_after_ms}},
            )
            raise RateLimited(decision.retry_after_ms)

    def reset(self):
        self._fallback.reset()
        if self.store is not self._fallback:
            self.store.reset()


_limiter: Optional[RateLimiter] = None


def build_rate_limiter(settings: Optional[Settings] = None) -> RateLimiter:
    settings = settings or get_settings()
    if settings.RATE_LIMIT_BACKEND == "redis" and settings.REDIS_URL:
        return RateLimiter(settings, store=RedisRateLimitStore.from_url(settings.REDIS_URL))
    return RateLimiter(settings)


def get_rate_limiter() -> RateLimiter:
    global _limiter
    if _limiter is None:
        _limiter = build_rate_limiter()
    return _limiter


def set_rate_limiter(limiter: Optional[RateLimiter]):
    global _limiter
    _limiter = limiter
