import logging
from dataclasses import dataclass

import redis
from redis.exceptions import RedisError

from removal_engine.config import settings

logger = logging.getLogger(__name__)


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    retry_after: int


class RateLimiter:
    """Fixed-window counters in Redis, keyed ``rate:{action}:{subject}``.

    Used for process-wide quotas: daily outbound email volume and trigger
    throttling per caller. Per-broker send limits live in the database; see
    ``BrokerRateLimiter``. When Redis is unreachable every check is allowed.
    """

    def __init__(self, client: redis.Redis | None = None) -> None:
        self._client = client or redis.Redis.from_url(settings.redis_url, decode_responses=True)

    @staticmethod
    def key_for(subject: str, action: str) -> str:
        return f"rate:{action}:{subject}"

    def check_limit(self, subject: str, action: str, limit: int, window_seconds: int) -> RateLimitResult:
        """Count one use of ``action`` by ``subject`` and report whether it fits the window."""
        key = self.key_for(subject, action)
        try:
            with self._client.pipeline() as pipe:
                pipe.incr(key)
                pipe.ttl(key)
                used, ttl = pipe.execute()
            # New window, or a counter left without expiry by an interrupted call
            if ttl is None or ttl < 0:
                self._client.expire(key, window_seconds)
                ttl = window_seconds
        except RedisError as exc:
            logger.warning("Rate limiter unavailable, allowing %s for %s: %s", action, subject, exc)
            return RateLimitResult(allowed=True, remaining=limit, retry_after=0)

        return RateLimitResult(
            allowed=used <= limit,
            remaining=max(limit - used, 0),
            retry_after=max(ttl, 1),
        )


rate_limiter = RateLimiter()
