"""
Sliding-window rate limiters for calls to the generation backend.

Two interchangeable implementations with the same check() contract:
  - SlidingWindowLimiter: in-memory, thread-safe
  - RedisSlidingWindowLimiter: Redis sorted sets, shared across processes

Members of the window are request timestamps. Entries older than the window
are trimmed before counting.
"""

import logging
import threading
import time
from typing import Dict, List, Optional, Tuple

from . import config

logger = logging.getLogger(__name__)

DEFAULT_KEY = "generation"


class SlidingWindowLimiter:
    """In-memory sliding-window limiter."""

    def __init__(self, max_requests: int, window_seconds: int, clock=time.time):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._request_log: Dict[str, List[float]] = {}

    def check(self, key: str = DEFAULT_KEY) -> Tuple[bool, int, int]:
        """
        Check and record a request for the given key.

        Returns:
            (allowed, remaining, retry_after_seconds)
        """
        now = self._clock()
        window_start = now - self.window_seconds

        with self._lock:
            timestamps = [ts for ts in self._request_log.get(key, []) if ts > window_start]

            if len(timestamps) >= self.max_requests:
                oldest = timestamps[0]
                retry_after = int(oldest + self.window_seconds - now) + 1
                self._request_log[key] = timestamps
                return False, 0, retry_after

            timestamps.append(now)
            self._request_log[key] = timestamps
            return True, self.max_requests - len(timestamps), 0

    def reset(self) -> None:
        with self._lock:
            self._request_log.clear()


class RedisSlidingWindowLimiter:
    """Sliding-window limiter keyed by `ratelimit:{key}` in Redis."""

    def __init__(self, redis_client, max_requests: int, window_seconds: int, clock=time.time):
        self.redis = redis_client
        self._clock = clock
        self.max_requests = max_requests
        self.window_seconds = window_seconds

    def check(self, key: str = DEFAULT_KEY) -> Tuple[bool, int, int]:
        now = self._clock()
        window_start = now - self.window_seconds
        redis_key = f"ratelimit:{key}"

        pipe = self.redis.pipeline(transaction=True)
        pipe.zremrangebyscore(redis_key, 0, window_start)
        pipe.zcard(redis_key)
        pipe.zrange(redis_key, 0, 0, withscores=True)
        results = pipe.execute()
        current_count = results[1]
        oldest_entries = results[2]

        if current_count >= self.max_requests:
            if oldest_entries:
                oldest_score = oldest_entries[0][1]
                retry_after = max(1, int(oldest_score + self.window_seconds - now) + 1)
            else:
                retry_after = self.window_seconds
            logger.warning(
                f"Generation rate limit reached for {key}: {current_count}/{self.max_requests}"
            )
            return False, 0, retry_after

        pipe = self.redis.pipeline(transaction=True)
        pipe.zadd(redis_key, {f"{now}": now})
        pipe.expire(redis_key, self.window_seconds + 60)
        pipe.execute()

        return True, self.max_requests - current_count - 1, 0


def build_generation_limiter(
    max_requests: int = config.GENERATION_MAX_REQUESTS,
    window_seconds: int = config.GENERATION_WINDOW_SECONDS,
    redis_url: str = config.REDIS_URL,
) -> Optional[object]:
    """
    Build the limiter used by the Gemini adapter.

    Returns None when pacing is disabled (max_requests <= 0). Uses Redis when
    REDIS_URL is set and reachable, else the in-memory limiter.
    """
    if max_requests <= 0:
        return None

    if redis_url:
        import redis

        client = redis.from_url(redis_url)
        try:
            client.ping()
            logger.info(f"Generation limiter using Redis ({max_requests}/{window_seconds}s)")
            return RedisSlidingWindowLimiter(client, max_requests, window_seconds)
        except redis.RedisError as e:
            logger.warning(f"Redis unreachable ({e}), falling back to in-memory limiter")

    logger.info(f"Generation limiter in memory ({max_requests}/{window_seconds}s)")
    return SlidingWindowLimiter(max_requests, window_seconds)
