"""Per-downloader limits on how often a download is counted."""

from __future__ import annotations

import time

from redis.asyncio import Redis
import structlog

LOGGER = structlog.get_logger("edgecdn.downloads")


def downloader_key(project_id: str, ip: str) -> str:
    return f"{project_id}-{ip}"


class RedisDownloadLimiter:
    """Counts downloads per (project, ip) in Redis with a fixed expiry window."""

    def __init__(self, redis: Redis, limit: int, window_seconds: int, prefix: str = "edgecdn:downloads"):
        self._redis = redis
        self._limit = limit
        self._window_seconds = window_seconds
        self._prefix = prefix

    async def check(self, key: str) -> tuple[bool, int]:
        """
        Record one download for ``key``.

        Returns:
            (allowed, current_count) - allowed is False once the window's limit is exceeded
        """
        redis_key = f"{self._prefix}:{key}"
        try:
            current = await self._redis.incr(redis_key)
            if current == 1:
                await self._redis.expire(redis_key, self._window_seconds)
        except Exception as exc:  # noqa: BLE001
            # Fail open: a Redis outage must not stop counting entirely
            LOGGER.error("download_limiter_error", key=key, error=str(exc))
            return True, 0

        allowed = current <= self._limit
        if not allowed:
            LOGGER.info("download_limit_reached", key=key, current=current, limit=self._limit)
        return allowed, current

    async def reset(self, key: str) -> None:
        await self._redis.delete(f"{self._prefix}:{key}")


class InMemoryDownloadLimiter:
    """Per-process fallback used when no Redis is configured."""

    def __init__(self, limit: int, window_seconds: int):
        self._limit = limit
        self._window_seconds = window_seconds
        self._counters: dict[str, tuple[int, float]] = {}
        self._next_sweep = 0.0

    def _sweep(self, now: float) -> None:
        if now < self._next_sweep:
            return
        expired = [key for key, (_, expires_at) in self._counters.items() if now >= expires_at]
        for key in expired:
            del self._counters[key]
        self._next_sweep = now + self._window_seconds

    async def check(self, key: str) -> tuple[bool, int]:
        now = time.time()
        self._sweep(now)
        count, expires_at = self._counters.get(key, (0, now + self._window_seconds))
        if now >= expires_at:
            count, expires_at = 0, now + self._window_seconds
        count += 1
        self._counters[key] = (count, expires_at)

        allowed = count <= self._limit
        if not allowed:
            LOGGER.info("download_limit_reached", key=key, current=count, limit=self._limit)
        return allowed, count

    async def reset(self, key: str) -> None:
        self._counters.pop(key, None)
