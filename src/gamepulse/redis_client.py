"""Shared Redis client for the leaderboard caches.

Only the aggregators write to Redis: the all-time board is mirrored under
``leaderboard:endless:alltime`` and each open tournament under
``leaderboard:tournament:<id>``, both as sorted sets of user id to score.
The database stays authoritative; nothing in this package reads the keys back.
"""

import logging

import redis.asyncio as redis

logger = logging.getLogger(__name__)

_client: redis.Redis | None = None


async def init_redis(url: str, max_connections: int = 20) -> redis.Redis:
    """Create the worker-wide client. A second call returns the existing one."""
    global _client  # noqa: PLW0603
    if _client is not None:
        return _client
    _client = redis.from_url(  # type: ignore[no-untyped-call]
        url,
        decode_responses=True,
        max_connections=max_connections,
    )
    logger.info("Leaderboard cache client ready (pool of %d)", max_connections)
    return _client


async def close_redis() -> None:
    global _client  # noqa: PLW0603
    if _client is None:
        return
    await _client.aclose()
    _client = None


def get_redis() -> redis.Redis:
    """Client set up by the worker's startup hook."""
    if _client is None:
        msg = "Leaderboard cache client requested before init_redis()"
        raise RuntimeError(msg)
    return _client
