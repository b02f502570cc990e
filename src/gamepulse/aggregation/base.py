"""Shared result type and cache writer for aggregators."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import redis.asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


@dataclass
class AggregationResult:
    """Outcome of one aggregator cycle."""

    processed: int = 0
    applied: int = 0
    failed: int = 0
    failed_ids: list[str] = field(default_factory=list)
    rows_written: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "applied": self.applied,
            "failed": self.failed,
            "rows_written": self.rows_written,
        }


async def write_sorted_set(
    redis_client: aioredis.Redis | None,
    key: str,
    members: dict[str, float],
    ttl_seconds: int,
) -> bool:
    """Replace a Redis sorted set in one pipeline.

    The cache is a read accelerator only; a Redis outage is logged and the
    database stays authoritative.
    """
    if redis_client is None:
        return False
    try:
        pipe = redis_client.pipeline()
        pipe.delete(key)
        if members:
            pipe.zadd(key, members)
        pipe.expire(key, ttl_seconds)
        await pipe.execute()
    except RedisError:
        logger.warning("Cache refresh failed for %s", key, exc_info=True)
        return False
    return True
