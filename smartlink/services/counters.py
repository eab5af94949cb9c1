from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from typing import Optional

import redis.asyncio as redis

from smartlink.config import settings

logger = logging.getLogger(__name__)


def daily_stats_key(tenant_id: str, day: date) -> str:
    return f"tenant:{tenant_id}:stats:{day.isoformat()}"


class CounterStore:
    """Rolling per-tenant daily counters. Every write is an atomic hash increment."""

    def __init__(self, client: redis.Redis, *, ttl_seconds: int | None = None) -> None:
        self._redis = client
        self.ttl_seconds = ttl_seconds or settings.COUNTER_TTL_SECONDS

    @classmethod
    def from_settings(cls) -> Optional["CounterStore"]:
        if not settings.REDIS_URL:
            return None
        return cls(redis.from_url(settings.REDIS_URL))

    async def record_conversion(
        self,
        *,
        tenant_id: str,
        day: date,
        revenue: Decimal,
        is_subscriber: bool,
    ) -> None:
        key = daily_stats_key(tenant_id, day)
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hincrby(key, "conversions", 1)
            pipe.hincrbyfloat(key, "revenue", float(revenue))
            if is_subscriber:
                pipe.hincrby(key, "subscribers", 1)
            pipe.expire(key, self.ttl_seconds)
            await pipe.execute()
        logger.debug("counters.recorded", extra={"tenant_id": tenant_id, "key": key})

    async def read_daily(self, tenant_id: str, day: date) -> dict[str, str]:
        raw = await self._redis.hgetall(daily_stats_key(tenant_id, day))
        return {
            (k.decode() if isinstance(k, bytes) else k): (v.decode() if isinstance(v, bytes) else v)
            for k, v in raw.items()
        }

    async def close(self) -> None:
        await self._redis.aclose()
