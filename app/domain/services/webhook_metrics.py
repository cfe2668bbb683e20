"""
מדדי webhook יומיים ב-Redis.

hash אחד ליום: metrics:gmail:webhooks:<YYYY-MM-DD>
  total            - התראות שעובדו בהצלחה
  account:<id>     - התראות לכל חשבון
  processing_time  - סכום זמני העיבוד (ms)
"""
from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any

import redis.asyncio as aioredis

from app.core.config import settings
from app.core.logging import get_logger
from app.core.redis_client import RedisKeys

logger = get_logger(__name__)

_ACCOUNT_PREFIX = "account:"


class WebhookMetrics:
    def __init__(
        self,
        redis: aioredis.Redis,
        ttl_days: int = settings.WEBHOOK_METRICS_TTL_DAYS,
    ):
        self.redis = redis
        self.ttl_seconds = ttl_days * 24 * 60 * 60

    async def record(self, account_id: int, processing_time_ms: int, day: date | None = None) -> None:
        """כשל בכתיבת מדדים נרשם ללוג ולא מכשיל את עיבוד ההתראה"""
        day = day or datetime.now(timezone.utc).date()
        key = RedisKeys.webhook_metrics(day)
        try:
            await self.redis.hincrby(key, "total", 1)
            await self.redis.hincrby(key, f"{_ACCOUNT_PREFIX}{account_id}", 1)
            await self.redis.hincrby(key, "processing_time", int(processing_time_ms))
            await self.redis.expire(key, self.ttl_seconds)
        except Exception as exc:
            logger.warning(
                "Failed to record webhook metrics",
                extra_data={"account_id": account_id, "key": key, "error": str(exc)},
            )

    async def get(self, day: date | None = None) -> dict[str, Any]:
        day = day or datetime.now(timezone.utc).date()
        raw = await self.redis.hgetall(RedisKeys.webhook_metrics(day))

        total = int(raw.get("total", 0) or 0)
        processing_time = int(raw.get("processing_time", 0) or 0)
        accounts = sorted(
            (
                {"account_id": int(field[len(_ACCOUNT_PREFIX):]), "count": int(value)}
                for field, value in raw.items()
                if field.startswith(_ACCOUNT_PREFIX)
            ),
            key=lambda item: item["account_id"],
        )
        return {
            "date": day.isoformat(),
            "total": total,
            "average_processing_time_ms": round(processing_time / total, 2) if total else 0.0,
            "accounts": accounts,
        }
