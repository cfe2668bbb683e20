"""
Redis Client - async singleton + מפתחות משותפים.

Redis משמש ל: dedup של התראות push, מדדי webhook יומיים,
רישום jobs חוזרים (polling) ונעילות של המתזמן.
"""
import asyncio
from datetime import date
from urllib.parse import urlparse

import redis.asyncio as aioredis

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None
_init_lock = asyncio.Lock()


class RedisKeys:
    """שמות המפתחות ב-Redis - מקור אחד לכל השירותים"""

    RECURRING_JOBS = "jobs:recurring"

    @staticmethod
    def notification(notification_id: str) -> str:
        return f"notif:{notification_id}"

    @staticmethod
    def webhook_metrics(day: date) -> str:
        return f"metrics:gmail:webhooks:{day.isoformat()}"

    @staticmethod
    def scheduler_lock(task_name: str) -> str:
        return f"lock:scheduler:{task_name}"


class RedisScripts:
    """סקריפטי Lua לפעולות check-then-act שחייבות להיות אטומיות"""

    # DEL רק אם ה-lock עדיין מחזיק את ה-token שלנו
    RELEASE_LOCK = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("DEL", KEYS[1])
end
return 0
"""

    # HSET רק לשדה שעדיין קיים - job חוזר שבוטל לא חוזר לחיים
    HSET_IF_EXISTS = """
if redis.call("HEXISTS", KEYS[1], ARGV[1]) == 1 then
    redis.call("HSET", KEYS[1], ARGV[1], ARGV[2])
    return 1
end
return 0
"""


def _mask_redis_url(url: str) -> str:
    """מסתיר סיסמה מ-REDIS_URL ללוגים (redis://:****@host:6379)."""
    parsed = urlparse(url)
    if parsed.password:
        return url.replace(f":{parsed.password}@", ":****@")
    return url


async def get_redis() -> aioredis.Redis:
    """מחזיר Redis client singleton (async, connection pool)."""
    global _redis_client
    if _redis_client is not None:
        return _redis_client

    async with _init_lock:
        if _redis_client is not None:
            return _redis_client

        client = aioredis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            health_check_interval=30,
        )
        await client.ping()
        _redis_client = client
        logger.info("Redis client initialized", extra_data={
            "url": _mask_redis_url(settings.REDIS_URL),
        })
    return _redis_client


async def close_redis() -> None:
    """סגירת חיבור Redis - לקרוא ב-app shutdown ובסוף כל task של Celery."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")
