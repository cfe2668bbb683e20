"""
Dedup Store - "set if absent + TTL" ב-Redis לכיווץ משלוחים כפולים של התראות push.

Pub/Sub מבטיח at-least-once, ולכן אותה התראה עלולה להגיע כמה פעמים.
המפתח notif:<notification_id> נרשם אטומית עם SET NX EX - רק הקורא הראשון
בחלון ה-TTL מקבל True ומעבד את ההתראה.
"""
import redis.asyncio as aioredis

from app.core.config import settings
from app.core.logging import get_logger
from app.core.redis_client import RedisKeys

logger = get_logger(__name__)


class NotificationDedupStore:
    """דה-דופליקציה של התראות לפי notification_id"""

    def __init__(
        self,
        redis: aioredis.Redis,
        ttl_seconds: int = settings.NOTIFICATION_DEDUP_TTL_SECONDS,
    ):
        self.redis = redis
        self.ttl_seconds = ttl_seconds

    async def claim(self, notification_id: str) -> bool:
        """
        רישום אטומי של ההתראה.

        Returns:
            True אם זו הפעם הראשונה בחלון ה-TTL, False אם כבר נראתה.
        """
        was_set = await self.redis.set(
            RedisKeys.notification(notification_id),
            "1",
            nx=True,
            ex=self.ttl_seconds,
        )
        return bool(was_set)

    async def release(self, notification_id: str) -> None:
        """
        שחרור המפתח - כשהעיבוד נכשל לפני שנרשם אירוע,
        כדי שהמשלוח החוזר של הספק לא ייחסם כ"כפול".
        """
        await self.redis.delete(RedisKeys.notification(notification_id))
        logger.info(
            "Released notification dedup key",
            extra_data={"notification_id": notification_id},
        )
