"""
Dependency שמרכיב את שירותי הסנכרון לבקשה אחת.

בבדיקות מחליפים אותו (app.dependency_overrides) בגרף שבנוי על
FakeRedis ו-FakeWorkQueue.
"""
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.redis_client import get_redis
from app.db.database import get_db
from app.domain.services.factory import SyncServices, build_services


async def get_sync_services(db: AsyncSession = Depends(get_db)) -> SyncServices:
    redis = await get_redis()
    return build_services(db, redis)
