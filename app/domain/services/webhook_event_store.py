"""
Webhook Event Store - רשומות gmail_webhook_events ומכונת המצבים שלהן.

מעברי סטטוס נעשים ב-UPDATE מותנה בסטטוס הנוכחי, כך שמעבר לא חוקי
או מעבר מקבילי נדחים ב-InvalidEventTransitionError ולא דורסים זה את זה.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import InvalidEventTransitionError
from app.core.logging import get_logger
from app.db.database import utcnow
from app.db.models.webhook_event import WebhookEvent, WebhookEventStatus, can_transition

logger = get_logger(__name__)


@dataclass(frozen=True)
class EventStats:
    counts: dict[WebhookEventStatus, int]
    average_processing_time_ms: float

    @property
    def total(self) -> int:
        return sum(self.counts.values())


class WebhookEventStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def record_pending(
        self,
        *,
        account_id: int,
        notification_id: str,
        history_id: str,
        publish_time: datetime | None,
    ) -> int | None:
        """
        יצירת אירוע PENDING. מחזיר את ה-id שלו, או None אם notification_id כבר קיים.

        INSERT אופטימיסטי ב-savepoint - הפרת ייחודיות = כפילות.
        """
        event = WebhookEvent(
            account_id=account_id,
            notification_id=notification_id,
            history_id=history_id,
            publish_time=publish_time,
            status=WebhookEventStatus.PENDING,
            created_at=utcnow(),
        )
        try:
            async with self.db.begin_nested():
                self.db.add(event)
        except IntegrityError:
            logger.info(
                "Webhook event already recorded for notification",
                extra_data={"notification_id": notification_id, "account_id": account_id},
            )
            return None
        # commit מיידי - הרשומה צריכה לשרוד גם אם השלבים הבאים נכשלים
        event_id = event.id
        await self.db.commit()
        return event_id

    async def rollback(self) -> None:
        await self.db.rollback()

    async def get(self, event_id: int) -> WebhookEvent | None:
        result = await self.db.execute(select(WebhookEvent).where(WebhookEvent.id == event_id))
        return result.scalar_one_or_none()

    async def transition(
        self,
        event_id: int,
        target: WebhookEventStatus,
        **values,
    ) -> None:
        """מעבר סטטוס מוגן. ערכים נוספים (error, processing_time_ms...) נכתבים באותו UPDATE"""
        current = await self.db.scalar(
            select(WebhookEvent.status).where(WebhookEvent.id == event_id)
        )
        if current is None:
            raise InvalidEventTransitionError(event_id, "missing", target.value)
        current = WebhookEventStatus(current)
        if not can_transition(current, target):
            raise InvalidEventTransitionError(event_id, current.value, target.value)

        result = await self.db.execute(
            update(WebhookEvent)
            .where(WebhookEvent.id == event_id, WebhookEvent.status == current)
            .values(status=target, **values)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            raise InvalidEventTransitionError(event_id, current.value, target.value)
        await self.db.commit()

    async def mark_processed(self, event_id: int, processing_time_ms: int) -> None:
        await self.transition(
            event_id,
            WebhookEventStatus.PROCESSED,
            processing_time_ms=processing_time_ms,
            processed_at=utcnow(),
        )

    async def mark_failed(self, event_id: int, error: str, processing_time_ms: int | None = None) -> None:
        await self.transition(
            event_id,
            WebhookEventStatus.FAILED,
            error=error[:2000],
            processing_time_ms=processing_time_ms,
            processed_at=utcnow(),
        )

    async def mark_retried(self, event_id: int) -> None:
        await self.transition(event_id, WebhookEventStatus.RETRIED)

    async def list_failed_before(self, cutoff: datetime, limit: int = 500) -> list[WebhookEvent]:
        result = await self.db.execute(
            select(WebhookEvent)
            .where(
                WebhookEvent.status == WebhookEventStatus.FAILED,
                WebhookEvent.created_at < cutoff,
            )
            .order_by(WebhookEvent.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def stats_between(self, start: datetime, end: datetime) -> EventStats:
        """ספירה לפי סטטוס וממוצע זמן עיבוד לאירועים שנוצרו ב-[start, end)"""
        window = (WebhookEvent.created_at >= start, WebhookEvent.created_at < end)
        rows = await self.db.execute(
            select(WebhookEvent.status, func.count(WebhookEvent.id))
            .where(*window)
            .group_by(WebhookEvent.status)
        )
        counts = {status: 0 for status in WebhookEventStatus}
        for status, count in rows.all():
            counts[WebhookEventStatus(status)] = int(count)

        average = await self.db.scalar(
            select(func.avg(WebhookEvent.processing_time_ms)).where(
                *window,
                WebhookEvent.processing_time_ms.is_not(None),
            )
        )
        return EventStats(
            counts=counts,
            average_processing_time_ms=round(float(average), 2) if average is not None else 0.0,
        )
