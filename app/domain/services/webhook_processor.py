"""
Webhook Processor - התראת push אחת -> עבודת סנכרון.

סדר הבדיקות:
1. dedup ב-Redis (notif:<id>, NX, שעה) - התראה שנראתה כבר היא no-op
2. חשבון לפי כתובת - לא קיים / לא פעיל: לוג וחזרה
3. טריות - cursor ההתראה <= cursor החשבון: ישנה, לוג וחזרה
4. רישום WebhookEvent במצב PENDING
5. job של sync-history בעדיפות 1 (3 ניסיונות, backoff מ-2 שניות)
6. PROCESSED + זמן עיבוד, או FAILED + שגיאה ו-WebhookProcessingError

בטוח לקריאה מקבילית וכפולה: ה-dedup וה-notification_id הייחודי מבטיחים
עיבוד אפקטיבי אחד להתראה.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from app.core.config import settings
from app.core.exceptions import WebhookProcessingError
from app.core.logging import get_logger, log_async_operation
from app.domain.services.account_store import AccountStore, is_cursor_newer
from app.domain.services.dedup_store import NotificationDedupStore
from app.domain.services.webhook_event_store import WebhookEventStore
from app.domain.services.webhook_metrics import WebhookMetrics
from app.domain.services.work_queue import (
    PRIORITY_WEBHOOK,
    JobOptions,
    SyncHistoryJob,
    WorkQueue,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class PushNotification:
    """התראה מפוענחת מתוך מעטפת Pub/Sub"""
    account_address: str
    cursor: str
    notification_id: str
    publish_time: datetime | None = None


class WebhookOutcome(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    UNKNOWN_ACCOUNT = "unknown_account"
    INACTIVE_ACCOUNT = "inactive_account"
    STALE = "stale"


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class WebhookProcessor:
    def __init__(
        self,
        *,
        accounts: AccountStore,
        events: WebhookEventStore,
        dedup: NotificationDedupStore,
        queue: WorkQueue,
        metrics: WebhookMetrics | None = None,
    ):
        self.accounts = accounts
        self.events = events
        self.dedup = dedup
        self.queue = queue
        self.metrics = metrics

    def _sync_job_options(self) -> JobOptions:
        return JobOptions(
            priority=PRIORITY_WEBHOOK,
            attempts=settings.WEBHOOK_SYNC_ATTEMPTS,
            backoff_seconds=settings.WEBHOOK_SYNC_BACKOFF_SECONDS,
        )

    @log_async_operation("process_gmail_notification")
    async def process(self, notification: PushNotification) -> WebhookOutcome:
        started = time.monotonic()
        log_context = {
            "notification_id": notification.notification_id,
            "history_id": notification.cursor,
        }

        try:
            claimed = await self.dedup.claim(notification.notification_id)
        except Exception as exc:
            logger.error(
                "Dedup store unavailable",
                extra_data={**log_context, "error": str(exc)},
                exc_info=True,
            )
            raise WebhookProcessingError(notification.notification_id, str(exc)) from exc

        if not claimed:
            logger.info("Duplicate notification ignored", extra_data=log_context)
            return WebhookOutcome.DUPLICATE

        account_id: int | None = None
        event_id: int | None = None
        try:
            account = await self.accounts.find_by_address(notification.account_address)
            if account is None:
                logger.warning("Notification for unknown account", extra_data=log_context)
                return WebhookOutcome.UNKNOWN_ACCOUNT

            account_id = account.id
            current_cursor = account.history_id
            log_context["account_id"] = account_id

            if not account.is_active:
                logger.info("Notification for inactive account ignored", extra_data=log_context)
                return WebhookOutcome.INACTIVE_ACCOUNT

            if not is_cursor_newer(notification.cursor, current_cursor):
                logger.info(
                    "Stale notification ignored",
                    extra_data={**log_context, "account_history_id": current_cursor},
                )
                return WebhookOutcome.STALE

            event_id = await self.events.record_pending(
                account_id=account_id,
                notification_id=notification.notification_id,
                history_id=notification.cursor,
                publish_time=notification.publish_time,
            )
            if event_id is None:
                return WebhookOutcome.DUPLICATE

            await self.queue.enqueue(
                SyncHistoryJob(
                    account_id=account_id,
                    start_cursor=current_cursor,
                    end_cursor=notification.cursor,
                    trigger="webhook",
                ),
                self._sync_job_options(),
            )

            processing_time_ms = _elapsed_ms(started)
            await self.events.mark_processed(event_id, processing_time_ms)
        except Exception as exc:
            await self._handle_failure(notification, account_id, event_id, exc, _elapsed_ms(started))
            raise WebhookProcessingError(
                notification.notification_id,
                str(exc),
                event_recorded=event_id is not None,
                account_id=account_id,
            ) from exc

        if self.metrics is not None:
            await self.metrics.record(account_id, processing_time_ms)

        logger.info(
            "Notification processed",
            extra_data={**log_context, "processing_time_ms": processing_time_ms},
        )
        return WebhookOutcome.PROCESSED

    async def _handle_failure(
        self,
        notification: PushNotification,
        account_id: int | None,
        event_id: int | None,
        exc: Exception,
        processing_time_ms: int,
    ) -> None:
        logger.error(
            "Notification processing failed",
            extra_data={
                "notification_id": notification.notification_id,
                "account_id": account_id,
                "event_id": event_id,
                "error": str(exc),
            },
            exc_info=True,
        )
        # ה-session עלול להיות במצב כושל אחרי שגיאת DB
        await self.events.rollback()

        if event_id is None:
            # לא נרשם דבר - Pub/Sub ישלח שוב, וה-dedup לא צריך לחסום אותו
            try:
                await self.dedup.release(notification.notification_id)
            except Exception as release_exc:
                logger.error(
                    "Could not release notification dedup key",
                    extra_data={
                        "notification_id": notification.notification_id,
                        "error": str(release_exc),
                    },
                    exc_info=True,
                )
            return

        try:
            await self.events.mark_failed(event_id, str(exc), processing_time_ms)
        except Exception as mark_exc:
            logger.error(
                "Could not mark webhook event as failed",
                extra_data={
                    "event_id": event_id,
                    "notification_id": notification.notification_id,
                    "error": str(mark_exc),
                },
                exc_info=True,
            )
