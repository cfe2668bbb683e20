"""
Recovery Service - ריפוי עצמי כשערוץ ה-push שותק או נכשל.

ארבע פעולות בלתי תלויות:
- check_missed_updates: חשבונות פעילים בלי סנכרון מעל סף -> incremental sync
- retry_failed_events: אירועי FAILED ישנים -> sync-history חוזר + RETRIED
- handle_webhook_failure: מונה כשלים; בסף -> POLLING + poll-account חוזר
- generate_daily_report: סיכום אירועי אתמול לפי סטטוס (קריאה בלבד)

ה-sweeps מחזירים BatchSummary - כשל של פריט לא עוצר את השאר.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any

from app.core.config import settings
from app.core.logging import get_logger
from app.db.database import utcnow
from app.domain.services.account_store import AccountStore
from app.domain.services.batch_result import BatchSummary, run_batch
from app.domain.services.history_sync_service import HistorySyncService
from app.domain.services.webhook_event_store import WebhookEventStore
from app.domain.services.work_queue import (
    PRIORITY_BACKGROUND,
    JobOptions,
    PollAccountJob,
    SyncHistoryJob,
    WorkQueue,
    poll_job_key,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class _StaleAccount:
    account_id: int
    last_activity_at: datetime


@dataclass(frozen=True)
class _FailedEvent:
    event_id: int
    account_id: int
    history_id: str


@dataclass(frozen=True)
class DailyReport:
    day: date
    counts: dict[str, int]
    total: int
    average_processing_time_ms: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.day.isoformat(),
            "total": self.total,
            "counts": dict(self.counts),
            "average_processing_time_ms": self.average_processing_time_ms,
        }


class RecoveryService:
    def __init__(
        self,
        *,
        accounts: AccountStore,
        events: WebhookEventStore,
        sync: HistorySyncService,
        queue: WorkQueue,
        missed_threshold: timedelta = timedelta(seconds=settings.MISSED_UPDATES_THRESHOLD_SECONDS),
        failed_event_min_age: timedelta = timedelta(hours=settings.FAILED_EVENTS_MIN_AGE_HOURS),
        failure_threshold: int = settings.WEBHOOK_FAILURE_THRESHOLD,
        poll_interval_seconds: int = settings.POLL_INTERVAL_SECONDS,
    ):
        self.accounts = accounts
        self.events = events
        self.sync = sync
        self.queue = queue
        self.missed_threshold = missed_threshold
        self.failed_event_min_age = failed_event_min_age
        self.failure_threshold = failure_threshold
        self.poll_interval_seconds = poll_interval_seconds

    async def check_missed_updates(self, now: datetime | None = None) -> BatchSummary:
        now = now or utcnow()
        active = await self.accounts.list_active()
        # ערכים פשוטים - אובייקטי ORM פגים אחרי rollback של פריט שנכשל
        stale = [
            _StaleAccount(account.id, account.last_activity_at)
            for account in active
            if now - account.last_activity_at > self.missed_threshold
        ]

        async def _trigger(item: _StaleAccount) -> None:
            logger.info(
                "Account missed updates, triggering recovery sync",
                extra_data={
                    "account_id": item.account_id,
                    "last_activity_at": item.last_activity_at.isoformat(),
                },
            )
            await self.sync.incremental_sync(item.account_id, "recovery")

        return await run_batch(
            "check-missed-updates",
            stale,
            _trigger,
            item_id=lambda item: item.account_id,
            on_error=self.accounts.rollback,
            skipped=len(active) - len(stale),
        )

    async def retry_failed_events(self, now: datetime | None = None) -> BatchSummary:
        now = now or utcnow()
        cutoff = now - self.failed_event_min_age
        failed = [
            _FailedEvent(event.id, event.account_id, event.history_id)
            for event in await self.events.list_failed_before(cutoff)
        ]

        async def _retry(item: _FailedEvent) -> None:
            # מתחילים מה-cursor של החשבון ולא מה-cursor של האירוע - אחרת
            # השינויים שבין השניים היו מדולגים
            await self.queue.enqueue(
                SyncHistoryJob(
                    account_id=item.account_id,
                    end_cursor=item.history_id,
                    trigger="recovery",
                ),
                JobOptions(priority=PRIORITY_BACKGROUND, attempts=1),
            )
            await self.events.mark_retried(item.event_id)

        return await run_batch(
            "retry-failed-events",
            failed,
            _retry,
            item_id=lambda item: item.event_id,
            on_error=self.events.rollback,
        )

    async def handle_webhook_failure(self, account_id: int, error: str) -> bool:
        """
        רישום כשל webhook לחשבון.

        Returns:
            True אם הקריאה הזו הסלימה את החשבון ל-POLLING.
        """
        count = await self.accounts.record_webhook_failure(account_id, error)
        logger.warning(
            "Webhook failure recorded",
            extra_data={
                "account_id": account_id,
                "failure_count": count,
                "threshold": self.failure_threshold,
                "error": error,
            },
        )
        if count < self.failure_threshold:
            return False

        if not await self.accounts.switch_to_polling(account_id):
            # כבר ב-POLLING (או שקורא מקבילי זכה במעבר) - רק מאפסים
            await self.accounts.reset_webhook_failures(account_id)
            return False

        await self.queue.schedule_recurring(
            poll_job_key(account_id),
            PollAccountJob(account_id=account_id),
            JobOptions(priority=PRIORITY_BACKGROUND, attempts=1),
            self.poll_interval_seconds,
        )
        logger.warning(
            "Account escalated to polling after repeated webhook failures",
            extra_data={
                "account_id": account_id,
                "failure_count": count,
                "poll_interval_seconds": self.poll_interval_seconds,
            },
        )
        return True

    async def generate_daily_report(self, now: datetime | None = None) -> DailyReport:
        now = now or utcnow()
        end = now.replace(hour=0, minute=0, second=0, microsecond=0)
        start = end - timedelta(days=1)

        stats = await self.events.stats_between(start, end)
        report = DailyReport(
            day=start.date(),
            counts={status.value: count for status, count in stats.counts.items()},
            total=stats.total,
            average_processing_time_ms=stats.average_processing_time_ms,
        )
        logger.info("Daily webhook report", extra_data=report.to_dict())
        return report
