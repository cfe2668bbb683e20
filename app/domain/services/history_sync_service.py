"""
History Sync Engine - סנכרון מלא או אינקרמנטלי של חשבון אחד.

full_sync
    N ההודעות האחרונות -> fetch-message לכל אחת (עדיפות 2), ואז cursor
    מה-profile. משמש להפעלה ראשונה ולהתאוששות כשאין היסטוריה.
incremental_sync
    job אחד של sync-history עם ה-trigger. ההליכה על history.list עצמה
    (sync_history) רצה ב-worker ו-idempotent לפי (account, start, end).

כלל הכשל: כל חריגה עוברת הלאה וה-cursor לא זז. cursor מתקדם רק אחרי
שכל השינויים בטווח נקלטו (או נשלחו לתור), ותמיד ב-compare-and-set.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from app.core.config import settings
from app.core.exceptions import HistoryExpiredError, SyncError
from app.core.logging import get_logger
from app.db.models.email_account import SyncMode
from app.domain.services.account_store import AccountStore, is_cursor_newer
from app.domain.services.email_service import EmailService
from app.domain.services.mailbox_client import MailboxClient
from app.domain.services.work_queue import (
    PRIORITY_FETCH,
    PRIORITY_WEBHOOK,
    FetchMessageJob,
    FullSyncJob,
    JobOptions,
    SyncHistoryJob,
    SyncTrigger,
    WorkQueue,
    poll_job_key,
)

logger = get_logger(__name__)


@dataclass
class SyncResult:
    account_id: int
    mode: str  # "full" / "incremental" / "skipped"
    enqueued_messages: int = 0
    deleted_messages: int = 0
    label_changes: int = 0
    cursor: str | None = None
    fetched_ids: list[str] = field(default_factory=list)


def fetch_job_options() -> JobOptions:
    return JobOptions(
        priority=PRIORITY_FETCH,
        attempts=settings.MESSAGE_FETCH_ATTEMPTS,
        backoff_seconds=settings.WEBHOOK_SYNC_BACKOFF_SECONDS,
    )


class HistorySyncService:
    def __init__(
        self,
        *,
        accounts: AccountStore,
        client: MailboxClient,
        queue: WorkQueue,
        emails: EmailService,
        max_results: int = settings.FULL_SYNC_MAX_MESSAGES,
    ):
        self.accounts = accounts
        self.client = client
        self.queue = queue
        self.emails = emails
        self.max_results = max_results

    async def _enqueue_fetch(self, account_id: int, message_id: str, thread_id: str | None) -> None:
        await self.queue.enqueue(
            FetchMessageJob(account_id=account_id, message_id=message_id, thread_id=thread_id),
            fetch_job_options(),
        )

    async def full_sync(self, account_id: int, max_results: int | None = None) -> SyncResult:
        account = await self.accounts.get(account_id)
        limit = max_results or self.max_results

        refs = await self.client.list_messages(account, limit)
        result = SyncResult(account_id=account_id, mode="full")
        for ref in refs:
            await self._enqueue_fetch(account_id, ref.id, ref.thread_id)
            result.fetched_ids.append(ref.id)
        result.enqueued_messages = len(refs)

        profile = await self.client.get_profile(account)
        remote_cursor = profile.get("historyId")
        result.cursor = str(remote_cursor) if remote_cursor is not None else None
        await self.accounts.record_successful_sync(account_id, result.cursor)

        logger.info(
            "Full sync completed",
            extra_data={
                "account_id": account_id,
                "messages": result.enqueued_messages,
                "history_id": result.cursor,
            },
        )
        return result

    async def incremental_sync(
        self,
        account_id: int,
        trigger: SyncTrigger = "manual",
        priority: int = PRIORITY_WEBHOOK,
    ) -> str:
        """מעביר את ההליכה על ההיסטוריה ל-worker; מחזיר את מזהה ה-job"""
        task_id = await self.queue.enqueue(
            SyncHistoryJob(account_id=account_id, trigger=trigger),
            JobOptions(
                priority=priority,
                attempts=settings.WEBHOOK_SYNC_ATTEMPTS,
                backoff_seconds=settings.WEBHOOK_SYNC_BACKOFF_SECONDS,
            ),
        )
        logger.info(
            "Incremental sync enqueued",
            extra_data={"account_id": account_id, "trigger": trigger, "task_id": task_id},
        )
        return task_id

    async def request_full_sync(self, account_id: int) -> str:
        task_id = await self.queue.enqueue(
            FullSyncJob(account_id=account_id, max_results=self.max_results),
            fetch_job_options(),
        )
        logger.info(
            "Full sync enqueued",
            extra_data={"account_id": account_id, "task_id": task_id},
        )
        return task_id

    async def sync_account(
        self,
        account_id: int,
        *,
        full_sync: bool = False,
        source: SyncTrigger = "manual",
    ) -> str:
        """
        סנכרון לפי דרישה: full-sync אם התבקש או שאין cursor, אחרת sync-history.
        שני המסלולים עוברים דרך התור; מחזיר את מזהה ה-job.
        """
        account = await self.accounts.get(account_id)
        try:
            if full_sync or not account.history_id:
                return await self.request_full_sync(account_id)
            return await self.incremental_sync(account_id, source)
        except Exception as exc:
            await self._record_failure(account_id, exc)
            raise SyncError(
                account_id,
                "Could not queue sync job",
                details={"error": type(exc).__name__},
            ) from exc

    async def sync_history(
        self,
        account_id: int,
        start_cursor: str | None = None,
        end_cursor: str | None = None,
        trigger: SyncTrigger = "manual",
    ) -> SyncResult:
        """
        הצד של ה-worker עבור sync-history.

        מתחיל מה-cursor של החשבון (או start_cursor אם אין לחשבון cursor) ועובר
        על כל הדפים של history.list. cursor שפג תוקפו -> full sync.
        """
        account = await self.accounts.get(account_id)
        log_context = {
            "account_id": account_id,
            "trigger": trigger,
            "start_history_id": start_cursor,
            "end_history_id": end_cursor,
        }

        current = account.history_id
        if not current and not start_cursor:
            logger.info("No cursor for account, running full sync", extra_data=log_context)
            return await self.full_sync(account_id)

        if end_cursor and not is_cursor_newer(end_cursor, current):
            # walk אחר כבר קידם את החשבון מעבר לטווח הזה
            logger.info(
                "History range already synced",
                extra_data={**log_context, "account_history_id": current},
            )
            return SyncResult(account_id=account_id, mode="skipped", cursor=current)

        # start_cursor גבוה מה-cursor של החשבון היה מדלג על שינויים
        start = current or start_cursor

        try:
            result = await self._walk_history(account, start)
        except HistoryExpiredError:
            logger.warning(
                "History cursor expired, falling back to full sync",
                extra_data={**log_context, "start": start},
            )
            return await self.full_sync(account_id)
        except Exception as exc:
            await self._record_failure(account_id, exc)
            raise

        cursor = result.cursor or end_cursor
        result.cursor = cursor
        await self.accounts.record_successful_sync(account_id, cursor)
        logger.info(
            "Incremental sync completed",
            extra_data={
                **log_context,
                "history_id": cursor,
                "messages": result.enqueued_messages,
                "deleted": result.deleted_messages,
                "label_changes": result.label_changes,
            },
        )
        return result

    async def _walk_history(self, account, start: str) -> SyncResult:
        result = SyncResult(account_id=account.id, mode="incremental")
        seen: set[str] = set()
        page_token: str | None = None

        while True:
            page = await self.client.list_history(account, start, page_token)
            for record in page.records:
                await self._apply_record(account.id, record, result, seen)
            if page.history_id:
                result.cursor = page.history_id
            page_token = page.next_page_token
            if not page_token:
                return result

    async def _apply_record(
        self,
        account_id: int,
        record: dict[str, Any],
        result: SyncResult,
        seen: set[str],
    ) -> None:
        for added in record.get("messagesAdded", []):
            message = added.get("message") or {}
            message_id = message.get("id")
            if not message_id or message_id in seen:
                continue
            seen.add(message_id)
            await self._enqueue_fetch(account_id, message_id, message.get("threadId"))
            result.fetched_ids.append(message_id)
            result.enqueued_messages += 1

        for deleted in record.get("messagesDeleted", []):
            message_id = (deleted.get("message") or {}).get("id")
            if message_id and await self.emails.mark_as_deleted(account_id, message_id):
                result.deleted_messages += 1

        for change in record.get("labelsAdded", []):
            message_id = (change.get("message") or {}).get("id")
            if message_id and await self.emails.add_labels(account_id, message_id, change.get("labelIds", [])):
                result.label_changes += 1

        for change in record.get("labelsRemoved", []):
            message_id = (change.get("message") or {}).get("id")
            if message_id and await self.emails.remove_labels(account_id, message_id, change.get("labelIds", [])):
                result.label_changes += 1

    async def poll_account(self, account_id: int) -> SyncResult | None:
        """poll-account: רק לחשבון פעיל שעדיין ב-POLLING, אחרת ה-job החוזר מבוטל"""
        account = await self.accounts.find_by_id(account_id)
        if account is None or not account.is_active or account.sync_mode != SyncMode.POLLING:
            logger.info(
                "Account no longer polling, cancelling recurring poll",
                extra_data={"account_id": account_id},
            )
            await self.queue.cancel_recurring(poll_job_key(account_id))
            return None
        return await self.sync_history(account_id, trigger="poll")

    async def _record_failure(self, account_id: int, exc: Exception) -> None:
        logger.error(
            "Sync failed",
            extra_data={"account_id": account_id, "error": str(exc)},
            exc_info=True,
        )
        try:
            await self.accounts.rollback()
            await self.accounts.record_sync_error(account_id, str(exc))
        except Exception as record_exc:
            logger.error(
                "Could not record sync error",
                extra_data={"account_id": account_id, "error": str(record_exc)},
                exc_info=True,
            )
