"""
Celery Tasks - הצד של ה-worker בתור הסנכרון.

run_job מקבל payload של SyncJob, מפענח אותו ל-variant מוקלד ומריץ את
השירות המתאים. ניסיונות חוזרים לפי JobOptions (attempts + backoff
אקספוננציאלי) דרך self.retry; job שמיצה את הניסיונות נשאר failed ב-Celery.

run_scheduled_task מריץ tick אחד של ה-RecoveryScheduler לפי שם.
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager
from dataclasses import asdict
from typing import Any

from app.core.exceptions import AccountNotFoundError
from app.core.logging import get_logger, job_context, set_correlation_id
from app.core.redis_client import get_redis
from app.db.database import get_task_session
from app.domain.services.factory import SyncServices, build_services
from app.domain.services.history_sync_service import SyncResult
from app.domain.services.scheduler import SCHEDULED_TASK_NAME, RecoveryScheduler
from app.domain.services.work_queue import (
    JOB_TASK_NAME,
    DownloadAttachmentJob,
    FetchMessageJob,
    FullSyncJob,
    JobOptions,
    PollAccountJob,
    SyncHistoryJob,
    SyncJob,
    parse_job,
    retry_countdown,
)
from app.workers.celery_app import celery_app

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # סגירת Redis singleton לפני סגירת ה-loop - מונע שימוש חוזר
            # ב-client שמחובר ל-event loop סגור בהרצה הבאה
            from app.core.redis_client import close_redis
            loop.run_until_complete(close_redis())
        except Exception as e:
            logger.warning(
                "כשלון בסגירת Redis בסיום task",
                extra_data={"error": str(e)},
            )
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


def _sync_result(result: SyncResult | None) -> dict[str, Any]:
    if result is None:
        return {"status": "skipped"}
    return {"status": "ok", **asdict(result)}


async def execute_job(job: SyncJob, services: SyncServices) -> dict[str, Any]:
    """dispatch לפי סוג ה-job"""
    if isinstance(job, SyncHistoryJob):
        result = await services.sync.sync_history(
            job.account_id,
            start_cursor=job.start_cursor,
            end_cursor=job.end_cursor,
            trigger=job.trigger,
        )
        return _sync_result(result)

    if isinstance(job, FetchMessageJob):
        email = await services.materializer.fetch_and_store(
            job.account_id, job.message_id, job.thread_id
        )
        if email is None:
            return {"status": "missing", "message_id": job.message_id}
        return {"status": "ok", "email_id": email.id, "message_id": job.message_id}

    if isinstance(job, DownloadAttachmentJob):
        stored = await services.materializer.download_attachment(job)
        return {"status": "ok" if stored else "failed", "attachment_id": job.attachment_id}

    if isinstance(job, PollAccountJob):
        return _sync_result(await services.sync.poll_account(job.account_id))

    if isinstance(job, FullSyncJob):
        return _sync_result(await services.sync.full_sync(job.account_id, job.max_results))

    raise ValueError(f"unsupported job type: {job.type}")


@celery_app.task(bind=True, name=JOB_TASK_NAME)
def run_job(self, payload: dict, options: dict | None = None):
    """
    Worker entry point לכל jobs הסנכרון.

    payload לא תקין נכשל מיד (אין טעם לנסות שוב). חשבון שנמחק - מדלגים.
    כל חריגה אחרת נשלחת ל-retry עד attempts ניסיונות בסך הכל.
    """
    job = parse_job(payload)
    job_options = JobOptions(**(options or {}))

    async def _run():
        async with get_task_session() as db:
            redis = await get_redis()
            services = build_services(db, redis)
            with job_context(job.type, account_id=job.account_id, task_id=self.request.id):
                return await execute_job(job, services)

    try:
        return run_async(_run())
    except AccountNotFoundError:
        logger.warning(
            "Job for missing account dropped",
            extra_data={"job_type": job.type, "account_id": job.account_id},
        )
        return {"status": "account_not_found", "account_id": job.account_id}
    except Exception as exc:
        retries = self.request.retries
        log_context = {
            "job_type": job.type,
            "account_id": job.account_id,
            "attempt": retries + 1,
            "attempts": job_options.attempts,
            "error": str(exc),
        }
        if retries + 1 >= job_options.attempts:
            logger.error("Job failed, no attempts left", extra_data=log_context, exc_info=True)
            raise

        countdown = retry_countdown(retries, job_options.backoff_seconds)
        logger.warning("Job failed, retrying", extra_data={**log_context, "countdown": countdown})
        raise self.retry(
            exc=exc,
            countdown=countdown,
            max_retries=job_options.attempts - 1,
            priority=job_options.priority,
        )


@celery_app.task(name=SCHEDULED_TASK_NAME)
def run_scheduled_task(name: str):
    """tick אחד של משימה מחזורית (נשלח מ-beat)"""

    async def _tick():
        async with get_task_session() as db:
            redis = await get_redis()
            services = build_services(db, redis)
            scheduler = RecoveryScheduler.for_services(redis, services.recovery, services.queue)
            result = await scheduler.tick(name)
            if result is None:
                return {"status": "skipped", "task": name}
            return result.to_dict()

    return run_async(_tick())
