"""
Work Queue - jobs מוקלדים מעל Celery.

כל job הוא variant של union עם discriminator בשדה type, כך שה-worker
מפענח payload למודל מוקלד לפני dispatch. אפשרויות התור (priority, attempts,
backoff) נישאות לצד ה-payload ומתורגמות ל-priority של Redis ול-self.retry.

Jobs חוזרים (poll-account לחשבון שהוסלם ל-POLLING) נשמרים ב-hash של Redis
ונשלחים ע"י dispatch_due_recurring שרץ מ-beat.
"""
from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass
from typing import Annotated, Any, Literal, Protocol, Union

import redis.asyncio as aioredis
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from app.core.config import settings
from app.core.logging import get_logger
from app.core.redis_client import RedisKeys, RedisScripts
from app.domain.services.batch_result import BatchSummary, run_batch

logger = get_logger(__name__)

# Redis transport: מספר נמוך = עדיפות גבוהה
PRIORITY_WEBHOOK = 1
PRIORITY_FETCH = 2
PRIORITY_BACKGROUND = 3

JOB_TASK_NAME = "app.workers.tasks.run_job"

SyncTrigger = Literal["webhook", "manual", "scheduled", "recovery", "poll"]


class _AccountJob(BaseModel):
    model_config = ConfigDict(frozen=True)

    account_id: int


class FetchMessageJob(_AccountJob):
    type: Literal["fetch-message"] = "fetch-message"
    message_id: str
    thread_id: str | None = None


class SyncHistoryJob(_AccountJob):
    type: Literal["sync-history"] = "sync-history"
    start_cursor: str | None = None
    end_cursor: str | None = None
    trigger: SyncTrigger = "manual"


class DownloadAttachmentJob(_AccountJob):
    type: Literal["download-attachment"] = "download-attachment"
    message_id: str
    attachment_id: str
    filename: str
    mime_type: str
    size: int = 0


class PollAccountJob(_AccountJob):
    type: Literal["poll-account"] = "poll-account"


class FullSyncJob(_AccountJob):
    type: Literal["full-sync"] = "full-sync"
    max_results: int = settings.FULL_SYNC_MAX_MESSAGES


SyncJob = Annotated[
    Union[FetchMessageJob, SyncHistoryJob, DownloadAttachmentJob, PollAccountJob, FullSyncJob],
    Field(discriminator="type"),
]

_job_adapter: TypeAdapter[SyncJob] = TypeAdapter(SyncJob)


def parse_job(payload: dict[str, Any]) -> SyncJob:
    """payload גולמי מהתור -> מודל מוקלד (ValidationError על type לא מוכר)"""
    return _job_adapter.validate_python(payload)


class JobOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    priority: int = Field(default=PRIORITY_BACKGROUND, ge=0, le=9)
    attempts: int = Field(default=1, ge=1)
    backoff_seconds: float = Field(default=0.0, ge=0)


def retry_countdown(retries: int, backoff_seconds: float, max_seconds: float = 3600.0) -> float:
    """
    backoff אקספוננציאלי: backoff_seconds * 2**retries, עם תקרה.

    retries הוא מספר הניסיונות החוזרים שכבר בוצעו (0 לפני הניסיון החוזר הראשון).
    """
    if backoff_seconds <= 0:
        return 0.0
    retries = max(retries, 0)
    # 2**60 כבר חורג מכל תקרה סבירה - לא מחשבים חזקות ענקיות
    if retries >= 60:
        return max_seconds
    return min(backoff_seconds * (1 << retries), max_seconds)


class WorkQueue(Protocol):
    """הממשק שהשירותים צורכים - Celery בפרודקשן, fake בבדיקות"""

    async def enqueue(self, job: SyncJob, options: JobOptions) -> str: ...

    async def schedule_recurring(
        self, key: str, job: SyncJob, options: JobOptions, every_seconds: int
    ) -> bool: ...

    async def cancel_recurring(self, key: str) -> bool: ...


def poll_job_key(account_id: int) -> str:
    return f"poll-account:{account_id}"


@dataclass
class RecurringJob:
    key: str
    job: SyncJob
    options: JobOptions
    every_seconds: int
    next_run_at: float

    def to_json(self) -> str:
        return json.dumps({
            "job": self.job.model_dump(mode="json"),
            "options": self.options.model_dump(),
            "every_seconds": self.every_seconds,
            "next_run_at": self.next_run_at,
        })

    @classmethod
    def from_json(cls, key: str, raw: str) -> "RecurringJob":
        data = json.loads(raw)
        return cls(
            key=key,
            job=parse_job(data["job"]),
            options=JobOptions(**data["options"]),
            every_seconds=int(data["every_seconds"]),
            next_run_at=float(data["next_run_at"]),
        )


class CeleryWorkQueue:
    """WorkQueue מעל Celery + Redis"""

    def __init__(self, redis: aioredis.Redis, celery: Any = None):
        self.redis = redis
        self._hset_if_exists = redis.register_script(RedisScripts.HSET_IF_EXISTS)
        if celery is None:
            from app.workers.celery_app import celery_app
            celery = celery_app
        self._celery = celery

    async def enqueue(self, job: SyncJob, options: JobOptions) -> str:
        # send_task חוסם (publish ל-broker) - מחוץ ל-event loop
        result = await asyncio.to_thread(
            self._celery.send_task,
            JOB_TASK_NAME,
            kwargs={
                "payload": job.model_dump(mode="json"),
                "options": options.model_dump(),
            },
            priority=options.priority,
        )
        logger.info(
            "Job enqueued",
            extra_data={
                "job_type": job.type,
                "account_id": job.account_id,
                "task_id": result.id,
                "priority": options.priority,
            },
        )
        return result.id

    async def schedule_recurring(
        self,
        key: str,
        job: SyncJob,
        options: JobOptions,
        every_seconds: int,
    ) -> bool:
        """
        רישום job חוזר. idempotent לפי key - HSETNX מחזיר False אם כבר רשום.
        הריצה הראשונה אחרי every_seconds.
        """
        entry = RecurringJob(
            key=key,
            job=job,
            options=options,
            every_seconds=every_seconds,
            next_run_at=time.time() + every_seconds,
        )
        created = await self.redis.hsetnx(RedisKeys.RECURRING_JOBS, key, entry.to_json())
        logger.info(
            "Recurring job registered" if created else "Recurring job already registered",
            extra_data={"key": key, "job_type": job.type, "every_seconds": every_seconds},
        )
        return bool(created)

    async def cancel_recurring(self, key: str) -> bool:
        removed = await self.redis.hdel(RedisKeys.RECURRING_JOBS, key)
        if removed:
            logger.info("Recurring job cancelled", extra_data={"key": key})
        return bool(removed)

    async def list_recurring(self) -> list[RecurringJob]:
        raw = await self.redis.hgetall(RedisKeys.RECURRING_JOBS)
        return [RecurringJob.from_json(key, value) for key, value in raw.items()]

    async def dispatch_due_recurring(self, now: float | None = None) -> BatchSummary:
        """שולח לתור כל job חוזר שהגיע זמנו ומקדם את next_run_at"""
        now = time.time() if now is None else now
        entries = await self.list_recurring()
        due = [entry for entry in entries if entry.next_run_at <= now]

        async def _dispatch(entry: RecurringJob) -> None:
            await self.enqueue(entry.job, entry.options)
            entry.next_run_at = now + entry.every_seconds
            # ייתכן שה-job בוטל בזמן השליחה - לא מחזירים אותו לחיים
            await self._hset_if_exists(
                keys=[RedisKeys.RECURRING_JOBS], args=[entry.key, entry.to_json()]
            )

        return await run_batch(
            "dispatch-recurring-jobs",
            due,
            _dispatch,
            item_id=lambda entry: entry.key,
            skipped=len(entries) - len(due),
        )
