"""
Recovery Scheduler - המשימות המחזוריות בשם ובמרווח מוגדר.

כל משימה רצה דרך נקודת כניסה אחת, tick(name), כך שבדיקות מפעילות
"tick" סינכרוני במקום לחכות לשעון. Celery beat נבנה מאותן הגדרות
(beat_schedule) ושולח את שם המשימה ל-task יחיד.

tick לוקח lock ב-Redis לכל שם משימה (SET NX EX): כמה מופעי beat
או tick ידני במקביל לא מריצים את אותו sweep פעמיים.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping

import redis.asyncio as aioredis
from celery.schedules import crontab

from app.core.config import settings
from app.core.logging import get_logger, job_context
from app.core.redis_client import RedisKeys, RedisScripts

logger = get_logger(__name__)

SCHEDULED_TASK_NAME = "app.workers.tasks.run_scheduled_task"

CHECK_MISSED_UPDATES = "check-missed-updates"
RETRY_FAILED_EVENTS = "retry-failed-events"
DAILY_WEBHOOK_REPORT = "daily-webhook-report"
DISPATCH_RECURRING_JOBS = "dispatch-recurring-jobs"

TaskHandler = Callable[[], Awaitable[Any]]


@dataclass(frozen=True)
class PeriodicTask:
    name: str
    every_seconds: int | None = None
    # שעה ודקה ב-UTC למשימות יומיות
    daily_at: tuple[int, int] | None = None

    @property
    def schedule(self) -> Any:
        if self.daily_at is not None:
            hour, minute = self.daily_at
            return crontab(hour=str(hour), minute=str(minute))
        return float(self.every_seconds)

    @property
    def lock_ttl_seconds(self) -> int:
        # ה-lock פג לכל המאוחר עם ה-time limit של ה-task - worker שקרס לא חוסם לנצח
        if self.every_seconds is None:
            return settings.CELERY_TASK_TIME_LIMIT
        return max(1, min(self.every_seconds, settings.CELERY_TASK_TIME_LIMIT))


PERIODIC_TASKS: tuple[PeriodicTask, ...] = (
    PeriodicTask(CHECK_MISSED_UPDATES, every_seconds=settings.MISSED_UPDATES_CHECK_INTERVAL_SECONDS),
    PeriodicTask(RETRY_FAILED_EVENTS, every_seconds=settings.FAILED_EVENTS_RETRY_INTERVAL_SECONDS),
    PeriodicTask(DAILY_WEBHOOK_REPORT, daily_at=(0, 0)),
    PeriodicTask(DISPATCH_RECURRING_JOBS, every_seconds=settings.RECURRING_JOBS_DISPATCH_INTERVAL_SECONDS),
)


def beat_schedule(tasks: tuple[PeriodicTask, ...] = PERIODIC_TASKS) -> dict[str, dict[str, Any]]:
    return {
        task.name: {
            "task": SCHEDULED_TASK_NAME,
            "schedule": task.schedule,
            "args": (task.name,),
        }
        for task in tasks
    }


class SchedulerTaskNotFound(KeyError):
    pass


class RecoveryScheduler:
    def __init__(
        self,
        redis: aioredis.Redis,
        handlers: Mapping[str, TaskHandler],
        tasks: tuple[PeriodicTask, ...] = PERIODIC_TASKS,
    ):
        self.redis = redis
        self.handlers = dict(handlers)
        self._release_lock = redis.register_script(RedisScripts.RELEASE_LOCK)
        self.tasks = {task.name: task for task in tasks}

    @classmethod
    def for_services(cls, redis: aioredis.Redis, recovery, queue) -> "RecoveryScheduler":
        return cls(
            redis,
            {
                CHECK_MISSED_UPDATES: recovery.check_missed_updates,
                RETRY_FAILED_EVENTS: recovery.retry_failed_events,
                DAILY_WEBHOOK_REPORT: recovery.generate_daily_report,
                DISPATCH_RECURRING_JOBS: queue.dispatch_due_recurring,
            },
        )

    @property
    def task_names(self) -> list[str]:
        return list(self.tasks)

    async def tick(self, name: str) -> Any:
        """
        הרצה אחת של המשימה name.

        Returns:
            התוצאה של ה-handler, או None אם מופע אחר מחזיק כרגע את ה-lock.
        """
        task = self.tasks.get(name)
        handler = self.handlers.get(name)
        if task is None or handler is None:
            raise SchedulerTaskNotFound(name)

        lock_key = RedisKeys.scheduler_lock(name)
        token = uuid.uuid4().hex
        acquired = await self.redis.set(lock_key, token, nx=True, ex=task.lock_ttl_seconds)
        if not acquired:
            logger.info("Scheduled task already running elsewhere, skipping", extra_data={"task": name})
            return None

        try:
            with job_context(name):
                return await handler()
        finally:
            # ה-lock שפג ונלקח ע"י מופע אחר לא נמחק
            await self._release_lock(keys=[lock_key], args=[token])
