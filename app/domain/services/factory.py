"""
הרכבת השירותים מעל session / Redis / תור אחד.

ה-API וה-workers מרכיבים את אותו גרף תלויות; בבדיקות מעבירים fakes
(FakeRedis, FakeWorkQueue, mailbox client מזויף) דרך אותם פרמטרים.
"""
from __future__ import annotations

from dataclasses import dataclass

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.services.account_store import AccountStore
from app.domain.services.attachment_storage import AttachmentStorage, LocalAttachmentStorage
from app.domain.services.dedup_store import NotificationDedupStore
from app.domain.services.email_service import EmailService
from app.domain.services.history_sync_service import HistorySyncService
from app.domain.services.mailbox_client import GmailClient, MailboxClient
from app.domain.services.message_materializer import MessageMaterializer
from app.domain.services.recovery_service import RecoveryService
from app.domain.services.webhook_event_store import WebhookEventStore
from app.domain.services.webhook_metrics import WebhookMetrics
from app.domain.services.webhook_processor import WebhookProcessor
from app.domain.services.work_queue import CeleryWorkQueue, WorkQueue


@dataclass
class SyncServices:
    accounts: AccountStore
    events: WebhookEventStore
    emails: EmailService
    queue: WorkQueue
    metrics: WebhookMetrics
    processor: WebhookProcessor
    sync: HistorySyncService
    materializer: MessageMaterializer
    recovery: RecoveryService


def build_services(
    db: AsyncSession,
    redis: aioredis.Redis,
    *,
    queue: WorkQueue | None = None,
    client: MailboxClient | None = None,
    storage: AttachmentStorage | None = None,
) -> SyncServices:
    accounts = AccountStore(db)
    events = WebhookEventStore(db)
    emails = EmailService(db)
    queue = queue if queue is not None else CeleryWorkQueue(redis)
    client = client if client is not None else GmailClient(accounts)
    metrics = WebhookMetrics(redis)

    sync = HistorySyncService(accounts=accounts, client=client, queue=queue, emails=emails)
    return SyncServices(
        accounts=accounts,
        events=events,
        emails=emails,
        queue=queue,
        metrics=metrics,
        processor=WebhookProcessor(
            accounts=accounts,
            events=events,
            dedup=NotificationDedupStore(redis),
            queue=queue,
            metrics=metrics,
        ),
        sync=sync,
        materializer=MessageMaterializer(
            accounts=accounts,
            client=client,
            queue=queue,
            emails=emails,
            storage=storage if storage is not None else LocalAttachmentStorage(),
        ),
        recovery=RecoveryService(accounts=accounts, events=events, sync=sync, queue=queue),
    )
