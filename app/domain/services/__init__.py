"""
Domain Services
"""
from app.domain.services.account_store import AccountStore
from app.domain.services.dedup_store import NotificationDedupStore
from app.domain.services.email_service import EmailService
from app.domain.services.history_sync_service import HistorySyncService
from app.domain.services.message_materializer import MessageMaterializer
from app.domain.services.recovery_service import RecoveryService
from app.domain.services.webhook_event_store import WebhookEventStore
from app.domain.services.webhook_processor import WebhookProcessor

__all__ = [
    "AccountStore",
    "NotificationDedupStore",
    "EmailService",
    "HistorySyncService",
    "MessageMaterializer",
    "RecoveryService",
    "WebhookEventStore",
    "WebhookProcessor",
]
