"""
Database Models
"""
from app.db.models.user import User
from app.db.models.email_account import EmailAccount, SyncMode, SyncStatus
from app.db.models.webhook_event import WebhookEvent, WebhookEventStatus
from app.db.models.email import Email, EmailAttachment, EmailDirection

__all__ = [
    "User",
    "EmailAccount",
    "SyncMode",
    "SyncStatus",
    "WebhookEvent",
    "WebhookEventStatus",
    "Email",
    "EmailAttachment",
    "EmailDirection",
]
