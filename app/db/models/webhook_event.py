"""
Webhook Event Model - רשומה לכל התראת push של Gmail שעברה dedup.

מחזור חיים: PENDING -> PROCESSED | FAILED, ו-FAILED -> RETRIED (sweep שעתי).
notification_id ייחודי - INSERT כפול נתפס כ-IntegrityError ומטופל ככפילות.
"""
import enum

from sqlalchemy import (
    Column,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)

from app.db.database import Base, utcnow


class WebhookEventStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"
    RETRIED = "retried"


# מעברים מותרים - כל מעבר אחר נדחה
ALLOWED_TRANSITIONS: dict[WebhookEventStatus, frozenset[WebhookEventStatus]] = {
    WebhookEventStatus.PENDING: frozenset({WebhookEventStatus.PROCESSED, WebhookEventStatus.FAILED}),
    WebhookEventStatus.FAILED: frozenset({WebhookEventStatus.RETRIED}),
    WebhookEventStatus.PROCESSED: frozenset(),
    WebhookEventStatus.RETRIED: frozenset(),
}


def can_transition(current: WebhookEventStatus, target: WebhookEventStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


class WebhookEvent(Base):
    """התראת push שהתקבלה עבור חשבון"""

    __tablename__ = "gmail_webhook_events"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(Integer, ForeignKey("email_accounts.id"), nullable=False, index=True)
    notification_id = Column(String(200), unique=True, nullable=False)
    history_id = Column(String(32), nullable=False)
    publish_time = Column(DateTime, nullable=True)
    status = Column(
        SQLEnum(
            WebhookEventStatus,
            name="webhook_event_status",
            values_callable=lambda x: [e.value for e in x],
        ),
        default=WebhookEventStatus.PENDING,
        nullable=False,
    )
    processing_time_ms = Column(Integer, nullable=True)
    error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    processed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_gmail_webhook_events_status_created", "status", "created_at"),
    )
