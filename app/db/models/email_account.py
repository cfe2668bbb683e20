"""
Email Account Model - חשבון Gmail מחובר ומצב הסנכרון שלו
"""
import enum

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from app.db.database import Base, utcnow


class SyncMode(str, enum.Enum):
    """ערוץ העדכונים של החשבון"""
    PUSH = "push"        # התראות Pub/Sub
    POLLING = "polling"  # job חוזר כל POLL_INTERVAL_SECONDS


class SyncStatus(str, enum.Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    ERROR = "error"


class EmailAccount(Base):
    """
    חשבון דואר מסונכרן.

    history_id הוא ה-cursor של Gmail (מחרוזת ספרות, עלולה לחרוג מ-64 ביט).
    הערך לעולם לא יורד - עדכונים עוברים דרך AccountStore.advance_cursor.
    """

    __tablename__ = "email_accounts"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    email = Column(String(320), unique=True, nullable=False, index=True)

    history_id = Column(String(32), nullable=True)
    sync_mode = Column(
        SQLEnum(SyncMode, name="email_sync_mode", values_callable=lambda x: [e.value for e in x]),
        default=SyncMode.PUSH,
        nullable=False,
    )
    sync_status = Column(
        SQLEnum(SyncStatus, name="email_sync_status", values_callable=lambda x: [e.value for e in x]),
        default=SyncStatus.ACTIVE,
        nullable=False,
    )
    sync_enabled = Column(Boolean, default=True, nullable=False)

    webhook_failure_count = Column(Integer, default=0, nullable=False)
    last_webhook_error = Column(Text, nullable=True)
    last_webhook_error_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    last_sync_at = Column(DateTime, nullable=True)

    # OAuth
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    token_expires_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    owner = relationship("User")

    __table_args__ = (
        Index("ix_email_accounts_enabled_last_sync", "sync_enabled", "last_sync_at"),
    )

    @property
    def is_active(self) -> bool:
        return bool(self.sync_enabled)

    @property
    def last_activity_at(self):
        """המאוחר מבין הסנכרון האחרון וזמן החיבור"""
        if self.last_sync_at is None:
            return self.created_at
        return max(self.last_sync_at, self.created_at)
