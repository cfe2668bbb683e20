"""
Email Models - הודעות וקבצים מצורפים שסונכרנו מ-Gmail.

שתי הטבלאות נכתבות ב-upsert בלבד:
- emails לפי (account_id, provider_message_id)
- email_attachments לפי (email_id, provider_attachment_id)
כך שהרצה חוזרת של אותו סנכרון לא יוצרת כפילויות.
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
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.types import JSON

from app.db.database import Base, utcnow


class EmailDirection(str, enum.Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class Email(Base):
    """הודעת דואר מסונכרנת"""

    __tablename__ = "emails"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(Integer, ForeignKey("email_accounts.id"), nullable=False)
    sender_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    provider_message_id = Column(String(64), nullable=False)
    thread_id = Column(String(64), nullable=True, index=True)
    history_id = Column(String(32), nullable=True)

    subject = Column(Text, nullable=True)
    snippet = Column(Text, nullable=True)
    preview = Column(Text, nullable=True)
    body_html = Column(Text, nullable=True)
    body_text = Column(Text, nullable=True)

    from_email = Column(String(320), nullable=False)
    from_name = Column(String(320), nullable=True)
    to_emails = Column(JSON, default=list)
    to_names = Column(JSON, default=list)
    cc_emails = Column(JSON, default=list)
    cc_names = Column(JSON, default=list)
    bcc_emails = Column(JSON, default=list)
    bcc_names = Column(JSON, default=list)

    direction = Column(
        SQLEnum(EmailDirection, name="email_direction", values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    sent_at = Column(DateTime, nullable=True)
    received_at = Column(DateTime, nullable=True)

    labels = Column(JSON, default=list)
    is_read = Column(Boolean, default=False, nullable=False)
    is_starred = Column(Boolean, default=False, nullable=False)
    is_important = Column(Boolean, default=False, nullable=False)
    is_draft = Column(Boolean, default=False, nullable=False)
    is_deleted = Column(Boolean, default=False, nullable=False)
    deleted_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    attachments = relationship(
        "EmailAttachment",
        back_populates="email",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        UniqueConstraint("account_id", "provider_message_id", name="uq_emails_account_message"),
        Index("ix_emails_account_sent", "account_id", "sent_at"),
    )


class EmailAttachment(Base):
    """קובץ מצורף. url מתמלא אחרי הורדה מוצלחת"""

    __tablename__ = "email_attachments"

    id = Column(Integer, primary_key=True, index=True)
    email_id = Column(Integer, ForeignKey("emails.id", ondelete="CASCADE"), nullable=False)
    provider_attachment_id = Column(String(1024), nullable=False)
    filename = Column(String(512), nullable=False)
    mime_type = Column(String(255), nullable=False)
    size = Column(Integer, default=0, nullable=False)
    url = Column(Text, nullable=True)
    downloaded_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    email = relationship("Email", back_populates="attachments")

    __table_args__ = (
        UniqueConstraint("email_id", "provider_attachment_id", name="uq_email_attachments_provider_id"),
    )
