"""
Email Service - שמירת הודעות מסונכרנות.

כל הכתיבה היא upsert לפי (account_id, provider_message_id): הרצה חוזרת
של fetch-message או של sync-history לא יוצרת שורות כפולות, וקבצים מצורפים
מותאמים לפי provider_attachment_id כך שה-url של קובץ שכבר הורד נשמר.
"""
from __future__ import annotations

from typing import Iterable

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger
from app.db.database import utcnow
from app.db.models.email import Email, EmailAttachment, EmailDirection
from app.db.models.user import User
from app.domain.services.email_parser import ParsedEmail

logger = get_logger(__name__)


class EmailService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_by_provider_id(self, account_id: int, provider_message_id: str) -> Email | None:
        result = await self.db.execute(
            select(Email).where(
                Email.account_id == account_id,
                Email.provider_message_id == provider_message_id,
            )
        )
        return result.scalar_one_or_none()

    async def find_user_id_by_email(self, address: str) -> int | None:
        return await self.db.scalar(
            select(User.id).where(func.lower(User.email) == address.strip().lower())
        )

    def _apply(self, email: Email, parsed: ParsedEmail, sender_id: int, direction: EmailDirection) -> None:
        email.sender_id = sender_id
        email.thread_id = parsed.thread_id
        email.history_id = parsed.history_id
        email.subject = parsed.subject
        email.snippet = parsed.snippet
        email.preview = parsed.preview
        email.body_html = parsed.body_html
        email.body_text = parsed.body_text
        email.from_email = parsed.sender.email
        email.from_name = parsed.sender.name or None
        email.to_emails = [a.email for a in parsed.to]
        email.to_names = [a.name for a in parsed.to]
        email.cc_emails = [a.email for a in parsed.cc]
        email.cc_names = [a.name for a in parsed.cc]
        email.bcc_emails = [a.email for a in parsed.bcc]
        email.bcc_names = [a.name for a in parsed.bcc]
        email.direction = direction
        email.sent_at = parsed.sent_at
        email.received_at = parsed.sent_at
        email.labels = list(parsed.labels)
        email.is_read = parsed.is_read
        email.is_starred = parsed.is_starred
        email.is_important = parsed.is_important
        email.is_draft = parsed.is_draft
        email.updated_at = utcnow()

    def _reconcile_attachments(self, email: Email, parsed: ParsedEmail) -> None:
        """שורה אחת לכל attachment_id; url ו-downloaded_at של שורות קיימות נשמרים"""
        existing = {a.provider_attachment_id: a for a in email.attachments}
        wanted = {info.attachment_id: info for info in parsed.attachments}

        for attachment in list(email.attachments):
            if attachment.provider_attachment_id not in wanted:
                email.attachments.remove(attachment)

        for attachment_id, info in wanted.items():
            row = existing.get(attachment_id)
            if row is None:
                email.attachments.append(
                    EmailAttachment(
                        provider_attachment_id=attachment_id,
                        filename=info.filename,
                        mime_type=info.mime_type,
                        size=info.size,
                        created_at=utcnow(),
                    )
                )
            else:
                row.filename = info.filename
                row.mime_type = info.mime_type
                row.size = info.size

    async def upsert(
        self,
        account_id: int,
        parsed: ParsedEmail,
        *,
        sender_id: int,
        direction: EmailDirection,
    ) -> Email:
        """
        יצירה או עדכון של הודעה. INSERT מקבילי לאותה הודעה (שני workers)
        נתפס כהפרת ייחודיות, ואז מעדכנים את השורה שהמתחרה יצר.
        """
        email = await self.find_by_provider_id(account_id, parsed.provider_message_id)
        created = email is None

        if created:
            email = Email(
                account_id=account_id,
                provider_message_id=parsed.provider_message_id,
                created_at=utcnow(),
                attachments=[],
            )
            self._apply(email, parsed, sender_id, direction)
            self._reconcile_attachments(email, parsed)
            try:
                async with self.db.begin_nested():
                    self.db.add(email)
            except IntegrityError:
                logger.info(
                    "Email inserted concurrently, updating existing row",
                    extra_data={
                        "account_id": account_id,
                        "provider_message_id": parsed.provider_message_id,
                    },
                )
                created = False
                email = await self.find_by_provider_id(account_id, parsed.provider_message_id)
                if email is None:
                    raise

        if not created:
            self._apply(email, parsed, sender_id, direction)
            self._reconcile_attachments(email, parsed)

        await self.db.commit()
        logger.info(
            "Email stored" if created else "Email updated",
            extra_data={
                "account_id": account_id,
                "email_id": email.id,
                "provider_message_id": parsed.provider_message_id,
                "attachments": len(parsed.attachments),
            },
        )
        return email

    async def mark_as_deleted(self, account_id: int, provider_message_id: str) -> bool:
        email = await self.find_by_provider_id(account_id, provider_message_id)
        if email is None or email.is_deleted:
            return False
        email.is_deleted = True
        email.deleted_at = utcnow()
        await self.db.commit()
        return True

    async def _update_labels(
        self,
        account_id: int,
        provider_message_id: str,
        add: Iterable[str] = (),
        remove: Iterable[str] = (),
    ) -> bool:
        email = await self.find_by_provider_id(account_id, provider_message_id)
        if email is None:
            return False

        removed = set(remove)
        labels = [label for label in (email.labels or []) if label not in removed]
        for label in add:
            if label not in labels:
                labels.append(label)
        # השמה מחדש - JSON לא עוקב אחרי שינויים במקום
        email.labels = labels
        email.is_read = "UNREAD" not in labels
        email.is_starred = "STARRED" in labels
        email.is_important = "IMPORTANT" in labels
        email.is_draft = "DRAFT" in labels
        email.updated_at = utcnow()
        await self.db.commit()
        return True

    async def add_labels(self, account_id: int, provider_message_id: str, labels: Iterable[str]) -> bool:
        return await self._update_labels(account_id, provider_message_id, add=list(labels))

    async def remove_labels(self, account_id: int, provider_message_id: str, labels: Iterable[str]) -> bool:
        return await self._update_labels(account_id, provider_message_id, remove=list(labels))

    async def update_attachment_url(
        self,
        account_id: int,
        provider_message_id: str,
        provider_attachment_id: str,
        url: str,
    ) -> bool:
        result = await self.db.execute(
            select(EmailAttachment)
            .join(Email, EmailAttachment.email_id == Email.id)
            .where(
                Email.account_id == account_id,
                Email.provider_message_id == provider_message_id,
                EmailAttachment.provider_attachment_id == provider_attachment_id,
            )
        )
        attachment = result.scalar_one_or_none()
        if attachment is None:
            return False
        attachment.url = url
        attachment.downloaded_at = utcnow()
        await self.db.commit()
        return True
