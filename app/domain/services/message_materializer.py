"""
Message Materializer - הודעה אחת מ-Gmail -> שורת emails + jobs להורדת קבצים.

fetch_and_store הוא idempotent: upsert לפי (account_id, provider_message_id),
כך ש-retry של fetch-message או הרצה כפולה של sync-history לא יוצרים כפילויות.
הורדת קובץ מצורף שנכשלת נרשמת ללוג ולא מכשילה את קליטת ההודעה.
"""
from __future__ import annotations

from app.core.logging import get_logger
from app.db.models.email import Email
from app.domain.services.account_store import AccountStore
from app.domain.services.attachment_storage import AttachmentStorage
from app.domain.services.email_parser import extract_direction, parse_message
from app.domain.services.email_service import EmailService
from app.domain.services.mailbox_client import MailboxClient
from app.domain.services.work_queue import (
    PRIORITY_BACKGROUND,
    DownloadAttachmentJob,
    JobOptions,
    WorkQueue,
)

logger = get_logger(__name__)


class MessageMaterializer:
    def __init__(
        self,
        *,
        accounts: AccountStore,
        client: MailboxClient,
        queue: WorkQueue,
        emails: EmailService,
        storage: AttachmentStorage,
    ):
        self.accounts = accounts
        self.client = client
        self.queue = queue
        self.emails = emails
        self.storage = storage

    async def fetch_and_store(
        self,
        account_id: int,
        message_id: str,
        thread_id: str | None = None,
    ) -> Email | None:
        account = await self.accounts.get(account_id)

        message = await self.client.get_message(account, message_id)
        if message is None:
            # נמחקה בין ההתראה לשליפה
            logger.info(
                "Message no longer exists, skipping",
                extra_data={"account_id": account_id, "message_id": message_id, "thread_id": thread_id},
            )
            return None

        parsed = parse_message(message)
        direction = extract_direction(parsed.sender.email, account.email)
        sender_id = await self.emails.find_user_id_by_email(parsed.sender.email) or account.user_id

        email = await self.emails.upsert(
            account_id,
            parsed,
            sender_id=sender_id,
            direction=direction,
        )

        for attachment in parsed.attachments:
            await self.queue.enqueue(
                DownloadAttachmentJob(
                    account_id=account_id,
                    message_id=parsed.provider_message_id,
                    attachment_id=attachment.attachment_id,
                    filename=attachment.filename,
                    mime_type=attachment.mime_type,
                    size=attachment.size,
                ),
                JobOptions(priority=PRIORITY_BACKGROUND, attempts=1),
            )

        logger.info(
            "Message materialized",
            extra_data={
                "account_id": account_id,
                "message_id": parsed.provider_message_id,
                "email_id": email.id,
                "direction": direction.value,
                "attachments": len(parsed.attachments),
            },
        )
        return email

    async def download_attachment(self, job: DownloadAttachmentJob) -> bool:
        """מחזיר True אם הקובץ נשמר והשורה עודכנה. לעולם לא זורק"""
        log_context = {
            "account_id": job.account_id,
            "message_id": job.message_id,
            "attachment_id": job.attachment_id,
            "attachment_name": job.filename,
        }
        try:
            account = await self.accounts.get(job.account_id)
            content = await self.client.get_attachment(account, job.message_id, job.attachment_id)
            url = await self.storage.save(
                job.account_id,
                job.message_id,
                job.attachment_id,
                job.filename,
                content,
            )
            updated = await self.emails.update_attachment_url(
                job.account_id,
                job.message_id,
                job.attachment_id,
                url,
            )
        except Exception as exc:
            logger.error(
                "Attachment download failed",
                extra_data={**log_context, "error": str(exc)},
                exc_info=True,
            )
            await self.accounts.rollback()
            return False

        if not updated:
            logger.warning("Attachment row not found after download", extra_data=log_context)
            return False

        logger.info("Attachment downloaded", extra_data={**log_context, "size": len(content)})
        return True
