"""
Email Parser - הודעת Gmail (format=full) -> רשומה מנורמלת.

גוף ההודעה וקבצים מצורפים נאספים רקורסיבית מכל ה-parts,
וכתובות מפוענחות עם email.utils כדי לתמוך בשמות עם פסיקים ומרכאות.
"""
from __future__ import annotations

import html
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import getaddresses
from typing import Any

from app.db.database import utcnow
from app.db.models.email import EmailDirection
from app.domain.services.mailbox_client import decode_base64url

PREVIEW_MAX_LENGTH = 500
UNKNOWN_SENDER = "unknown@example.com"

_TAG_RE = re.compile(r"<[^>]+>")
_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class EmailAddress:
    email: str
    name: str = ""


@dataclass(frozen=True)
class AttachmentInfo:
    attachment_id: str
    filename: str
    mime_type: str
    size: int = 0


@dataclass
class ParsedEmail:
    provider_message_id: str
    thread_id: str | None
    history_id: str | None
    subject: str | None
    snippet: str | None
    body_html: str | None
    body_text: str | None
    sender: EmailAddress
    to: list[EmailAddress] = field(default_factory=list)
    cc: list[EmailAddress] = field(default_factory=list)
    bcc: list[EmailAddress] = field(default_factory=list)
    sent_at: datetime | None = None
    labels: list[str] = field(default_factory=list)
    attachments: list[AttachmentInfo] = field(default_factory=list)

    @property
    def is_read(self) -> bool:
        return "UNREAD" not in self.labels

    @property
    def is_starred(self) -> bool:
        return "STARRED" in self.labels

    @property
    def is_important(self) -> bool:
        return "IMPORTANT" in self.labels

    @property
    def is_draft(self) -> bool:
        return "DRAFT" in self.labels

    @property
    def preview(self) -> str:
        return extract_primary_content(self.body_html, self.body_text)


def parse_headers(headers: list[dict[str, Any]]) -> dict[str, str]:
    """שמות headers באותיות קטנות; header כפול - המופע האחרון גובר"""
    return {
        header["name"].lower(): header["value"]
        for header in headers
        if header.get("name") and header.get("value") is not None
    }


def parse_addresses(value: str | None) -> list[EmailAddress]:
    if not value:
        return []
    addresses = [
        EmailAddress(email=address.strip().lower(), name=name.strip())
        for name, address in getaddresses([value])
        if "@" in address
    ]
    if not addresses and "@" in value:
        addresses.append(EmailAddress(email=value.strip().lower()))
    return addresses


def _decode_text(data: str) -> str:
    return decode_base64url(data).decode("utf-8", errors="replace")


def parse_body(part: dict[str, Any] | None) -> tuple[str | None, str | None]:
    """(html, text) - ה-part האחרון מכל סוג גובר, כמו בקריאת multipart/alternative"""
    if not part:
        return None, None

    body_html: str | None = None
    body_text: str | None = None

    data = (part.get("body") or {}).get("data")
    mime_type = part.get("mimeType")
    if data and mime_type == "text/html":
        body_html = _decode_text(data)
    elif data and mime_type == "text/plain":
        body_text = _decode_text(data)

    for sub_part in part.get("parts") or []:
        sub_html, sub_text = parse_body(sub_part)
        if sub_html:
            body_html = sub_html
        if sub_text:
            body_text = sub_text

    return body_html, body_text


def parse_attachments(part: dict[str, Any] | None) -> list[AttachmentInfo]:
    if not part:
        return []

    found: list[AttachmentInfo] = []
    body = part.get("body") or {}
    if body.get("attachmentId") and part.get("filename") and part.get("mimeType"):
        found.append(
            AttachmentInfo(
                attachment_id=body["attachmentId"],
                filename=part["filename"],
                mime_type=part["mimeType"],
                size=int(body.get("size") or 0),
            )
        )
    for sub_part in part.get("parts") or []:
        found.extend(parse_attachments(sub_part))
    return found


def parse_internal_date(value: str | int | None) -> datetime:
    """internalDate של Gmail הוא epoch במילישניות; חסר -> עכשיו"""
    if value in (None, ""):
        return utcnow()
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc).replace(tzinfo=None)


def extract_primary_content(body_html: str | None, body_text: str | None) -> str:
    """תצוגה מקדימה: טקסט נקי עד 500 תווים, עדיפות ל-text/plain"""
    if body_text:
        return _WHITESPACE_RE.sub(" ", body_text).strip()[:PREVIEW_MAX_LENGTH]
    if body_html:
        text = html.unescape(_TAG_RE.sub(" ", body_html))
        return _WHITESPACE_RE.sub(" ", text).strip()[:PREVIEW_MAX_LENGTH]
    return ""


def extract_direction(sender_email: str, account_email: str) -> EmailDirection:
    if sender_email.strip().lower() == account_email.strip().lower():
        return EmailDirection.OUTBOUND
    return EmailDirection.INBOUND


def parse_message(message: dict[str, Any]) -> ParsedEmail:
    payload = message.get("payload") or {}
    headers = parse_headers(payload.get("headers") or [])
    body_html, body_text = parse_body(payload)
    senders = parse_addresses(headers.get("from"))
    history_id = message.get("historyId")

    return ParsedEmail(
        provider_message_id=message["id"],
        thread_id=message.get("threadId"),
        history_id=str(history_id) if history_id is not None else None,
        subject=headers.get("subject"),
        snippet=message.get("snippet") or None,
        body_html=body_html,
        body_text=body_text,
        sender=senders[0] if senders else EmailAddress(email=UNKNOWN_SENDER),
        to=parse_addresses(headers.get("to")),
        cc=parse_addresses(headers.get("cc")),
        bcc=parse_addresses(headers.get("bcc")),
        sent_at=parse_internal_date(message.get("internalDate")),
        labels=list(message.get("labelIds") or []),
        attachments=parse_attachments(payload),
    )
