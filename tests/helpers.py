"""
בוני payload לבדיקות: הודעות Gmail (format=full) ומעטפות Pub/Sub.
"""
import base64
import json


def b64url(data: str | bytes) -> str:
    raw = data.encode() if isinstance(data, str) else data
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def gmail_message(
    message_id: str,
    *,
    sender: str = "Alice Cohen <alice@example.com>",
    to: str = "owner@example.com",
    cc: str | None = None,
    subject: str = "Quarterly report",
    text: str | None = "Hello there",
    html: str | None = None,
    labels: list[str] | None = None,
    attachments: list[dict] | None = None,
    thread_id: str | None = None,
    history_id: str = "200",
    internal_date: str = "1700000000000",
) -> dict:
    """הודעה בפורמט Gmail format=full"""
    headers = [
        {"name": "From", "value": sender},
        {"name": "To", "value": to},
        {"name": "Subject", "value": subject},
    ]
    if cc:
        headers.append({"name": "Cc", "value": cc})

    parts = []
    if text is not None:
        parts.append({"mimeType": "text/plain", "body": {"data": b64url(text)}})
    if html is not None:
        parts.append({"mimeType": "text/html", "body": {"data": b64url(html)}})
    for attachment in attachments or []:
        parts.append({
            "mimeType": attachment.get("mime_type", "application/pdf"),
            "filename": attachment["filename"],
            "body": {"attachmentId": attachment["id"], "size": attachment.get("size", 10)},
        })

    return {
        "id": message_id,
        "threadId": thread_id or f"thread-{message_id}",
        "historyId": history_id,
        "labelIds": labels if labels is not None else ["INBOX", "UNREAD"],
        "snippet": (text or "")[:50],
        "internalDate": internal_date,
        "payload": {"mimeType": "multipart/mixed", "headers": headers, "parts": parts},
    }



def pubsub_envelope(
    email_address: str,
    history_id: str | int,
    message_id: str = "pubsub-1",
    publish_time: str = "2026-01-15T10:00:00.000Z",
) -> dict:
    data = base64.b64encode(
        json.dumps({"emailAddress": email_address, "historyId": history_id}).encode()
    ).decode()
    return {
        "message": {"data": data, "messageId": message_id, "publishTime": publish_time},
        "subscription": "projects/test/subscriptions/gmail-push",
    }


