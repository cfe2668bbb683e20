"""
Gmail Push Webhook - נקודת הכניסה של התראות Pub/Sub.

המעטפת נבדקת כאן לפני שהיא מגיעה ל-WebhookProcessor: data חסר,
base64 לא תקין, JSON לא תקין או historyId שאינו מספר -> 400.

תשובות:
- עובד / כפול / ישן / חשבון לא מוכר -> 200, כדי ש-Pub/Sub לא ישלח שוב
- כשל אחרי שנרשם אירוע FAILED -> 200, ה-sweep השעתי אחראי לניסיון החוזר,
  והכשל נספר לחשבון לצורך הסלמה ל-polling
- כשל לפני שנרשם משהו -> 503, ו-Pub/Sub ישלח שוב. אם החשבון כבר זוהה
  הכשל נספר גם הוא להסלמה
"""
from __future__ import annotations

import base64
import binascii
import json
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from app.api.dependencies.services import get_sync_services
from app.api.dependencies.webhook_auth import verify_pubsub_token
from app.core.exceptions import ValidationException, WebhookProcessingError
from app.core.logging import get_logger, mask_email
from app.domain.services.factory import SyncServices
from app.domain.services.webhook_processor import PushNotification

logger = get_logger(__name__)

router = APIRouter()


class PubSubMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    data: str | None = None
    message_id: str | None = Field(default=None, validation_alias=AliasChoices("messageId", "message_id"))
    publish_time: datetime | None = Field(
        default=None, validation_alias=AliasChoices("publishTime", "publish_time")
    )
    attributes: dict[str, str] = Field(default_factory=dict)

    @field_validator("publish_time")
    @classmethod
    def validate_publish_time(cls, v: datetime | None) -> datetime | None:
        # publishTime מגיע עם Z - עמודות ה-DateTime שומרות UTC נאיבי
        if v is not None and v.tzinfo is not None:
            v = v.astimezone(timezone.utc).replace(tzinfo=None)
        return v


class PubSubEnvelope(BaseModel):
    message: PubSubMessage
    subscription: str | None = None


class GmailPushData(BaseModel):
    """התוכן המפוענח של message.data"""

    email_address: str = Field(validation_alias=AliasChoices("emailAddress", "email_address"))
    history_id: str = Field(validation_alias=AliasChoices("historyId", "history_id"))

    @field_validator("email_address")
    @classmethod
    def validate_email_address(cls, v: str) -> str:
        v = v.strip()
        if "@" not in v:
            raise ValueError("emailAddress must be an email address")
        return v

    @field_validator("history_id", mode="before")
    @classmethod
    def validate_history_id(cls, v: object) -> str:
        # Gmail שולח historyId כמספר JSON - עלול לחרוג מ-64 ביט, int של Python מחזיק אותו
        if isinstance(v, bool):
            raise ValueError("historyId must be a number")
        if isinstance(v, int):
            v = str(v)
        if not isinstance(v, str) or not (v.strip().isascii() and v.strip().isdigit()):
            raise ValueError("historyId must contain digits only")
        return v.strip()


def _validation_details(exc: ValidationError) -> list[dict]:
    return [{"loc": list(err["loc"]), "msg": err["msg"]} for err in exc.errors()]


def parse_push_notification(payload: object) -> PushNotification:
    """מעטפת Pub/Sub גולמית -> PushNotification, או ValidationException"""
    try:
        envelope = PubSubEnvelope.model_validate(payload)
    except ValidationError as exc:
        raise ValidationException(
            "invalid Pub/Sub envelope", details={"errors": _validation_details(exc)}
        ) from exc

    message = envelope.message
    if not message.data:
        raise ValidationException("Pub/Sub message has no data", field="message.data")
    if not message.message_id:
        raise ValidationException("Pub/Sub message has no messageId", field="message.messageId")

    try:
        decoded = base64.b64decode(message.data, validate=True)
        inner = json.loads(decoded)
    except (binascii.Error, ValueError) as exc:
        raise ValidationException(
            "message.data is not base64 encoded JSON", field="message.data"
        ) from exc

    try:
        push_data = GmailPushData.model_validate(inner)
    except ValidationError as exc:
        raise ValidationException(
            "invalid Gmail push payload", details={"errors": _validation_details(exc)}
        ) from exc

    return PushNotification(
        account_address=push_data.email_address,
        cursor=push_data.history_id,
        notification_id=message.message_id,
        publish_time=message.publish_time,
    )


@router.post(
    "",
    summary="Gmail Pub/Sub push endpoint",
    description="מקבל התראת push של Gmail ומתזמן סנכרון היסטוריה לחשבון.",
)
async def gmail_webhook(
    request: Request,
    _: None = Depends(verify_pubsub_token),
    services: SyncServices = Depends(get_sync_services),
) -> dict:
    try:
        payload = await request.json()
    except ValueError as exc:
        raise ValidationException("request body is not valid JSON") from exc

    notification = parse_push_notification(payload)

    try:
        outcome = await services.processor.process(notification)
    except WebhookProcessingError as exc:
        # כל כשל של חשבון מוכר נספר להסלמה, גם אם האירוע לא נרשם
        if exc.account_id is not None:
            try:
                await services.recovery.handle_webhook_failure(exc.account_id, exc.message)
            except Exception as escalation_exc:
                logger.error(
                    "Failed to record webhook failure for account",
                    extra_data={
                        "account_id": exc.account_id,
                        "notification_id": notification.notification_id,
                        "error": str(escalation_exc),
                    },
                    exc_info=True,
                )
        if not exc.event_recorded:
            raise
        return {"status": "ok"}

    logger.debug(
        "Gmail webhook handled",
        extra_data={
            "account": mask_email(notification.account_address),
            "notification_id": notification.notification_id,
            "outcome": outcome.value,
        },
    )
    return {"status": "ok"}
