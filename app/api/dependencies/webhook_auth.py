"""
אימות בקשות push נכנסות מ-Pub/Sub.

מנוי ה-push מוגדר לשלוח ``Authorization: Bearer <token>``, וה-dependency
משווה את הטוקן ל-``PUBSUB_VERIFICATION_TOKEN``. האימות נאכף רק בפרודקשן;
בסביבות אחרות בקשה בלי טוקן עוברת (אזהרה בלוג), כדי לאפשר בדיקות מקומיות.

שימוש:
    @router.post("")
    async def gmail_webhook(
        ...,
        _: None = Depends(verify_pubsub_token),
    ):
        ...
"""
import hmac

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

_bearer = HTTPBearer(auto_error=False)


async def verify_pubsub_token(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),
) -> None:
    """
    - לא בפרודקשן - מדלג.
    - טוקן חסר - 401. טוקן שגוי - 403.
    """
    if not settings.is_production:
        return

    expected = settings.PUBSUB_VERIFICATION_TOKEN
    if credentials is None or not credentials.credentials:
        logger.warning("Gmail webhook request without bearer token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="חסר טוקן אימות webhook",
        )

    # השוואה בטוחה מפני timing attacks
    if not hmac.compare_digest(credentials.credentials.encode(), expected.encode()):
        logger.warning("Gmail webhook request with invalid bearer token")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="טוקן אימות webhook לא תקין",
        )
