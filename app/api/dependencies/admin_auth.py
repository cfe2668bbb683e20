"""
אימות מפתח API ל-endpoints התפעוליים של הסנכרון
(מדדי webhook, סטטוס חשבון, הפעלת סנכרון ידני).

המפתח נשלח ב-header ``X-Admin-API-Key`` ומושווה ל-``ADMIN_API_KEY``.
בלי ADMIN_API_KEY בסביבה כל ה-endpoints האלה סגורים.
"""
import hmac

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

ADMIN_API_KEY_HEADER = "X-Admin-API-Key"

_api_key_header = APIKeyHeader(name=ADMIN_API_KEY_HEADER, auto_error=False)


async def require_admin_api_key(
    request: Request,
    api_key: str | None = Depends(_api_key_header),
) -> None:
    """401 אם המפתח חסר, 403 אם שגוי או שלא הוגדר מפתח בכלל"""
    if not settings.ADMIN_API_KEY:
        logger.warning(
            "Sync admin endpoint refused - ADMIN_API_KEY not configured",
            extra_data={"path": request.url.path},
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="admin access is disabled",
        )

    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"missing {ADMIN_API_KEY_HEADER} header",
        )

    if not hmac.compare_digest(api_key.encode(), settings.ADMIN_API_KEY.encode()):
        logger.warning(
            "Sync admin endpoint refused - invalid API key",
            extra_data={"path": request.url.path},
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="invalid admin API key",
        )
