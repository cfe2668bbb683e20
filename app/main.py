"""
Mailbox Sync - Main FastAPI Application
"""
from fastapi import FastAPI
from starlette.responses import JSONResponse

from app.core.config import settings
from app.core.logging import setup_logging, get_logger
from app.core.middleware import setup_middleware, setup_exception_handlers
from app.api.routes import router as api_router
from app.api.webhooks.gmail import router as gmail_webhook_router
from app.db.database import engine, Base

# Setup logging before anything else
setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=not settings.DEBUG,
    app_name=settings.APP_NAME
)

logger = get_logger(__name__)


_OPENAPI_TAGS = [
    {"name": "Webhooks", "description": "התראות push של Gmail דרך Pub/Sub."},
    {
        "name": "Sync",
        "description": "מדדי webhook, מצב סנכרון של חשבון והפעלת סנכרון ידני (X-Admin-API-Key).",
    },
    {"name": "Health", "description": "liveness ו-readiness."},
]


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description=(
        "קליטת התראות push של Gmail וסנכרון תיבות דואר מול ה-history API, "
        "כולל התאוששות מעדכונים שהוחמצו והסלמה ל-polling."
    ),
    openapi_tags=_OPENAPI_TAGS,
)

# Setup middleware (correlation ID, request logging)
setup_middleware(app)
setup_exception_handlers(app)

app.include_router(api_router, prefix="/api")
# מנוי ה-push ב-Pub/Sub מוגדר לעתים על הנתיב בלי /api
app.include_router(
    gmail_webhook_router,
    prefix="/webhooks/gmail",
    tags=["Webhooks"],
    include_in_schema=False,
)


@app.on_event("startup")
async def startup() -> None:
    """Initialize database tables on startup"""
    logger.info(
        "Starting application",
        extra_data={"app_name": settings.APP_NAME, "environment": settings.ENVIRONMENT},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized")

    if not settings.is_production and not settings.PUBSUB_VERIFICATION_TOKEN:
        logger.warning("PUBSUB_VERIFICATION_TOKEN not set - Gmail webhook accepts unauthenticated requests")


@app.on_event("shutdown")
async def shutdown() -> None:
    """Cleanup on shutdown"""
    logger.info("Shutting down application")
    from app.core.redis_client import close_redis
    await close_redis()
    # סגירת חיבורי מסד הנתונים למניעת connection pool exhaustion
    await engine.dispose()
    logger.info("Database connections disposed")


@app.get(
    "/health",
    summary="בדיקת חיוּת (Liveness Probe)",
    description="התהליך חי ומגיב. לא בודק תלויות חיצוניות.",
    tags=["Health"],
)
async def health_check() -> dict[str, str]:
    return {"status": "healthy"}


@app.get(
    "/health/ready",
    summary="בדיקת מוכנות (Readiness Probe)",
    description=(
        "בדיקה של DB, Redis, Celery broker ומצב ה-circuit breaker של Gmail. "
        "200 עם status=healthy, או 503 עם status=degraded ופירוט."
    ),
    tags=["Health"],
)
async def readiness_check() -> JSONResponse:
    from app.domain.services.health_service import check_readiness

    result = await check_readiness()
    status_code = 200 if result["status"] == "healthy" else 503
    return JSONResponse(content=result, status_code=status_code)
