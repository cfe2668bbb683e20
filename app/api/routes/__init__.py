"""
API Routes
"""
from fastapi import APIRouter

from app.api.routes.sync import router as sync_router
from app.api.webhooks.gmail import router as gmail_router

router = APIRouter()

router.include_router(sync_router, prefix="/sync", tags=["Sync"])
router.include_router(gmail_router, prefix="/webhooks/gmail", tags=["Webhooks"])
