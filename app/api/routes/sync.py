"""
Sync admin endpoints - מדדי webhook, מצב חשבון והפעלת סנכרון ידני.

כל ה-endpoints דורשים X-Admin-API-Key.
"""
from datetime import date

from fastapi import APIRouter, Depends, Query

from app.api.dependencies.admin_auth import require_admin_api_key
from app.api.dependencies.services import get_sync_services
from app.domain.services.factory import SyncServices

router = APIRouter(dependencies=[Depends(require_admin_api_key)])


def _iso(value):
    return value.isoformat() if value is not None else None


@router.get("/webhooks/metrics")
async def get_webhook_metrics(
    day: date | None = Query(None, alias="date", description="YYYY-MM-DD, ברירת מחדל היום (UTC)"),
    services: SyncServices = Depends(get_sync_services),
) -> dict:
    return await services.metrics.get(day)


@router.get("/accounts/{account_id}/status")
async def get_account_status(
    account_id: int,
    services: SyncServices = Depends(get_sync_services),
) -> dict:
    account = await services.accounts.get(account_id)
    return {
        "account_id": account.id,
        "email": account.email,
        "history_id": account.history_id,
        "sync_mode": account.sync_mode.value,
        "sync_status": account.sync_status.value,
        "sync_enabled": account.sync_enabled,
        "webhook_failure_count": account.webhook_failure_count,
        "last_webhook_error": account.last_webhook_error,
        "last_webhook_error_at": _iso(account.last_webhook_error_at),
        "last_error": account.last_error,
        "last_sync_at": _iso(account.last_sync_at),
    }


@router.post("/accounts/{account_id}/sync", status_code=202)
async def trigger_account_sync(
    account_id: int,
    full: bool = Query(False, description="full sync במקום incremental"),
    services: SyncServices = Depends(get_sync_services),
) -> dict:
    task_id = await services.sync.sync_account(account_id, full_sync=full, source="manual")
    return {"account_id": account_id, "task_id": task_id, "full": full}
