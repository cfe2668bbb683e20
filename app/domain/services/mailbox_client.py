"""
Mailbox Client - קריאות REST ל-Gmail API דרך httpx.

הליבה צורכת חמש קריאות בלבד: list_messages, get_message, get_profile,
get_attachment ו-list_history (עם paging). כל קריאה עוברת דרך circuit breaker
של gmail ומתורגמת לשגיאות מוקלדות:
- timeout -> ServiceTimeoutError
- תשובת שגיאה -> MailboxApiError (404 ב-history.list -> HistoryExpiredError)
- breaker פתוח -> CircuitBreakerOpenError

access token שפג תוקפו מתחדש עם ה-refresh token השמור בחשבון.
"""
from __future__ import annotations

import base64
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Protocol

import httpx

from app.core.circuit_breaker import get_mailbox_circuit_breaker
from app.core.config import settings
from app.core.exceptions import (
    HistoryExpiredError,
    MailboxApiError,
    ServiceTimeoutError,
)
from app.core.logging import get_logger
from app.db.database import utcnow
from app.db.models.email_account import EmailAccount
from app.domain.services.account_store import AccountStore

logger = get_logger(__name__)

HISTORY_TYPES = ("messageAdded", "messageDeleted", "labelAdded", "labelRemoved")

# מרווח ביטחון לפני פקיעת ה-token
_TOKEN_EXPIRY_MARGIN = timedelta(seconds=60)


@dataclass(frozen=True)
class MessageRef:
    id: str
    thread_id: str | None = None


@dataclass(frozen=True)
class HistoryPage:
    records: list[dict[str, Any]] = field(default_factory=list)
    history_id: str | None = None
    next_page_token: str | None = None


class MailboxClient(Protocol):
    async def list_messages(self, account: EmailAccount, max_results: int) -> list[MessageRef]: ...

    async def get_message(self, account: EmailAccount, message_id: str) -> dict[str, Any] | None: ...

    async def get_profile(self, account: EmailAccount) -> dict[str, Any]: ...

    async def get_attachment(self, account: EmailAccount, message_id: str, attachment_id: str) -> bytes: ...

    async def list_history(
        self,
        account: EmailAccount,
        start_history_id: str,
        page_token: str | None = None,
    ) -> HistoryPage: ...


def decode_base64url(data: str) -> bytes:
    """Gmail מחזיר base64url בלי padding"""
    padding = -len(data) % 4
    return base64.urlsafe_b64decode(data + "=" * padding)


class GmailClient:
    """MailboxClient מעל Gmail REST API"""

    def __init__(
        self,
        accounts: AccountStore,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        base_url: str = settings.GMAIL_API_BASE_URL,
        timeout_seconds: float = settings.GMAIL_REQUEST_TIMEOUT_SECONDS,
    ):
        self.accounts = accounts
        self._transport = transport
        self.base_url = base_url
        self.timeout_seconds = timeout_seconds
        self._breaker = get_mailbox_circuit_breaker()

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport)

    async def _refresh_access_token(self, account: EmailAccount) -> str:
        if not account.refresh_token:
            raise MailboxApiError(
                "account has no refresh token",
                http_status=401,
                details={"account_id": account.id},
            )

        async with self._client() as client:
            response = await client.post(
                settings.GOOGLE_TOKEN_URL,
                data={
                    "client_id": settings.GOOGLE_CLIENT_ID,
                    "client_secret": settings.GOOGLE_CLIENT_SECRET,
                    "refresh_token": account.refresh_token,
                    "grant_type": "refresh_token",
                },
            )
        if response.is_error:
            raise MailboxApiError.from_response("oauth.refresh", response)

        token_data = response.json()
        access_token = token_data["access_token"]
        expires_at = utcnow() + timedelta(seconds=int(token_data.get("expires_in", 3600)))

        await self.accounts.update_tokens(account.id, access_token, expires_at)
        account.access_token = access_token
        account.token_expires_at = expires_at
        logger.info("Refreshed Gmail access token", extra_data={"account_id": account.id})
        return access_token

    async def _access_token(self, account: EmailAccount, *, force_refresh: bool = False) -> str:
        if (
            not force_refresh
            and account.access_token
            and (
                account.token_expires_at is None
                or account.token_expires_at - _TOKEN_EXPIRY_MARGIN > utcnow()
            )
        ):
            return account.access_token
        return await self._refresh_access_token(account)

    async def _get(
        self,
        account: EmailAccount,
        operation: str,
        path: str,
        params: dict[str, Any] | list[tuple[str, Any]] | None = None,
    ) -> httpx.Response:
        async def _send() -> httpx.Response:
            token = await self._access_token(account)
            try:
                async with self._client() as client:
                    response = await client.get(
                        f"{self.base_url}{path}",
                        params=params,
                        headers={"Authorization": f"Bearer {token}"},
                    )
                    if response.status_code == 401 and account.refresh_token:
                        token = await self._access_token(account, force_refresh=True)
                        response = await client.get(
                            f"{self.base_url}{path}",
                            params=params,
                            headers={"Authorization": f"Bearer {token}"},
                        )
            except httpx.TimeoutException as exc:
                raise ServiceTimeoutError("gmail", self.timeout_seconds) from exc
            except httpx.HTTPError as exc:
                raise MailboxApiError(
                    f"{operation} transport error: {exc}",
                    details={"operation": operation},
                ) from exc

            if response.is_error:
                raise MailboxApiError.from_response(operation, response)
            return response

        return await self._breaker.execute(_send)

    async def list_messages(self, account: EmailAccount, max_results: int) -> list[MessageRef]:
        response = await self._get(
            account, "messages.list", "/messages", params={"maxResults": max_results}
        )
        return [
            MessageRef(id=item["id"], thread_id=item.get("threadId"))
            for item in response.json().get("messages", [])
            if item.get("id")
        ]

    async def get_message(self, account: EmailAccount, message_id: str) -> dict[str, Any] | None:
        """הודעה מלאה, או None אם נמחקה בינתיים"""
        try:
            response = await self._get(
                account, "messages.get", f"/messages/{message_id}", params={"format": "full"}
            )
        except MailboxApiError as exc:
            if exc.is_not_found:
                return None
            raise
        return response.json()

    async def get_profile(self, account: EmailAccount) -> dict[str, Any]:
        response = await self._get(account, "users.getProfile", "/profile")
        return response.json()

    async def get_attachment(self, account: EmailAccount, message_id: str, attachment_id: str) -> bytes:
        response = await self._get(
            account,
            "attachments.get",
            f"/messages/{message_id}/attachments/{attachment_id}",
        )
        data = response.json().get("data")
        if not data:
            raise MailboxApiError(
                "attachment response has no data",
                details={"message_id": message_id, "attachment_id": attachment_id},
            )
        return decode_base64url(data)

    async def list_history(
        self,
        account: EmailAccount,
        start_history_id: str,
        page_token: str | None = None,
    ) -> HistoryPage:
        params: list[tuple[str, Any]] = [("startHistoryId", start_history_id)]
        params.extend(("historyTypes", history_type) for history_type in HISTORY_TYPES)
        if page_token:
            params.append(("pageToken", page_token))

        try:
            response = await self._get(account, "history.list", "/history", params=params)
        except MailboxApiError as exc:
            if exc.is_not_found:
                raise HistoryExpiredError(start_history_id) from exc
            raise

        data = response.json()
        history_id = data.get("historyId")
        return HistoryPage(
            records=data.get("history", []),
            history_id=str(history_id) if history_id is not None else None,
            next_page_token=data.get("nextPageToken"),
        )
