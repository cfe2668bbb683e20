"""
בדיקות GmailClient מעל httpx.MockTransport - מיפוי שגיאות, רענון token ו-circuit breaker.
"""
from datetime import timedelta

import httpx
import pytest
from sqlalchemy import select

from app.core.circuit_breaker import get_mailbox_circuit_breaker
from app.core.config import settings
from app.core.exceptions import (
    CircuitBreakerOpenError,
    HistoryExpiredError,
    MailboxApiError,
    ServiceTimeoutError,
)
from app.db.database import utcnow
from app.db.models.email_account import EmailAccount
from app.domain.services.account_store import AccountStore
from app.domain.services.mailbox_client import HISTORY_TYPES, GmailClient, decode_base64url
from tests.helpers import b64url

BASE_URL = "https://gmail.test/gmail/v1/users/me"


class Recorder:
    """handler ל-MockTransport ששומר את הבקשות ומחזיר תשובות לפי path"""

    def __init__(self, routes: dict):
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get(request.url.path)
        if route is None:
            return httpx.Response(404, json={"error": {"code": 404}})
        if callable(route):
            return route(request)
        return route


def _client(db_session, handler) -> GmailClient:
    return GmailClient(
        AccountStore(db_session),
        transport=httpx.MockTransport(handler),
        base_url=BASE_URL,
    )


class TestRequests:

    @pytest.mark.unit
    async def test_list_history_params_and_page(self, db_session, account_factory):
        account = await account_factory()
        recorder = Recorder({
            "/gmail/v1/users/me/history": httpx.Response(
                200,
                json={
                    "history": [{"id": "101", "messagesAdded": [{"message": {"id": "m1"}}]}],
                    "historyId": 130,
                    "nextPageToken": "page-2",
                },
            ),
        })

        page = await _client(db_session, recorder).list_history(account, "100", "page-1")

        assert page.history_id == "130"
        assert page.next_page_token == "page-2"
        assert page.records[0]["messagesAdded"][0]["message"]["id"] == "m1"

        request = recorder.requests[0]
        assert request.headers["Authorization"] == "Bearer test-access-token"
        assert request.url.params["startHistoryId"] == "100"
        assert request.url.params["pageToken"] == "page-1"
        assert tuple(request.url.params.get_list("historyTypes")) == HISTORY_TYPES

    @pytest.mark.unit
    async def test_list_messages(self, db_session, account_factory):
        account = await account_factory()
        recorder = Recorder({
            "/gmail/v1/users/me/messages": httpx.Response(
                200, json={"messages": [{"id": "m1", "threadId": "t1"}, {"id": "m2"}]}
            ),
        })

        refs = await _client(db_session, recorder).list_messages(account, 50)

        assert [(ref.id, ref.thread_id) for ref in refs] == [("m1", "t1"), ("m2", None)]
        assert recorder.requests[0].url.params["maxResults"] == "50"

    @pytest.mark.unit
    async def test_get_attachment_decodes_base64url(self, db_session, account_factory):
        account = await account_factory()
        content = b"\xff\xfe binary \x00 data?"
        recorder = Recorder({
            "/gmail/v1/users/me/messages/m1/attachments/a1": httpx.Response(
                200, json={"data": b64url(content), "size": len(content)}
            ),
        })

        assert await _client(db_session, recorder).get_attachment(account, "m1", "a1") == content

    @pytest.mark.unit
    def test_decode_base64url_without_padding(self):
        assert decode_base64url(b64url("ab")) == b"ab"


class TestErrorMapping:

    @pytest.mark.unit
    async def test_history_404_means_expired_cursor(self, db_session, account_factory):
        account = await account_factory()
        recorder = Recorder({"/gmail/v1/users/me/history": httpx.Response(404, json={})})

        with pytest.raises(HistoryExpiredError) as exc_info:
            await _client(db_session, recorder).list_history(account, "42")
        assert exc_info.value.start_history_id == "42"

    @pytest.mark.unit
    async def test_missing_message_returns_none(self, db_session, account_factory):
        account = await account_factory()

        assert await _client(db_session, Recorder({})).get_message(account, "gone") is None

    @pytest.mark.unit
    async def test_server_error(self, db_session, account_factory):
        account = await account_factory()
        recorder = Recorder({"/gmail/v1/users/me/profile": httpx.Response(500, text="backend error")})

        with pytest.raises(MailboxApiError) as exc_info:
            await _client(db_session, recorder).get_profile(account)
        assert exc_info.value.http_status == 500
        assert exc_info.value.details["operation"] == "users.getProfile"

    @pytest.mark.unit
    async def test_timeout(self, db_session, account_factory):
        account = await account_factory()

        def _timeout(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(ServiceTimeoutError):
            await _client(db_session, _timeout).get_profile(account)


class TestCircuitBreaker:

    @pytest.mark.unit
    async def test_opens_after_repeated_server_errors(self, db_session, account_factory):
        account = await account_factory()
        recorder = Recorder({"/gmail/v1/users/me/profile": httpx.Response(503)})
        client = _client(db_session, recorder)

        for _ in range(5):
            with pytest.raises(MailboxApiError):
                await client.get_profile(account)

        with pytest.raises(CircuitBreakerOpenError):
            await client.get_profile(account)
        assert len(recorder.requests) == 5
        assert get_mailbox_circuit_breaker().is_open

    @pytest.mark.unit
    async def test_not_found_does_not_open_breaker(self, db_session, account_factory):
        account = await account_factory()
        client = _client(db_session, Recorder({}))

        for _ in range(10):
            assert await client.get_message(account, "gone") is None

        assert not get_mailbox_circuit_breaker().is_open


class TestTokenRefresh:

    def _token_route(self, request: httpx.Request) -> httpx.Response:
        assert b"grant_type=refresh_token" in request.content
        assert b"refresh_token=test-refresh-token" in request.content
        return httpx.Response(200, json={"access_token": "fresh-token", "expires_in": 3600})

    @pytest.mark.unit
    async def test_refresh_on_401_and_retry(self, db_session, account_factory):
        account = await account_factory()
        account_id = account.id

        def _profile(request):
            if request.headers["Authorization"] == "Bearer fresh-token":
                return httpx.Response(200, json={"emailAddress": "x@example.com", "historyId": "77"})
            return httpx.Response(401)

        recorder = Recorder({
            "/gmail/v1/users/me/profile": _profile,
            httpx.URL(settings.GOOGLE_TOKEN_URL).path: self._token_route,
        })

        profile = await _client(db_session, recorder).get_profile(account)

        assert profile["historyId"] == "77"
        stored = await db_session.scalar(
            select(EmailAccount.access_token).where(EmailAccount.id == account_id)
        )
        assert stored == "fresh-token"

    @pytest.mark.unit
    async def test_expired_token_refreshed_before_request(self, db_session, account_factory):
        account = await account_factory()
        account.token_expires_at = utcnow() - timedelta(minutes=5)
        await db_session.commit()

        recorder = Recorder({
            "/gmail/v1/users/me/profile": httpx.Response(200, json={"historyId": "5"}),
            httpx.URL(settings.GOOGLE_TOKEN_URL).path: self._token_route,
        })

        await _client(db_session, recorder).get_profile(account)

        paths = [request.url.path for request in recorder.requests]
        assert paths == [httpx.URL(settings.GOOGLE_TOKEN_URL).path, "/gmail/v1/users/me/profile"]
        assert recorder.requests[1].headers["Authorization"] == "Bearer fresh-token"

    @pytest.mark.unit
    async def test_no_refresh_token(self, db_session, account_factory):
        account = await account_factory()
        account.refresh_token = None
        account.access_token = None
        await db_session.commit()

        with pytest.raises(MailboxApiError) as exc_info:
            await _client(db_session, Recorder({})).get_profile(account)
        assert exc_info.value.http_status == 401
