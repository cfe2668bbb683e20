"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, SQLite in memory)
- FakeRedis, FakeWorkQueue ו-FakeMailboxClient במקום Redis / Celery / Gmail
- Test data factories (users, email accounts, webhook events)
- HTTP test client מעל ASGITransport
"""
import itertools
from datetime import datetime
from typing import Any, AsyncGenerator
from unittest.mock import patch

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from app.api.dependencies.services import get_sync_services
from app.core.exceptions import MailboxApiError
from app.core.redis_client import RedisScripts
from app.db.database import Base, get_db, utcnow
from app.db.models.email_account import EmailAccount, SyncMode, SyncStatus
from app.db.models.user import User
from app.db.models.webhook_event import WebhookEvent, WebhookEventStatus
from app.domain.services.attachment_storage import LocalAttachmentStorage
from app.domain.services.factory import build_services
from app.domain.services.mailbox_client import HistoryPage, MessageRef
from app.domain.services.work_queue import JobOptions, RecurringJob
from app.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# הערה: לא מגדירים event_loop fixture מותאם אישית כי pytest-asyncio 0.23+
# מטפל בזה אוטומטית עם asyncio_mode=auto ו-asyncio_default_fixture_loop_scope=function


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    """Reset circuit breakers between tests"""
    from app.core.circuit_breaker import CircuitBreaker
    CircuitBreaker.reset_all()
    yield
    CircuitBreaker.reset_all()


# ============================================================================
# Fake Redis
# ============================================================================

class FakeRedis:
    """תחליף ל-Redis לבדיקות - in-memory dict עם ממשק תואם ומעקב TTL."""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self._hashes: dict[str, dict[str, str]] = {}
        self._ttls: dict[str, int] = {}
        self.fail_with: Exception | None = None

    def _check(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    async def ping(self) -> bool:
        self._check()
        return True

    async def get(self, key: str) -> str | None:
        self._check()
        return self._store.get(key)

    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None) -> bool | None:
        """SET עם תמיכה ב-NX (רק אם לא קיים) ו-EX (תפוגה בשניות)"""
        self._check()
        if nx and key in self._store:
            return None
        self._store[key] = value
        if ex is not None:
            self._ttls[key] = ex
        return True

    async def expire(self, key: str, ttl: int) -> None:
        if key in self._store or key in self._hashes:
            self._ttls[key] = ttl

    async def delete(self, *keys: str) -> int:
        self._check()
        removed = 0
        for key in keys:
            if self._store.pop(key, None) is not None or self._hashes.pop(key, None) is not None:
                removed += 1
            self._ttls.pop(key, None)
        return removed

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        self._check()
        bucket = self._hashes.setdefault(key, {})
        bucket[field] = str(int(bucket.get(field, 0)) + amount)
        return int(bucket[field])

    async def hget(self, key: str, field: str) -> str | None:
        return self._hashes.get(key, {}).get(field)

    async def hgetall(self, key: str) -> dict[str, str]:
        self._check()
        return dict(self._hashes.get(key, {}))

    async def hset(self, key: str, field: str, value: str) -> int:
        bucket = self._hashes.setdefault(key, {})
        created = field not in bucket
        bucket[field] = value
        return int(created)

    async def hsetnx(self, key: str, field: str, value: str) -> int:
        bucket = self._hashes.setdefault(key, {})
        if field in bucket:
            return 0
        bucket[field] = value
        return 1

    async def hdel(self, key: str, *fields: str) -> int:
        bucket = self._hashes.get(key, {})
        return sum(1 for field in fields if bucket.pop(field, None) is not None)

    async def aclose(self) -> None:
        self._store.clear()
        self._hashes.clear()
        self._ttls.clear()

    def register_script(self, script: str) -> "_FakeScript":
        """הסקריפטים המוכרים מבוצעים כפונקציות Python על אותו store"""
        bodies = {
            RedisScripts.RELEASE_LOCK: self._release_lock,
            RedisScripts.HSET_IF_EXISTS: self._hset_if_exists,
        }
        return _FakeScript(self, bodies[script])

    def _release_lock(self, keys: list[str], args: list[str]) -> int:
        if self._store.get(keys[0]) != args[0]:
            return 0
        del self._store[keys[0]]
        self._ttls.pop(keys[0], None)
        return 1

    def _hset_if_exists(self, keys: list[str], args: list[str]) -> int:
        bucket = self._hashes.get(keys[0], {})
        if args[0] not in bucket:
            return 0
        bucket[args[0]] = args[1]
        return 1


class _FakeScript:
    def __init__(self, redis: FakeRedis, body) -> None:
        self._redis = redis
        self._body = body

    async def __call__(self, keys=(), args=(), client=None) -> int:
        self._redis._check()
        return self._body(list(keys), [str(arg) for arg in args])


@pytest.fixture(autouse=True)
def fake_redis():
    """מחליף את get_redis ב-FakeRedis לכל הבדיקות."""
    _fake = FakeRedis()

    async def _get_fake_redis():
        return _fake

    with patch("app.core.redis_client.get_redis", _get_fake_redis), \
         patch("app.domain.services.health_service.get_redis", _get_fake_redis):
        yield _fake


# ============================================================================
# Fake Work Queue
# ============================================================================

class FakeWorkQueue:
    """WorkQueue בזיכרון - שומר כל job שנשלח לתור ואת ה-jobs החוזרים"""

    def __init__(self) -> None:
        self.enqueued: list[tuple[Any, JobOptions]] = []
        self.recurring: dict[str, RecurringJob] = {}
        self.schedule_calls = 0
        self.fail_with: Exception | None = None
        self._ids = itertools.count(1)

    async def enqueue(self, job, options: JobOptions) -> str:
        if self.fail_with is not None:
            raise self.fail_with
        self.enqueued.append((job, options))
        return f"task-{next(self._ids)}"

    async def schedule_recurring(self, key: str, job, options: JobOptions, every_seconds: int) -> bool:
        self.schedule_calls += 1
        if key in self.recurring:
            return False
        self.recurring[key] = RecurringJob(
            key=key, job=job, options=options, every_seconds=every_seconds, next_run_at=0.0
        )
        return True

    async def cancel_recurring(self, key: str) -> bool:
        return self.recurring.pop(key, None) is not None

    def jobs(self, job_type: str | None = None) -> list:
        return [job for job, _ in self.enqueued if job_type is None or job.type == job_type]

    def options_for(self, job_type: str) -> list[JobOptions]:
        return [options for job, options in self.enqueued if job.type == job_type]


@pytest.fixture
def fake_queue() -> FakeWorkQueue:
    return FakeWorkQueue()


# ============================================================================
# Fake Gmail client
# ============================================================================

class FakeMailboxClient:
    """MailboxClient בזיכרון. history_pages: רשימת HistoryPage לפי הסדר"""

    def __init__(self) -> None:
        self.messages: dict[str, dict] = {}
        self.attachments: dict[tuple[str, str], bytes] = {}
        self.history_pages: list[HistoryPage] = []
        self.profile_history_id = "500"
        self.history_error: Exception | None = None
        self.fail_with: Exception | None = None
        self.calls: list[tuple] = []

    def _check(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    async def list_messages(self, account, max_results):
        self.calls.append(("list_messages", account.id, max_results))
        self._check()
        return [
            MessageRef(id=message_id, thread_id=message.get("threadId"))
            for message_id, message in list(self.messages.items())[:max_results]
        ]

    async def get_message(self, account, message_id):
        self.calls.append(("get_message", account.id, message_id))
        self._check()
        return self.messages.get(message_id)

    async def get_profile(self, account):
        self.calls.append(("get_profile", account.id))
        self._check()
        return {"emailAddress": account.email, "historyId": self.profile_history_id}

    async def get_attachment(self, account, message_id, attachment_id):
        self.calls.append(("get_attachment", account.id, message_id, attachment_id))
        self._check()
        try:
            return self.attachments[(message_id, attachment_id)]
        except KeyError:
            raise MailboxApiError("attachment not found", http_status=404) from None

    async def list_history(self, account, start_history_id, page_token=None):
        self.calls.append(("list_history", account.id, start_history_id, page_token))
        self._check()
        if self.history_error is not None:
            raise self.history_error
        if not self.history_pages:
            return HistoryPage(records=[], history_id=None)
        index = int(page_token) if page_token else 0
        return self.history_pages[index]


@pytest.fixture
def fake_mailbox() -> FakeMailboxClient:
    return FakeMailboxClient()


@pytest.fixture
def attachment_storage(tmp_path) -> LocalAttachmentStorage:
    return LocalAttachmentStorage(root=tmp_path / "uploads")


@pytest.fixture
def services(db_session, fake_redis, fake_queue, fake_mailbox, attachment_storage):
    """כל שירותי הסנכרון מעל ה-session של הבדיקה והתחליפים"""
    return build_services(
        db_session,
        fake_redis,
        queue=fake_queue,
        client=fake_mailbox,
        storage=attachment_storage,
    )


# ============================================================================
# Test Data Factories
# ============================================================================

_test_id_counter = itertools.count(1)


@pytest.fixture
def user_factory(db_session: AsyncSession):
    """Factory for creating test users"""
    async def _create_user(email: str | None = None, name: str = "Test User") -> User:
        user = User(email=email or f"user{next(_test_id_counter)}@example.com", name=name)
        db_session.add(user)
        await db_session.commit()
        await db_session.refresh(user)
        return user

    return _create_user


@pytest.fixture
def account_factory(db_session: AsyncSession, user_factory):
    """Factory for creating connected email accounts"""
    async def _create_account(
        email: str | None = None,
        history_id: str | None = "100",
        sync_mode: SyncMode = SyncMode.PUSH,
        sync_enabled: bool = True,
        last_sync_at: datetime | None = None,
        created_at: datetime | None = None,
        webhook_failure_count: int = 0,
        owner: User | None = None,
    ) -> EmailAccount:
        owner = owner or await user_factory()
        account = EmailAccount(
            user_id=owner.id,
            email=email or f"mailbox{next(_test_id_counter)}@example.com",
            history_id=history_id,
            sync_mode=sync_mode,
            sync_status=SyncStatus.ACTIVE,
            sync_enabled=sync_enabled,
            last_sync_at=last_sync_at,
            created_at=created_at or utcnow(),
            webhook_failure_count=webhook_failure_count,
            access_token="test-access-token",
            refresh_token="test-refresh-token",
        )
        db_session.add(account)
        await db_session.commit()
        await db_session.refresh(account)
        return account

    return _create_account


@pytest.fixture
def webhook_event_factory(db_session: AsyncSession):
    """Factory for webhook events in an arbitrary state"""
    async def _create_event(
        account: EmailAccount,
        status: WebhookEventStatus = WebhookEventStatus.FAILED,
        history_id: str = "150",
        created_at: datetime | None = None,
        processing_time_ms: int | None = None,
        notification_id: str | None = None,
    ) -> WebhookEvent:
        event = WebhookEvent(
            account_id=account.id,
            notification_id=notification_id or f"notif-{next(_test_id_counter)}",
            history_id=history_id,
            status=status,
            created_at=created_at or utcnow(),
            processing_time_ms=processing_time_ms,
            error="boom" if status == WebhookEventStatus.FAILED else None,
        )
        db_session.add(event)
        await db_session.commit()
        await db_session.refresh(event)
        return event

    return _create_event


# ============================================================================
# HTTP client
# ============================================================================

@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession, services):
    """Create test client with database and services override"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    async def override_get_sync_services():
        return services

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_sync_services] = override_get_sync_services

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


