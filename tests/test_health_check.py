"""
בדיקות ל-Health Check - liveness, readiness, ובדיקות התלויות עצמן.
"""
from contextlib import contextmanager
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from app.core.circuit_breaker import get_mailbox_circuit_breaker
from app.domain.services import health_service

_SERVICE = "app.domain.services.health_service"


@contextmanager
def _dependencies(db="ok", redis="ok", celery="ok"):
    """מחליף את בדיקות התלויות החיצוניות בתוצאות קבועות"""
    with patch(f"{_SERVICE}._check_db", new_callable=AsyncMock, return_value=db), \
         patch(f"{_SERVICE}._check_redis", new_callable=AsyncMock, return_value=redis), \
         patch(f"{_SERVICE}._check_celery", new_callable=AsyncMock, return_value=celery):
        yield


def _open_gmail_breaker() -> None:
    breaker = get_mailbox_circuit_breaker()
    for _ in range(breaker.config.failure_threshold):
        breaker.record_failure(ConnectionError("gmail down"))


def _session_mock(execute: AsyncMock) -> AsyncMock:
    session = AsyncMock()
    session.execute = execute
    session.__aenter__ = AsyncMock(return_value=session)
    session.__aexit__ = AsyncMock(return_value=None)
    return session


# ============================================================================
# Liveness Probe - GET /health
# ============================================================================


class TestLivenessProbe:

    @pytest.mark.unit
    async def test_liveness_returns_healthy(self, test_client: httpx.AsyncClient) -> None:
        response = await test_client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}


# ============================================================================
# Readiness Probe - GET /health/ready
# ============================================================================


class TestReadinessProbe:

    @pytest.mark.unit
    async def test_all_healthy(self, test_client: httpx.AsyncClient) -> None:
        with _dependencies():
            response = await test_client.get("/health/ready")

        assert response.status_code == 200
        assert response.json() == {
            "status": "healthy",
            "db": "ok",
            "redis": "ok",
            "celery": "ok",
            "gmail_api": "ok",
        }

    @pytest.mark.unit
    @pytest.mark.parametrize("failing", ["db", "redis", "celery"])
    async def test_single_dependency_down(self, test_client: httpx.AsyncClient, failing: str) -> None:
        with _dependencies(**{failing: f"error: {failing}_unavailable"}):
            response = await test_client.get("/health/ready")

        assert response.status_code == 503
        data = response.json()
        assert data["status"] == "degraded"
        assert data[failing].startswith("error:")
        assert data["gmail_api"] == "ok"

    @pytest.mark.unit
    async def test_gmail_circuit_open(self, test_client: httpx.AsyncClient) -> None:
        _open_gmail_breaker()

        with _dependencies():
            response = await test_client.get("/health/ready")

        assert response.status_code == 503
        assert response.json()["gmail_api"] == "error: gmail_circuit_open"

    @pytest.mark.unit
    async def test_errors_do_not_leak_infrastructure(self, test_client: httpx.AsyncClient) -> None:
        with patch(f"{_SERVICE}.AsyncSessionLocal", return_value=_session_mock(
            AsyncMock(side_effect=ConnectionError("could not connect to 10.0.0.5:5432"))
        )), patch(f"{_SERVICE}._check_redis", new_callable=AsyncMock, return_value="ok"), \
             patch(f"{_SERVICE}._check_celery", new_callable=AsyncMock, return_value="ok"):
            response = await test_client.get("/health/ready")

        assert response.json()["db"] == "error: db_unavailable"
        assert "10.0.0.5" not in response.text


# ============================================================================
# בדיקות ישירות לפונקציות הבדיקה
# ============================================================================


class TestHealthCheckFunctions:

    @pytest.mark.unit
    async def test_check_db_success(self) -> None:
        with patch(f"{_SERVICE}.AsyncSessionLocal", return_value=_session_mock(AsyncMock())):
            assert await health_service._check_db() == "ok"

    @pytest.mark.unit
    async def test_check_db_failure(self) -> None:
        session = _session_mock(AsyncMock(side_effect=ConnectionError("refused")))
        with patch(f"{_SERVICE}.AsyncSessionLocal", return_value=session):
            assert await health_service._check_db() == "error: db_unavailable"

    @pytest.mark.unit
    async def test_check_redis_success(self, fake_redis) -> None:
        assert await health_service._check_redis() == "ok"

    @pytest.mark.unit
    async def test_check_redis_failure(self, fake_redis) -> None:
        fake_redis.fail_with = ConnectionError("refused")

        assert await health_service._check_redis() == "error: redis_unavailable"

    @pytest.mark.unit
    async def test_check_celery_closes_client(self) -> None:
        client = AsyncMock()
        with patch(f"{_SERVICE}.aioredis.from_url", return_value=client):
            assert await health_service._check_celery() == "ok"

        client.aclose.assert_awaited_once()

    @pytest.mark.unit
    async def test_check_celery_failure(self) -> None:
        client = AsyncMock()
        client.ping = AsyncMock(side_effect=ConnectionError("refused"))
        with patch(f"{_SERVICE}.aioredis.from_url", return_value=client):
            assert await health_service._check_celery() == "error: celery_unavailable"

        client.aclose.assert_awaited_once()

    @pytest.mark.unit
    def test_gmail_circuit_check(self) -> None:
        assert health_service._check_gmail_circuit() == "ok"

        _open_gmail_breaker()

        assert health_service._check_gmail_circuit() == "error: gmail_circuit_open"
