"""
Unit tests for the health endpoints: liveness and readiness.
"""
import pytest
from unittest.mock import AsyncMock, patch, MagicMock

import httpx

from permit_payments.domain.services.health_service import (
    _check_celery,
    _check_db,
    _check_payment_provider,
    _check_redis,
)

_SERVICE = "permit_payments.domain.services.health_service"


def _patch_checks(db="ok", redis="ok", provider="ok", celery="ok"):
    """Patch every dependency probe with a fixed result."""
    from contextlib import ExitStack

    stack = ExitStack()
    stack.enter_context(patch(f"{_SERVICE}._check_db", new_callable=AsyncMock, return_value=db))
    stack.enter_context(patch(f"{_SERVICE}._check_redis", new_callable=AsyncMock, return_value=redis))
    stack.enter_context(
        patch(f"{_SERVICE}._check_payment_provider", new_callable=AsyncMock, return_value=provider)
    )
    stack.enter_context(patch(f"{_SERVICE}._check_celery", new_callable=AsyncMock, return_value=celery))
    return stack


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
    async def test_readiness_all_healthy(self, test_client: httpx.AsyncClient) -> None:
        with _patch_checks():
            response = await test_client.get("/health/ready")

        assert response.status_code == 200
        assert response.json() == {
            "status": "healthy",
            "db": "ok",
            "redis": "ok",
            "payment_provider": "ok",
            "celery": "ok",
        }

    @pytest.mark.unit
    async def test_readiness_db_down(self, test_client: httpx.AsyncClient) -> None:
        with _patch_checks(db="error: db_unavailable"):
            response = await test_client.get("/health/ready")

        assert response.status_code == 503
        data = response.json()
        assert data["status"] == "degraded"
        assert data["db"] == "error: db_unavailable"
        assert data["redis"] == "ok"

    @pytest.mark.unit
    async def test_readiness_provider_unreachable(self, test_client: httpx.AsyncClient) -> None:
        with _patch_checks(provider="error: payment_provider_unreachable"):
            response = await test_client.get("/health/ready")

        assert response.status_code == 503
        assert response.json()["payment_provider"] == "error: payment_provider_unreachable"

    @pytest.mark.unit
    async def test_readiness_uses_real_db_and_redis(self, test_client: httpx.AsyncClient) -> None:
        """Only the external probes are patched; the test database and fake Redis answer."""
        with patch(f"{_SERVICE}._check_payment_provider", new_callable=AsyncMock, return_value="ok"), \
                patch(f"{_SERVICE}._check_celery", new_callable=AsyncMock, return_value="ok"):
            response = await test_client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["db"] == "ok"
        assert response.json()["redis"] == "ok"


# ============================================================================
# Individual probes
# ============================================================================


class TestHealthCheckFunctions:

    @pytest.mark.unit
    async def test_check_db_success(self, session_factory) -> None:
        assert await _check_db(session_factory) == "ok"

    @pytest.mark.unit
    async def test_check_db_failure(self) -> None:
        mock_session = AsyncMock()
        mock_session.execute = AsyncMock(side_effect=ConnectionError("refused"))
        mock_session.__aenter__ = AsyncMock(return_value=mock_session)
        mock_session.__aexit__ = AsyncMock(return_value=None)

        result = await _check_db(MagicMock(return_value=mock_session))

        assert result == "error: db_unavailable"

    @pytest.mark.unit
    async def test_check_redis_success(self, fake_redis) -> None:
        assert await _check_redis(fake_redis) == "ok"

    @pytest.mark.unit
    async def test_check_redis_failure(self) -> None:
        mock_redis = AsyncMock()
        mock_redis.ping = AsyncMock(side_effect=ConnectionError("refused"))

        result = await _check_redis(mock_redis)

        assert result == "error: redis_unavailable"

    @staticmethod
    def _http_client(**get_kwargs) -> AsyncMock:
        mock_client = AsyncMock()
        mock_client.get = AsyncMock(**get_kwargs)
        mock_client.__aenter__ = AsyncMock(return_value=mock_client)
        mock_client.__aexit__ = AsyncMock(return_value=None)
        return mock_client

    @pytest.mark.unit
    async def test_check_payment_provider_success(self) -> None:
        mock_response = MagicMock()
        mock_response.status_code = 200

        with patch(f"{_SERVICE}.httpx.AsyncClient", return_value=self._http_client(return_value=mock_response)):
            result = await _check_payment_provider()

        assert result == "ok"

    @pytest.mark.unit
    async def test_check_payment_provider_server_error(self) -> None:
        mock_response = MagicMock()
        mock_response.status_code = 503

        with patch(f"{_SERVICE}.httpx.AsyncClient", return_value=self._http_client(return_value=mock_response)):
            result = await _check_payment_provider()

        assert result == "error: payment_provider_unreachable"

    @pytest.mark.unit
    async def test_check_payment_provider_connection_error(self) -> None:
        client = self._http_client(side_effect=httpx.ConnectError("refused"))

        with patch(f"{_SERVICE}.httpx.AsyncClient", return_value=client):
            result = await _check_payment_provider()

        assert result == "error: payment_provider_unreachable"

    @pytest.mark.unit
    async def test_check_celery_success(self) -> None:
        mock_client = AsyncMock()
        mock_client.ping = AsyncMock(return_value=True)
        mock_client.aclose = AsyncMock()

        with patch(f"{_SERVICE}.aioredis.from_url", return_value=mock_client):
            result = await _check_celery()

        assert result == "ok"
        mock_client.aclose.assert_awaited_once()

    @pytest.mark.unit
    async def test_check_celery_failure(self) -> None:
        mock_client = AsyncMock()
        mock_client.ping = AsyncMock(side_effect=ConnectionError("refused"))
        mock_client.aclose = AsyncMock()

        with patch(f"{_SERVICE}.aioredis.from_url", return_value=mock_client):
            result = await _check_celery()

        assert result == "error: celery_unavailable"
