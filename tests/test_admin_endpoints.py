"""
Tests for the admin payment endpoints and their API key guard
"""
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from permit_payments.core.config import settings
from permit_payments.domain.services.alert_service import AlertSeverity

_ADMIN_HEADERS = {"X-Admin-API-Key": "test-admin-key"}


class TestAdminApiKey:

    @pytest.mark.unit
    async def test_missing_key_returns_401(self, test_client: httpx.AsyncClient) -> None:
        response = await test_client.get("/api/admin/payments/stats")
        assert response.status_code == 401

    @pytest.mark.unit
    async def test_wrong_key_returns_403(self, test_client: httpx.AsyncClient) -> None:
        response = await test_client.get(
            "/api/admin/payments/stats", headers={"X-Admin-API-Key": "guess"}
        )
        assert response.status_code == 403

    @pytest.mark.unit
    async def test_unconfigured_key_closes_admin_surface(
        self, test_client: httpx.AsyncClient, monkeypatch
    ) -> None:
        monkeypatch.setattr(settings, "ADMIN_API_KEY", "")

        response = await test_client.get("/api/admin/payments/stats", headers=_ADMIN_HEADERS)

        assert response.status_code == 403


class TestPaymentStats:

    @pytest.mark.unit
    async def test_stats_snapshot(self, test_client: httpx.AsyncClient) -> None:
        response = await test_client.get("/api/admin/payments/stats", headers=_ADMIN_HEADERS)

        assert response.status_code == 200
        data = response.json()
        assert set(data) == {
            "recovery", "recovery_attempts", "circuit_breakers", "webhook_retries", "payments", "recent_alerts",
        }
        assert {cb["service"] for cb in data["circuit_breakers"]} == {
            "card_payment",
            "cash_voucher_payment",
            "customer_operations",
            "webhook_processing",
            "recovery",
        }
        assert data["webhook_retries"]["retry_delays"] == [60, 300, 900]
        assert data["recovery_attempts"]["total"] == 0
        assert data["recent_alerts"] == []

    @pytest.mark.unit
    async def test_stats_include_recent_alerts(self, test_client: httpx.AsyncClient, services) -> None:
        await services.alerts.send_alert(
            title="Webhook Processing Failed Permanently",
            message="Webhook evt_1 failed after 3 retries",
            severity=AlertSeverity.HIGH,
            details={"event_id": "evt_1"},
        )

        response = await test_client.get("/api/admin/payments/stats", headers=_ADMIN_HEADERS)

        [alert] = response.json()["recent_alerts"]
        assert alert["severity"] == "HIGH"
        assert alert["details"] == {"event_id": "evt_1"}

    @pytest.mark.unit
    @pytest.mark.parametrize("hours", [0, 721])
    async def test_stats_window_is_bounded(self, test_client: httpx.AsyncClient, hours: int) -> None:
        response = await test_client.get(
            "/api/admin/payments/stats", params={"hours": hours}, headers=_ADMIN_HEADERS
        )
        assert response.status_code == 422


class TestPaymentOperations:

    @pytest.mark.unit
    async def test_recover_unknown_application(self, test_client: httpx.AsyncClient) -> None:
        response = await test_client.post("/api/payments/applications/999/recover", headers=_ADMIN_HEADERS)

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "ERR_1002"

    @pytest.mark.unit
    async def test_recover_application_without_intent(
        self, test_client: httpx.AsyncClient, application_factory
    ) -> None:
        application = await application_factory()

        response = await test_client.post(
            f"/api/payments/applications/{application.id}/recover", headers=_ADMIN_HEADERS
        )

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "ERR_2005"

    @pytest.mark.unit
    async def test_recover_application(
        self, test_client: httpx.AsyncClient, services, application_factory, intent_factory
    ) -> None:
        application = await application_factory(payment_intent_id="pi_1")
        intent = intent_factory("pi_1", "succeeded", application_id=application.id)

        with patch.object(services.gateway, "retrieve_payment_intent", AsyncMock(return_value=intent)):
            response = await test_client.post(
                f"/api/payments/applications/{application.id}/recover", headers=_ADMIN_HEADERS
            )

        assert response.status_code == 200
        assert response.json() == {"success": True, "reason": "payment_succeeded", "status": "succeeded"}

    @pytest.mark.unit
    async def test_recovery_status(self, test_client: httpx.AsyncClient, application_factory) -> None:
        application = await application_factory(payment_intent_id="pi_1")

        response = await test_client.get(
            f"/api/payments/applications/{application.id}/recovery-status", headers=_ADMIN_HEADERS
        )

        assert response.status_code == 200
        data = response.json()
        assert data["payment_intent_id"] == "pi_1"
        assert data["status"] == "not_attempted"
        assert data["can_retry"] is True
        assert data["next_attempt_delay"] == 30

    @pytest.mark.unit
    async def test_reconcile_application(self, test_client: httpx.AsyncClient, application_factory) -> None:
        application = await application_factory()

        response = await test_client.post(
            f"/api/payments/applications/{application.id}/reconcile", headers=_ADMIN_HEADERS
        )

        assert response.status_code == 200
        assert response.json() == {"success": False, "reason": "no_payment_order"}

    @pytest.mark.unit
    async def test_operations_require_admin_key(self, test_client: httpx.AsyncClient) -> None:
        response = await test_client.post("/api/payments/applications/1/reconcile")
        assert response.status_code == 401
