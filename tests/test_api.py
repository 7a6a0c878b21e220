"""
Integration tests for the HTTP API.

Run in-process against the ASGI app with the database dependency pointed at
the per-test SQLite database.
"""
from urllib.parse import urlencode

import pytest
from httpx import AsyncClient

from ngo_payments.config import get_settings
from ngo_payments.core.checksum import CHECK_MAC_FIELD, CheckMacValue

from .conftest import callback_payload, next_trade_no, sign_callback

PACKAGE_ORDER = {
    "kind": "package",
    "lines": [
        {"supply_id": 14, "quantity": 2, "unit_price": 80},
        {"supply_id": 15, "quantity": 2, "unit_price": 60},
        {"supply_id": 18, "quantity": 2, "unit_price": 150},
        {"supply_id": 19, "quantity": 5, "unit_price": 25},
    ],
    "user_id": 7,
}


def _app_checksum() -> CheckMacValue:
    settings = get_settings()
    return CheckMacValue(settings.ecpay_hash_key, settings.ecpay_hash_iv)


async def _create_and_checkout(client: AsyncClient) -> dict:
    created = await client.post("/orders", json=dict(PACKAGE_ORDER, trade_no=next_trade_no()))
    assert created.status_code == 201
    order = created.json()
    checkout = await client.post(f"/payments/{order['order_id']}/checkout")
    assert checkout.status_code == 200
    return checkout.json()


class TestOrderApi:
    """Order creation and status endpoints."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_create_order(self, client: AsyncClient) -> None:
        """The medical package totals 705 and starts pending."""
        response = await client.post("/orders", json=PACKAGE_ORDER)

        assert response.status_code == 201
        data = response.json()
        assert data["total_amount"] == 705
        assert data["payment_status"] == "pending"
        assert data["transaction_status"] is None
        assert data["trade_no"].startswith("NGO")
        assert len(data["trade_no"]) == 20

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_create_order_rejects_unknown_supply(self, client: AsyncClient) -> None:
        response = await client.post(
            "/orders",
            json={"kind": "regular", "lines": [{"supply_id": 999, "quantity": 1, "unit_price": 10}]},
        )

        assert response.status_code == 400

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_create_order_requires_single_target(self, client: AsyncClient) -> None:
        """A line naming both a supply and a need fails validation."""
        response = await client.post(
            "/orders",
            json={
                "kind": "regular",
                "lines": [
                    {"supply_id": 14, "emergency_need_id": 1, "quantity": 1, "unit_price": 10}
                ],
            },
        )

        assert response.status_code == 422

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_get_unknown_order(self, client: AsyncClient) -> None:
        response = await client.get("/orders/NGO20990101000000")

        assert response.status_code == 404


class TestPaymentApi:
    """Checkout, callback and retry endpoints."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_checkout_returns_signed_form(self, client: AsyncClient) -> None:
        """Checkout returns the signed fields and an auto-submit form."""
        checkout = await _create_and_checkout(client)

        assert checkout["action_url"] == get_settings().ecpay_payment_url
        assert list(checkout["fields"])[-1] == CHECK_MAC_FIELD
        assert checkout["fields"]["TotalAmount"] == "705"
        assert checkout["fields"]["ReturnURL"].endswith("/webhooks/ecpay")
        assert "<form" in checkout["form_html"]
        assert _app_checksum().verify(checkout["fields"])

        status = await client.get(f"/orders/{checkout['trade_no']}")
        assert status.json()["transaction_status"] == "processing"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_checkout_unknown_order(self, client: AsyncClient) -> None:
        response = await client.post("/payments/424242/checkout")

        assert response.status_code == 404

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_callback_settles_order(self, client: AsyncClient) -> None:
        """Form-encoded callback, empty fields included, answers 1|OK and marks paid."""
        checkout = await _create_and_checkout(client)
        payload = sign_callback(_app_checksum(), callback_payload(checkout["trade_no"], 705))

        response = await client.post(
            "/webhooks/ecpay",
            content=urlencode(payload),
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )

        assert response.status_code == 200
        assert response.text == "1|OK"
        status = await client.get(f"/orders/{checkout['trade_no']}")
        assert status.json()["payment_status"] == "paid"
        assert status.json()["gateway_trade_no"] == "2507271430521234"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_callback_bad_signature(self, client: AsyncClient) -> None:
        checkout = await _create_and_checkout(client)
        payload = sign_callback(_app_checksum(), callback_payload(checkout["trade_no"], 705))
        payload["RtnCode"] = "0"

        response = await client.post(
            "/webhooks/ecpay",
            content=urlencode(payload),
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )

        assert response.text == "0|ERROR"
        status = await client.get(f"/orders/{checkout['trade_no']}")
        assert status.json()["payment_status"] == "pending"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_resubmit_paid_order_conflicts(self, client: AsyncClient) -> None:
        """Retrying a paid order answers 409."""
        checkout = await _create_and_checkout(client)
        await client.post(f"/admin/orders/{checkout['trade_no']}/mark-paid")
        order = (await client.get(f"/orders/{checkout['trade_no']}")).json()

        response = await client.post(f"/payments/{order['order_id']}/resubmit")

        assert response.status_code == 409

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_resubmit_pending_order(self, client: AsyncClient) -> None:
        checkout = await _create_and_checkout(client)
        order = (await client.get(f"/orders/{checkout['trade_no']}")).json()

        response = await client.post(f"/payments/{order['order_id']}/resubmit")

        assert response.status_code == 200
        retried = response.json()
        assert retried["trade_no"] != checkout["trade_no"]
        assert len(retried["trade_no"]) <= 20


class TestAdminApi:
    """Operator endpoints."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_mark_paid_is_idempotent(self, client: AsyncClient) -> None:
        checkout = await _create_and_checkout(client)

        first = await client.post(f"/admin/orders/{checkout['trade_no']}/mark-paid")
        second = await client.post(f"/admin/orders/{checkout['trade_no']}/mark-paid")

        assert first.json() == {"trade_no": checkout["trade_no"], "applied": True}
        assert second.json() == {"trade_no": checkout["trade_no"], "applied": False}

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_mark_paid_before_checkout_conflicts(self, client: AsyncClient) -> None:
        """An order never sent to ECPay has no payment to settle."""
        created = await client.post("/orders", json=dict(PACKAGE_ORDER, trade_no=next_trade_no()))
        trade_no = created.json()["trade_no"]

        response = await client.post(f"/admin/orders/{trade_no}/mark-paid")

        assert response.status_code == 409
        assert "none" in response.json()["detail"]
        status = (await client.get(f"/orders/{trade_no}")).json()
        assert status["payment_status"] == "pending"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_mark_paid_after_failed_payment_conflicts(self, client: AsyncClient) -> None:
        checkout = await _create_and_checkout(client)
        payload = sign_callback(
            _app_checksum(), callback_payload(checkout["trade_no"], 705, rtn_code="0")
        )
        await client.post(
            "/webhooks/ecpay",
            content=urlencode(payload),
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )

        response = await client.post(f"/admin/orders/{checkout['trade_no']}/mark-paid")

        assert response.status_code == 409
        assert "failed" in response.json()["detail"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_mark_paid_unknown_trade(self, client: AsyncClient) -> None:
        response = await client.post("/admin/orders/NGO20990101000000/mark-paid")

        assert response.status_code == 404

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_recover_stuck_with_nothing_stuck(self, client: AsyncClient) -> None:
        response = await client.post("/admin/reconcile/stuck")

        assert response.status_code == 200
        assert response.json() == {"found": 0, "recovered": [], "failed": []}


class TestMonitoringApi:
    """Health and metrics endpoints."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_health_check(self, client: AsyncClient) -> None:
        response = await client.get("/health")

        assert response.status_code == 200
        assert "status" in response.json()

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_liveness(self, client: AsyncClient) -> None:
        response = await client.get("/health/live")

        assert response.json()["status"] == "alive"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_metrics_endpoint(self, client: AsyncClient) -> None:
        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "text/plain" in response.headers["content-type"]
        assert "ecpay_callback_events_total" in response.text

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_request_id_header(self, client: AsyncClient) -> None:
        response = await client.get("/", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["service"] == "ngo-payments"
