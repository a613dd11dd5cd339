from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from chatgate.apps.api.main import create_app
from chatgate.core.config import get_settings
from chatgate.domain.models import Order
from chatgate.persistence.db import SessionLocal
from chatgate.services.billing import payment_signature
from chatgate.tests.utils.accounts import auth_headers, create_account, utc_now


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test")


@pytest.mark.asyncio
async def test_subscription_status_for_new_account() -> None:
    user_id, _ = await create_account()
    async with _client() as client:
        response = await client.get("/v1/subscription/status", headers=auth_headers(user_id))
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "eligible"
    assert data["has_access"] is False
    assert data["features"]["monthly_message_limit"] == 1000


@pytest.mark.asyncio
async def test_checkout_and_verify_activates_plan() -> None:
    user_id, workspace_id = await create_account()
    headers = auth_headers(user_id)
    secret = get_settings().payment_gateway_secret
    async with _client() as client:
        order = await client.post(
            "/v1/payments/orders",
            json={"plan_id": "pro", "billing_period": "yearly"},
            headers=headers,
        )
        assert order.status_code == 201
        order_id = order.json()["data"]["order_id"]

        bad = await client.post(
            "/v1/payments/verify",
            json={"order_id": order_id, "payment_id": "pay_9", "signature": "deadbeef"},
            headers=headers,
        )
        good = await client.post(
            "/v1/payments/verify",
            json={
                "order_id": order_id,
                "payment_id": "pay_9",
                "signature": payment_signature(order_id, "pay_9", secret),
            },
            headers=headers,
        )
        chat = await client.post(
            "/v1/chat",
            json={"bot_id": workspace_id, "messages": [{"role": "user", "content": "hi"}]},
            headers=headers,
        )
    assert bad.status_code == 400
    assert bad.json()["error"]["code"] == "PAYMENT_VERIFICATION_FAILED"
    assert good.status_code == 200
    data = good.json()["data"]
    assert data["activated"] is True
    assert data["subscription"]["status"] == "active"
    assert data["subscription"]["tier"] == "pro"
    assert data["subscription"]["days_remaining"] >= 365
    assert chat.status_code == 200


@pytest.mark.asyncio
async def test_unknown_plan_is_a_validation_error() -> None:
    user_id, _ = await create_account()
    async with _client() as client:
        response = await client.post(
            "/v1/payments/orders", json={"plan_id": "free"}, headers=auth_headers(user_id)
        )
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_admin_routes_require_the_operator_token() -> None:
    user_id, _ = await create_account()
    async with SessionLocal() as session:
        session.add(
            Order(
                id="order_stuck",
                account_id=user_id,
                plan_id="basic",
                billing_period="monthly",
                payment_reference="pay_stuck",
                status="completed",
                created_at=utc_now(),
            )
        )
        await session.commit()

    async with _client() as client:
        anonymous = await client.post("/v1/admin/recovery")
        wrong = await client.post("/v1/admin/recovery", headers={"X-Admin-Token": "guess"})
        # A user session is not an operator credential.
        as_user = await client.post("/v1/admin/recovery", headers=auth_headers(user_id))
        ok = await client.post(
            "/v1/admin/recovery", headers={"X-Admin-Token": get_settings().admin_api_token}
        )
        expiry = await client.post(
            "/v1/admin/expire-subscriptions",
            headers={"X-Admin-Token": get_settings().admin_api_token},
        )
        status = await client.get("/v1/subscription/status", headers=auth_headers(user_id))
    assert anonymous.status_code == wrong.status_code == as_user.status_code == 403
    assert ok.status_code == 200
    assert ok.json()["data"]["recovered"] == 1
    assert expiry.json()["data"] == {"expired": 0}
    assert status.json()["data"]["status"] == "active"


@pytest.mark.asyncio
async def test_admin_metrics_report_embedding_health() -> None:
    user_id, _ = await create_account(status="active", tier="pro", days_left=30)
    admin = {"X-Admin-Token": get_settings().admin_api_token}
    async with _client() as client:
        before = await client.get("/v1/admin/metrics", headers=admin)
        await client.post(
            "/v1/knowledge",
            json={"filename": "faq.md", "content": "Orders ship within two days."},
            headers=auth_headers(user_id),
        )
        after = await client.get("/v1/admin/metrics", headers=admin)
        anonymous = await client.get("/v1/admin/metrics")
    assert before.json()["data"]["external_error_rate"] == {"embedding.hashed": None}
    assert after.status_code == 200
    assert after.json()["data"]["external_error_rate"] == {"embedding.hashed": 0.0}
    assert anonymous.status_code == 403
