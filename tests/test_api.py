"""Tests for the FastAPI endpoints."""

from datetime import timedelta

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from conftest import FEE_FUNDING, new_address
from mixerex.api.app import create_app
from mixerex.errors import LedgerUnavailableError
from mixerex.services.registry import set_services

ADMIN_HEADERS = {"X-Admin-Token": "test-admin-token"}


@pytest.fixture
def test_app(services):
    """Application wired to the test services (lifespan is not run)."""
    set_services(services)
    return create_app(run_worker=False)


@pytest_asyncio.fixture
async def client(test_app):
    """Create async test client."""
    transport = ASGITransport(app=test_app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def order_payload(token_mint, recipient, sender):
    return {
        "tokenMint": token_mint,
        "amount": "1000000",
        "recipientAddress": recipient,
        "senderAddress": sender,
        "sessionId": "browser-1",
        "walletAddress": sender,
    }


async def create_order(client, payload) -> dict:
    response = await client.post("/api/mixer/order", json=payload)
    assert response.status_code == 200, response.text
    return response.json()


class TestHealthEndpoints:
    """Tests for health check endpoints."""

    @pytest.mark.asyncio
    async def test_health_check(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["service"] == "mixerex"

    @pytest.mark.asyncio
    async def test_detailed_health(self, client, master_key):
        response = await client.get("/health/detailed")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["ledger"] == {"backend": "simulated", "healthy": True}
        assert "environment" in data["config"]
        assert master_key not in response.text


class TestOrderEndpoints:
    """Tests for order creation and lookup."""

    @pytest.mark.asyncio
    async def test_create_order(self, client, order_payload, token_mint):
        data = await create_order(client, order_payload)

        assert data["orderId"].startswith("MIX-")
        assert data["status"] == "pending"
        assert data["amount"] == "1000000"
        assert data["tokenMint"] == token_mint
        assert data["depositAddress"]
        assert data["expiresAt"]
        assert data["depositedAmount"] is None
        # Key material never leaves the server
        assert not any("secret" in key.lower() for key in data)
        assert "keyId" not in data

    @pytest.mark.asyncio
    async def test_create_order_with_integer_amount(self, client, order_payload):
        order_payload["amount"] = 1_000_000
        data = await create_order(client, order_payload)
        assert data["amount"] == "1000000"

    @pytest.mark.asyncio
    async def test_large_amount_is_exact(self, client, order_payload):
        order_payload["amount"] = str(2**64 - 1)
        data = await create_order(client, order_payload)
        assert data["amount"] == "18446744073709551615"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["0", "-5", "1.5", "abc", "", 0, -1, 1.5])
    async def test_invalid_amount(self, client, order_payload, amount):
        order_payload["amount"] = amount

        response = await client.post("/api/mixer/order", json=order_payload)

        assert response.status_code == 400
        assert "detail" in response.json()

    @pytest.mark.asyncio
    async def test_amount_above_u64(self, client, order_payload):
        order_payload["amount"] = str(2**64)

        response = await client.post("/api/mixer/order", json=order_payload)

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_invalid_recipient(self, client, order_payload):
        order_payload["recipientAddress"] = "0" * 40

        response = await client.post("/api/mixer/order", json=order_payload)

        assert response.status_code == 400
        assert "recipient" in response.json()["detail"]

    @pytest.mark.asyncio
    async def test_missing_field(self, client, order_payload):
        del order_payload["senderAddress"]

        response = await client.post("/api/mixer/order", json=order_payload)

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_get_order(self, client, order_payload):
        created = await create_order(client, order_payload)

        response = await client.get(f"/api/mixer/order/{created['orderId']}")

        assert response.status_code == 200
        assert response.json()["depositAddress"] == created["depositAddress"]

    @pytest.mark.asyncio
    async def test_unknown_order(self, client):
        response = await client.get("/api/mixer/order/MIX-0-MISSING0")

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_active_order(self, client, order_payload):
        created = await create_order(client, order_payload)

        response = await client.get("/api/mixer/active-order", params={"session_id": "browser-1"})
        assert response.status_code == 200
        assert response.json()["orderId"] == created["orderId"]

        response = await client.get("/api/mixer/active-order", params={"session_id": "other"})
        assert response.status_code == 200
        assert response.json() is None

    @pytest.mark.asyncio
    async def test_wallet_history(self, client, order_payload, sender):
        created = await create_order(client, order_payload)

        response = await client.get("/api/mixer/orders", params={"wallet_address": sender})
        assert [o["orderId"] for o in response.json()] == [created["orderId"]]

        response = await client.get(
            "/api/mixer/orders", params={"wallet_address": new_address()}
        )
        assert response.json() == []


class TestDepositEndpoints:
    """Tests for deposit polling."""

    @pytest.mark.asyncio
    async def test_not_yet_deposited(self, client, order_payload):
        created = await create_order(client, order_payload)

        response = await client.get(f"/api/mixer/check-deposit/{created['orderId']}")

        assert response.status_code == 200
        data = response.json()
        assert data["deposited"] is False
        assert data["status"] == "pending"
        assert data["payoutScheduledIn"] is None

    @pytest.mark.asyncio
    async def test_deposited(self, client, order_payload, ledger, token_mint):
        created = await create_order(client, order_payload)
        ledger.add_deposit(created["depositAddress"], token_mint, 1_000_000, signature="dep-sig")

        response = await client.get(f"/api/mixer/check-deposit/{created['orderId']}")

        data = response.json()
        assert data["deposited"] is True
        assert data["status"] == "processing"
        assert data["amount"] == "1000000"
        assert data["signature"] == "dep-sig"
        assert data["payoutScheduledAt"]
        assert 5 <= data["payoutScheduledIn"] <= 30

    @pytest.mark.asyncio
    async def test_ledger_outage_hides_details(self, client, order_payload, services, monkeypatch):
        created = await create_order(client, order_payload)

        async def broken(order_id):
            raise LedgerUnavailableError("rpc https://secret-node.example returned 500")

        monkeypatch.setattr(services.monitor, "check_deposit", broken)

        response = await client.get(f"/api/mixer/check-deposit/{created['orderId']}")

        assert response.status_code == 503
        assert "secret-node" not in response.text

    @pytest.mark.asyncio
    async def test_unknown_order(self, client):
        response = await client.get("/api/mixer/check-deposit/MIX-0-MISSING0")

        assert response.status_code == 404


class TestCloseEndpoints:
    """Tests for cancel and auto-close."""

    @pytest.mark.asyncio
    async def test_cancel(self, client, order_payload):
        created = await create_order(client, order_payload)

        response = await client.post(f"/api/mixer/cancel/{created['orderId']}")

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "orderId": created["orderId"],
            "status": "cancelled",
        }

        response = await client.post(f"/api/mixer/cancel/{created['orderId']}")
        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_auto_close_is_idempotent(self, client, order_payload, clock):
        created = await create_order(client, order_payload)
        clock.advance(minutes=21)

        first = await client.post(f"/api/mixer/auto-close/{created['orderId']}")
        second = await client.post(f"/api/mixer/auto-close/{created['orderId']}")

        assert first.status_code == second.status_code == 200
        assert first.json()["status"] == second.json()["status"] == "expired"

    @pytest.mark.asyncio
    async def test_cancel_unknown(self, client):
        response = await client.post("/api/mixer/cancel/MIX-0-MISSING0")

        assert response.status_code == 404


class TestAdminEndpoints:
    """Tests for operator endpoints."""

    @pytest.mark.asyncio
    async def test_requires_token(self, client):
        response = await client.get("/admin/mixer/failed-payouts")
        assert response.status_code == 401

        response = await client.get(
            "/admin/mixer/failed-payouts", headers={"X-Admin-Token": "wrong"}
        )
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_failed_payout_workflow(
        self, client, order_payload, services, ledger, token_mint, clock
    ):
        created = await create_order(client, order_payload)
        order_id = created["orderId"]
        ledger.add_deposit(created["depositAddress"], token_mint, 1_000_000)
        await client.get(f"/api/mixer/check-deposit/{order_id}")
        order = await services.orders.get_order(order_id)
        clock.now = order.payout_scheduled_at + timedelta(seconds=1)

        # Deposit address holds no fees: every attempt fails until flagged
        for wait in (0, 31, 61):
            clock.advance(seconds=wait)
            response = await client.post(f"/admin/mixer/execute/{order_id}", headers=ADMIN_HEADERS)
            assert response.status_code == 200
            assert response.json()["success"] is False

        response = await client.get("/admin/mixer/failed-payouts", headers=ADMIN_HEADERS)
        failed = response.json()
        assert [f["order_id"] for f in failed] == [order_id]
        assert failed[0]["payout_attempts"] == 3
        assert failed[0]["secret_discarded"] is False

        ledger.fund_native(created["depositAddress"], FEE_FUNDING)
        response = await client.post(f"/admin/mixer/retry/{order_id}", headers=ADMIN_HEADERS)
        assert response.status_code == 200
        response = await client.post(f"/admin/mixer/retry/{order_id}", headers=ADMIN_HEADERS)
        assert response.status_code == 409

        response = await client.post(f"/admin/mixer/execute/{order_id}", headers=ADMIN_HEADERS)
        assert response.json()["success"] is True

        response = await client.get(f"/admin/mixer/orders/{order_id}", headers=ADMIN_HEADERS)
        state = response.json()
        assert state["status"] == "completed"
        assert state["secret_discarded"] is True

    @pytest.mark.asyncio
    async def test_purge(self, client, order_payload, clock):
        created = await create_order(client, order_payload)
        await client.post(f"/api/mixer/cancel/{created['orderId']}")
        clock.advance(days=31)

        response = await client.post(
            "/admin/mixer/purge", params={"older_than_days": 30}, headers=ADMIN_HEADERS
        )

        assert response.json() == {"success": True, "purged": 1}
        response = await client.get(f"/api/mixer/order/{created['orderId']}")
        assert response.status_code == 404
