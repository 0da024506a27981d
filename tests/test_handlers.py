"""Tests for the HTTP layer through aiohttp_client."""

from datetime import datetime
from decimal import Decimal
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest
import pytz

from agrimarket.app import MarketplaceApp
from agrimarket.errors import InsufficientStockError, NotFoundError
from agrimarket.models.cart import Cart, CartStatus
from agrimarket.models.order import BillingInfo, OrderStatus, PaymentMethod
from agrimarket.models.payment import PaymentResult, PaymentResultStatus
from agrimarket.models.wallet import Wallet


class FakeDatabase:
    """Stands in for the asyncpg pool; services under test are patched."""

    pool = None

    async def connect(self):
        pass

    async def close(self):
        pass


@pytest.fixture
def marketplace():
    return MarketplaceApp(db=FakeDatabase())


@pytest.fixture
async def client(aiohttp_client, marketplace):
    return await aiohttp_client(marketplace.application)


@pytest.fixture
def restaurant_id():
    return uuid4()


@pytest.fixture
def as_restaurant(restaurant_id):
    return {"X-User-Id": str(restaurant_id)}


ADMIN_ID = "admin-1"
AS_ADMIN = {"X-User-Id": ADMIN_ID}


class TestErrors:
    async def test_missing_identity_is_401(self, client):
        response = await client.get("/carts/me")

        assert response.status == 401
        assert (await response.json()) == {"success": False, "error": "Missing X-User-Id header"}

    async def test_non_uuid_identity_is_401(self, client):
        response = await client.get("/carts/me", headers={"X-User-Id": "someone"})
        assert response.status == 401

    async def test_unknown_route_is_404(self, client):
        response = await client.get("/nowhere")
        assert response.status == 404

    async def test_unexpected_error_is_generic_500(self, client, marketplace, as_restaurant):
        marketplace.cart_service.get_cart = AsyncMock(side_effect=RuntimeError("password=hunter2"))

        response = await client.get("/carts/me", headers=as_restaurant)

        assert response.status == 500
        body = await response.json()
        assert body == {"success": False, "error": "Internal server error"}

    async def test_health_reports_database_outage(self, client):
        response = await client.get("/health")
        assert response.status == 503


class TestCartRoutes:
    async def test_get_cart(self, client, marketplace, restaurant_id, as_restaurant):
        cart = Cart(
            id=uuid4(), restaurant_id=restaurant_id, status=CartStatus.ACTIVE,
            total_amount=Decimal("0"), created_at=datetime.now(pytz.utc),
        )
        marketplace.cart_service.get_cart = AsyncMock(return_value=cart)

        response = await client.get("/carts/me", headers=as_restaurant)

        assert response.status == 200
        body = await response.json()
        assert body["success"] is True
        assert body["data"]["cart"]["id"] == str(cart.id)
        assert body["data"]["total_items"] == 0
        marketplace.cart_service.get_cart.assert_awaited_once_with(restaurant_id)

    async def test_add_item_validates_quantity(self, client, marketplace, as_restaurant):
        marketplace.cart_service.add_item = AsyncMock()

        response = await client.post(
            "/carts/items", json={"product_id": str(uuid4()), "quantity": 0}, headers=as_restaurant
        )

        assert response.status == 400
        marketplace.cart_service.add_item.assert_not_awaited()

    async def test_add_item_rejects_fractional_quantity(self, client, marketplace, as_restaurant):
        marketplace.cart_service.add_item = AsyncMock()

        response = await client.post(
            "/carts/items", json={"product_id": str(uuid4()), "quantity": 2.7}, headers=as_restaurant
        )

        assert response.status == 400
        marketplace.cart_service.add_item.assert_not_awaited()

    async def test_insufficient_stock_maps_to_400(self, client, marketplace, as_restaurant):
        marketplace.cart_service.add_item = AsyncMock(
            side_effect=InsufficientStockError("Tomatoes", 3, 5)
        )

        response = await client.post(
            "/carts/items", json={"product_id": str(uuid4()), "quantity": 5}, headers=as_restaurant
        )

        assert response.status == 400
        assert "Insufficient stock for Tomatoes" in (await response.json())["error"]

    async def test_invalid_json_body(self, client, as_restaurant):
        response = await client.post(
            "/carts/items", data="{broken", headers={**as_restaurant, "Content-Type": "application/json"}
        )
        assert response.status == 400


class TestCheckoutRoutes:
    async def test_checkout_created(self, client, marketplace, make_order, restaurant_id, as_restaurant):
        order = make_order(restaurant_id=restaurant_id)
        payment = PaymentResult(
            success=True, status=PaymentResultStatus.PENDING, method=PaymentMethod.MOBILE_MONEY,
            reference=f"{order.order_number}-1",
        )
        marketplace.checkout_service.checkout = AsyncMock(
            return_value={"order": order, "payment": payment, "created": True}
        )
        cart_id = uuid4()

        response = await client.post("/checkouts", headers=as_restaurant, json={
            "cart_id": str(cart_id),
            "payment_method": "mobile_money",
            "phone_number": "0788123456",
            "billing_name": "Kigali Bistro",
        })

        assert response.status == 201
        body = await response.json()
        assert body["data"]["order"]["order_number"] == order.order_number
        assert body["data"]["payment"]["status"] == "pending"
        args = marketplace.checkout_service.checkout.await_args
        assert args.args[:3] == (restaurant_id, cart_id, PaymentMethod.MOBILE_MONEY)
        assert args.args[3] == BillingInfo(billing_name="Kigali Bistro")

    async def test_repeated_checkout_is_200(self, client, marketplace, make_order, as_restaurant):
        order = make_order()
        marketplace.checkout_service.checkout = AsyncMock(
            return_value={"order": order, "payment": None, "created": False}
        )

        response = await client.post("/checkouts", headers=as_restaurant, json={
            "cart_id": str(uuid4()), "payment_method": "CASH",
        })

        assert response.status == 200

    async def test_unknown_payment_method(self, client, as_restaurant):
        response = await client.post("/checkouts", headers=as_restaurant, json={
            "cart_id": str(uuid4()), "payment_method": "BITCOIN",
        })

        assert response.status == 400

    async def test_bad_card_details(self, client, as_restaurant):
        response = await client.post("/checkouts", headers=as_restaurant, json={
            "cart_id": str(uuid4()), "payment_method": "CARD", "card": {"card_number": "5531"},
        })

        assert response.status == 400
        assert "card details" in (await response.json())["error"]


class TestOrderRoutes:
    async def test_restaurant_listing_is_scoped(self, client, marketplace, restaurant_id, as_restaurant):
        marketplace.order_service.list_orders = AsyncMock(
            return_value={"orders": [], "total": 0, "limit": 50, "offset": 0}
        )

        response = await client.get(
            f"/orders?restaurant_id={uuid4()}&status=pending", headers=as_restaurant
        )

        assert response.status == 200
        kwargs = marketplace.order_service.list_orders.await_args.kwargs
        assert kwargs["restaurant_id"] == restaurant_id
        assert kwargs["status"] == OrderStatus.PENDING

    async def test_statistics_requires_admin(self, client, marketplace, as_restaurant):
        marketplace.order_service.order_statistics = AsyncMock(return_value={})

        response = await client.get("/orders/statistics", headers=as_restaurant)

        assert response.status == 403
        marketplace.order_service.order_statistics.assert_not_awaited()

    async def test_statistics_for_admin(self, client, marketplace):
        marketplace.order_service.order_statistics = AsyncMock(return_value={
            "total_orders": 1, "by_status": {"DELIVERED": 1},
            "total_revenue": Decimal("2500"), "average_order_value": Decimal("2500.00"),
        })

        response = await client.get("/orders/statistics", headers=AS_ADMIN)

        assert response.status == 200
        assert (await response.json())["data"]["total_revenue"] == "2500"

    async def test_status_update_requires_admin(self, client, marketplace, as_restaurant):
        marketplace.order_service.update_status = AsyncMock()

        response = await client.patch(
            f"/orders/{uuid4()}/status", json={"status": "PREPARING"}, headers=as_restaurant
        )

        assert response.status == 403
        marketplace.order_service.update_status.assert_not_awaited()

    async def test_get_missing_order(self, client, marketplace, as_restaurant):
        marketplace.order_service.get_order = AsyncMock(side_effect=NotFoundError("Order", "x"))

        response = await client.get(f"/orders/{uuid4()}", headers=as_restaurant)

        assert response.status == 404

    async def test_direct_order(self, client, marketplace, make_order, restaurant_id, as_restaurant):
        marketplace.order_service.create_direct = AsyncMock(return_value=make_order())
        product_id = uuid4()

        response = await client.post("/orders", headers=as_restaurant, json={
            "items": [{"product_id": str(product_id), "quantity": 2}],
            "payment_method": "CASH",
        })

        assert response.status == 201
        args = marketplace.order_service.create_direct.await_args.args
        assert args[0] == restaurant_id
        assert args[1] == [{"product_id": product_id, "quantity": 2}]

    async def test_cancel_needs_reason(self, client, as_restaurant):
        response = await client.post(f"/orders/{uuid4()}/cancel", json={}, headers=as_restaurant)
        assert response.status == 400

    async def test_update_order_as_admin(self, client, marketplace, make_order):
        order = make_order(notes="Deliver to back entrance")
        marketplace.order_service.update_order = AsyncMock(return_value=order)

        response = await client.patch(f"/orders/{order.id}", headers=AS_ADMIN, json={
            "estimated_delivery": "2024-05-02T09:30:00+02:00",
            "notes": "Deliver to back entrance",
        })

        assert response.status == 200
        args = marketplace.order_service.update_order.await_args
        assert args.args == (order.id,)
        assert args.kwargs["status"] is None
        assert args.kwargs["notes"] == "Deliver to back entrance"
        assert args.kwargs["estimated_delivery"] == datetime(2024, 5, 2, 7, 30, tzinfo=pytz.utc)

    async def test_update_order_with_status(self, client, marketplace, make_order):
        marketplace.order_service.update_order = AsyncMock(return_value=make_order())

        response = await client.patch(
            f"/orders/{uuid4()}", json={"status": "preparing"}, headers=AS_ADMIN
        )

        assert response.status == 200
        kwargs = marketplace.order_service.update_order.await_args.kwargs
        assert kwargs["status"] == OrderStatus.PREPARING

    async def test_update_order_requires_admin(self, client, marketplace, as_restaurant):
        marketplace.order_service.update_order = AsyncMock()

        response = await client.patch(
            f"/orders/{uuid4()}", json={"notes": "hi"}, headers=as_restaurant
        )

        assert response.status == 403
        marketplace.order_service.update_order.assert_not_awaited()

    async def test_update_order_rejects_bad_timestamp(self, client, marketplace):
        marketplace.order_service.update_order = AsyncMock()

        response = await client.patch(
            f"/orders/{uuid4()}", json={"estimated_delivery": "tomorrow"}, headers=AS_ADMIN
        )

        assert response.status == 400
        marketplace.order_service.update_order.assert_not_awaited()


class TestWalletRoutes:
    async def test_foreign_wallet_history_is_forbidden(self, client, marketplace, as_restaurant):
        marketplace.wallet_service.get_wallet = AsyncMock(return_value=Wallet(
            id=uuid4(), restaurant_id=uuid4(), created_at=datetime.now(pytz.utc),
        ))
        marketplace.wallet_service.list_transactions = AsyncMock(return_value=[])

        response = await client.get(f"/wallets/{uuid4()}/transactions", headers=as_restaurant)

        assert response.status == 403
        marketplace.wallet_service.list_transactions.assert_not_awaited()

    async def test_adjust_as_admin(self, client, marketplace):
        marketplace.wallet_service.adjust = AsyncMock(return_value={"ok": True})
        wallet_id = uuid4()

        response = await client.post(
            f"/wallets/{wallet_id}/adjust", json={"amount": "-500", "reason": "Duplicate top-up"},
            headers=AS_ADMIN,
        )

        assert response.status == 200
        marketplace.wallet_service.adjust.assert_awaited_once_with(
            wallet_id, Decimal("-500"), "Duplicate top-up", ADMIN_ID
        )

    async def test_set_status_parses_bool(self, client, marketplace):
        wallet = Wallet(id=uuid4(), restaurant_id=uuid4(), is_active=False, created_at=datetime.now(pytz.utc))
        marketplace.wallet_service.set_wallet_status = AsyncMock(return_value=wallet)

        response = await client.patch(
            f"/wallets/{wallet.id}/status", json={"is_active": "false"}, headers=AS_ADMIN
        )

        assert response.status == 200
        marketplace.wallet_service.set_wallet_status.assert_awaited_once_with(wallet.id, False)


class TestWebhookRoutes:
    async def test_bad_signature_is_401(self, client, marketplace):
        marketplace.order_service.find_by_reference = AsyncMock()

        response = await client.post(
            "/payments/webhook", data=b'{"data": {"tx_ref": "x", "status": "successful"}}',
            headers={"verif-hash": "wrong"},
        )

        assert response.status == 401
        marketplace.order_service.find_by_reference.assert_not_awaited()

    async def test_unmatched_is_acknowledged(self, client, marketplace):
        marketplace.order_service.find_by_reference = AsyncMock(return_value=None)
        marketplace.wallet_service.find_transaction_by_reference = AsyncMock(return_value=None)
        marketplace.subscription_service.find_by_reference = AsyncMock(return_value=None)

        response = await client.post(
            "/payments/webhook", data=b'{"data": {"tx_ref": "x", "status": "successful"}}',
            headers={"verif-hash": "flw-secret-hash"},
        )

        assert response.status == 200
        assert (await response.json())["data"]["matched"] is None

    async def test_database_outage_is_503(self, client, marketplace):
        marketplace.order_service.find_by_reference = AsyncMock(side_effect=ConnectionRefusedError())

        response = await client.post(
            "/payments/webhook", data=b'{"data": {"tx_ref": "x", "status": "successful"}}',
            headers={"verif-hash": "flw-secret-hash"},
        )

        assert response.status == 503
