"""Tests for payment attempts on OrderService, over an in-memory connection."""

from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
import pytz

from agrimarket.errors import PaymentInProgressError, ValidationError
from agrimarket.models.order import PaymentMethod, PaymentStatus
from agrimarket.services.checkout_service import CheckoutService
from agrimarket.services.order_service import OrderService
from agrimarket.services.payment_service import PaymentService


class FakeConnection:
    """Holds a single order row; understands the queries a payment attempt runs."""

    def __init__(self, row):
        self.row = row
        self.executed = []

    async def fetchrow(self, query, *args):
        if "FROM orders WHERE id" in query and args[0] == self.row["id"]:
            return dict(self.row)
        return None

    async def fetch(self, query, *args):
        return []

    async def execute(self, query, *args):
        self.executed.append((query, args))
        if "SET payment_status = $1, payment_method = $2, tx_ref = $3" in query:
            self.row.update(
                payment_status=args[0], payment_method=args[1], tx_ref=args[2],
                transaction_id=None, provider_reference=None,
            )


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    @asynccontextmanager
    async def acquire(self):
        yield self.conn


class FakeDatabase:
    def __init__(self, conn):
        self.pool = FakePool(conn)

    @asynccontextmanager
    async def transaction(self, conn=None):
        yield conn or self.pool.conn


def order_row(**overrides):
    row = {
        "id": uuid4(),
        "order_number": "ORD2405010001",
        "restaurant_id": uuid4(),
        "total_amount": Decimal("2500"),
        "status": "PENDING",
        "payment_status": "PENDING",
        "payment_method": "CASH",
        "billing_phone": "0788123456",
        "tx_ref": None,
        "provider_reference": None,
        "created_at": datetime.now(pytz.utc),
    }
    row.update(overrides)
    return row


@pytest.fixture
def order_service():
    def _make(row):
        conn = FakeConnection(row)
        return OrderService(FakeDatabase(conn), product_service=MagicMock(),
                            notification_service=MagicMock()), conn
    return _make


class TestMarkPaymentProcessing:
    async def test_pending_payment_opens_attempt(self, order_service):
        service, conn = order_service(order_row())

        order = await service.mark_payment_processing(
            conn.row["id"], PaymentMethod.CASH, "ORD2405010001-1"
        )

        assert order.payment_status == PaymentStatus.PROCESSING
        assert order.tx_ref == "ORD2405010001-1"

    async def test_outstanding_attempt_keeps_its_reference(self, order_service):
        service, conn = order_service(order_row(
            payment_status="PROCESSING", tx_ref="ORD2405010001-1",
            provider_reference="flw-ref-1",
        ))

        with pytest.raises(PaymentInProgressError):
            await service.mark_payment_processing(
                conn.row["id"], PaymentMethod.CASH, "ORD2405010001-2"
            )

        assert conn.executed == []
        assert conn.row["tx_ref"] == "ORD2405010001-1"
        assert conn.row["provider_reference"] == "flw-ref-1"

    async def test_paid_order_is_rejected(self, order_service):
        service, conn = order_service(order_row(status="CONFIRMED", payment_status="COMPLETED"))

        with pytest.raises(ValidationError, match="already paid"):
            await service.mark_payment_processing(conn.row["id"], PaymentMethod.CASH, "x")


class TestRepeatedWalletPayment:
    async def test_processing_order_is_not_debited_again(self, order_service, stub_provider):
        service, conn = order_service(order_row(
            payment_status="PROCESSING", tx_ref="ORD2405010001-1",
        ))
        wallet_service = AsyncMock()
        payments = PaymentService(wallet_service, stub_provider("FLUTTERWAVE"), stub_provider("PAYPACK"))
        checkout = CheckoutService(service, payments)

        with pytest.raises(PaymentInProgressError):
            await checkout.process_payment(conn.row["id"], None, PaymentMethod.CASH)

        wallet_service.debit.assert_not_awaited()
        wallet_service.get_wallet_by_restaurant.assert_not_awaited()
        assert conn.row["tx_ref"] == "ORD2405010001-1"
