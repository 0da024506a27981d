# agrimarket/services/checkout_service.py
import logging
import time
from typing import Any, Dict, Optional
from uuid import UUID
from ..errors import PaymentInProgressError
from ..models.order import BillingInfo, Order, PaymentMethod, PaymentStatus
from ..models.payment import (
    CardInput, Customer, PaymentRequest, PaymentResult, PaymentResultStatus
)
from ..utils.retry import retry_database_operation
from .order_service import OrderService
from .payment_service import PaymentService

class CheckoutService:
    """Cart -> order -> payment attempt.

    The order is moved to PROCESSING before the provider is called and the
    outcome is written afterwards in a separate step. When that second write
    fails the provider's answer is still returned, and the gap is logged for
    reconciliation.
    """

    def __init__(self, order_service: OrderService, payment_service: PaymentService):
        self.order_service = order_service
        self.payment_service = payment_service
        self.logger = logging.getLogger(__name__)

    @staticmethod
    def payment_reference(order: Order) -> str:
        """A fresh reference per attempt: ``<order_number>-<ms>``"""
        return f"{order.order_number}-{int(time.time() * 1000)}"

    @staticmethod
    def recorded_payment(order: Order) -> PaymentResult:
        """The outstanding attempt as stored on the order, without calling a provider"""
        return PaymentResult(
            success=True,
            status=PaymentResultStatus.PENDING,
            method=order.payment_method,
            reference=order.tx_ref or "",
            transaction_id=order.transaction_id,
            provider_reference=order.provider_reference,
            provider=order.payment_provider,
            message=order.provider_message or "Payment already in progress",
        )

    async def checkout(self, restaurant_id: UUID, cart_id: UUID, payment_method: PaymentMethod,
                       billing: BillingInfo, phone_number: Optional[str] = None,
                       card: Optional[CardInput] = None) -> Dict[str, Any]:
        """Create or reuse the cart's order and pay for it.

        A repeat submission for an order whose attempt is still PROCESSING
        gets that attempt back; no second charge is sent.
        """
        payment_method = PaymentMethod(payment_method)
        order, created = await self.order_service.create_from_cart(
            cart_id, restaurant_id, billing, payment_method
        )
        if order.payment_status == PaymentStatus.PROCESSING:
            self.logger.info(
                f"Order {order.order_number} already has payment {order.tx_ref} in progress"
            )
            return {"order": order, "payment": self.recorded_payment(order), "created": created}

        try:
            outcome = await self.process_payment(
                order.id, restaurant_id, payment_method, phone_number, card
            )
        except PaymentInProgressError:
            # A concurrent submission opened the attempt first
            order = await self.order_service.get_order(order.id, restaurant_id)
            return {"order": order, "payment": self.recorded_payment(order), "created": created}
        outcome["created"] = created
        return outcome

    async def process_payment(self, order_id: UUID, restaurant_id: Optional[UUID] = None,
                              payment_method: Optional[PaymentMethod] = None,
                              phone_number: Optional[str] = None,
                              card: Optional[CardInput] = None) -> Dict[str, Any]:
        """Run one payment attempt for an order awaiting payment"""
        order = await self.order_service.get_order(order_id, restaurant_id)
        method = PaymentMethod(payment_method or order.payment_method)

        request = PaymentRequest(
            amount=order.total_amount,
            currency=order.currency,
            reference=self.payment_reference(order),
            method=method,
            restaurant_id=order.restaurant_id,
            order_id=order.id,
            phone_number=phone_number or (order.billing_phone if method == PaymentMethod.MOBILE_MONEY else None),
            card=card,
            customer=Customer(
                name=order.billing_name,
                email=order.billing_email,
                phone=order.billing_phone,
            ),
            description=f"Order {order.order_number}",
        )
        self.payment_service.validate_request(request)

        order = await self.order_service.mark_payment_processing(order.id, method, request.reference)

        result = await self.payment_service.process_payment(request)

        try:
            order = await retry_database_operation(
                lambda: self.order_service.record_payment_result(order.id, result)
            )
        except Exception as e:
            self.logger.error(
                f"Payment {result.reference} for order {order.order_number} ended "
                f"{result.status.value} at {result.provider} (transaction {result.transaction_id}) "
                f"but the order could not be updated: {e}. Manual reconciliation required"
            )
        else:
            if result.status == PaymentResultStatus.PENDING:
                self.order_service.notify(
                    order, "payment_pending", method=method.value,
                    transfer_account=order.transfer_account, transfer_bank=order.transfer_bank,
                )

        return {"order": order, "payment": result}

    async def verify_payment(self, order_id: UUID, transaction_id: Optional[str] = None,
                             restaurant_id: Optional[UUID] = None) -> Dict[str, Any]:
        """Ask the provider for the outcome and apply it like a webhook would"""
        order = await self.order_service.get_order(order_id, restaurant_id)
        if order.payment_status in (PaymentStatus.COMPLETED, PaymentStatus.FAILED):
            return {"order": order, "verified": False, "provider_status": order.provider_status}
        if not order.tx_ref:
            return {"order": order, "verified": False, "provider_status": None}

        response = await self.payment_service.verify_transaction(
            order.payment_provider, order.provider_reference or order.tx_ref,
            transaction_id or order.transaction_id
        )

        if response.status == PaymentResultStatus.SUCCESSFUL:
            order, _ = await self.order_service.apply_payment_status(
                order.id, PaymentStatus.COMPLETED, transaction_id=response.transaction_id
            )
        elif response.status == PaymentResultStatus.FAILED:
            order, _ = await self.order_service.apply_payment_status(
                order.id, PaymentStatus.FAILED, reason=response.message or "Declined by provider"
            )

        return {"order": order, "verified": True, "provider_status": response.status.value}

