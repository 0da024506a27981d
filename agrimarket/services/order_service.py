# agrimarket/services/order_service.py
import logging
from collections import OrderedDict
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID
from ..errors import (
    InvalidTransitionError, NotFoundError, PaymentInProgressError, UnauthorizedOwnershipError,
    ValidationError
)
from ..models.cart import CartStatus
from ..models.order import (
    AWAITING_PAYMENT_STATUSES, BillingInfo, Order, OrderStatus, PaymentMethod, PaymentStatus,
    append_note, can_transition_payment, check_transition, format_order_number,
    order_status_for_payment
)
from ..models.payment import (
    BankTransferDetails, CardAuthorizationDetails, MobileMoneyDetails, PaymentResult,
    PaymentResultStatus
)
from ..utils.formatters import local_now
from .notification_service import NotificationService
from .product_service import ProductService

RESULT_PAYMENT_STATUS = {
    PaymentResultStatus.SUCCESSFUL: PaymentStatus.COMPLETED,
    PaymentResultStatus.FAILED: PaymentStatus.FAILED,
}

class OrderService:
    """Orders, their item snapshots and both of their state machines.

    Order creation reserves stock in the same transaction that writes the
    order, and cancellation gives it back in the same transaction that
    marks the order CANCELLED. Payment status changes go through
    ``apply_payment_status`` so the order status follows the payment.
    """

    def __init__(self, db, product_service: Optional[ProductService] = None,
                 notification_service: Optional[NotificationService] = None):
        self.db = db
        self.product_service = product_service or ProductService(db)
        self.notifications = notification_service or NotificationService()
        self.logger = logging.getLogger(__name__)

    # Reads

    async def _fetch_order(self, conn, order_id: UUID, for_update: bool = False) -> Optional[Order]:
        lock = " FOR UPDATE" if for_update else ""
        row = await conn.fetchrow(f"SELECT * FROM orders WHERE id = $1{lock}", order_id)
        if not row:
            return None
        return await self._with_items(conn, row)

    async def _with_items(self, conn, row) -> Order:
        items = await conn.fetch(
            "SELECT * FROM order_items WHERE order_id = $1 ORDER BY product_name", row["id"]
        )
        return Order.from_row(row, items=[dict(item) for item in items])

    async def get_order(self, order_id: UUID, restaurant_id: Optional[UUID] = None) -> Order:
        """Load an order; with ``restaurant_id`` the caller must own it"""
        async with self.db.pool.acquire() as conn:
            order = await self._fetch_order(conn, order_id)
        if not order:
            raise NotFoundError("Order", order_id)
        if restaurant_id is not None and order.restaurant_id != restaurant_id:
            raise UnauthorizedOwnershipError("Order does not belong to this restaurant")
        return order

    async def find_by_reference(self, reference: str, conn=None,
                                for_update: bool = False) -> Optional[Order]:
        """Match our payment reference or the provider's own reference"""
        lock = " FOR UPDATE" if for_update else ""
        async with self.db.connection(conn) as conn:
            row = await conn.fetchrow(f"""
                SELECT * FROM orders
                WHERE tx_ref = $1 OR provider_reference = $1
                ORDER BY created_at DESC
                LIMIT 1{lock}
            """, reference)
            if not row:
                return None
            return await self._with_items(conn, row)

    async def list_orders(self, status: Optional[OrderStatus] = None,
                          payment_status: Optional[PaymentStatus] = None,
                          restaurant_id: Optional[UUID] = None,
                          date_from: Optional[datetime] = None,
                          date_to: Optional[datetime] = None,
                          limit: int = 50, offset: int = 0) -> Dict[str, Any]:
        conditions: List[str] = []
        params: List[Any] = []

        if status:
            params.append(OrderStatus(status).value)
            conditions.append(f"status = ${len(params)}")
        if payment_status:
            params.append(PaymentStatus(payment_status).value)
            conditions.append(f"payment_status = ${len(params)}")
        if restaurant_id:
            params.append(restaurant_id)
            conditions.append(f"restaurant_id = ${len(params)}")
        if date_from:
            params.append(date_from)
            conditions.append(f"created_at >= ${len(params)}")
        if date_to:
            params.append(date_to)
            conditions.append(f"created_at <= ${len(params)}")

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        async with self.db.pool.acquire() as conn:
            total = await conn.fetchval(f"SELECT COUNT(*) FROM orders {where}", *params)
            rows = await conn.fetch(f"""
                SELECT * FROM orders
                {where}
                ORDER BY created_at DESC
                LIMIT ${len(params) + 1} OFFSET ${len(params) + 2}
            """, *params, limit, offset)
            orders = [await self._with_items(conn, row) for row in rows]

        return {"orders": orders, "total": total, "limit": limit, "offset": offset}

    async def order_statistics(self, restaurant_id: Optional[UUID] = None,
                               date_from: Optional[datetime] = None,
                               date_to: Optional[datetime] = None) -> Dict[str, Any]:
        """Order counts per status and revenue over delivered orders"""
        conditions = ["($1::uuid IS NULL OR restaurant_id = $1)"]
        conditions.append("($2::timestamptz IS NULL OR created_at >= $2)")
        conditions.append("($3::timestamptz IS NULL OR created_at <= $3)")
        where = " AND ".join(conditions)

        async with self.db.pool.acquire() as conn:
            counts = await conn.fetch(f"""
                SELECT status, COUNT(*) AS count
                FROM orders
                WHERE {where}
                GROUP BY status
            """, restaurant_id, date_from, date_to)
            revenue = await conn.fetchrow(f"""
                SELECT COALESCE(SUM(total_amount), 0) AS total_revenue,
                       COALESCE(AVG(total_amount), 0) AS average_order_value
                FROM orders
                WHERE {where} AND status = $4
            """, restaurant_id, date_from, date_to, OrderStatus.DELIVERED.value)

        by_status = {status.value: 0 for status in OrderStatus}
        for row in counts:
            by_status[row["status"]] = row["count"]

        return {
            "total_orders": sum(by_status.values()),
            "by_status": by_status,
            "total_revenue": revenue["total_revenue"],
            "average_order_value": Decimal(revenue["average_order_value"]).quantize(Decimal("0.01")),
        }

    # Creation

    async def _next_order_number(self, conn) -> str:
        """Draw today's next sequence value from the per-day counter row"""
        today = local_now().date()
        sequence = await conn.fetchval("""
            INSERT INTO order_number_sequences (day, last_value)
            VALUES ($1, 1)
            ON CONFLICT (day) DO UPDATE
            SET last_value = order_number_sequences.last_value + 1
            RETURNING last_value
        """, today)
        return format_order_number(today, sequence)

    async def _insert_order(self, conn, restaurant_id: UUID, lines: List[Dict[str, Any]],
                            billing: BillingInfo, payment_method: PaymentMethod,
                            cart_id: Optional[UUID] = None) -> UUID:
        """Reserve stock for every line, then write the order and its snapshot.

        Each line is ``{"product": Product, "quantity": int, "unit_price": Decimal}``.
        Must run inside the caller's transaction.
        """
        # Fixed lock order across concurrent checkouts
        lines = sorted(lines, key=lambda line: str(line["product"].id))
        for line in lines:
            await self.product_service.reserve_stock(conn, line["product"].id, line["quantity"])

        total_amount = sum(
            (line["unit_price"] * line["quantity"] for line in lines), Decimal(0)
        )
        order_number = await self._next_order_number(conn)

        order_id = await conn.fetchval("""
            INSERT INTO orders (
                order_number, cart_id, restaurant_id, total_amount, status,
                payment_status, payment_method, billing_name, billing_email,
                billing_phone, billing_address, notes, requested_delivery
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)
            RETURNING id
        """,
            order_number, cart_id, restaurant_id, total_amount,
            OrderStatus.PENDING.value, PaymentStatus.PENDING.value,
            PaymentMethod(payment_method).value, billing.billing_name,
            billing.billing_email, billing.billing_phone, billing.billing_address,
            billing.notes, billing.requested_delivery
        )

        await conn.executemany("""
            INSERT INTO order_items (
                order_id, product_id, product_name, unit_price, unit, category,
                quantity, subtotal
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
        """, [
            (
                order_id, line["product"].id, line["product"].product_name,
                line["unit_price"], line["product"].unit, line["product"].category,
                line["quantity"], line["unit_price"] * line["quantity"]
            )
            for line in lines
        ])

        self.logger.info(f"Order {order_number} created for restaurant {restaurant_id}: {total_amount}")
        return order_id

    async def create_from_cart(self, cart_id: UUID, restaurant_id: UUID, billing: BillingInfo,
                               payment_method: PaymentMethod) -> Tuple[Order, bool]:
        """Turn the cart into an order.

        A second call for a cart whose order is still awaiting payment returns
        that order with refreshed billing fields instead of creating another.
        The payment method only changes while no attempt is outstanding.
        Returns the order and whether it was created by this call.
        """
        payment_method = PaymentMethod(payment_method)

        async with self.db.transaction() as conn:
            cart = await conn.fetchrow("SELECT * FROM carts WHERE id = $1 FOR UPDATE", cart_id)
            if not cart:
                raise NotFoundError("Cart", cart_id)
            if cart["restaurant_id"] != restaurant_id:
                raise UnauthorizedOwnershipError("Cart does not belong to this restaurant")
            if cart["status"] != CartStatus.ACTIVE.value:
                raise ValidationError("Cart is not active")

            existing_id = await conn.fetchval("""
                SELECT id FROM orders
                WHERE cart_id = $1 AND status = $2 AND payment_status = ANY($3::varchar[])
                ORDER BY created_at DESC
                LIMIT 1
            """, cart_id, OrderStatus.PENDING.value, [s.value for s in AWAITING_PAYMENT_STATUSES])

            if existing_id:
                await conn.execute("""
                    UPDATE orders
                    SET billing_name = COALESCE($1, billing_name),
                        billing_email = COALESCE($2, billing_email),
                        billing_phone = COALESCE($3, billing_phone),
                        billing_address = COALESCE($4, billing_address),
                        notes = COALESCE($5, notes),
                        requested_delivery = COALESCE($6, requested_delivery),
                        payment_method = CASE WHEN payment_status = $9 THEN $7 ELSE payment_method END,
                        updated_at = CURRENT_TIMESTAMP
                    WHERE id = $8
                """,
                    billing.billing_name, billing.billing_email, billing.billing_phone,
                    billing.billing_address, billing.notes, billing.requested_delivery,
                    payment_method.value, existing_id, PaymentStatus.PENDING.value
                )
                self.logger.info(f"Cart {cart_id} already has order {existing_id}, reusing it")
                return await self._fetch_order(conn, existing_id), False

            items = await conn.fetch("""
                SELECT ci.product_id, ci.quantity, ci.unit_price
                FROM cart_items ci
                WHERE ci.cart_id = $1
            """, cart_id)
            if not items:
                raise ValidationError("Cart is empty")

            lines = []
            for item in items:
                product = await self.product_service.get_product(item["product_id"], conn)
                if not product:
                    raise NotFoundError("Product", item["product_id"])
                lines.append({
                    "product": product,
                    "quantity": item["quantity"],
                    "unit_price": item["unit_price"],
                })

            order_id = await self._insert_order(
                conn, restaurant_id, lines, billing, payment_method, cart_id
            )

            # The cart stays ACTIVE and empty for the next purchase
            await conn.execute("DELETE FROM cart_items WHERE cart_id = $1", cart_id)
            await conn.execute("""
                UPDATE carts SET total_amount = 0, updated_at = CURRENT_TIMESTAMP
                WHERE id = $1
            """, cart_id)

            order = await self._fetch_order(conn, order_id)

        self.notify(order, "order_created")
        return order, True

    async def create_direct(self, restaurant_id: UUID, items: List[Dict[str, Any]],
                            billing: BillingInfo, payment_method: PaymentMethod) -> Order:
        """Create an order from ``[{"product_id", "quantity"}]`` without a cart.

        Every line is validated before anything is written.
        """
        if not items:
            raise ValidationError("Order must contain at least one item")

        quantities: Dict[UUID, int] = OrderedDict()
        for item in items:
            quantity = int(item["quantity"])
            if quantity <= 0:
                raise ValidationError("Quantity must be greater than 0")
            product_id = item["product_id"]
            quantities[product_id] = quantities.get(product_id, 0) + quantity

        async with self.db.transaction() as conn:
            restaurant = await conn.fetchval(
                "SELECT id FROM restaurants WHERE id = $1", restaurant_id
            )
            if not restaurant:
                raise NotFoundError("Restaurant", restaurant_id)

            lines = []
            for product_id, quantity in quantities.items():
                product = await self.product_service.get_available_product(product_id, quantity, conn)
                lines.append({
                    "product": product,
                    "quantity": quantity,
                    "unit_price": product.unit_price,
                })

            order_id = await self._insert_order(
                conn, restaurant_id, lines, billing, PaymentMethod(payment_method)
            )
            order = await self._fetch_order(conn, order_id)

        self.notify(order, "order_created")
        return order

    # Lifecycle

    async def _cancel_locked(self, conn, order: Order, reason: str) -> Order:
        """Restore stock and mark CANCELLED; ``order`` must be locked by the caller"""
        if not order.is_cancellable:
            raise InvalidTransitionError(order.status, OrderStatus.CANCELLED)

        for item in order.items:
            await self.product_service.release_stock(conn, item.product_id, item.quantity)

        await conn.execute("""
            UPDATE orders
            SET status = $1, notes = $2, updated_at = CURRENT_TIMESTAMP
            WHERE id = $3
        """, OrderStatus.CANCELLED.value, append_note(order.notes, f"CANCELLED: {reason}"), order.id)

        self.logger.info(f"Order {order.order_number} cancelled: {reason}")
        return await self._fetch_order(conn, order.id)

    async def cancel(self, order_id: UUID, reason: str,
                     restaurant_id: Optional[UUID] = None) -> Order:
        if not reason:
            raise ValidationError("A cancellation reason is required")

        async with self.db.transaction() as conn:
            order = await self._fetch_order(conn, order_id, for_update=True)
            if not order:
                raise NotFoundError("Order", order_id)
            if restaurant_id is not None and order.restaurant_id != restaurant_id:
                raise UnauthorizedOwnershipError("Order does not belong to this restaurant")
            order = await self._cancel_locked(conn, order, reason)

        self.notify(order, "order_cancelled", reason=reason)
        return order

    async def update_status(self, order_id: UUID, new_status: OrderStatus,
                            reason: Optional[str] = None) -> Order:
        """Move the order along its lifecycle.

        CONFIRMED and the fulfilment statuses require a completed payment;
        CANCELLED goes through the cancellation path so stock is restored.
        """
        return await self.update_order(order_id, status=new_status, reason=reason)

    async def update_order(self, order_id: UUID, status: Optional[OrderStatus] = None,
                           estimated_delivery: Optional[datetime] = None,
                           notes: Optional[str] = None,
                           reason: Optional[str] = None) -> Order:
        """Admin edit of the mutable order fields, optionally with a status change"""
        new_status = OrderStatus(status) if status else None
        if new_status is None and estimated_delivery is None and notes is None:
            raise ValidationError("Nothing to update")

        async with self.db.transaction() as conn:
            order = await self._fetch_order(conn, order_id, for_update=True)
            if not order:
                raise NotFoundError("Order", order_id)

            if new_status is not None:
                check_transition(order.status, new_status, order.payment_status)

            if estimated_delivery is not None or notes is not None:
                await conn.execute("""
                    UPDATE orders
                    SET estimated_delivery = COALESCE($1, estimated_delivery),
                        notes = COALESCE($2, notes),
                        updated_at = CURRENT_TIMESTAMP
                    WHERE id = $3
                """, estimated_delivery, notes, order_id)
                order = await self._fetch_order(conn, order_id)

            if new_status == OrderStatus.CANCELLED:
                order = await self._cancel_locked(conn, order, reason or "Cancelled by admin")
            elif new_status is not None:
                await conn.execute("""
                    UPDATE orders
                    SET status = $1,
                        actual_delivery = CASE
                            WHEN $2 THEN COALESCE(actual_delivery, CURRENT_TIMESTAMP)
                            ELSE actual_delivery
                        END,
                        updated_at = CURRENT_TIMESTAMP
                    WHERE id = $3
                """, new_status.value, new_status == OrderStatus.DELIVERED, order_id)
                order = await self._fetch_order(conn, order_id)

        if new_status is None:
            self.logger.info(f"Order {order.order_number} details updated")
            return order

        self.logger.info(f"Order {order.order_number} moved to {new_status.value}")
        self.notify(order, "order_status_changed", status=new_status.value)
        return order

    async def delete_order(self, order_id: UUID):
        """Hard delete; only CANCELLED orders may be removed"""
        async with self.db.transaction() as conn:
            status = await conn.fetchval(
                "SELECT status FROM orders WHERE id = $1 FOR UPDATE", order_id
            )
            if status is None:
                raise NotFoundError("Order", order_id)
            if status != OrderStatus.CANCELLED.value:
                raise ValidationError("Only cancelled orders can be deleted")

            await conn.execute("DELETE FROM order_items WHERE order_id = $1", order_id)
            await conn.execute("DELETE FROM orders WHERE id = $1", order_id)

        self.logger.info(f"Order {order_id} deleted")

    # Payment state

    async def mark_payment_processing(self, order_id: UUID, payment_method: PaymentMethod,
                                      tx_ref: str) -> Order:
        """Open a payment attempt under a fresh reference.

        Only an order whose payment is still PENDING can start an attempt;
        an outstanding PROCESSING attempt keeps its reference.
        """
        async with self.db.transaction() as conn:
            order = await self._fetch_order(conn, order_id, for_update=True)
            if not order:
                raise NotFoundError("Order", order_id)
            if order.payment_status == PaymentStatus.COMPLETED:
                raise ValidationError("Order is already paid")
            if order.status != OrderStatus.PENDING:
                raise ValidationError(f"Cannot pay for an order in status {order.status.value}")
            if order.payment_status == PaymentStatus.PROCESSING:
                raise PaymentInProgressError(order.tx_ref)
            if not can_transition_payment(order.payment_status, PaymentStatus.PROCESSING):
                raise InvalidTransitionError(order.payment_status, PaymentStatus.PROCESSING)

            await conn.execute("""
                UPDATE orders
                SET payment_status = $1, payment_method = $2, tx_ref = $3,
                    transaction_id = NULL, provider_reference = NULL,
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = $4
            """, PaymentStatus.PROCESSING.value, PaymentMethod(payment_method).value, tx_ref, order_id)

            return await self._fetch_order(conn, order_id)

    async def record_payment_result(self, order_id: UUID, result: PaymentResult) -> Order:
        """Store the provider correlation fields and apply the outcome"""
        details = result.details
        redirect_url = authorization_mode = None
        transfer_account = transfer_bank = transfer_expires_at = None
        card_first6 = card_last4 = card_type = None

        if isinstance(details, MobileMoneyDetails):
            redirect_url = details.redirect_url
        elif isinstance(details, CardAuthorizationDetails):
            redirect_url = details.redirect_url
            authorization_mode = details.mode.value
            card_first6, card_last4, card_type = details.card_first6, details.card_last4, details.card_type
        elif isinstance(details, BankTransferDetails):
            transfer_account = details.transfer_account
            transfer_bank = details.transfer_bank
            transfer_expires_at = details.account_expiration

        async with self.db.transaction() as conn:
            order = await self._fetch_order(conn, order_id, for_update=True)
            if not order:
                raise NotFoundError("Order", order_id)

            await conn.execute("""
                UPDATE orders
                SET transaction_id = COALESCE($1, transaction_id),
                    provider_reference = COALESCE($2, provider_reference),
                    payment_provider = COALESCE($3, payment_provider),
                    provider_status = $4,
                    provider_message = $5,
                    redirect_url = $6,
                    authorization_mode = $7,
                    transfer_account = $8,
                    transfer_bank = $9,
                    transfer_expires_at = $10,
                    card_first6 = $11,
                    card_last4 = $12,
                    card_type = $13,
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = $14
            """,
                result.transaction_id, result.provider_reference, result.provider,
                result.status.value, result.error or result.message, redirect_url,
                authorization_mode, transfer_account, transfer_bank, transfer_expires_at,
                card_first6, card_last4, card_type, order_id
            )

            new_payment_status = RESULT_PAYMENT_STATUS.get(result.status)
            changed = False
            if new_payment_status:
                order, changed = await self._apply_payment_status_locked(
                    conn, order_id, new_payment_status, result.error or result.message
                )
            else:
                order = await self._fetch_order(conn, order_id)

        if changed:
            self._notify_payment(order, result.error)
        return order

    async def apply_payment_status(self, order_id: UUID, payment_status: PaymentStatus,
                                   reason: Optional[str] = None,
                                   transaction_id: Optional[str] = None) -> Tuple[Order, bool]:
        """Apply a payment outcome and the order status it implies.

        A payment that is already COMPLETED is never touched again, so a
        replayed webhook is a no-op. Returns the order and whether it changed.
        """
        async with self.db.transaction() as conn:
            if transaction_id:
                await conn.execute("""
                    UPDATE orders SET transaction_id = $1, updated_at = CURRENT_TIMESTAMP
                    WHERE id = $2 AND payment_status <> $3
                """, transaction_id, order_id, PaymentStatus.COMPLETED.value)
            order, changed = await self._apply_payment_status_locked(
                conn, order_id, PaymentStatus(payment_status), reason
            )

        if changed:
            self._notify_payment(order, reason)
        return order, changed

    async def _apply_payment_status_locked(self, conn, order_id: UUID, payment_status: PaymentStatus,
                                           reason: Optional[str] = None) -> Tuple[Order, bool]:
        order = await self._fetch_order(conn, order_id, for_update=True)
        if not order:
            raise NotFoundError("Order", order_id)

        current = order.payment_status
        if current == payment_status or current == PaymentStatus.COMPLETED:
            return order, False
        if current == PaymentStatus.FAILED:
            if payment_status == PaymentStatus.COMPLETED:
                self.logger.error(
                    f"Order {order.order_number} ({order.tx_ref}) was paid after its payment "
                    f"was marked FAILED; refund or manual reconciliation required"
                )
            return order, False

        # An attempt still PENDING passes through PROCESSING
        if current == PaymentStatus.PENDING and payment_status != PaymentStatus.PROCESSING:
            current = PaymentStatus.PROCESSING
        if not can_transition_payment(current, payment_status):
            raise InvalidTransitionError(order.payment_status, payment_status)

        await conn.execute("""
            UPDATE orders
            SET payment_status = $1,
                paid_at = CASE WHEN $2 THEN CURRENT_TIMESTAMP ELSE paid_at END,
                updated_at = CURRENT_TIMESTAMP
            WHERE id = $3
        """, payment_status.value, payment_status == PaymentStatus.COMPLETED, order_id)
        self.logger.info(
            f"Order {order.order_number} payment {order.payment_status.value} -> {payment_status.value}"
        )

        order = await self._fetch_order(conn, order_id)
        target = order_status_for_payment(order.status, payment_status)
        if target == OrderStatus.CANCELLED:
            order = await self._cancel_locked(conn, order, f"Payment failed: {reason or 'unknown'}")
        elif target == OrderStatus.CONFIRMED:
            await conn.execute("""
                UPDATE orders SET status = $1, updated_at = CURRENT_TIMESTAMP
                WHERE id = $2
            """, OrderStatus.CONFIRMED.value, order_id)
            order = await self._fetch_order(conn, order_id)
        elif payment_status == PaymentStatus.COMPLETED and order.status == OrderStatus.CANCELLED:
            self.logger.error(
                f"Order {order.order_number} ({order.tx_ref}) was paid while cancelled; "
                f"refund or manual reconciliation required"
            )

        return order, True

    # Notifications

    def notify(self, order: Order, template_kind: str, **extra):
        data = {
            "order_number": order.order_number,
            "total_amount": order.total_amount,
            **extra,
        }
        self.notifications.notify_contacts(
            order.billing_phone, order.billing_email, template_kind, data
        )

    def _notify_payment(self, order: Order, reason: Optional[str] = None):
        if order.payment_status == PaymentStatus.COMPLETED:
            self.notify(order, "payment_successful")
        elif order.payment_status == PaymentStatus.FAILED:
            self.notify(order, "payment_failed", reason=reason)
