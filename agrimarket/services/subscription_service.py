# agrimarket/services/subscription_service.py
import logging
import time
from datetime import timedelta
from typing import Optional, Tuple
from uuid import UUID
from ..errors import NotFoundError, ValidationError
from ..models.order import PaymentMethod, PaymentStatus
from ..models.payment import CardInput, Customer, PaymentRequest, PaymentResultStatus
from ..models.subscription import (
    SUBSCRIPTION_REFERENCE_PREFIX, RestaurantSubscription, SubscriptionStatus
)
from ..utils.formatters import utc_now
from .notification_service import SMS, NotificationService

class SubscriptionService:
    """Payment side of restaurant subscriptions"""

    def __init__(self, db, payment_service, notification_service: Optional[NotificationService] = None):
        self.db = db
        self.payment_service = payment_service
        self.notifications = notification_service or NotificationService()
        self.logger = logging.getLogger(__name__)

    @staticmethod
    def make_reference(restaurant_id: UUID, plan_id: UUID) -> str:
        return f"{SUBSCRIPTION_REFERENCE_PREFIX}{restaurant_id}_{plan_id}_{int(time.time() * 1000)}"

    @staticmethod
    async def _add_history(conn, subscription_id: UUID, action: str,
                           old_status: Optional[str], new_status: Optional[str],
                           reason: Optional[str] = None):
        await conn.execute("""
            INSERT INTO subscription_history (subscription_id, action, old_status, new_status, reason)
            VALUES ($1, $2, $3, $4, $5)
        """, subscription_id, action, old_status, new_status, reason)

    async def create_subscription(self, restaurant_id: UUID, plan_id: UUID,
                                  payment_method: PaymentMethod,
                                  phone_number: Optional[str] = None,
                                  card: Optional[CardInput] = None,
                                  customer: Optional[Customer] = None):
        """Create a PENDING subscription and start paying for it"""
        payment_method = PaymentMethod(payment_method)

        async with self.db.transaction() as conn:
            restaurant = await conn.fetchval(
                "SELECT id FROM restaurants WHERE id = $1", restaurant_id
            )
            if not restaurant:
                raise NotFoundError("Restaurant", restaurant_id)

            plan = await conn.fetchrow(
                "SELECT id, price, duration_days, is_active FROM subscription_plans WHERE id = $1",
                plan_id
            )
            if not plan:
                raise NotFoundError("Subscription plan", plan_id)
            if not plan["is_active"]:
                raise ValidationError("Subscription plan is not available")

            request = PaymentRequest(
                amount=plan["price"],
                reference=self.make_reference(restaurant_id, plan_id),
                method=payment_method,
                restaurant_id=restaurant_id,
                phone_number=phone_number,
                card=card,
                customer=customer or Customer(),
                description="Subscription payment",
            )
            self.payment_service.validate_request(request)

            start = utc_now()
            row = await conn.fetchrow("""
                INSERT INTO restaurant_subscriptions (
                    restaurant_id, plan_id, status, payment_status, payment_method,
                    start_date, end_date, tx_ref
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                RETURNING *
            """,
                restaurant_id, plan_id, SubscriptionStatus.PENDING.value,
                PaymentStatus.PENDING.value, payment_method.value, start,
                start + timedelta(days=plan["duration_days"]), request.reference
            )
            await self._add_history(
                conn, row["id"], "CREATED", None, SubscriptionStatus.PENDING.value
            )

        self.logger.info(f"Subscription {request.reference} created")
        result = await self.payment_service.process_payment(request)

        async with self.db.transaction() as conn:
            await conn.execute("""
                UPDATE restaurant_subscriptions
                SET provider_reference = COALESCE($1, provider_reference),
                    transaction_id = COALESCE($2, transaction_id),
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = $3
            """, result.provider_reference, result.transaction_id, row["id"])

        if result.status == PaymentResultStatus.SUCCESSFUL:
            subscription, _ = await self.complete_payment(request.reference, result.transaction_id)
        elif result.status == PaymentResultStatus.FAILED:
            subscription, _ = await self.fail_payment(request.reference, result.error)
        else:
            subscription = await self.find_by_reference(request.reference)

        return {"subscription": subscription, "payment": result}

    async def find_by_reference(self, reference: str, conn=None,
                                for_update: bool = False) -> Optional[RestaurantSubscription]:
        lock = " FOR UPDATE" if for_update else ""
        async with self.db.connection(conn) as conn:
            row = await conn.fetchrow(f"""
                SELECT * FROM restaurant_subscriptions
                WHERE tx_ref = $1 OR provider_reference = $1
                LIMIT 1{lock}
            """, reference)
            return RestaurantSubscription.from_row(row) if row else None

    async def complete_payment(self, reference: str, transaction_id: Optional[str] = None
                               ) -> Tuple[RestaurantSubscription, bool]:
        """Activate the subscription for a full plan period from now"""
        async with self.db.transaction() as conn:
            subscription = await self.find_by_reference(reference, conn, for_update=True)
            if not subscription:
                raise NotFoundError("Subscription", reference)
            if subscription.payment_status == PaymentStatus.COMPLETED:
                return subscription, False

            plan = await conn.fetchrow(
                "SELECT price, duration_days FROM subscription_plans WHERE id = $1",
                subscription.plan_id
            )
            start = utc_now()
            row = await conn.fetchrow("""
                UPDATE restaurant_subscriptions
                SET status = $1, payment_status = $2, amount_paid = $3,
                    transaction_id = COALESCE($4, transaction_id),
                    start_date = $5, end_date = $6, updated_at = CURRENT_TIMESTAMP
                WHERE id = $7
                RETURNING *
            """,
                SubscriptionStatus.ACTIVE.value, PaymentStatus.COMPLETED.value, plan["price"],
                transaction_id, start, start + timedelta(days=plan["duration_days"]),
                subscription.id
            )
            await self._add_history(
                conn, subscription.id, "ACTIVATED", subscription.status.value,
                SubscriptionStatus.ACTIVE.value, "Payment completed"
            )
            subscription = RestaurantSubscription.from_row(row)
            phone = await conn.fetchval(
                "SELECT phone FROM restaurants WHERE id = $1", subscription.restaurant_id
            )

        self.logger.info(f"Subscription {reference} activated")
        self.notifications.notify(SMS, phone, "subscription_activated", {
            "end_date": subscription.end_date,
        })
        return subscription, True

    async def fail_payment(self, reference: str, reason: Optional[str] = None
                           ) -> Tuple[RestaurantSubscription, bool]:
        async with self.db.transaction() as conn:
            subscription = await self.find_by_reference(reference, conn, for_update=True)
            if not subscription:
                raise NotFoundError("Subscription", reference)
            if subscription.payment_status in (PaymentStatus.COMPLETED, PaymentStatus.FAILED):
                return subscription, False

            row = await conn.fetchrow("""
                UPDATE restaurant_subscriptions
                SET payment_status = $1, updated_at = CURRENT_TIMESTAMP
                WHERE id = $2
                RETURNING *
            """, PaymentStatus.FAILED.value, subscription.id)
            await self._add_history(
                conn, subscription.id, "PAYMENT_FAILED", subscription.status.value,
                subscription.status.value, reason or "Payment failed"
            )
            subscription = RestaurantSubscription.from_row(row)
            phone = await conn.fetchval(
                "SELECT phone FROM restaurants WHERE id = $1", subscription.restaurant_id
            )

        self.logger.info(f"Subscription {reference} payment failed: {reason}")
        self.notifications.notify(SMS, phone, "subscription_payment_failed", {})
        return subscription, True

    async def expire_subscriptions(self) -> int:
        """Mark ACTIVE subscriptions past their end date EXPIRED; returns how many"""
        async with self.db.transaction() as conn:
            rows = await conn.fetch("""
                UPDATE restaurant_subscriptions
                SET status = $1, updated_at = CURRENT_TIMESTAMP
                WHERE status = $2 AND end_date < CURRENT_TIMESTAMP
                RETURNING id
            """, SubscriptionStatus.EXPIRED.value, SubscriptionStatus.ACTIVE.value)

            await conn.executemany("""
                INSERT INTO subscription_history (subscription_id, action, old_status, new_status, reason)
                VALUES ($1, 'EXPIRED', $2, $3, 'End date reached')
            """, [
                (row["id"], SubscriptionStatus.ACTIVE.value, SubscriptionStatus.EXPIRED.value)
                for row in rows
            ])

        if rows:
            self.logger.info(f"{len(rows)} subscriptions expired")
        return len(rows)
