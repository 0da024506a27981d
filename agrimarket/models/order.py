# agrimarket/models/order.py
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, FrozenSet, List, Optional
from uuid import UUID
from pydantic import BaseModel
from .base import TimeStampedModel
from ..errors import InvalidTransitionError

class OrderStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PREPARING = "PREPARING"
    READY = "READY"
    IN_TRANSIT = "IN_TRANSIT"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"

class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

class PaymentMethod(str, Enum):
    MOBILE_MONEY = "MOBILE_MONEY"
    CARD = "CARD"
    BANK_TRANSFER = "BANK_TRANSFER"
    CASH = "CASH"  # settled from the restaurant wallet

ORDER_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PREPARING, OrderStatus.CANCELLED}),
    OrderStatus.PREPARING: frozenset({OrderStatus.READY, OrderStatus.CANCELLED}),
    OrderStatus.READY: frozenset({OrderStatus.IN_TRANSIT, OrderStatus.DELIVERED, OrderStatus.CANCELLED}),
    OrderStatus.IN_TRANSIT: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED}),
    OrderStatus.DELIVERED: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}

PAYMENT_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.PROCESSING}),
    PaymentStatus.PROCESSING: frozenset({PaymentStatus.COMPLETED, PaymentStatus.FAILED}),
    PaymentStatus.COMPLETED: frozenset(),
    PaymentStatus.FAILED: frozenset(),
}

# Order status a payment outcome drives the order toward
PAYMENT_OUTCOME_ORDER_STATUS: Dict[PaymentStatus, OrderStatus] = {
    PaymentStatus.COMPLETED: OrderStatus.CONFIRMED,
    PaymentStatus.FAILED: OrderStatus.CANCELLED,
}

# Statuses that require a settled payment; the payment path confirms orders itself
FULFILMENT_STATUSES = frozenset({
    OrderStatus.CONFIRMED,
    OrderStatus.PREPARING,
    OrderStatus.READY,
    OrderStatus.IN_TRANSIT,
    OrderStatus.DELIVERED,
})

NON_CANCELLABLE_STATUSES = frozenset({
    OrderStatus.DELIVERED,
    OrderStatus.CANCELLED,
    OrderStatus.REFUNDED,
})

# Orders still waiting on a payment outcome; a repeated checkout of the same cart returns them
AWAITING_PAYMENT_STATUSES = frozenset({PaymentStatus.PENDING, PaymentStatus.PROCESSING})


def can_transition(current: OrderStatus, new: OrderStatus) -> bool:
    return new in ORDER_TRANSITIONS[OrderStatus(current)]


def check_transition(current: OrderStatus, new: OrderStatus,
                     payment_status: Optional[PaymentStatus] = None) -> None:
    """Raise InvalidTransitionError unless ``current -> new`` is allowed.

    Moving into CONFIRMED or any later fulfilment status additionally needs
    a completed payment when ``payment_status`` is supplied.
    """
    current, new = OrderStatus(current), OrderStatus(new)
    if not can_transition(current, new):
        raise InvalidTransitionError(current, new)
    if (payment_status is not None and new in FULFILMENT_STATUSES
            and PaymentStatus(payment_status) != PaymentStatus.COMPLETED):
        raise InvalidTransitionError(current, new, "payment is not completed")


def can_transition_payment(current: PaymentStatus, new: PaymentStatus) -> bool:
    return new in PAYMENT_TRANSITIONS[PaymentStatus(current)]


def order_status_for_payment(order_status: OrderStatus,
                             payment_status: PaymentStatus) -> Optional[OrderStatus]:
    """Order status implied by a payment status change, if it is reachable"""
    target = PAYMENT_OUTCOME_ORDER_STATUS.get(PaymentStatus(payment_status))
    if target is None or not can_transition(order_status, target):
        return None
    return target


def format_order_number(day: date, sequence: int) -> str:
    """ORD + YYMMDD + zero-padded daily sequence"""
    return f"ORD{day:%y%m%d}{sequence:04d}"


def append_note(notes: Optional[str], note: str) -> str:
    return f"{notes} | {note}" if notes else note


class BillingInfo(BaseModel):
    billing_name: Optional[str] = None
    billing_email: Optional[str] = None
    billing_phone: Optional[str] = None
    billing_address: Optional[str] = None
    notes: Optional[str] = None
    requested_delivery: Optional[datetime] = None

class OrderItem(BaseModel):
    """Immutable snapshot of a product line at order time"""
    id: UUID
    order_id: UUID
    product_id: UUID
    product_name: str
    unit_price: Decimal
    unit: Optional[str] = None
    category: Optional[str] = None
    quantity: int
    subtotal: Decimal

class Order(TimeStampedModel):
    """Order model for purchases"""
    id: UUID
    order_number: str
    cart_id: Optional[UUID] = None
    restaurant_id: UUID
    total_amount: Decimal
    currency: str = "RWF"
    status: OrderStatus
    payment_status: PaymentStatus
    payment_method: PaymentMethod
    payment_provider: Optional[str] = None
    billing_name: Optional[str] = None
    billing_email: Optional[str] = None
    billing_phone: Optional[str] = None
    billing_address: Optional[str] = None
    tx_ref: Optional[str] = None
    transaction_id: Optional[str] = None
    provider_reference: Optional[str] = None
    provider_status: Optional[str] = None
    provider_message: Optional[str] = None
    redirect_url: Optional[str] = None
    authorization_mode: Optional[str] = None
    transfer_account: Optional[str] = None
    transfer_bank: Optional[str] = None
    transfer_expires_at: Optional[datetime] = None
    card_first6: Optional[str] = None
    card_last4: Optional[str] = None
    card_type: Optional[str] = None
    notes: Optional[str] = None
    requested_delivery: Optional[datetime] = None
    estimated_delivery: Optional[datetime] = None
    actual_delivery: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    items: List[OrderItem] = []

    @property
    def is_cancellable(self) -> bool:
        return self.status not in NON_CANCELLABLE_STATUSES

    @property
    def is_awaiting_payment(self) -> bool:
        return (self.status == OrderStatus.PENDING
                and self.payment_status in AWAITING_PAYMENT_STATUSES)

    @property
    def is_completed(self) -> bool:
        return self.status in [OrderStatus.DELIVERED, OrderStatus.REFUNDED]
