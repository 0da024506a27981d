# agrimarket/models/subscription.py
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID
from .base import TimeStampedModel
from .order import PaymentStatus

SUBSCRIPTION_REFERENCE_PREFIX = "SUB_"

class SubscriptionStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"

class RestaurantSubscription(TimeStampedModel):
    id: UUID
    restaurant_id: UUID
    plan_id: UUID
    status: SubscriptionStatus
    payment_status: PaymentStatus
    payment_method: str
    start_date: datetime
    end_date: datetime
    auto_renew: bool = False
    tx_ref: str
    provider_reference: Optional[str] = None
    transaction_id: Optional[str] = None
    amount_paid: Optional[Decimal] = None
