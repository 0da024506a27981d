# agrimarket/models/cart.py
from decimal import Decimal
from enum import Enum
from typing import List, Optional
from uuid import UUID
from pydantic import BaseModel
from .base import TimeStampedModel

class CartStatus(str, Enum):
    ACTIVE = "ACTIVE"
    CHECKED_OUT = "CHECKED_OUT"
    ABANDONED = "ABANDONED"

class CartItem(TimeStampedModel):
    """A cart line; unit_price is the price snapshot taken when the line was added"""
    id: UUID
    cart_id: UUID
    product_id: UUID
    quantity: int
    unit_price: Decimal
    subtotal: Decimal
    product_name: Optional[str] = None
    unit: Optional[str] = None
    available_quantity: Optional[int] = None

class Cart(TimeStampedModel):
    id: UUID
    restaurant_id: UUID
    status: CartStatus
    total_amount: Decimal = Decimal(0)
    items: List[CartItem] = []

    @property
    def total_items(self) -> int:
        return len(self.items)

    @property
    def is_empty(self) -> bool:
        return not self.items

    def computed_total(self) -> Decimal:
        return sum((item.subtotal for item in self.items), Decimal(0))

class CartLineResult(BaseModel):
    """Result of adding or updating a line"""
    item: CartItem
    cart_total: Decimal
    total_items: int
