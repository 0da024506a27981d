# agrimarket/models/product.py
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID
from .base import TimeStampedModel

class ProductStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    REJECTED = "REJECTED"

class Product(TimeStampedModel):
    """Stock-keeping view of a product; price and metadata belong to the catalogue"""
    id: UUID
    product_name: str
    unit_price: Decimal
    quantity: int = 0
    unit: str = "kg"
    category: Optional[str] = None
    status: ProductStatus = ProductStatus.ACTIVE

    @property
    def is_active(self) -> bool:
        return self.status == ProductStatus.ACTIVE
