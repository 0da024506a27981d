# agrimarket/services/product_service.py
import logging
from typing import Optional
from uuid import UUID
from ..errors import InsufficientStockError, NotFoundError, ValidationError
from ..models.product import Product, ProductStatus

class ProductService:
    """Inventory ledger: the only code that writes products.quantity"""

    def __init__(self, db):
        self.db = db
        self.logger = logging.getLogger(__name__)

    async def get_product(self, product_id: UUID, conn=None) -> Optional[Product]:
        async with self.db.connection(conn) as conn:
            row = await conn.fetchrow("""
                SELECT id, product_name, unit_price, quantity, unit, category,
                       status, created_at, updated_at
                FROM products
                WHERE id = $1
            """, product_id)
            return Product.from_row(row) if row else None

    async def check_stock(self, product_id: UUID, quantity: int, conn=None) -> bool:
        """Whether an active product currently holds ``quantity`` units"""
        async with self.db.connection(conn) as conn:
            stock = await conn.fetchval("""
                SELECT quantity
                FROM products
                WHERE id = $1 AND status = $2
            """, product_id, ProductStatus.ACTIVE.value)
            return stock is not None and stock >= quantity

    async def get_available_product(self, product_id: UUID, quantity: int, conn=None) -> Product:
        """Load a product and require it to be active with enough stock.

        Raises NotFoundError, ValidationError (inactive) or InsufficientStockError.
        """
        product = await self.get_product(product_id, conn)
        if not product:
            raise NotFoundError("Product", product_id)
        if not product.is_active:
            raise ValidationError(f"Product {product.product_name} is not available")
        if product.quantity < quantity:
            raise InsufficientStockError(product.product_name, product.quantity, quantity)
        return product

    async def reserve_stock(self, conn, product_id: UUID, quantity: int) -> int:
        """Atomically take ``quantity`` units; returns the remaining stock.

        The decrement is a single compare-and-swap UPDATE, so two concurrent
        reservations can never both pass the stock check. No row updated means
        the product is missing, inactive or short.
        """
        if quantity <= 0:
            raise ValidationError("Quantity must be greater than 0")

        remaining = await conn.fetchval("""
            UPDATE products
            SET quantity = quantity - $1, updated_at = CURRENT_TIMESTAMP
            WHERE id = $2 AND quantity >= $1 AND status = $3
            RETURNING quantity
        """, quantity, product_id, ProductStatus.ACTIVE.value)

        if remaining is None:
            # Raises the specific reason
            await self.get_available_product(product_id, quantity, conn)
            raise InsufficientStockError(str(product_id), 0, quantity)

        self.logger.debug(f"Reserved {quantity} of product {product_id}, {remaining} left")
        return remaining

    async def release_stock(self, conn, product_id: UUID, quantity: int) -> int:
        """Return ``quantity`` units to stock; returns the new stock"""
        if quantity <= 0:
            raise ValidationError("Quantity must be greater than 0")

        new_quantity = await conn.fetchval("""
            UPDATE products
            SET quantity = quantity + $1, updated_at = CURRENT_TIMESTAMP
            WHERE id = $2
            RETURNING quantity
        """, quantity, product_id)

        if new_quantity is None:
            raise NotFoundError("Product", product_id)

        self.logger.debug(f"Released {quantity} of product {product_id}, {new_quantity} in stock")
        return new_quantity
