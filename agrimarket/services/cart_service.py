# agrimarket/services/cart_service.py
import logging
from decimal import Decimal
from typing import Optional
from uuid import UUID
from ..errors import (
    NotFoundError, UnauthorizedOwnershipError, ValidationError
)
from ..models.cart import Cart, CartItem, CartLineResult, CartStatus
from .product_service import ProductService

CART_ITEM_QUERY = """
    SELECT ci.*, p.product_name, p.unit, p.quantity AS available_quantity
    FROM cart_items ci
    JOIN products p ON p.id = ci.product_id
"""

class CartService:
    """A restaurant's single ACTIVE cart.

    Carts never touch stock; availability is checked on every change and
    enforced again when the order is created.
    """

    def __init__(self, db, product_service: Optional[ProductService] = None):
        self.db = db
        self.product_service = product_service or ProductService(db)
        self.logger = logging.getLogger(__name__)

    async def get_cart(self, restaurant_id: UUID) -> Optional[Cart]:
        async with self.db.pool.acquire() as conn:
            row = await conn.fetchrow("""
                SELECT * FROM carts
                WHERE restaurant_id = $1 AND status = $2
            """, restaurant_id, CartStatus.ACTIVE.value)
            if not row:
                return None
            return await self._load_cart(conn, row)

    async def get_cart_by_id(self, cart_id: UUID, conn=None) -> Optional[Cart]:
        async with self.db.connection(conn) as conn:
            row = await conn.fetchrow("SELECT * FROM carts WHERE id = $1", cart_id)
            if not row:
                return None
            return await self._load_cart(conn, row)

    async def _load_cart(self, conn, row) -> Cart:
        items = await conn.fetch(
            CART_ITEM_QUERY + " WHERE ci.cart_id = $1 ORDER BY ci.created_at", row["id"]
        )
        return Cart.from_row(row, items=[dict(item) for item in items])

    async def _active_cart_id(self, conn, restaurant_id: UUID) -> UUID:
        """Lock the restaurant's ACTIVE cart, creating it if needed"""
        await conn.execute("""
            INSERT INTO carts (restaurant_id, status)
            VALUES ($1, $2)
            ON CONFLICT (restaurant_id) WHERE status = 'ACTIVE' DO NOTHING
        """, restaurant_id, CartStatus.ACTIVE.value)

        return await conn.fetchval("""
            SELECT id FROM carts
            WHERE restaurant_id = $1 AND status = $2
            FOR UPDATE
        """, restaurant_id, CartStatus.ACTIVE.value)

    async def _recompute_total(self, conn, cart_id: UUID) -> Decimal:
        return await conn.fetchval("""
            UPDATE carts
            SET total_amount = COALESCE(
                    (SELECT SUM(subtotal) FROM cart_items WHERE cart_id = $1), 0
                ),
                updated_at = CURRENT_TIMESTAMP
            WHERE id = $1
            RETURNING total_amount
        """, cart_id)

    async def _line_result(self, conn, cart_id: UUID, item_id: UUID) -> CartLineResult:
        item = await conn.fetchrow(CART_ITEM_QUERY + " WHERE ci.id = $1", item_id)
        total = await self._recompute_total(conn, cart_id)
        total_items = await conn.fetchval(
            "SELECT COUNT(*) FROM cart_items WHERE cart_id = $1", cart_id
        )
        return CartLineResult(
            item=CartItem.from_row(item),
            cart_total=total,
            total_items=total_items,
        )

    async def add_item(self, restaurant_id: UUID, product_id: UUID, quantity: int) -> CartLineResult:
        """Add ``quantity`` of a product, merging into an existing line"""
        if quantity <= 0:
            raise ValidationError("Quantity must be greater than 0")

        async with self.db.transaction() as conn:
            restaurant = await conn.fetchval(
                "SELECT id FROM restaurants WHERE id = $1", restaurant_id
            )
            if not restaurant:
                raise NotFoundError("Restaurant", restaurant_id)

            cart_id = await self._active_cart_id(conn, restaurant_id)
            in_cart = await conn.fetchval("""
                SELECT quantity FROM cart_items
                WHERE cart_id = $1 AND product_id = $2
            """, cart_id, product_id) or 0

            # The merged line must still be coverable by current stock
            product = await self.product_service.get_available_product(
                product_id, in_cart + quantity, conn
            )

            item_id = await conn.fetchval("""
                INSERT INTO cart_items (cart_id, product_id, quantity, unit_price, subtotal)
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT (cart_id, product_id) DO UPDATE
                SET quantity = cart_items.quantity + EXCLUDED.quantity,
                    subtotal = (cart_items.quantity + EXCLUDED.quantity) * cart_items.unit_price,
                    updated_at = CURRENT_TIMESTAMP
                RETURNING id
            """, cart_id, product_id, quantity, product.unit_price, product.unit_price * quantity)

            result = await self._line_result(conn, cart_id, item_id)

        self.logger.info(
            f"Restaurant {restaurant_id} added {quantity} x {product.product_name} to cart {cart_id}"
        )
        return result

    async def _owned_item(self, conn, item_id: UUID, restaurant_id: UUID):
        row = await conn.fetchrow("""
            SELECT ci.id, ci.cart_id, ci.product_id, ci.unit_price, c.restaurant_id, c.status
            FROM cart_items ci
            JOIN carts c ON c.id = ci.cart_id
            WHERE ci.id = $1
            FOR UPDATE OF c
        """, item_id)
        if not row:
            raise NotFoundError("Cart item", item_id)
        if row["restaurant_id"] != restaurant_id:
            raise UnauthorizedOwnershipError("Cart item does not belong to this restaurant")
        if row["status"] != CartStatus.ACTIVE.value:
            raise ValidationError("Cart is no longer active")
        return row

    async def update_item(self, item_id: UUID, quantity: int, restaurant_id: UUID) -> CartLineResult:
        if quantity <= 0:
            raise ValidationError("Quantity must be greater than 0")

        async with self.db.transaction() as conn:
            item = await self._owned_item(conn, item_id, restaurant_id)

            await self.product_service.get_available_product(item["product_id"], quantity, conn)

            await conn.execute("""
                UPDATE cart_items
                SET quantity = $1, subtotal = $2, updated_at = CURRENT_TIMESTAMP
                WHERE id = $3
            """, quantity, item["unit_price"] * quantity, item_id)

            return await self._line_result(conn, item["cart_id"], item_id)

    async def remove_item(self, item_id: UUID, restaurant_id: UUID) -> Cart:
        async with self.db.transaction() as conn:
            item = await self._owned_item(conn, item_id, restaurant_id)
            await conn.execute("DELETE FROM cart_items WHERE id = $1", item_id)
            await self._recompute_total(conn, item["cart_id"])
            return await self.get_cart_by_id(item["cart_id"], conn)

    async def clear(self, restaurant_id: UUID) -> Optional[Cart]:
        """Empty the ACTIVE cart; the cart itself stays for reuse"""
        async with self.db.transaction() as conn:
            cart_id = await conn.fetchval("""
                SELECT id FROM carts
                WHERE restaurant_id = $1 AND status = $2
                FOR UPDATE
            """, restaurant_id, CartStatus.ACTIVE.value)
            if not cart_id:
                return None
            await self.clear_items(conn, cart_id)
            return await self.get_cart_by_id(cart_id, conn)

    async def clear_items(self, conn, cart_id: UUID):
        await conn.execute("DELETE FROM cart_items WHERE cart_id = $1", cart_id)
        await self._recompute_total(conn, cart_id)
