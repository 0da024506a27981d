"""Fixtures for tests against a real PostgreSQL database.

Set TEST_DATABASE_URL to a disposable database to run them; every test
starts from empty tables.
"""

import os
from decimal import Decimal

import pytest

from agrimarket.app import MarketplaceApp
from agrimarket.database.database import Database

TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")

TABLES = (
    "subscription_history",
    "restaurant_subscriptions",
    "subscription_plans",
    "wallet_transactions",
    "wallets",
    "order_items",
    "orders",
    "order_number_sequences",
    "cart_items",
    "carts",
    "products",
    "restaurants",
)


@pytest.fixture
async def db():
    if not TEST_DATABASE_URL:
        pytest.skip("TEST_DATABASE_URL is not set")

    database = Database(TEST_DATABASE_URL)
    await database.connect()
    async with database.pool.acquire() as conn:
        await conn.execute(f"TRUNCATE {', '.join(TABLES)} CASCADE")
    yield database
    await database.close()


@pytest.fixture
async def marketplace(db, stub_provider):
    """Fully wired services; both gateways answer PENDING."""
    app = MarketplaceApp(
        db=db,
        primary_provider=stub_provider("FLUTTERWAVE"),
        fallback_provider=stub_provider("PAYPACK"),
    )
    yield app
    await app.notifications.drain()


@pytest.fixture
def create_restaurant(db):
    async def _create(name="Kigali Bistro"):
        async with db.pool.acquire() as conn:
            return await conn.fetchval("""
                INSERT INTO restaurants (name, email, phone)
                VALUES ($1, $2, $3)
                RETURNING id
            """, name, "orders@bistro.rw", "0788123456")
    return _create


@pytest.fixture
def create_product(db):
    async def _create(name, unit_price, quantity):
        async with db.pool.acquire() as conn:
            return await conn.fetchval("""
                INSERT INTO products (product_name, unit_price, quantity)
                VALUES ($1, $2, $3)
                RETURNING id
            """, name, Decimal(unit_price), quantity)
    return _create


@pytest.fixture
def create_plan(db):
    async def _create(name="Monthly", price="15000", duration_days=30):
        async with db.pool.acquire() as conn:
            return await conn.fetchval("""
                INSERT INTO subscription_plans (name, price, duration_days)
                VALUES ($1, $2, $3)
                RETURNING id
            """, name, Decimal(price), duration_days)
    return _create


@pytest.fixture
def funded_wallet(marketplace):
    """Create the restaurant's wallet with an opening balance."""
    async def _fund(restaurant_id, amount):
        wallet = await marketplace.wallet_service.create_wallet(restaurant_id)
        if Decimal(amount) > 0:
            await marketplace.wallet_service.adjust(wallet.id, Decimal(amount), "Opening balance")
        return await marketplace.wallet_service.get_wallet(wallet.id)
    return _fund


@pytest.fixture
def stock(db):
    async def _stock(product_id):
        async with db.pool.acquire() as conn:
            return await conn.fetchval("SELECT quantity FROM products WHERE id = $1", product_id)
    return _stock
