# agrimarket/app.py
import asyncio
import logging
from typing import Optional
from aiohttp import web
from .config import Config
from .database.database import Database
from .handlers import (
    CartHandler,
    CheckoutHandler,
    OrderHandler,
    WalletHandler,
    SubscriptionHandler,
    WebhookHandler,
    error_middleware
)
from .services.cart_service import CartService
from .services.checkout_service import CheckoutService
from .services.notification_service import NotificationService
from .services.order_service import OrderService
from .services.payment_providers import PaymentProvider
from .services.payment_service import PaymentService
from .services.product_service import ProductService
from .services.subscription_service import SubscriptionService
from .services.wallet_service import WalletService
from .services.webhook_service import WebhookService

class MarketplaceApp:
    def __init__(self, db: Optional[Database] = None,
                 notification_service: Optional[NotificationService] = None,
                 primary_provider: Optional[PaymentProvider] = None,
                 fallback_provider: Optional[PaymentProvider] = None):
        """Wire the services and build the web application"""
        self.db = db or Database()
        self.logger = logging.getLogger(__name__)

        self.notifications = notification_service or NotificationService()
        self.product_service = ProductService(self.db)
        self.wallet_service = WalletService(self.db, notification_service=self.notifications)
        self.payment_service = PaymentService(
            self.wallet_service, primary_provider, fallback_provider
        )
        self.wallet_service.payment_service = self.payment_service
        self.cart_service = CartService(self.db, self.product_service)
        self.order_service = OrderService(self.db, self.product_service, self.notifications)
        self.checkout_service = CheckoutService(self.order_service, self.payment_service)
        self.subscription_service = SubscriptionService(
            self.db, self.payment_service, self.notifications
        )
        self.webhook_service = WebhookService(
            self.order_service, self.wallet_service, self.subscription_service
        )

        self.application = web.Application(middlewares=[error_middleware])
        self.application.on_startup.append(self._on_startup)
        self.application.on_cleanup.append(self._on_cleanup)
        self.setup_routes()

    def setup_routes(self):
        """Register every HTTP route"""
        router = self.application.router
        router.add_get("/health", self.health)

        # Cart
        carts = CartHandler(self.cart_service)
        router.add_get("/carts/me", carts.get_cart)
        router.add_delete("/carts/me", carts.clear_cart)
        router.add_post("/carts/items", carts.add_item)
        router.add_patch("/carts/items/{item_id}", carts.update_item)
        router.add_delete("/carts/items/{item_id}", carts.remove_item)

        # Checkout
        checkouts = CheckoutHandler(self.checkout_service)
        router.add_post("/checkouts", checkouts.checkout)
        router.add_post("/checkouts/{order_id}/payment", checkouts.process_payment)
        router.add_get("/checkouts/{order_id}/verify-payment", checkouts.verify_payment)

        # Orders; the static path goes before the {order_id} routes
        orders = OrderHandler(self.order_service)
        router.add_post("/orders", orders.create_order)
        router.add_get("/orders", orders.list_orders)
        router.add_get("/orders/statistics", orders.statistics)
        router.add_get("/orders/{order_id}", orders.get_order)
        router.add_patch("/orders/{order_id}", orders.update_order)
        router.add_patch("/orders/{order_id}/status", orders.update_status)
        router.add_post("/orders/{order_id}/cancel", orders.cancel_order)
        router.add_delete("/orders/{order_id}", orders.delete_order)

        # Wallets
        wallets = WalletHandler(self.wallet_service)
        router.add_post("/wallets", wallets.create_wallet)
        router.add_get("/wallets/me", wallets.get_my_wallet)
        router.add_post("/wallets/top-up", wallets.handle_top_up)
        router.add_post("/wallets/transactions/{transaction_id}/verify", wallets.verify_top_up)
        router.add_get("/wallets/{wallet_id}/transactions", wallets.show_transactions)
        router.add_post("/wallets/{wallet_id}/adjust", wallets.adjust_balance)
        router.add_patch("/wallets/{wallet_id}/status", wallets.set_status)

        # Subscriptions and provider callbacks
        subscriptions = SubscriptionHandler(self.subscription_service)
        webhooks = WebhookHandler(self.webhook_service)
        router.add_post("/subscriptions", subscriptions.subscribe)
        router.add_post("/subscriptions/expire", subscriptions.expire)
        router.add_post("/subscriptions/webhook", webhooks.subscription_webhook)
        router.add_post("/payments/webhook", webhooks.payment_webhook)

    async def health(self, request: web.Request) -> web.Response:
        try:
            async with self.db.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
        except Exception as e:
            self.logger.error(f"Health check failed: {e}")
            return web.json_response({"status": "unavailable"}, status=503)
        return web.json_response({"status": "ok"})

    async def _on_startup(self, app: web.Application):
        await self.db.connect()

    async def _on_cleanup(self, app: web.Application):
        await self.notifications.drain()
        await self.db.close()

    async def start(self):
        """Serve until cancelled"""
        runner = web.AppRunner(self.application)
        await runner.setup()
        site = web.TCPSite(runner, Config.HOST, Config.PORT)
        await site.start()
        self.logger.info(f"Listening on {Config.HOST}:{Config.PORT}")

        try:
            await asyncio.Event().wait()
        finally:
            await runner.cleanup()
