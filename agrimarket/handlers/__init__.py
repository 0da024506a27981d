# agrimarket/handlers/__init__.py
"""HTTP route handlers"""
from .base_handler import BaseHandler, error_middleware
from .cart_handler import CartHandler
from .checkout_handler import CheckoutHandler
from .order_handler import OrderHandler
from .wallet_handler import WalletHandler
from .subscription_handler import SubscriptionHandler
from .webhook_handler import WebhookHandler

__all__ = [
    'BaseHandler',
    'error_middleware',
    'CartHandler',
    'CheckoutHandler',
    'OrderHandler',
    'WalletHandler',
    'SubscriptionHandler',
    'WebhookHandler',
]
