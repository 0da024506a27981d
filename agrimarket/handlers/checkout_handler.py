# agrimarket/handlers/checkout_handler.py
from aiohttp import web
from .base_handler import BaseHandler
from ..services.checkout_service import CheckoutService
from ..utils.validators import parse_uuid

class CheckoutHandler(BaseHandler):
    def __init__(self, checkout_service: CheckoutService):
        self.checkout_service = checkout_service

    async def checkout(self, request: web.Request) -> web.Response:
        """Create (or reuse) the cart's order and run the first payment attempt"""
        restaurant_id = self.restaurant_id(request)
        body = await self.read_json(request)
        cart_id = parse_uuid(self.require(body, "cart_id"), "cart_id")
        payment_method = self.payment_method(body.get("payment_method"))

        outcome = await self.checkout_service.checkout(
            restaurant_id, cart_id, payment_method, self.billing(body),
            phone_number=body.get("phone_number"),
            card=self.card(body),
        )
        return self.respond(outcome, status=201 if outcome["created"] else 200)

    async def process_payment(self, request: web.Request) -> web.Response:
        restaurant_id = self.scope(request)
        order_id = self.path_uuid(request, "order_id")
        body = await self.read_json(request)

        outcome = await self.checkout_service.process_payment(
            order_id, restaurant_id,
            payment_method=self.payment_method(body.get("payment_method"), required=False),
            phone_number=body.get("phone_number"),
            card=self.card(body),
        )
        return self.respond(outcome)

    async def verify_payment(self, request: web.Request) -> web.Response:
        restaurant_id = self.scope(request)
        order_id = self.path_uuid(request, "order_id")

        outcome = await self.checkout_service.verify_payment(
            order_id, request.query.get("transaction_id") or None, restaurant_id
        )
        return self.respond(outcome)
