# agrimarket/handlers/subscription_handler.py
from aiohttp import web
from .base_handler import BaseHandler
from ..services.subscription_service import SubscriptionService
from ..utils.validators import parse_uuid

class SubscriptionHandler(BaseHandler):
    def __init__(self, subscription_service: SubscriptionService):
        self.subscription_service = subscription_service

    async def subscribe(self, request: web.Request) -> web.Response:
        restaurant_id = self.restaurant_id(request)
        body = await self.read_json(request)

        outcome = await self.subscription_service.create_subscription(
            restaurant_id,
            parse_uuid(self.require(body, "plan_id"), "plan_id"),
            self.payment_method(body.get("payment_method")),
            phone_number=body.get("phone_number"),
            card=self.card(body),
            customer=self.customer(body),
        )
        return self.respond(outcome, status=201)

    async def expire(self, request: web.Request) -> web.Response:
        self.require_admin(request)
        expired = await self.subscription_service.expire_subscriptions()
        return self.respond({"expired": expired})
