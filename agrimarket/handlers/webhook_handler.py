# agrimarket/handlers/webhook_handler.py
from aiohttp import web
from .base_handler import BaseHandler
from ..services.webhook_service import WebhookService

class WebhookHandler(BaseHandler):
    """Provider callbacks.

    The raw body is handed over untouched since the fallback provider signs
    the exact bytes it sent.
    """

    def __init__(self, webhook_service: WebhookService):
        self.webhook_service = webhook_service

    async def payment_webhook(self, request: web.Request) -> web.Response:
        raw_body = await request.read()
        result = await self.webhook_service.handle_payment_webhook(request.headers, raw_body)
        return self.respond(result)

    async def subscription_webhook(self, request: web.Request) -> web.Response:
        raw_body = await request.read()
        result = await self.webhook_service.handle_subscription_webhook(request.headers, raw_body)
        return self.respond(result)
