# agrimarket/handlers/order_handler.py
from aiohttp import web
from .base_handler import BaseHandler
from ..errors import ValidationError
from ..models.order import OrderStatus, PaymentStatus
from ..services.order_service import OrderService
from ..utils.validators import parse_datetime, parse_positive_int, parse_uuid

class OrderHandler(BaseHandler):
    """Order routes.

    Restaurants only ever see their own orders; admins see every order and
    drive the fulfilment statuses.
    """

    def __init__(self, order_service: OrderService):
        self.order_service = order_service

    @staticmethod
    def _status(value, enum, field):
        if not value:
            return None
        try:
            return enum(str(value).upper())
        except ValueError:
            raise ValidationError(f"Invalid {field}: {value}")

    async def create_order(self, request: web.Request) -> web.Response:
        restaurant_id = self.restaurant_id(request)
        body = await self.read_json(request)
        items = self.require(body, "items")
        if not isinstance(items, list):
            raise ValidationError("items must be a list")

        lines = []
        for item in items:
            if not isinstance(item, dict):
                raise ValidationError("Each item needs product_id and quantity")
            lines.append({
                "product_id": parse_uuid(item.get("product_id"), "product_id"),
                "quantity": parse_positive_int(item.get("quantity")),
            })

        order = await self.order_service.create_direct(
            restaurant_id, lines, self.billing(body),
            self.payment_method(body.get("payment_method"))
        )
        return self.respond(order, status=201)

    async def list_orders(self, request: web.Request) -> web.Response:
        restaurant_id = self.scope(request)
        if restaurant_id is None and request.query.get("restaurant_id"):
            restaurant_id = parse_uuid(request.query["restaurant_id"], "restaurant_id")
        limit, offset = self.page(request)

        result = await self.order_service.list_orders(
            status=self._status(request.query.get("status"), OrderStatus, "status"),
            payment_status=self._status(
                request.query.get("payment_status"), PaymentStatus, "payment_status"
            ),
            restaurant_id=restaurant_id,
            date_from=parse_datetime(request.query.get("date_from"), "date_from"),
            date_to=parse_datetime(request.query.get("date_to"), "date_to"),
            limit=limit,
            offset=offset,
        )
        return self.respond(result)

    async def statistics(self, request: web.Request) -> web.Response:
        self.require_admin(request)
        restaurant_id = request.query.get("restaurant_id")

        stats = await self.order_service.order_statistics(
            restaurant_id=parse_uuid(restaurant_id, "restaurant_id") if restaurant_id else None,
            date_from=parse_datetime(request.query.get("date_from"), "date_from"),
            date_to=parse_datetime(request.query.get("date_to"), "date_to"),
        )
        return self.respond(stats)

    async def get_order(self, request: web.Request) -> web.Response:
        order = await self.order_service.get_order(
            self.path_uuid(request, "order_id"), self.scope(request)
        )
        return self.respond(order)

    async def update_status(self, request: web.Request) -> web.Response:
        self.require_admin(request)
        body = await self.read_json(request)
        new_status = self._status(self.require(body, "status"), OrderStatus, "status")

        order = await self.order_service.update_status(
            self.path_uuid(request, "order_id"), new_status, body.get("reason")
        )
        return self.respond(order)

    async def update_order(self, request: web.Request) -> web.Response:
        """Admin edit of status, estimated delivery and notes"""
        self.require_admin(request)
        body = await self.read_json(request)
        notes = body.get("notes")
        if notes is not None and not isinstance(notes, str):
            raise ValidationError("notes must be a string")

        order = await self.order_service.update_order(
            self.path_uuid(request, "order_id"),
            status=self._status(body.get("status"), OrderStatus, "status"),
            estimated_delivery=parse_datetime(body.get("estimated_delivery"), "estimated_delivery"),
            notes=notes,
            reason=body.get("reason"),
        )
        return self.respond(order)

    async def cancel_order(self, request: web.Request) -> web.Response:
        restaurant_id = self.scope(request)
        body = await self.read_json(request)

        order = await self.order_service.cancel(
            self.path_uuid(request, "order_id"), self.require(body, "reason"), restaurant_id
        )
        return self.respond(order)

    async def delete_order(self, request: web.Request) -> web.Response:
        self.require_admin(request)
        order_id = self.path_uuid(request, "order_id")
        await self.order_service.delete_order(order_id)
        return self.respond({"deleted": order_id})
