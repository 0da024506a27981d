# agrimarket/handlers/cart_handler.py
from aiohttp import web
from .base_handler import BaseHandler
from ..services.cart_service import CartService
from ..utils.validators import parse_positive_int, parse_uuid

class CartHandler(BaseHandler):
    """Cart routes; the cart is always the caller's own"""

    def __init__(self, cart_service: CartService):
        self.cart_service = cart_service

    async def get_cart(self, request: web.Request) -> web.Response:
        restaurant_id = self.restaurant_id(request)
        cart = await self.cart_service.get_cart(restaurant_id)
        return self.respond({
            "cart": cart,
            "total_items": cart.total_items if cart else 0,
        })

    async def add_item(self, request: web.Request) -> web.Response:
        restaurant_id = self.restaurant_id(request)
        body = await self.read_json(request)
        product_id = parse_uuid(self.require(body, "product_id"), "product_id")
        quantity = parse_positive_int(self.require(body, "quantity"))

        result = await self.cart_service.add_item(restaurant_id, product_id, quantity)
        return self.respond(result)

    async def update_item(self, request: web.Request) -> web.Response:
        restaurant_id = self.restaurant_id(request)
        item_id = self.path_uuid(request, "item_id")
        body = await self.read_json(request)
        quantity = parse_positive_int(self.require(body, "quantity"))

        result = await self.cart_service.update_item(item_id, quantity, restaurant_id)
        return self.respond(result)

    async def remove_item(self, request: web.Request) -> web.Response:
        restaurant_id = self.restaurant_id(request)
        item_id = self.path_uuid(request, "item_id")
        cart = await self.cart_service.remove_item(item_id, restaurant_id)
        return self.respond({"cart": cart, "total_items": cart.total_items})

    async def clear_cart(self, request: web.Request) -> web.Response:
        restaurant_id = self.restaurant_id(request)
        cart = await self.cart_service.clear(restaurant_id)
        return self.respond({"cart": cart, "total_items": 0})
