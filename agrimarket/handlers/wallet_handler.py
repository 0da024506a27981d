# agrimarket/handlers/wallet_handler.py
from aiohttp import web
from .base_handler import BaseHandler
from ..errors import NotFoundError, ValidationError
from ..models.wallet import TransactionStatus, WalletTransactionType
from ..services.wallet_service import WalletService
from ..utils.validators import parse_amount, parse_bool, parse_datetime

class WalletHandler(BaseHandler):
    """Wallet routes"""

    def __init__(self, wallet_service: WalletService):
        self.wallet_service = wallet_service

    async def create_wallet(self, request: web.Request) -> web.Response:
        restaurant_id = self.restaurant_id(request)
        body = await self.read_json(request)
        wallet = await self.wallet_service.create_wallet(restaurant_id, body.get("currency"))
        return self.respond(wallet, status=201)

    async def get_my_wallet(self, request: web.Request) -> web.Response:
        restaurant_id = self.restaurant_id(request)
        wallet = await self.wallet_service.get_wallet_by_restaurant(restaurant_id)
        if not wallet:
            raise NotFoundError("Wallet")
        return self.respond(wallet)

    async def show_transactions(self, request: web.Request) -> web.Response:
        """Transaction history, newest first"""
        wallet = await self.wallet_service.get_wallet(self.path_uuid(request, "wallet_id"))
        self.check_owner(request, wallet.restaurant_id)
        limit, offset = self.page(request)

        try:
            tx_type = WalletTransactionType(request.query["type"].upper()) if request.query.get("type") else None
            status = TransactionStatus(request.query["status"].upper()) if request.query.get("status") else None
        except ValueError:
            raise ValidationError("Invalid transaction type or status filter")

        transactions = await self.wallet_service.list_transactions(
            wallet.id,
            tx_type=tx_type,
            status=status,
            date_from=parse_datetime(request.query.get("date_from"), "date_from"),
            date_to=parse_datetime(request.query.get("date_to"), "date_to"),
            limit=limit,
            offset=offset,
        )
        return self.respond({
            "wallet": wallet,
            "transactions": transactions,
            "limit": limit,
            "offset": offset,
        })

    async def handle_top_up(self, request: web.Request) -> web.Response:
        restaurant_id = self.restaurant_id(request)
        body = await self.read_json(request)

        outcome = await self.wallet_service.top_up(
            restaurant_id,
            parse_amount(self.require(body, "amount")),
            self.payment_method(body.get("payment_method")),
            phone_number=body.get("phone_number"),
            card=self.card(body),
            customer=self.customer(body),
        )
        return self.respond(outcome)

    async def verify_top_up(self, request: web.Request) -> web.Response:
        transaction = await self.wallet_service.get_transaction(
            self.path_uuid(request, "transaction_id")
        )
        wallet = await self.wallet_service.get_wallet(transaction.wallet_id)
        self.check_owner(request, wallet.restaurant_id)

        transaction = await self.wallet_service.verify_top_up(transaction.id)
        return self.respond(transaction)

    async def adjust_balance(self, request: web.Request) -> web.Response:
        admin_id = self.require_admin(request)
        body = await self.read_json(request)

        transaction = await self.wallet_service.adjust(
            self.path_uuid(request, "wallet_id"),
            parse_amount(self.require(body, "amount")),
            self.require(body, "reason"),
            admin_id,
        )
        return self.respond(transaction)

    async def set_status(self, request: web.Request) -> web.Response:
        self.require_admin(request)
        body = await self.read_json(request)

        wallet = await self.wallet_service.set_wallet_status(
            self.path_uuid(request, "wallet_id"),
            parse_bool(self.require(body, "is_active"), "is_active"),
        )
        return self.respond(wallet)
