# agrimarket/handlers/base_handler.py
import logging
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Tuple
from uuid import UUID
from aiohttp import web
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from ..config import Config
from ..errors import (
    AuthenticationError, MarketplaceError, PermissionDeniedError, UnauthorizedOwnershipError,
    ValidationError
)
from ..models.order import BillingInfo, PaymentMethod
from ..models.payment import CardInput, Customer
from ..utils.validators import parse_uuid

USER_ID_HEADER = "X-User-Id"
MAX_PAGE_SIZE = 100

logger = logging.getLogger(__name__)


@web.middleware
async def error_middleware(request: web.Request, handler):
    """Turn service errors into ``{"success": false, "error": ...}`` responses"""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except MarketplaceError as e:
        if e.status_code >= 500:
            logger.error(f"{request.method} {request.path} failed: {e.message}")
        return web.json_response(
            {"success": False, "error": e.message}, status=e.status_code
        )
    except Exception:
        logger.exception(f"Unhandled error on {request.method} {request.path}")
        return web.json_response(
            {"success": False, "error": "Internal server error"}, status=500
        )


def to_json(value: Any) -> Any:
    """JSON-ready copy of models, enums, decimals and ids"""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, dict):
        return {key: to_json(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_json(item) for item in value]
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (Decimal, UUID)):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


class BaseHandler:
    """Shared request helpers for the route handlers"""

    @staticmethod
    def respond(data: Any = None, status: int = 200) -> web.Response:
        return web.json_response({"success": True, "data": to_json(data)}, status=status)

    @staticmethod
    def user_id(request: web.Request) -> str:
        user_id = request.headers.get(USER_ID_HEADER, "").strip()
        if not user_id:
            raise AuthenticationError(f"Missing {USER_ID_HEADER} header")
        return user_id

    def restaurant_id(self, request: web.Request) -> UUID:
        try:
            return parse_uuid(self.user_id(request), "restaurant id")
        except ValidationError:
            raise AuthenticationError(f"{USER_ID_HEADER} must be a restaurant id")

    def is_admin(self, user_id: str) -> bool:
        """Check admin access"""
        return user_id in Config.ADMIN_IDS

    def require_admin(self, request: web.Request) -> str:
        user_id = self.user_id(request)
        if not self.is_admin(user_id):
            raise PermissionDeniedError("Admin access required")
        return user_id

    def scope(self, request: web.Request) -> Optional[UUID]:
        """Restaurant the caller is limited to; None for admins"""
        if self.is_admin(self.user_id(request)):
            return None
        return self.restaurant_id(request)

    def check_owner(self, request: web.Request, owner_id: UUID):
        restaurant_id = self.scope(request)
        if restaurant_id is not None and restaurant_id != owner_id:
            raise UnauthorizedOwnershipError("Resource does not belong to this restaurant")

    @staticmethod
    async def read_json(request: web.Request) -> Dict[str, Any]:
        if not request.can_read_body:
            return {}
        try:
            body = await request.json()
        except ValueError:
            raise ValidationError("Request body must be valid JSON")
        if not isinstance(body, dict):
            raise ValidationError("Request body must be a JSON object")
        return body

    @staticmethod
    def path_uuid(request: web.Request, name: str) -> UUID:
        return parse_uuid(request.match_info[name], name)

    @staticmethod
    def require(body: Dict[str, Any], field: str) -> Any:
        value = body.get(field)
        if value in (None, ""):
            raise ValidationError(f"{field} is required")
        return value

    @staticmethod
    def payment_method(value: Any, required: bool = True) -> Optional[PaymentMethod]:
        if value in (None, ""):
            if required:
                raise ValidationError("payment_method is required")
            return None
        try:
            return PaymentMethod(str(value).upper())
        except ValueError:
            raise ValidationError(f"Unsupported payment method: {value}")

    @staticmethod
    def _model(model, data: Any, label: str):
        try:
            return model.model_validate(data)
        except PydanticValidationError as e:
            fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
            raise ValidationError(f"Invalid {label}: {fields}")

    def card(self, body: Dict[str, Any]) -> Optional[CardInput]:
        if not body.get("card"):
            return None
        return self._model(CardInput, body["card"], "card details")

    def customer(self, body: Dict[str, Any]) -> Customer:
        return self._model(Customer, body.get("customer") or {}, "customer")

    def billing(self, body: Dict[str, Any]) -> BillingInfo:
        fields = {key: body.get(key) for key in BillingInfo.model_fields if body.get(key) is not None}
        return self._model(BillingInfo, fields, "billing details")

    @staticmethod
    def page(request: web.Request) -> Tuple[int, int]:
        """``limit``/``offset`` query parameters, limit capped"""
        try:
            limit = int(request.query.get("limit", 50))
            offset = int(request.query.get("offset", 0))
        except ValueError:
            raise ValidationError("limit and offset must be integers")
        if limit <= 0 or offset < 0:
            raise ValidationError("limit must be positive and offset non-negative")
        return min(limit, MAX_PAGE_SIZE), offset
