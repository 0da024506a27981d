# agrimarket/services/payment_providers.py
import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Dict, Optional
import aiohttp
from ..config import Config
from ..errors import ProviderError, ProviderTimeoutError
from ..models.payment import (
    AuthorizationMode, CardInput, PaymentRequest, PaymentResultStatus, ProviderResponse
)
from ..utils.validators import clean_phone_number

FLUTTERWAVE = "FLUTTERWAVE"
PAYPACK = "PAYPACK"

# Provider status strings -> normalized result status
PROVIDER_STATUSES = {
    "successful": PaymentResultStatus.SUCCESSFUL,
    "success": PaymentResultStatus.SUCCESSFUL,
    "completed": PaymentResultStatus.SUCCESSFUL,
    "failed": PaymentResultStatus.FAILED,
    "cancelled": PaymentResultStatus.FAILED,
    "error": PaymentResultStatus.FAILED,
}

def normalize_status(raw_status: Optional[str]) -> PaymentResultStatus:
    """Anything not clearly final is pending"""
    return PROVIDER_STATUSES.get((raw_status or "").lower(), PaymentResultStatus.PENDING)


def parse_expiration(value: Optional[str]) -> Optional[datetime]:
    """Gateway expirations come either ISO formatted or as ``2024-05-01 10:15:00 AM``"""
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        pass
    try:
        return datetime.strptime(value, "%Y-%m-%d %I:%M:%S %p")
    except ValueError:
        return None

class PaymentProvider:
    """Common interface of the external payment gateways"""

    name = "PROVIDER"

    def __init__(self, base_url: str, timeout: Optional[float] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout or Config.PAYMENT_TIMEOUT)
        self.logger = logging.getLogger(__name__)

    async def initiate_mobile_money(self, request: PaymentRequest, phone_number: str) -> ProviderResponse:
        raise ProviderError(self.name, "mobile money is not supported")

    async def charge_card(self, request: PaymentRequest, card: CardInput) -> ProviderResponse:
        raise ProviderError(self.name, "card payments are not supported")

    async def initiate_bank_transfer(self, request: PaymentRequest, expires_in: int) -> ProviderResponse:
        raise ProviderError(self.name, "bank transfer is not supported")

    async def verify_transaction(self, reference: str,
                                 transaction_id: Optional[str] = None) -> ProviderResponse:
        raise ProviderError(self.name, "verification is not supported")

    async def _headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json"}

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        """Call the provider and return the decoded JSON body.

        Timeouts become ProviderTimeoutError; transport failures, non-JSON
        answers and HTTP errors become ProviderError.
        """
        url = f"{self.base_url}{path}"
        headers = await self._headers()
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.request(method, url, headers=headers, **kwargs) as response:
                    try:
                        body = await response.json(content_type=None)
                    except ValueError:
                        body = None

                    if response.status >= 400:
                        message = (body or {}).get("message") if isinstance(body, dict) else None
                        raise ProviderError(
                            self.name, message or f"HTTP {response.status}"
                        )
                    if not isinstance(body, dict):
                        raise ProviderError(self.name, "invalid response body")
                    return body
        except asyncio.TimeoutError:
            raise ProviderTimeoutError(self.name, "request timed out")
        except aiohttp.ClientError as e:
            raise ProviderError(self.name, f"connection failed: {e}")


class FlutterwaveProvider(PaymentProvider):
    """Primary gateway: mobile money, cards and bank transfers"""

    name = FLUTTERWAVE

    def __init__(self, secret_key: Optional[str] = None, base_url: Optional[str] = None,
                 timeout: Optional[float] = None):
        super().__init__(base_url or Config.FLW_BASE_URL, timeout)
        self.secret_key = secret_key if secret_key is not None else Config.FLW_SECRET_KEY

    async def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

    @staticmethod
    def _customer_fields(request: PaymentRequest) -> Dict[str, Any]:
        return {
            "email": request.customer.email,
            "fullname": request.customer.name,
            "phone_number": request.customer.phone,
        }

    async def initiate_mobile_money(self, request: PaymentRequest, phone_number: str) -> ProviderResponse:
        payload = {
            **self._customer_fields(request),
            "tx_ref": request.reference,
            "order_id": request.reference,
            "amount": str(request.amount),
            "currency": request.currency,
            "phone_number": phone_number,
        }
        body = await self._request("POST", "/charges?type=mobile_money_rwanda", json=payload)
        if body.get("status") != "success":
            raise ProviderError(self.name, body.get("message") or "charge was not initiated")

        authorization = (body.get("meta") or {}).get("authorization") or {}
        return ProviderResponse(
            provider=self.name,
            status=PaymentResultStatus.PENDING,
            transaction_id=request.reference,
            provider_reference=request.reference,
            message=body.get("message") or "Mobile money payment initiated",
            amount=request.amount,
            currency=request.currency,
            redirect_url=authorization.get("redirect"),
        )

    async def charge_card(self, request: PaymentRequest, card: CardInput) -> ProviderResponse:
        payload = {
            **self._customer_fields(request),
            "tx_ref": request.reference,
            "amount": str(request.amount),
            "currency": request.currency,
            "card_number": card.card_number,
            "cvv": card.cvv,
            "expiry_month": card.expiry_month,
            "expiry_year": card.expiry_year,
        }
        if card.pin:
            payload["authorization"] = {"mode": "pin", "pin": card.pin}

        body = await self._request("POST", "/charges?type=card", json=payload)
        if body.get("status") != "success":
            raise ProviderError(self.name, body.get("message") or "card charge was declined")

        data = body.get("data") or {}
        authorization = (body.get("meta") or {}).get("authorization") or {}
        status = normalize_status(data.get("status"))

        mode = authorization.get("mode")
        if mode == "redirect":
            auth_mode = AuthorizationMode.REDIRECT
        elif mode == "otp":
            auth_mode = AuthorizationMode.OTP
        elif mode == "pin":
            auth_mode = AuthorizationMode.PIN
        else:
            auth_mode = AuthorizationMode.DIRECT

        return ProviderResponse(
            provider=self.name,
            status=status,
            transaction_id=str(data["id"]) if data.get("id") is not None else request.reference,
            provider_reference=data.get("flw_ref") or request.reference,
            message=body.get("message") or "Card charge initiated",
            amount=request.amount,
            currency=request.currency,
            authorization_mode=auth_mode,
            redirect_url=authorization.get("redirect"),
            card_type=(data.get("card") or {}).get("type"),
        )

    async def initiate_bank_transfer(self, request: PaymentRequest, expires_in: int) -> ProviderResponse:
        payload = {
            "tx_ref": request.reference,
            "amount": str(request.amount),
            "currency": request.currency,
            "email": request.customer.email,
            "phone_number": request.customer.phone,
            "fullname": request.customer.name,
            "is_permanent": False,
            "expires": expires_in,
        }
        body = await self._request("POST", "/charges?type=bank_transfer", json=payload)
        if body.get("status") != "success":
            raise ProviderError(self.name, body.get("message") or "transfer account was not created")

        authorization = (body.get("meta") or {}).get("authorization") or {}
        return ProviderResponse(
            provider=self.name,
            status=PaymentResultStatus.PENDING,
            transaction_id=request.reference,
            provider_reference=authorization.get("transfer_reference") or request.reference,
            message=body.get("message") or "Bank transfer initiated",
            amount=request.amount,
            currency=request.currency,
            transfer_account=authorization.get("transfer_account"),
            transfer_bank=authorization.get("transfer_bank"),
            transfer_note=authorization.get("transfer_note"),
            transfer_amount=authorization.get("transfer_amount"),
            account_expiration=parse_expiration(authorization.get("account_expiration")),
        )

    async def verify_transaction(self, reference: str,
                                 transaction_id: Optional[str] = None) -> ProviderResponse:
        if transaction_id and str(transaction_id).isdigit():
            body = await self._request("GET", f"/transactions/{transaction_id}/verify")
        else:
            body = await self._request(
                "GET", "/transactions/verify_by_reference", params={"tx_ref": reference}
            )

        data = body.get("data") or {}
        return ProviderResponse(
            provider=self.name,
            status=normalize_status(data.get("status")),
            transaction_id=str(data["id"]) if data.get("id") is not None else transaction_id,
            provider_reference=data.get("flw_ref") or reference,
            message=body.get("message") or "",
            amount=data.get("amount"),
            currency=data.get("currency"),
        )


class PaypackProvider(PaymentProvider):
    """Fallback mobile money gateway (cash-in only)"""

    name = PAYPACK

    def __init__(self, client_id: Optional[str] = None, client_secret: Optional[str] = None,
                 base_url: Optional[str] = None, timeout: Optional[float] = None):
        super().__init__(base_url or Config.PAYPACK_BASE_URL, timeout)
        self.client_id = client_id if client_id is not None else Config.PAYPACK_CLIENT_ID
        self.client_secret = client_secret if client_secret is not None else Config.PAYPACK_CLIENT_SECRET
        self._access_token: Optional[str] = None
        self._token_expires_at = 0.0

    async def _headers(self) -> Dict[str, str]:
        token = await self._authorize()
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }

    async def _authorize(self) -> str:
        """Fetch and cache an agent access token"""
        if self._access_token and time.monotonic() < self._token_expires_at:
            return self._access_token

        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(
                    f"{self.base_url}/auth/agents/authorize",
                    json={"client_id": self.client_id, "client_secret": self.client_secret}
                ) as response:
                    if response.status >= 400:
                        raise ProviderError(self.name, f"authorization failed: HTTP {response.status}")
                    body = await response.json(content_type=None)
        except asyncio.TimeoutError:
            raise ProviderTimeoutError(self.name, "authorization timed out")
        except aiohttp.ClientError as e:
            raise ProviderError(self.name, f"connection failed: {e}")

        token = (body or {}).get("access")
        if not token:
            raise ProviderError(self.name, "authorization returned no token")

        self._access_token = token
        # Refresh a minute before the advertised expiry
        expires = body.get("expires")
        lifetime = float(expires) - time.time() if expires else 600.0
        self._token_expires_at = time.monotonic() + max(lifetime - 60, 0)
        return token

    async def initiate_mobile_money(self, request: PaymentRequest, phone_number: str) -> ProviderResponse:
        payload = {
            "amount": int(request.amount),
            "number": clean_phone_number(phone_number),
        }
        body = await self._request("POST", "/transactions/cashin", json=payload)
        ref = body.get("ref")
        if not ref:
            raise ProviderError(self.name, "cash-in returned no reference")

        return ProviderResponse(
            provider=self.name,
            status=normalize_status(body.get("status")),
            transaction_id=ref,
            provider_reference=ref,
            message="Mobile money payment initiated",
            amount=request.amount,
            currency=request.currency,
        )

    async def verify_transaction(self, reference: str,
                                 transaction_id: Optional[str] = None) -> ProviderResponse:
        ref = transaction_id or reference
        body = await self._request("GET", f"/transactions/find/{ref}")
        return ProviderResponse(
            provider=self.name,
            status=normalize_status(body.get("status")),
            transaction_id=body.get("ref") or ref,
            provider_reference=body.get("ref") or ref,
            message=body.get("status") or "",
            amount=body.get("amount"),
        )
