# agrimarket/services/webhook_service.py
import json
import logging
from typing import Any, Dict, Mapping, Optional
from pydantic import BaseModel
from ..config import Config
from ..errors import ConfigurationError, ValidationError, WebhookVerificationError
from ..models.order import PaymentStatus
from ..models.payment import PaymentResultStatus
from ..models.subscription import SUBSCRIPTION_REFERENCE_PREFIX
from ..utils.retry import retry_database_operation
from ..utils.security import verify_flutterwave_signature, verify_paypack_signature
from .payment_providers import FLUTTERWAVE, PAYPACK, normalize_status
from .wallet_service import TOP_UP_REFERENCE_PREFIX

FLUTTERWAVE_SIGNATURE_HEADER = "verif-hash"
PAYPACK_SIGNATURE_HEADER = "X-Paypack-Signature"

class WebhookEvent(BaseModel):
    provider: str
    reference: str
    status: PaymentResultStatus
    raw_status: Optional[str] = None
    transaction_id: Optional[str] = None
    amount: Optional[float] = None

def detect_provider(payload: Mapping[str, Any]) -> str:
    """A nested ``data.ref`` with ``data.status`` is a fallback-gateway callback"""
    data = payload.get("data")
    if isinstance(data, dict) and data.get("ref") and data.get("status"):
        return PAYPACK
    return FLUTTERWAVE

def parse_event(provider: str, payload: Mapping[str, Any]) -> WebhookEvent:
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}

    if provider == PAYPACK:
        reference = data.get("ref")
        raw_status = data.get("status")
        transaction_id = data.get("ref")
        amount = data.get("amount")
    else:
        # v3 callbacks nest the charge under ``data``; older ones are flat
        reference = data.get("tx_ref") or payload.get("txRef") or payload.get("tx_ref")
        raw_status = data.get("status") or payload.get("status")
        transaction_id = data.get("id") or payload.get("id")
        amount = data.get("amount") or payload.get("amount")

    if not reference:
        raise ValidationError("Webhook payload carries no transaction reference")

    return WebhookEvent(
        provider=provider,
        reference=str(reference),
        status=normalize_status(raw_status),
        raw_status=raw_status,
        transaction_id=str(transaction_id) if transaction_id is not None else None,
        amount=amount,
    )

class WebhookService:
    """Applies provider callbacks to orders, wallet top-ups and subscriptions.

    Signatures are checked before anything is read from the database, and
    every effect is replay-safe: a record already COMPLETED is left alone.
    """

    def __init__(self, order_service, wallet_service, subscription_service):
        self.order_service = order_service
        self.wallet_service = wallet_service
        self.subscription_service = subscription_service
        self.logger = logging.getLogger(__name__)

    def verify(self, provider: str, headers: Mapping[str, str], raw_body: bytes) -> None:
        if provider == PAYPACK:
            secret = Config.PAYPACK_WEBHOOK_SECRET
            if not secret:
                raise ConfigurationError("Fallback gateway webhook secret is not configured")
            if not verify_paypack_signature(raw_body, headers.get(PAYPACK_SIGNATURE_HEADER), secret):
                raise WebhookVerificationError("Invalid webhook signature")
        else:
            secret = Config.FLW_SECRET_HASH
            if not secret:
                raise ConfigurationError("Webhook secret hash is not configured")
            if not verify_flutterwave_signature(headers.get(FLUTTERWAVE_SIGNATURE_HEADER), secret):
                raise WebhookVerificationError("Invalid webhook signature")

    @staticmethod
    def _decode(raw_body: bytes) -> Dict[str, Any]:
        try:
            payload = json.loads(raw_body or b"{}")
        except ValueError:
            raise ValidationError("Webhook body is not valid JSON")
        if not isinstance(payload, dict):
            raise ValidationError("Webhook body must be a JSON object")
        return payload

    def _authenticate(self, headers: Mapping[str, str], raw_body: bytes) -> WebhookEvent:
        payload = self._decode(raw_body)
        provider = detect_provider(payload)
        self.verify(provider, headers, raw_body)
        return parse_event(provider, payload)

    async def handle_payment_webhook(self, headers: Mapping[str, str], raw_body: bytes) -> Dict[str, Any]:
        event = self._authenticate(headers, raw_body)
        self.logger.info(
            f"{event.provider} webhook for {event.reference}: {event.raw_status}"
        )
        return await retry_database_operation(lambda: self.reconcile(event))

    async def handle_subscription_webhook(self, headers: Mapping[str, str],
                                          raw_body: bytes) -> Dict[str, Any]:
        event = self._authenticate(headers, raw_body)
        self.logger.info(
            f"{event.provider} subscription webhook for {event.reference}: {event.raw_status}"
        )
        return await retry_database_operation(lambda: self._reconcile_subscription(event))

    async def reconcile(self, event: WebhookEvent) -> Dict[str, Any]:
        """Route the event by reference convention, then by lookup"""
        if event.reference.startswith(SUBSCRIPTION_REFERENCE_PREFIX):
            return await self._reconcile_subscription(event)
        if event.reference.startswith(TOP_UP_REFERENCE_PREFIX):
            return await self._reconcile_top_up(event)

        order = await self.order_service.find_by_reference(event.reference)
        if order:
            return await self._reconcile_order(order.id, event)

        if await self.wallet_service.find_transaction_by_reference(event.reference):
            return await self._reconcile_top_up(event)

        if await self.subscription_service.find_by_reference(event.reference):
            return await self._reconcile_subscription(event)

        return self._unmatched(event)

    def _unmatched(self, event: WebhookEvent) -> Dict[str, Any]:
        self.logger.warning(
            f"Unmatched {event.provider} webhook reference {event.reference} "
            f"(status {event.raw_status}, transaction {event.transaction_id})"
        )
        return {"matched": None, "changed": False, "reference": event.reference}

    async def _reconcile_order(self, order_id, event: WebhookEvent) -> Dict[str, Any]:
        if event.status == PaymentResultStatus.PENDING:
            return {"matched": "order", "changed": False, "reference": event.reference}

        if event.status == PaymentResultStatus.SUCCESSFUL:
            _, changed = await self.order_service.apply_payment_status(
                order_id, PaymentStatus.COMPLETED, transaction_id=event.transaction_id
            )
        else:
            _, changed = await self.order_service.apply_payment_status(
                order_id, PaymentStatus.FAILED, reason=f"Provider reported {event.raw_status}"
            )
        return {"matched": "order", "changed": changed, "reference": event.reference}

    async def _reconcile_top_up(self, event: WebhookEvent) -> Dict[str, Any]:
        if not await self.wallet_service.find_transaction_by_reference(event.reference):
            return self._unmatched(event)
        if event.status == PaymentResultStatus.PENDING:
            return {"matched": "wallet", "changed": False, "reference": event.reference}

        if event.status == PaymentResultStatus.SUCCESSFUL:
            _, changed = await self.wallet_service.complete_top_up(
                event.reference, event.transaction_id, event.raw_status
            )
        else:
            _, changed = await self.wallet_service.fail_top_up(
                event.reference, f"Provider reported {event.raw_status}", event.raw_status
            )
        return {"matched": "wallet", "changed": changed, "reference": event.reference}

    async def _reconcile_subscription(self, event: WebhookEvent) -> Dict[str, Any]:
        if not await self.subscription_service.find_by_reference(event.reference):
            return self._unmatched(event)
        if event.status == PaymentResultStatus.PENDING:
            return {"matched": "subscription", "changed": False, "reference": event.reference}

        if event.status == PaymentResultStatus.SUCCESSFUL:
            _, changed = await self.subscription_service.complete_payment(
                event.reference, event.transaction_id
            )
        else:
            _, changed = await self.subscription_service.fail_payment(
                event.reference, f"Provider reported {event.raw_status}"
            )
        return {"matched": "subscription", "changed": changed, "reference": event.reference}
