# agrimarket/services/payment_service.py
import logging
from datetime import datetime, timedelta
from typing import List, Optional
import pytz
from ..config import Config
from ..errors import (
    InactiveWalletError, InsufficientFundsError, NotFoundError, ProviderError,
    ProviderTimeoutError, ValidationError
)
from ..models.order import PaymentMethod
from ..models.payment import (
    AuthorizationMode, BankTransferDetails, CardAuthorizationDetails, MobileMoneyDetails, PaymentRequest,
    PaymentResult, PaymentResultStatus, ProviderResponse, WalletPaymentDetails
)
from ..models.wallet import WalletTransactionType
from ..utils.validators import clean_phone_number, is_valid_mobile_number
from .payment_providers import FlutterwaveProvider, PaymentProvider, PaypackProvider

class PaymentService:
    """Dispatches one payment attempt to the method's provider and normalizes the outcome.

    Provider failures never escape ``process_payment``: they come back as a
    failed result, or as a pending one when a provider timed out and may
    still complete the charge.
    """

    def __init__(self, wallet_service, primary_provider: Optional[PaymentProvider] = None,
                 fallback_provider: Optional[PaymentProvider] = None):
        self.wallet_service = wallet_service
        self.primary = primary_provider or FlutterwaveProvider()
        self.fallback = fallback_provider or PaypackProvider()
        self.logger = logging.getLogger(__name__)

    def validate_request(self, request: PaymentRequest) -> None:
        """Reject requests that cannot be dispatched, before any side effect"""
        if request.amount <= 0:
            raise ValidationError("Payment amount must be greater than 0")

        if request.method == PaymentMethod.MOBILE_MONEY:
            if not request.phone_number:
                raise ValidationError("Phone number is required for mobile money payments")
            if not is_valid_mobile_number(request.phone_number):
                raise ValidationError(
                    "Invalid mobile number. Use format 078XXXXXXX, 079XXXXXXX, 072XXXXXXX or 073XXXXXXX"
                )
        elif request.method == PaymentMethod.CARD:
            if not request.card:
                raise ValidationError("Card details are required for card payments")
        elif request.method == PaymentMethod.CASH:
            if not request.restaurant_id:
                raise ValidationError("Restaurant is required for wallet payments")

    async def process_payment(self, request: PaymentRequest) -> PaymentResult:
        self.validate_request(request)
        self.logger.info(
            f"Processing {request.method.value} payment {request.reference} of {request.amount}"
        )

        if request.method == PaymentMethod.MOBILE_MONEY:
            result = await self._pay_mobile_money(request)
        elif request.method == PaymentMethod.CARD:
            result = await self._pay_card(request)
        elif request.method == PaymentMethod.BANK_TRANSFER:
            result = await self._pay_bank_transfer(request)
        elif request.method == PaymentMethod.CASH:
            result = await self._pay_from_wallet(request)
        else:
            raise ValidationError(f"Unsupported payment method: {request.method}")

        self.logger.info(
            f"Payment {request.reference} via {result.provider}: {result.status.value}"
        )
        return result

    @staticmethod
    def _result(request: PaymentRequest, response: ProviderResponse, details=None) -> PaymentResult:
        return PaymentResult(
            success=response.status != PaymentResultStatus.FAILED,
            status=response.status,
            method=request.method,
            reference=request.reference,
            transaction_id=response.transaction_id,
            provider_reference=response.provider_reference,
            provider=response.provider,
            message=response.message,
            details=details,
        )

    @staticmethod
    def _timed_out(request: PaymentRequest, provider: str, details=None) -> PaymentResult:
        """The charge may still go through; leave it for the webhook or a verification"""
        return PaymentResult(
            success=True,
            status=PaymentResultStatus.PENDING,
            method=request.method,
            reference=request.reference,
            provider=provider,
            message="Payment provider did not answer in time; awaiting confirmation",
            details=details,
        )

    async def _pay_mobile_money(self, request: PaymentRequest) -> PaymentResult:
        phone = clean_phone_number(request.phone_number)
        providers = [self.primary, self.fallback]
        errors: List[str] = []
        timed_out_provider = None

        for index, provider in enumerate(providers):
            fallback_used = index > 0
            try:
                response = await provider.initiate_mobile_money(request, phone)
            except ProviderTimeoutError as e:
                self.logger.warning(f"Mobile money {request.reference} timed out at {provider.name}: {e}")
                errors.append(str(e))
                timed_out_provider = provider.name
                continue
            except Exception as e:
                self.logger.warning(f"Mobile money {request.reference} failed at {provider.name}: {e}")
                errors.append(str(e))
                continue

            if fallback_used:
                self.logger.info(f"Mobile money {request.reference} handled by fallback {provider.name}")
            details = MobileMoneyDetails(
                phone_number=phone,
                redirect_url=response.redirect_url,
                fallback_used=fallback_used,
            )
            return self._result(request, response, details)

        details = MobileMoneyDetails(phone_number=phone, fallback_used=True)
        if timed_out_provider:
            return self._timed_out(request, timed_out_provider, details)

        result = PaymentResult.failed(request, "; ".join(errors), self.fallback.name)
        result.details = details
        return result

    async def _pay_card(self, request: PaymentRequest) -> PaymentResult:
        card = request.card
        try:
            response = await self.primary.charge_card(request, card)
        except ProviderTimeoutError as e:
            self.logger.warning(f"Card payment {request.reference} timed out: {e}")
            return self._timed_out(request, self.primary.name)
        except ProviderError as e:
            self.logger.warning(f"Card payment {request.reference} failed: {e}")
            return PaymentResult.failed(request, str(e), self.primary.name)

        # Only the masked card identity is kept
        details = CardAuthorizationDetails(
            mode=response.authorization_mode or AuthorizationMode.DIRECT,
            redirect_url=response.redirect_url,
            card_first6=card.first6,
            card_last4=card.last4,
            card_type=response.card_type,
        )
        return self._result(request, response, details)

    async def _pay_bank_transfer(self, request: PaymentRequest) -> PaymentResult:
        expires_in = Config.BANK_TRANSFER_EXPIRY_SECONDS
        try:
            response = await self.primary.initiate_bank_transfer(request, expires_in)
        except ProviderTimeoutError as e:
            self.logger.warning(f"Bank transfer {request.reference} timed out: {e}")
            return self._timed_out(request, self.primary.name)
        except ProviderError as e:
            self.logger.warning(f"Bank transfer {request.reference} failed: {e}")
            return PaymentResult.failed(request, str(e), self.primary.name)

        expiration = response.account_expiration or (
            datetime.now(pytz.utc) + timedelta(seconds=expires_in)
        )
        details = BankTransferDetails(
            transfer_reference=response.provider_reference,
            transfer_account=response.transfer_account,
            transfer_bank=response.transfer_bank,
            transfer_amount=response.transfer_amount or request.amount,
            transfer_note=response.transfer_note,
            account_expiration=expiration,
        )
        return self._result(request, response, details)

    async def _pay_from_wallet(self, request: PaymentRequest) -> PaymentResult:
        """Settle synchronously from the restaurant wallet"""
        wallet = await self.wallet_service.get_wallet_by_restaurant(request.restaurant_id)
        if not wallet:
            return PaymentResult.failed(request, "Wallet not found", "WALLET")

        try:
            transaction = await self.wallet_service.debit(
                wallet.id,
                request.amount,
                reference=request.reference,
                description=request.description or f"Payment {request.reference}",
                tx_type=WalletTransactionType.PAYMENT,
                metadata={"order_id": str(request.order_id)} if request.order_id else None,
            )
        except (InsufficientFundsError, InactiveWalletError, NotFoundError) as e:
            self.logger.info(f"Wallet payment {request.reference} declined: {e.message}")
            return PaymentResult.failed(request, e.message, "WALLET")

        await self.wallet_service.notify_restaurant(request.restaurant_id, "wallet_payment", {
            "amount": request.amount,
            "description": request.description or request.reference,
            "new_balance": transaction.new_balance,
        })

        return PaymentResult(
            success=True,
            status=PaymentResultStatus.SUCCESSFUL,
            method=request.method,
            reference=request.reference,
            transaction_id=str(transaction.id),
            provider_reference=str(transaction.id),
            provider="WALLET",
            message="Payment completed from wallet",
            details=WalletPaymentDetails(
                wallet_id=wallet.id,
                wallet_transaction_id=transaction.id,
                previous_balance=transaction.previous_balance,
                new_balance=transaction.new_balance,
            ),
        )

    def _provider(self, name: Optional[str]) -> PaymentProvider:
        if name and name.upper() == self.fallback.name:
            return self.fallback
        return self.primary

    async def verify_transaction(self, provider_name: Optional[str], reference: str,
                                 transaction_id: Optional[str] = None) -> ProviderResponse:
        """Ask the provider that handled a payment for its current status"""
        provider = self._provider(provider_name)
        return await provider.verify_transaction(reference, transaction_id)
