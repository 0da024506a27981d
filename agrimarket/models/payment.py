# agrimarket/models/payment.py
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Literal, Optional, Union
from uuid import UUID
from pydantic import BaseModel, Field
from .order import PaymentMethod

class PaymentResultStatus(str, Enum):
    SUCCESSFUL = "successful"
    PENDING = "pending"
    FAILED = "failed"

class AuthorizationMode(str, Enum):
    DIRECT = "direct"
    REDIRECT = "redirect"  # 3-D Secure
    OTP = "otp"
    PIN = "pin"

class CardInput(BaseModel):
    """Card data as submitted by the payer; never persisted"""
    card_number: str
    cvv: str
    expiry_month: str
    expiry_year: str
    pin: Optional[str] = None

    @property
    def first6(self) -> str:
        return self.card_number[:6]

    @property
    def last4(self) -> str:
        return self.card_number[-4:]

class Customer(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None

class PaymentRequest(BaseModel):
    amount: Decimal
    currency: str = "RWF"
    reference: str
    method: PaymentMethod
    restaurant_id: Optional[UUID] = None
    order_id: Optional[UUID] = None
    phone_number: Optional[str] = None
    card: Optional[CardInput] = None
    customer: Customer = Customer()
    description: Optional[str] = None

class ProviderResponse(BaseModel):
    """What a provider adapter hands back for one call"""
    provider: str
    status: PaymentResultStatus
    transaction_id: Optional[str] = None
    provider_reference: Optional[str] = None
    message: str = ""
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    authorization_mode: Optional[AuthorizationMode] = None
    redirect_url: Optional[str] = None
    card_type: Optional[str] = None
    transfer_account: Optional[str] = None
    transfer_bank: Optional[str] = None
    transfer_note: Optional[str] = None
    transfer_amount: Optional[Decimal] = None
    account_expiration: Optional[datetime] = None

class MobileMoneyDetails(BaseModel):
    kind: Literal["mobile_money"] = "mobile_money"
    phone_number: str
    redirect_url: Optional[str] = None
    fallback_used: bool = False

class CardAuthorizationDetails(BaseModel):
    kind: Literal["card"] = "card"
    mode: AuthorizationMode
    redirect_url: Optional[str] = None
    card_first6: Optional[str] = None
    card_last4: Optional[str] = None
    card_type: Optional[str] = None

class BankTransferDetails(BaseModel):
    kind: Literal["bank_transfer"] = "bank_transfer"
    transfer_reference: Optional[str] = None
    transfer_account: Optional[str] = None
    transfer_bank: Optional[str] = None
    transfer_amount: Optional[Decimal] = None
    transfer_note: Optional[str] = None
    account_expiration: Optional[datetime] = None

class WalletPaymentDetails(BaseModel):
    kind: Literal["wallet"] = "wallet"
    wallet_id: UUID
    wallet_transaction_id: UUID
    previous_balance: Decimal
    new_balance: Decimal

PaymentDetails = Annotated[
    Union[MobileMoneyDetails, CardAuthorizationDetails, BankTransferDetails, WalletPaymentDetails],
    Field(discriminator="kind"),
]

class PaymentResult(BaseModel):
    """Normalized outcome of one payment attempt, whatever provider handled it"""
    success: bool
    status: PaymentResultStatus
    method: PaymentMethod
    reference: str
    transaction_id: Optional[str] = None
    provider_reference: Optional[str] = None
    provider: Optional[str] = None
    message: str = ""
    error: Optional[str] = None
    details: Optional[PaymentDetails] = None

    @classmethod
    def failed(cls, request: PaymentRequest, error: str,
               provider: Optional[str] = None) -> "PaymentResult":
        return cls(
            success=False,
            status=PaymentResultStatus.FAILED,
            method=request.method,
            reference=request.reference,
            provider=provider,
            message="Payment failed",
            error=error,
        )

    @property
    def is_successful(self) -> bool:
        return self.status == PaymentResultStatus.SUCCESSFUL

    @property
    def is_pending(self) -> bool:
        return self.status == PaymentResultStatus.PENDING

    @property
    def is_failed(self) -> bool:
        return self.status == PaymentResultStatus.FAILED
