# agrimarket/models/wallet.py
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional
from enum import Enum
from uuid import UUID
from .base import TimeStampedModel

class WalletTransactionType(str, Enum):
    TOP_UP = "TOP_UP"
    PAYMENT = "PAYMENT"
    REFUND = "REFUND"
    ADJUSTMENT = "ADJUSTMENT"
    WITHDRAWAL = "WITHDRAWAL"

class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

class WalletTransaction(TimeStampedModel):
    """Append-only ledger entry; amount is negative for debits"""
    id: UUID
    wallet_id: UUID
    type: WalletTransactionType
    amount: Decimal
    previous_balance: Decimal
    new_balance: Decimal
    status: TransactionStatus
    description: Optional[str] = None
    reference: Optional[str] = None
    tx_ref: Optional[str] = None
    provider_reference: Optional[str] = None
    external_tx_id: Optional[str] = None
    provider_status: Optional[str] = None
    provider_message: Optional[str] = None
    payment_method: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    completed_at: Optional[datetime] = None

    @property
    def is_consistent(self) -> bool:
        return self.new_balance == self.previous_balance + self.amount

class Wallet(TimeStampedModel):
    """Stored-value account of a restaurant"""
    id: UUID
    restaurant_id: UUID
    balance: Decimal = Decimal(0)
    currency: str = "RWF"
    is_active: bool = True
