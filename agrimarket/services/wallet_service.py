# agrimarket/services/wallet_service.py
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID, uuid4
from ..config import Config
from ..errors import (
    InactiveWalletError, InsufficientFundsError, NotFoundError, ValidationError
)
from ..models.order import PaymentMethod
from ..models.payment import CardInput, Customer, PaymentRequest, PaymentResultStatus
from ..models.wallet import TransactionStatus, Wallet, WalletTransaction, WalletTransactionType
from .notification_service import SMS, NotificationService

TOP_UP_REFERENCE_PREFIX = "WALLET_TOPUP_"

WALLET_COLUMNS = "id, restaurant_id, balance, currency, is_active, created_at, updated_at"

class WalletService:
    """Restaurant wallets and their append-only transaction ledger.

    Every balance change locks the wallet row, writes the new balance and the
    ledger entry in one transaction, and keeps
    ``new_balance == previous_balance + amount`` for the entry.
    """

    def __init__(self, db, payment_service=None, notification_service=None):
        self.db = db
        self.notifications = notification_service or NotificationService()
        if payment_service is None:
            from .payment_service import PaymentService
            payment_service = PaymentService(self)
        self.payment_service = payment_service
        self.logger = logging.getLogger(__name__)

    async def create_wallet(self, restaurant_id: UUID, currency: Optional[str] = None) -> Wallet:
        async with self.db.transaction() as conn:
            restaurant = await conn.fetchval(
                "SELECT id FROM restaurants WHERE id = $1", restaurant_id
            )
            if not restaurant:
                raise NotFoundError("Restaurant", restaurant_id)

            row = await conn.fetchrow(f"""
                INSERT INTO wallets (restaurant_id, currency)
                VALUES ($1, $2)
                ON CONFLICT (restaurant_id) DO NOTHING
                RETURNING {WALLET_COLUMNS}
            """, restaurant_id, currency or Config.CURRENCY)
            if not row:
                raise ValidationError("Restaurant already has a wallet")

            self.logger.info(f"Wallet {row['id']} created for restaurant {restaurant_id}")
            return Wallet.from_row(row)

    async def get_wallet(self, wallet_id: UUID, conn=None) -> Wallet:
        async with self.db.connection(conn) as conn:
            row = await conn.fetchrow(
                f"SELECT {WALLET_COLUMNS} FROM wallets WHERE id = $1", wallet_id
            )
            if not row:
                raise NotFoundError("Wallet", wallet_id)
            return Wallet.from_row(row)

    async def get_wallet_by_restaurant(self, restaurant_id: UUID, conn=None) -> Optional[Wallet]:
        async with self.db.connection(conn) as conn:
            row = await conn.fetchrow(
                f"SELECT {WALLET_COLUMNS} FROM wallets WHERE restaurant_id = $1", restaurant_id
            )
            return Wallet.from_row(row) if row else None

    async def get_or_create_wallet(self, restaurant_id: UUID) -> Wallet:
        wallet = await self.get_wallet_by_restaurant(restaurant_id)
        if wallet:
            return wallet
        try:
            return await self.create_wallet(restaurant_id)
        except ValidationError:
            # Created concurrently
            return await self.get_wallet_by_restaurant(restaurant_id)

    async def set_wallet_status(self, wallet_id: UUID, is_active: bool) -> Wallet:
        async with self.db.transaction() as conn:
            row = await conn.fetchrow(f"""
                UPDATE wallets
                SET is_active = $1, updated_at = CURRENT_TIMESTAMP
                WHERE id = $2
                RETURNING {WALLET_COLUMNS}
            """, is_active, wallet_id)
            if not row:
                raise NotFoundError("Wallet", wallet_id)

            self.logger.info(f"Wallet {wallet_id} {'activated' if is_active else 'deactivated'}")
            return Wallet.from_row(row)

    async def _lock_wallet(self, conn, wallet_id: UUID) -> Wallet:
        row = await conn.fetchrow(
            f"SELECT {WALLET_COLUMNS} FROM wallets WHERE id = $1 FOR UPDATE", wallet_id
        )
        if not row:
            raise NotFoundError("Wallet", wallet_id)
        return Wallet.from_row(row)

    async def _apply_balance_change(self, conn, wallet: Wallet, amount: Decimal,
                                    tx_type: WalletTransactionType, reference: Optional[str],
                                    description: Optional[str],
                                    metadata: Optional[Dict[str, Any]] = None,
                                    payment_method: Optional[str] = None) -> WalletTransaction:
        """Write the new balance and its ledger entry; the wallet row must be locked"""
        previous_balance = wallet.balance
        new_balance = previous_balance + amount

        await conn.execute("""
            UPDATE wallets
            SET balance = $1, updated_at = CURRENT_TIMESTAMP
            WHERE id = $2
        """, new_balance, wallet.id)

        row = await conn.fetchrow("""
            INSERT INTO wallet_transactions (
                wallet_id, type, amount, previous_balance, new_balance, status,
                description, reference, payment_method, metadata, completed_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, clock_timestamp())
            RETURNING *
        """,
            wallet.id, tx_type.value, amount, previous_balance, new_balance,
            TransactionStatus.COMPLETED.value, description, reference,
            payment_method, metadata
        )
        return WalletTransaction.from_row(row)

    async def debit(self, wallet_id: UUID, amount: Decimal, reference: Optional[str] = None,
                    description: Optional[str] = None,
                    tx_type: WalletTransactionType = WalletTransactionType.PAYMENT,
                    metadata: Optional[Dict[str, Any]] = None, conn=None) -> WalletTransaction:
        """Take ``amount`` from the wallet.

        Raises InactiveWalletError or InsufficientFundsError without writing
        anything.
        """
        amount = Decimal(amount)
        if amount <= 0:
            raise ValidationError("Amount must be greater than 0")

        async with self.db.transaction(conn) as conn:
            wallet = await self._lock_wallet(conn, wallet_id)
            if not wallet.is_active:
                raise InactiveWalletError(wallet_id)
            if wallet.balance < amount:
                raise InsufficientFundsError(wallet.balance, amount)

            transaction = await self._apply_balance_change(
                conn, wallet, -amount, tx_type, reference, description, metadata,
                PaymentMethod.CASH.value if tx_type == WalletTransactionType.PAYMENT else None
            )

        self.logger.info(
            f"Wallet {wallet_id} debited {amount} ({reference}), balance {transaction.new_balance}"
        )
        return transaction

    async def credit(self, wallet_id: UUID, amount: Decimal, reference: Optional[str] = None,
                     description: Optional[str] = None,
                     tx_type: WalletTransactionType = WalletTransactionType.REFUND,
                     metadata: Optional[Dict[str, Any]] = None, conn=None) -> WalletTransaction:
        amount = Decimal(amount)
        if amount <= 0:
            raise ValidationError("Amount must be greater than 0")

        async with self.db.transaction(conn) as conn:
            wallet = await self._lock_wallet(conn, wallet_id)
            transaction = await self._apply_balance_change(
                conn, wallet, amount, tx_type, reference, description, metadata
            )

        self.logger.info(
            f"Wallet {wallet_id} credited {amount} ({reference}), balance {transaction.new_balance}"
        )
        return transaction

    async def refund(self, wallet_id: UUID, amount: Decimal, reference: Optional[str] = None,
                     description: Optional[str] = None, conn=None) -> WalletTransaction:
        return await self.credit(
            wallet_id, amount, reference, description or "Refund",
            WalletTransactionType.REFUND, conn=conn
        )

    async def adjust(self, wallet_id: UUID, amount: Decimal, reason: str,
                     admin_id: Optional[str] = None) -> WalletTransaction:
        """Admin correction; a negative amount is a debit with the usual floor"""
        amount = Decimal(amount)
        if amount == 0:
            raise ValidationError("Adjustment amount cannot be 0")
        if not reason:
            raise ValidationError("A reason is required for adjustments")

        metadata = {"admin_id": admin_id, "reason": reason}
        if amount > 0:
            transaction = await self.credit(
                wallet_id, amount, None, reason, WalletTransactionType.ADJUSTMENT, metadata
            )
        else:
            transaction = await self.debit(
                wallet_id, -amount, None, reason, WalletTransactionType.ADJUSTMENT, metadata
            )

        self.logger.info(f"Wallet {wallet_id} adjusted by {amount} by admin {admin_id}: {reason}")
        return transaction

    async def top_up(self, restaurant_id: UUID, amount: Decimal, payment_method: PaymentMethod,
                     phone_number: Optional[str] = None, card: Optional[CardInput] = None,
                     customer: Optional[Customer] = None) -> Dict[str, Any]:
        """Fund the wallet through an external payment method.

        The PENDING ledger entry is written before the provider is called, so
        every attempt stays on record whatever the provider does.
        """
        amount = Decimal(amount)
        payment_method = PaymentMethod(payment_method)
        if amount < Config.MIN_TOP_UP_AMOUNT:
            raise ValidationError(f"Minimum top-up amount is {Config.MIN_TOP_UP_AMOUNT}")
        if payment_method == PaymentMethod.CASH:
            raise ValidationError("Wallet cannot be topped up from itself")

        wallet = await self.get_wallet_by_restaurant(restaurant_id)
        if not wallet:
            raise NotFoundError("Wallet")
        if not wallet.is_active:
            raise InactiveWalletError(wallet.id)

        transaction_id = uuid4()
        tx_ref = f"{TOP_UP_REFERENCE_PREFIX}{transaction_id}"
        request = PaymentRequest(
            amount=amount,
            currency=wallet.currency,
            reference=tx_ref,
            method=payment_method,
            restaurant_id=restaurant_id,
            phone_number=phone_number,
            card=card,
            customer=customer or Customer(),
            description="Wallet top-up",
        )
        self.payment_service.validate_request(request)

        async with self.db.transaction() as conn:
            await conn.execute("""
                INSERT INTO wallet_transactions (
                    id, wallet_id, type, amount, previous_balance, new_balance,
                    status, description, tx_ref, payment_method
                ) VALUES ($1, $2, $3, $4, $5, $5, $6, $7, $8, $9)
            """,
                transaction_id, wallet.id, WalletTransactionType.TOP_UP.value, amount,
                wallet.balance, TransactionStatus.PENDING.value, "Wallet top-up",
                tx_ref, payment_method.value
            )

        try:
            result = await self.payment_service.process_payment(request)
        except Exception as e:
            self.logger.error(f"Top-up {tx_ref} failed: {e}")
            await self._mark_top_up_failed(tx_ref, str(e))
            raise

        await self._record_provider_fields(
            transaction_id, result.provider, result.provider_reference,
            result.transaction_id, result.status.value, result.error or result.message
        )

        if result.status == PaymentResultStatus.SUCCESSFUL:
            transaction, _ = await self.complete_top_up(tx_ref, result.transaction_id)
        elif result.status == PaymentResultStatus.FAILED:
            transaction, _ = await self.fail_top_up(tx_ref, result.error or result.message)
        else:
            transaction = await self._set_processing(transaction_id)

        return {"transaction": transaction, "payment": result}

    async def _record_provider_fields(self, transaction_id: UUID, provider: Optional[str],
                                      provider_reference: Optional[str],
                                      external_tx_id: Optional[str],
                                      provider_status: Optional[str],
                                      provider_message: Optional[str]):
        async with self.db.transaction() as conn:
            await conn.execute("""
                UPDATE wallet_transactions
                SET provider_reference = COALESCE($1, provider_reference),
                    external_tx_id = COALESCE($2, external_tx_id),
                    provider_status = $3,
                    provider_message = $4,
                    metadata = COALESCE(metadata, '{}'::jsonb) || $5::jsonb,
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = $6
            """,
                provider_reference, external_tx_id, provider_status,
                provider_message, {"provider": provider}, transaction_id
            )

    async def _set_processing(self, transaction_id: UUID) -> WalletTransaction:
        async with self.db.transaction() as conn:
            row = await conn.fetchrow("""
                UPDATE wallet_transactions
                SET status = $1, updated_at = CURRENT_TIMESTAMP
                WHERE id = $2 AND status = $3
                RETURNING *
            """, TransactionStatus.PROCESSING.value, transaction_id, TransactionStatus.PENDING.value)
            if not row:
                row = await conn.fetchrow(
                    "SELECT * FROM wallet_transactions WHERE id = $1", transaction_id
                )
            return WalletTransaction.from_row(row)

    async def _mark_top_up_failed(self, tx_ref: str, message: str):
        async with self.db.transaction() as conn:
            await conn.execute("""
                UPDATE wallet_transactions
                SET status = $1, provider_message = $2, updated_at = CURRENT_TIMESTAMP
                WHERE tx_ref = $3 AND status IN ($4, $5)
            """,
                TransactionStatus.FAILED.value, message, tx_ref,
                TransactionStatus.PENDING.value, TransactionStatus.PROCESSING.value
            )

    async def find_transaction_by_reference(self, reference: str, conn=None,
                                            for_update: bool = False) -> Optional[WalletTransaction]:
        """Match our own tx_ref or the provider's reference"""
        lock = " FOR UPDATE" if for_update else ""
        async with self.db.connection(conn) as conn:
            row = await conn.fetchrow(f"""
                SELECT * FROM wallet_transactions
                WHERE tx_ref = $1 OR provider_reference = $1
                ORDER BY created_at DESC
                LIMIT 1{lock}
            """, reference)
            return WalletTransaction.from_row(row) if row else None

    async def get_transaction(self, transaction_id: UUID) -> WalletTransaction:
        async with self.db.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM wallet_transactions WHERE id = $1", transaction_id
            )
            if not row:
                raise NotFoundError("Wallet transaction", transaction_id)
            return WalletTransaction.from_row(row)

    async def complete_top_up(self, reference: str, external_tx_id: Optional[str] = None,
                              provider_status: Optional[str] = None) -> Tuple[WalletTransaction, bool]:
        """Credit a pending top-up; a completed one is left untouched.

        Returns the transaction and whether this call changed it.
        """
        async with self.db.transaction() as conn:
            transaction = await self.find_transaction_by_reference(reference, conn, for_update=True)
            if not transaction:
                raise NotFoundError("Wallet transaction", reference)
            if transaction.type != WalletTransactionType.TOP_UP:
                raise ValidationError(f"Transaction {reference} is not a top-up")
            if transaction.status == TransactionStatus.COMPLETED:
                return transaction, False
            if transaction.status == TransactionStatus.FAILED:
                self.logger.warning(
                    f"Top-up {transaction.tx_ref} reported successful after being marked failed; crediting"
                )

            wallet = await self._lock_wallet(conn, transaction.wallet_id)
            new_balance = wallet.balance + transaction.amount
            await conn.execute("""
                UPDATE wallets
                SET balance = $1, updated_at = CURRENT_TIMESTAMP
                WHERE id = $2
            """, new_balance, wallet.id)

            row = await conn.fetchrow("""
                UPDATE wallet_transactions
                SET status = $1,
                    previous_balance = $2,
                    new_balance = $3,
                    external_tx_id = COALESCE($4, external_tx_id),
                    provider_status = COALESCE($5, provider_status),
                    completed_at = clock_timestamp(),
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = $6
                RETURNING *
            """,
                TransactionStatus.COMPLETED.value, wallet.balance, new_balance,
                external_tx_id, provider_status, transaction.id
            )
            transaction = WalletTransaction.from_row(row)

        self.logger.info(
            f"Top-up {transaction.tx_ref} completed: wallet {wallet.id} +{transaction.amount}"
        )
        await self.notify_restaurant(wallet.restaurant_id, "wallet_top_up_completed", {
            "amount": transaction.amount,
            "new_balance": transaction.new_balance,
        })
        return transaction, True

    async def fail_top_up(self, reference: str, message: Optional[str] = None,
                          provider_status: Optional[str] = None) -> Tuple[WalletTransaction, bool]:
        """Mark a top-up FAILED; the balance is never touched"""
        async with self.db.transaction() as conn:
            transaction = await self.find_transaction_by_reference(reference, conn, for_update=True)
            if not transaction:
                raise NotFoundError("Wallet transaction", reference)
            if transaction.status in (TransactionStatus.COMPLETED, TransactionStatus.FAILED):
                return transaction, False

            row = await conn.fetchrow("""
                UPDATE wallet_transactions
                SET status = $1,
                    provider_message = COALESCE($2, provider_message),
                    provider_status = COALESCE($3, provider_status),
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = $4
                RETURNING *
            """, TransactionStatus.FAILED.value, message, provider_status, transaction.id)
            transaction = WalletTransaction.from_row(row)
            restaurant_id = await conn.fetchval(
                "SELECT restaurant_id FROM wallets WHERE id = $1", transaction.wallet_id
            )

        self.logger.info(f"Top-up {transaction.tx_ref} failed: {message}")
        await self.notify_restaurant(restaurant_id, "wallet_top_up_failed", {
            "amount": transaction.amount,
            "reason": message,
        })
        return transaction, True

    async def verify_top_up(self, transaction_id: UUID) -> WalletTransaction:
        """Ask the provider for the outcome of a pending top-up and apply it"""
        transaction = await self.get_transaction(transaction_id)
        if transaction.type != WalletTransactionType.TOP_UP:
            raise ValidationError("Only top-ups can be verified")
        if transaction.status in (TransactionStatus.COMPLETED, TransactionStatus.FAILED):
            return transaction

        provider = (transaction.metadata or {}).get("provider")
        response = await self.payment_service.verify_transaction(
            provider, transaction.provider_reference or transaction.tx_ref,
            transaction.external_tx_id
        )

        if response.status == PaymentResultStatus.SUCCESSFUL:
            transaction, _ = await self.complete_top_up(
                transaction.tx_ref, response.transaction_id, response.message
            )
        elif response.status == PaymentResultStatus.FAILED:
            transaction, _ = await self.fail_top_up(transaction.tx_ref, response.message)
        return transaction

    async def list_transactions(self, wallet_id: UUID,
                                tx_type: Optional[WalletTransactionType] = None,
                                status: Optional[TransactionStatus] = None,
                                date_from: Optional[datetime] = None,
                                date_to: Optional[datetime] = None,
                                limit: int = 50, offset: int = 0) -> List[WalletTransaction]:
        conditions = ["wallet_id = $1"]
        params: List[Any] = [wallet_id]

        if tx_type:
            params.append(WalletTransactionType(tx_type).value)
            conditions.append(f"type = ${len(params)}")
        if status:
            params.append(TransactionStatus(status).value)
            conditions.append(f"status = ${len(params)}")
        if date_from:
            params.append(date_from)
            conditions.append(f"created_at >= ${len(params)}")
        if date_to:
            params.append(date_to)
            conditions.append(f"created_at <= ${len(params)}")

        params.extend([limit, offset])
        async with self.db.pool.acquire() as conn:
            rows = await conn.fetch(f"""
                SELECT *
                FROM wallet_transactions
                WHERE {' AND '.join(conditions)}
                ORDER BY created_at DESC
                LIMIT ${len(params) - 1} OFFSET ${len(params)}
            """, *params)
            return [WalletTransaction.from_row(row) for row in rows]

    async def notify_restaurant(self, restaurant_id: Optional[UUID], template_kind: str,
                                data: Dict[str, Any]):
        """SMS the restaurant; lookup failures are logged, never raised"""
        if restaurant_id is None:
            return
        try:
            async with self.db.pool.acquire() as conn:
                contact = await conn.fetchrow(
                    "SELECT phone, email FROM restaurants WHERE id = $1", restaurant_id
                )
        except Exception as e:
            self.logger.error(f"Cannot load contact of restaurant {restaurant_id}: {e}")
            return
        if contact:
            self.notifications.notify(SMS, contact["phone"], template_kind, data)
