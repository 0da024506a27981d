# agrimarket/utils/messages.py
from typing import Any, Dict, Tuple
from ..utils.formatters import format_price, format_datetime

class Messages:
    """Notification texts, one template per kind"""

    @staticmethod
    def order_created(data: Dict[str, Any]) -> Tuple[str, str]:
        return (
            f"Order {data['order_number']} received",
            f"Your order {data['order_number']} of {format_price(data['total_amount'])} "
            f"has been received and is awaiting payment."
        )

    @staticmethod
    def payment_successful(data: Dict[str, Any]) -> Tuple[str, str]:
        return (
            f"Payment received for {data['order_number']}",
            f"Payment of {format_price(data['total_amount'])} for order "
            f"{data['order_number']} was successful. Your order is confirmed."
        )

    @staticmethod
    def payment_pending(data: Dict[str, Any]) -> Tuple[str, str]:
        amount = format_price(data['total_amount'])
        method = data.get('method')
        if method == "CARD":
            instruction = (
                f"Please complete the card authorization of {amount} "
                f"for order {data['order_number']}."
            )
        elif method == "BANK_TRANSFER":
            account = data.get('transfer_account')
            destination = f"account {account}" if account else "the account provided"
            if account and data.get('transfer_bank'):
                destination = f"{destination} ({data['transfer_bank']})"
            instruction = (
                f"Please transfer {amount} for order {data['order_number']} to {destination}."
            )
        else:
            instruction = (
                f"Please approve the payment of {amount} "
                f"for order {data['order_number']} on your phone."
            )
        return (
            f"Complete your payment for {data['order_number']}",
            instruction
        )

    @staticmethod
    def payment_failed(data: Dict[str, Any]) -> Tuple[str, str]:
        reason = data.get("reason") or "the payment could not be completed"
        return (
            f"Payment failed for {data['order_number']}",
            f"Payment for order {data['order_number']} failed: {reason}. "
            f"The order has been cancelled."
        )

    @staticmethod
    def order_cancelled(data: Dict[str, Any]) -> Tuple[str, str]:
        return (
            f"Order {data['order_number']} cancelled",
            f"Order {data['order_number']} was cancelled. Reason: {data.get('reason') or '-'}"
        )

    @staticmethod
    def order_status_changed(data: Dict[str, Any]) -> Tuple[str, str]:
        return (
            f"Order {data['order_number']} is {data['status']}",
            f"Order {data['order_number']} status changed to {data['status']}."
        )

    @staticmethod
    def wallet_payment(data: Dict[str, Any]) -> Tuple[str, str]:
        return (
            "Wallet payment",
            f"{format_price(data['amount'])} was paid from your wallet ({data['description']}). "
            f"New balance: {format_price(data['new_balance'])}."
        )

    @staticmethod
    def wallet_top_up_completed(data: Dict[str, Any]) -> Tuple[str, str]:
        return (
            "Wallet top-up successful",
            f"Your wallet was credited with {format_price(data['amount'])}. "
            f"New balance: {format_price(data['new_balance'])}."
        )

    @staticmethod
    def wallet_top_up_failed(data: Dict[str, Any]) -> Tuple[str, str]:
        return (
            "Wallet top-up failed",
            f"Your wallet top-up of {format_price(data['amount'])} failed. "
            f"{data.get('reason') or ''}".strip()
        )

    @staticmethod
    def subscription_activated(data: Dict[str, Any]) -> Tuple[str, str]:
        return (
            "Subscription activated",
            f"Your subscription is active until {format_datetime(data['end_date'])}."
        )

    @staticmethod
    def subscription_payment_failed(data: Dict[str, Any]) -> Tuple[str, str]:
        return (
            "Subscription payment failed",
            "We could not process your subscription payment. Please try again."
        )

    @classmethod
    def render(cls, template_kind: str, data: Dict[str, Any]) -> Tuple[str, str]:
        """Return ``(subject, body)`` for a template kind"""
        template = getattr(cls, template_kind, None)
        if template is None or template_kind == "render":
            raise ValueError(f"Unknown message template: {template_kind}")
        return template(data)
