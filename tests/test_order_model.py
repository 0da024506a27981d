"""Tests for the order and payment state machines."""

from datetime import date

import pytest

from agrimarket.errors import InvalidTransitionError
from agrimarket.models.order import (
    OrderStatus,
    PaymentStatus,
    append_note,
    can_transition,
    can_transition_payment,
    check_transition,
    format_order_number,
    order_status_for_payment,
)


class TestOrderTransitions:
    """Tests for the order status table."""

    @pytest.mark.parametrize("current,new", [
        (OrderStatus.PENDING, OrderStatus.CONFIRMED),
        (OrderStatus.CONFIRMED, OrderStatus.PREPARING),
        (OrderStatus.PREPARING, OrderStatus.READY),
        (OrderStatus.READY, OrderStatus.IN_TRANSIT),
        (OrderStatus.READY, OrderStatus.DELIVERED),
        (OrderStatus.IN_TRANSIT, OrderStatus.DELIVERED),
        (OrderStatus.DELIVERED, OrderStatus.REFUNDED),
        (OrderStatus.IN_TRANSIT, OrderStatus.CANCELLED),
    ])
    def test_allowed(self, current, new):
        assert can_transition(current, new)

    @pytest.mark.parametrize("current,new", [
        (OrderStatus.PENDING, OrderStatus.DELIVERED),
        (OrderStatus.CONFIRMED, OrderStatus.PENDING),
        (OrderStatus.DELIVERED, OrderStatus.CANCELLED),
        (OrderStatus.CANCELLED, OrderStatus.CONFIRMED),
        (OrderStatus.REFUNDED, OrderStatus.DELIVERED),
    ])
    def test_rejected(self, current, new):
        assert not can_transition(current, new)
        with pytest.raises(InvalidTransitionError):
            check_transition(current, new)

    def test_terminal_statuses_have_no_exits(self):
        for status in (OrderStatus.CANCELLED, OrderStatus.REFUNDED):
            assert not any(can_transition(status, new) for new in OrderStatus)

    def test_fulfilment_requires_completed_payment(self):
        with pytest.raises(InvalidTransitionError) as exc:
            check_transition(OrderStatus.CONFIRMED, OrderStatus.PREPARING, PaymentStatus.PROCESSING)
        assert "payment is not completed" in str(exc.value)

        check_transition(OrderStatus.CONFIRMED, OrderStatus.PREPARING, PaymentStatus.COMPLETED)

    def test_confirmation_requires_completed_payment(self):
        for unpaid in (PaymentStatus.PENDING, PaymentStatus.PROCESSING, PaymentStatus.FAILED):
            with pytest.raises(InvalidTransitionError, match="payment is not completed"):
                check_transition(OrderStatus.PENDING, OrderStatus.CONFIRMED, unpaid)

        check_transition(OrderStatus.PENDING, OrderStatus.CONFIRMED, PaymentStatus.COMPLETED)

    def test_cancel_does_not_require_payment(self):
        check_transition(OrderStatus.PENDING, OrderStatus.CANCELLED, PaymentStatus.PENDING)

    def test_accepts_raw_strings(self):
        check_transition("PENDING", "CONFIRMED")


class TestPaymentTransitions:
    """Tests for the payment status table and its coupling to the order."""

    def test_payment_table(self):
        assert can_transition_payment(PaymentStatus.PENDING, PaymentStatus.PROCESSING)
        assert can_transition_payment(PaymentStatus.PROCESSING, PaymentStatus.COMPLETED)
        assert can_transition_payment(PaymentStatus.PROCESSING, PaymentStatus.FAILED)
        assert not can_transition_payment(PaymentStatus.COMPLETED, PaymentStatus.FAILED)
        assert not can_transition_payment(PaymentStatus.FAILED, PaymentStatus.COMPLETED)
        assert not can_transition_payment(PaymentStatus.PENDING, PaymentStatus.COMPLETED)

    def test_completed_confirms_pending_order(self):
        assert order_status_for_payment(
            OrderStatus.PENDING, PaymentStatus.COMPLETED
        ) == OrderStatus.CONFIRMED

    def test_failed_cancels_pending_order(self):
        assert order_status_for_payment(
            OrderStatus.PENDING, PaymentStatus.FAILED
        ) == OrderStatus.CANCELLED

    def test_completed_on_cancelled_order_changes_nothing(self):
        assert order_status_for_payment(OrderStatus.CANCELLED, PaymentStatus.COMPLETED) is None

    def test_processing_drives_no_order_change(self):
        assert order_status_for_payment(OrderStatus.PENDING, PaymentStatus.PROCESSING) is None


class TestOrderHelpers:
    def test_order_number_format(self):
        assert format_order_number(date(2024, 5, 1), 7) == "ORD2405010007"
        assert format_order_number(date(2024, 12, 31), 1234) == "ORD2412311234"

    def test_append_note(self):
        assert append_note(None, "CANCELLED: out of stock") == "CANCELLED: out of stock"
        assert append_note("leave at gate", "CANCELLED: x") == "leave at gate | CANCELLED: x"

    def test_awaiting_payment(self, make_order):
        assert make_order().is_awaiting_payment
        assert make_order(payment_status=PaymentStatus.PROCESSING).is_awaiting_payment
        assert not make_order(payment_status=PaymentStatus.FAILED).is_awaiting_payment
        assert not make_order(status=OrderStatus.CONFIRMED).is_awaiting_payment

    def test_cancellable(self, make_order):
        assert make_order(status=OrderStatus.READY).is_cancellable
        assert not make_order(status=OrderStatus.DELIVERED).is_cancellable
        assert not make_order(status=OrderStatus.CANCELLED).is_cancellable
