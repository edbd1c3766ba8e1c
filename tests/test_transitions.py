import pytest

from farmmarket.errors import Forbidden, InvalidTransition
from farmmarket.models import ActorRole, OrderStatus, PaymentMirror, PaymentStatus
from farmmarket.transitions import (
    PAYMENT_TRANSITIONS,
    TERMINAL_ORDER_STATES,
    TERMINAL_PAYMENT_STATES,
    can_transition_order,
    can_transition_payment,
    check_order_transition,
    check_payment_transition,
    mirror_for,
)


@pytest.mark.parametrize("current", [OrderStatus.DELIVERED, OrderStatus.CANCELLED])
@pytest.mark.parametrize("target", list(OrderStatus))
def test_no_order_leaves_delivered_or_cancelled(current, target):
    assert not can_transition_order(current, target)
    with pytest.raises(InvalidTransition):
        check_order_transition(current, target, ActorRole.ADMIN)


@pytest.mark.parametrize(
    "current", [PaymentStatus.DECLINED, PaymentStatus.REFUNDED, PaymentStatus.COD_CONFIRMED, PaymentStatus.CANCELLED]
)
def test_terminal_payments_never_become_paid(current):
    assert current in TERMINAL_PAYMENT_STATES
    assert not can_transition_payment(current, PaymentStatus.PAID)
    with pytest.raises(InvalidTransition):
        check_payment_transition(current, PaymentStatus.PAID)


def test_terminal_sets_match_tables():
    assert TERMINAL_ORDER_STATES == {OrderStatus.DELIVERED, OrderStatus.CANCELLED}
    assert TERMINAL_PAYMENT_STATES == {
        PaymentStatus.DECLINED,
        PaymentStatus.REFUNDED,
        PaymentStatus.COD_CONFIRMED,
        PaymentStatus.CANCELLED,
    }
    assert set(PAYMENT_TRANSITIONS) == set(PaymentStatus)


def test_happy_path_cannot_skip_states():
    assert can_transition_order(OrderStatus.PENDING, OrderStatus.CONFIRMED)
    assert not can_transition_order(OrderStatus.PENDING, OrderStatus.SHIPPED)
    assert not can_transition_order(OrderStatus.CONFIRMED, OrderStatus.DELIVERED)
    assert not can_transition_order(OrderStatus.PROCESSING, OrderStatus.CANCELLED)


def test_buyer_may_only_cancel():
    check_order_transition(OrderStatus.PENDING, OrderStatus.CANCELLED, ActorRole.BUYER)
    check_order_transition(OrderStatus.CONFIRMED, OrderStatus.CANCELLED, ActorRole.BUYER)
    with pytest.raises(Forbidden):
        check_order_transition(OrderStatus.PENDING, OrderStatus.CONFIRMED, ActorRole.BUYER)
    with pytest.raises(InvalidTransition):
        check_order_transition(OrderStatus.SHIPPED, OrderStatus.CANCELLED, ActorRole.BUYER)


def test_seller_moves_happy_path_forward():
    check_order_transition(OrderStatus.PENDING, OrderStatus.CONFIRMED, ActorRole.SELLER)
    check_order_transition(OrderStatus.SHIPPED, OrderStatus.DELIVERED, ActorRole.SELLER)
    with pytest.raises(Forbidden):
        check_order_transition(OrderStatus.PENDING, OrderStatus.PENDING, ActorRole.SELLER)


def test_payment_mirror():
    assert mirror_for(PaymentStatus.AUTHORIZED) == PaymentMirror.PENDING
    assert mirror_for(PaymentStatus.REFUND_REQUESTED) == PaymentMirror.PAID
    assert mirror_for(PaymentStatus.COD_CONFIRMED) == PaymentMirror.PAID
    assert mirror_for(PaymentStatus.DECLINED) == PaymentMirror.FAILED
    assert mirror_for(PaymentStatus.REFUNDED) == PaymentMirror.REFUNDED
