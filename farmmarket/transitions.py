"""
Authoritative transition tables for orders and payments.

Nothing else in the package decides whether a status change is legal; services
call ``check_order_transition`` / ``check_payment_transition`` before writing.
"""

from typing import Dict, FrozenSet

from .errors import Forbidden, InvalidTransition
from .models import ActorRole, OrderStatus, PaymentMirror, PaymentStatus

O = OrderStatus
P = PaymentStatus

ORDER_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    O.PENDING: frozenset({O.CONFIRMED, O.CANCELLED}),
    O.CONFIRMED: frozenset({O.PROCESSING, O.CANCELLED}),
    O.PROCESSING: frozenset({O.SHIPPED}),
    O.SHIPPED: frozenset({O.DELIVERED}),
    O.DELIVERED: frozenset(),
    O.CANCELLED: frozenset(),
}

ROLE_TARGETS: Dict[ActorRole, FrozenSet[OrderStatus]] = {
    ActorRole.BUYER: frozenset({O.CANCELLED}),
    ActorRole.SELLER: frozenset({O.CONFIRMED, O.PROCESSING, O.SHIPPED, O.DELIVERED, O.CANCELLED}),
    ActorRole.ADMIN: frozenset(OrderStatus),
    ActorRole.SYSTEM: frozenset(OrderStatus),
}

PAYMENT_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    P.INITIATED: frozenset({P.AUTHORIZED, P.DECLINED, P.COD_PENDING, P.CANCELLED}),
    P.AUTHORIZED: frozenset({P.PAID, P.DECLINED, P.CANCELLED}),
    P.PAID: frozenset({P.REFUND_REQUESTED, P.REFUNDED}),
    P.REFUND_REQUESTED: frozenset({P.PAID, P.REFUNDED}),
    P.COD_PENDING: frozenset({P.COD_CONFIRMED, P.CANCELLED}),
    P.DECLINED: frozenset(),
    P.REFUNDED: frozenset(),
    P.COD_CONFIRMED: frozenset(),
    P.CANCELLED: frozenset(),
}

TERMINAL_PAYMENT_STATES = frozenset(s for s, targets in PAYMENT_TRANSITIONS.items() if not targets)
TERMINAL_ORDER_STATES = frozenset(s for s, targets in ORDER_TRANSITIONS.items() if not targets)

# A payment in one of these states may back a freshly committed order.
ADMISSIBLE_PAYMENT_STATES = frozenset({P.AUTHORIZED, P.PAID, P.COD_PENDING})

PAYMENT_MIRROR: Dict[PaymentStatus, PaymentMirror] = {
    P.INITIATED: PaymentMirror.PENDING,
    P.AUTHORIZED: PaymentMirror.PENDING,
    P.COD_PENDING: PaymentMirror.PENDING,
    P.PAID: PaymentMirror.PAID,
    P.REFUND_REQUESTED: PaymentMirror.PAID,
    P.COD_CONFIRMED: PaymentMirror.PAID,
    P.DECLINED: PaymentMirror.FAILED,
    P.CANCELLED: PaymentMirror.FAILED,
    P.REFUNDED: PaymentMirror.REFUNDED,
}


def can_transition_order(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ORDER_TRANSITIONS[current]


def can_transition_payment(current: PaymentStatus, target: PaymentStatus) -> bool:
    return target in PAYMENT_TRANSITIONS[current]


def check_order_transition(current: OrderStatus, target: OrderStatus, role: ActorRole) -> None:
    if target not in ROLE_TARGETS[role]:
        raise Forbidden(f"A {role.value} may not move an order to {target.value}")
    if not can_transition_order(current, target):
        raise InvalidTransition(
            f"Cannot move order from {current.value} to {target.value}",
            current=current.value,
            target=target.value,
        )


def check_payment_transition(current: PaymentStatus, target: PaymentStatus) -> None:
    if not can_transition_payment(current, target):
        raise InvalidTransition(
            f"Cannot move payment from {current.value} to {target.value}",
            current=current.value,
            target=target.value,
        )


def mirror_for(status: PaymentStatus) -> PaymentMirror:
    return PAYMENT_MIRROR[status]
