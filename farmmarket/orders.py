"""
Order status queries and updates.

Order writes are serialized per order by ``locks`` and written with a version
compare-and-swap. Payment mirror updates arrive from the payment coordinator
while it holds a payment lock, so they never take an order lock and rely on
the CAS alone.
"""

import logging
from typing import Callable, List, Optional

from .compensations import CompensationLedger
from .errors import CheckoutError, Forbidden, InvalidTransition, NotFound, StaleRecord
from .locks import KeyedLock
from .models import (
    ActorRole,
    CompensationEvent,
    Order,
    OrderFilters,
    OrderPage,
    OrderStatus,
    Pagination,
    PaymentDetails,
    PaymentMethod,
    PaymentRecord,
    PaymentStatus,
)
from .payments import PaymentCoordinator
from .settings import CAS_RETRIES
from .store import Store
from .transitions import can_transition_order, check_order_transition, mirror_for

logger = logging.getLogger(__name__)

OrderMutation = Callable[[Order], Optional[dict]]

PRIVILEGED = (ActorRole.ADMIN, ActorRole.SYSTEM)


class OrderService:
    def __init__(
        self,
        store: Store,
        coordinator: PaymentCoordinator,
        ledger: CompensationLedger,
        locks: Optional[KeyedLock] = None,
    ):
        self.store = store
        self.coordinator = coordinator
        self.ledger = ledger
        self.locks = locks or KeyedLock()

    # -- reads --------------------------------------------------------------

    def _get(self, order_id: str) -> Order:
        order = self.store.get_order(order_id)
        if order is None:
            raise NotFound(f"Order {order_id} not found")
        return order

    @staticmethod
    def _check_access(order: Order, actor_id: str, role: ActorRole) -> None:
        if role in PRIVILEGED:
            return
        if role == ActorRole.BUYER and order.buyer_id == actor_id:
            return
        if role == ActorRole.SELLER and order.seller_id == actor_id:
            return
        raise Forbidden("Access denied")

    def get_order(self, order_id: str, actor_id: str, role: ActorRole) -> Order:
        order = self._get(order_id)
        self._check_access(order, actor_id, role)
        return order

    @staticmethod
    def _scope(filters: OrderFilters, actor_id: str, role: ActorRole) -> OrderFilters:
        if role == ActorRole.BUYER:
            return filters.model_copy(update={"buyer_id": actor_id})
        if role == ActorRole.SELLER:
            return filters.model_copy(update={"seller_id": actor_id})
        return filters

    def list_orders(
        self, filters: OrderFilters, actor_id: str, role: ActorRole, page: int = 1, limit: int = 10
    ) -> OrderPage:
        items, total = self.store.list_orders(self._scope(filters, actor_id, role), page, limit)
        return OrderPage(items=items, pagination=Pagination.build(page, limit, total))

    def statistics(self, actor_id: str, role: ActorRole) -> dict:
        if role == ActorRole.BUYER:
            return self.store.order_stats(buyer_id=actor_id)
        if role == ActorRole.SELLER:
            return self.store.order_stats(seller_id=actor_id)
        return self.store.order_stats()

    def compensations(self, order_id: str, actor_id: str, role: ActorRole) -> List[CompensationEvent]:
        self.get_order(order_id, actor_id, role)
        return self.ledger.for_order(order_id)

    def _check_payment_access(self, payment: PaymentRecord, actor_id: str, role: ActorRole) -> None:
        if role in PRIVILEGED:
            return
        if role == ActorRole.BUYER and payment.buyer_id == actor_id:
            return
        if role == ActorRole.SELLER:
            if payment.seller_id == actor_id:
                return
            # a combined gateway charge is visible to every seller it backs
            if any(o.seller_id == actor_id for o in self.store.orders_for_payment(payment.id)):
                return
        raise Forbidden("Access denied")

    def _details(self, payment: PaymentRecord) -> PaymentDetails:
        return PaymentDetails(payment=payment, transactions=self.coordinator.transactions(payment.id))

    def payment_details(self, payment_id: str, actor_id: str, role: ActorRole) -> PaymentDetails:
        payment = self.coordinator.get(payment_id)
        self._check_payment_access(payment, actor_id, role)
        return self._details(payment)

    def payment_for_order(self, order_id: str, actor_id: str, role: ActorRole) -> PaymentDetails:
        order = self.get_order(order_id, actor_id, role)
        return self._details(self.coordinator.get(order.payment_id))

    # -- writes -------------------------------------------------------------

    def _write(self, order: Order, mutate: OrderMutation) -> Order:
        for _ in range(CAS_RETRIES):
            changes = mutate(order)
            if changes is None:
                return order
            try:
                return self.store.update_order(order.model_copy(update=changes))
            except StaleRecord:
                fresh = self._get(order.id)
                if fresh.version == order.version:
                    raise
                order = fresh
        raise StaleRecord(f"Order {order.id} kept changing concurrently")

    async def update_status(self, order_id: str, new_status: OrderStatus, actor_id: str, role: ActorRole) -> Order:
        async with self.locks.hold(order_id):
            order = self._get(order_id)
            self._check_access(order, actor_id, role)
            check_order_transition(order.status, new_status, role)

            def move(o: Order) -> Optional[dict]:
                check_order_transition(o.status, new_status, role)
                return {"status": new_status}

            previous = order.status
            order = self._write(order, move)
            logger.info(
                "order %s %s -> %s by %s %s", order.id, previous.value, new_status.value, role.value, actor_id
            )

        if new_status == OrderStatus.CANCELLED:
            await self._after_cancel(order, f"order {order.order_number} cancelled by {role.value}")
            order = self._get(order_id)
        return order

    async def _after_cancel(self, order: Order, reason: str) -> None:
        await self.ledger.restore_order_stock(order, reason)
        payment = self.coordinator.get(order.payment_id)
        refs = dict(payment_id=payment.id, order_id=order.id, seller_id=order.seller_id)

        if payment.method == PaymentMethod.COD:
            try:
                await self.coordinator.cancel(payment.id, reason)
                self.ledger.record("cod_cancel", "applied", reason, **refs)
            except InvalidTransition as exc:
                self.ledger.record("manual_review", "pending", f"{reason}; {exc.message}", **refs)
            return

        if payment.status in (PaymentStatus.PAID, PaymentStatus.REFUND_REQUESTED):
            await self.ledger.refund_share(payment.id, order.total_cents, reason, order_id=order.id, seller_id=order.seller_id)
            return

        if payment.status == PaymentStatus.AUTHORIZED:
            siblings = self.store.orders_for_payment(payment.id)
            if all(o.status == OrderStatus.CANCELLED for o in siblings):
                try:
                    await self.coordinator.cancel(payment.id, reason)
                    self.ledger.record("payment_cancel", "applied", reason, amount_cents=payment.amount_cents, **refs)
                except InvalidTransition as exc:
                    self.ledger.record("manual_review", "pending", f"{reason}; {exc.message}", **refs)
            else:
                await self.ledger.refund_share(
                    payment.id, order.total_cents, reason, order_id=order.id, seller_id=order.seller_id
                )
            return

        logger.info("order %s cancelled; payment %s is %s, nothing to compensate", order.id, payment.id, payment.status.value)

    async def cancel_for_payment_failure(self, payment: PaymentRecord, reason: str) -> List[Order]:
        """
        Move every order linked to ``payment`` toward cancelled; line items are never touched.

        A failure on one order is parked for manual review and does not stop
        the others from being cancelled.
        """
        cancelled = []
        for linked in self.store.orders_for_payment(payment.id):
            try:
                order = await self._cancel_linked(linked.id, payment, reason)
            except CheckoutError as exc:
                logger.error("order %s not cancelled after payment %s failed: %s", linked.id, payment.id, exc.message)
                self.ledger.record(
                    "manual_review",
                    "pending",
                    f"{reason}; cancelling the order failed: {exc.message}",
                    payment_id=payment.id,
                    order_id=linked.id,
                    seller_id=linked.seller_id,
                    amount_cents=linked.total_cents,
                )
                continue
            if order is not None:
                cancelled.append(order)
        return cancelled

    async def _cancel_linked(self, order_id: str, payment: PaymentRecord, reason: str) -> Optional[Order]:
        async with self.locks.hold(order_id):
            order = self._get(order_id)
            refs = dict(payment_id=payment.id, order_id=order.id, seller_id=order.seller_id)
            if order.status == OrderStatus.CANCELLED:
                return None
            if not can_transition_order(order.status, OrderStatus.CANCELLED):
                self.ledger.record(
                    "manual_review",
                    "pending",
                    f"{reason}; order already {order.status.value}",
                    amount_cents=order.total_cents,
                    **refs,
                )
                return None
            order = self._write(
                order,
                lambda o: None
                if o.status == OrderStatus.CANCELLED
                else {"status": OrderStatus.CANCELLED, "payment_status": mirror_for(payment.status)},
            )
            logger.info("order %s cancelled: %s", order.id, reason)
        await self.ledger.restore_order_stock(order, reason)
        self.ledger.record("order_cancel", "applied", reason, amount_cents=order.total_cents, **refs)
        return order

    def awaiting_cancellation(self, payment_id: str) -> List[Order]:
        """Orders on ``payment_id`` that could still be cancelled."""
        return [
            o
            for o in self.store.orders_for_payment(payment_id)
            if o.status != OrderStatus.CANCELLED and can_transition_order(o.status, OrderStatus.CANCELLED)
        ]

    async def sync_payment_mirror(self, payment: PaymentRecord) -> None:
        mirror = mirror_for(payment.status)
        for order in self.store.orders_for_payment(payment.id):
            if order.payment_status == mirror:
                continue
            self._write(order, lambda o: None if o.payment_status == mirror else {"payment_status": mirror})
            logger.info("order %s payment status -> %s", order.id, mirror.value)
