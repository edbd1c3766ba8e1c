"""
Storage contract for the checkout core plus an in-memory implementation.

Every aggregate write is atomic on its own row. Orders and payments carry a
``version`` column; ``update_*`` is a compare-and-swap on the version the
caller read and raises ``StaleRecord`` when someone else wrote first.
Order items are written once with their order and never touched again.
"""

import threading
from abc import ABC, abstractmethod
from collections import Counter
from typing import Any, Dict, List, Optional, Tuple

from .errors import DuplicateOrderNumber, StaleRecord
from .models import (
    Checkout,
    CompensationEvent,
    IdempotencyEntry,
    Order,
    OrderFilters,
    OrderStatus,
    PaymentRecord,
    PaymentStatus,
    PaymentTransaction,
    utcnow,
)


class Store(ABC):
    # payments
    @abstractmethod
    def insert_payment(self, payment: PaymentRecord) -> PaymentRecord: ...

    @abstractmethod
    def get_payment(self, payment_id: str) -> Optional[PaymentRecord]: ...

    @abstractmethod
    def get_payment_by_provider_ref(self, provider_ref: str) -> Optional[PaymentRecord]: ...

    @abstractmethod
    def update_payment(self, payment: PaymentRecord) -> PaymentRecord: ...

    @abstractmethod
    def payments_for_checkout(self, checkout_id: str) -> List[PaymentRecord]: ...

    @abstractmethod
    def list_payments(self, buyer_id: Optional[str], page: int, limit: int) -> Tuple[List[PaymentRecord], int]: ...

    @abstractmethod
    def payment_stats(self) -> Dict[str, Any]: ...

    # orders
    @abstractmethod
    def insert_order(self, order: Order) -> Order: ...

    @abstractmethod
    def get_order(self, order_id: str) -> Optional[Order]: ...

    @abstractmethod
    def update_order(self, order: Order) -> Order: ...

    @abstractmethod
    def list_orders(self, filters: OrderFilters, page: int, limit: int) -> Tuple[List[Order], int]: ...

    @abstractmethod
    def orders_for_payment(self, payment_id: str) -> List[Order]: ...

    @abstractmethod
    def orders_for_checkout(self, checkout_id: str) -> List[Order]: ...

    @abstractmethod
    def order_stats(self, buyer_id: Optional[str] = None, seller_id: Optional[str] = None) -> Dict[str, Any]: ...

    # checkouts
    @abstractmethod
    def insert_checkout(self, checkout: Checkout) -> Checkout: ...

    @abstractmethod
    def get_checkout(self, checkout_id: str) -> Optional[Checkout]: ...

    # idempotency keys
    @abstractmethod
    def get_idempotency(self, idem_key: str) -> Optional[IdempotencyEntry]: ...

    @abstractmethod
    def reserve_idempotency(self, idem_key: str, request_hash: str, resource_id: Optional[str] = None) -> bool: ...

    @abstractmethod
    def complete_idempotency(self, idem_key: str, status_code: int, response: Dict[str, Any]) -> None: ...

    # webhook events
    @abstractmethod
    def webhook_event_seen(self, event_id: str) -> bool: ...

    @abstractmethod
    def record_webhook_event(self, event_id: str, provider_ref: str, payload: Dict[str, Any]) -> bool: ...

    # payment transactions
    @abstractmethod
    def add_transaction(self, transaction: PaymentTransaction) -> PaymentTransaction: ...

    @abstractmethod
    def list_transactions(self, payment_id: str) -> List[PaymentTransaction]: ...

    # compensations
    @abstractmethod
    def add_compensation(self, event: CompensationEvent) -> CompensationEvent: ...

    @abstractmethod
    def update_compensation(self, event: CompensationEvent) -> CompensationEvent: ...

    @abstractmethod
    def list_compensations(
        self,
        order_id: Optional[str] = None,
        payment_id: Optional[str] = None,
        status: Optional[str] = None,
    ) -> List[CompensationEvent]: ...


def _copy(model):
    return model.model_copy(deep=True)


def _page(rows: list, page: int, limit: int) -> list:
    offset = (page - 1) * limit
    return rows[offset:offset + limit]


class MemoryStore(Store):
    """
    Process-local store. A single lock makes each method one atomic write,
    which is all the core asks of the persistence engine.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self.payments: Dict[str, PaymentRecord] = {}
        self.orders: Dict[str, Order] = {}
        self.checkouts: Dict[str, Checkout] = {}
        self.idempotency: Dict[str, IdempotencyEntry] = {}
        self.webhook_events: Dict[str, Dict[str, Any]] = {}
        self.compensations: Dict[str, CompensationEvent] = {}
        self.transactions: List[PaymentTransaction] = []
        self._order_numbers: Dict[str, str] = {}
        self._provider_refs: Dict[str, str] = {}

    # payments -------------------------------------------------------------

    def insert_payment(self, payment: PaymentRecord) -> PaymentRecord:
        with self._lock:
            if payment.id in self.payments:
                raise StaleRecord(f"Payment {payment.id} already exists")
            self._claim_provider_ref(payment)
            self.payments[payment.id] = _copy(payment)
            return _copy(payment)

    def get_payment(self, payment_id: str) -> Optional[PaymentRecord]:
        with self._lock:
            payment = self.payments.get(payment_id)
            return _copy(payment) if payment else None

    def get_payment_by_provider_ref(self, provider_ref: str) -> Optional[PaymentRecord]:
        with self._lock:
            payment_id = self._provider_refs.get(provider_ref)
            return self.get_payment(payment_id) if payment_id else None

    def update_payment(self, payment: PaymentRecord) -> PaymentRecord:
        with self._lock:
            current = self.payments.get(payment.id)
            if current is None or current.version != payment.version:
                raise StaleRecord(f"Payment {payment.id} changed concurrently")
            self._claim_provider_ref(payment)
            stored = payment.model_copy(update={"version": payment.version + 1, "updated_at": utcnow()})
            self.payments[payment.id] = stored
            return _copy(stored)

    def _claim_provider_ref(self, payment: PaymentRecord) -> None:
        if not payment.provider_ref:
            return
        owner = self._provider_refs.get(payment.provider_ref)
        if owner and owner != payment.id:
            raise StaleRecord(f"Provider reference {payment.provider_ref} already linked to {owner}")
        self._provider_refs[payment.provider_ref] = payment.id

    def payments_for_checkout(self, checkout_id: str) -> List[PaymentRecord]:
        with self._lock:
            rows = [p for p in self.payments.values() if p.checkout_id == checkout_id]
            rows.sort(key=lambda p: p.created_at)
            return [_copy(p) for p in rows]

    def list_payments(self, buyer_id: Optional[str], page: int, limit: int) -> Tuple[List[PaymentRecord], int]:
        with self._lock:
            rows = [p for p in self.payments.values() if buyer_id is None or p.buyer_id == buyer_id]
            rows.sort(key=lambda p: p.created_at, reverse=True)
            return [_copy(p) for p in _page(rows, page, limit)], len(rows)

    def payment_stats(self) -> Dict[str, Any]:
        with self._lock:
            payments = list(self.payments.values())
            by_status = Counter(p.status.value for p in payments)
            by_method = Counter(p.method.value for p in payments)
            settled = (PaymentStatus.PAID, PaymentStatus.COD_CONFIRMED, PaymentStatus.REFUND_REQUESTED)
            return {
                "total_payments": len(payments),
                "by_status": dict(by_status),
                "by_method": dict(by_method),
                "total_amount_cents": sum(p.amount_cents for p in payments),
                "successful_amount_cents": sum(p.amount_cents for p in payments if p.status in settled),
                "refunded_amount_cents": sum(p.refunded_cents for p in payments),
            }

    # orders ---------------------------------------------------------------

    def insert_order(self, order: Order) -> Order:
        with self._lock:
            if order.order_number in self._order_numbers:
                raise DuplicateOrderNumber(f"Order number {order.order_number} already taken")
            if order.id in self.orders:
                raise StaleRecord(f"Order {order.id} already exists")
            self._order_numbers[order.order_number] = order.id
            self.orders[order.id] = _copy(order)
            return _copy(order)

    def get_order(self, order_id: str) -> Optional[Order]:
        with self._lock:
            order = self.orders.get(order_id)
            return _copy(order) if order else None

    def update_order(self, order: Order) -> Order:
        with self._lock:
            current = self.orders.get(order.id)
            if current is None or current.version != order.version:
                raise StaleRecord(f"Order {order.id} changed concurrently")
            stored = current.model_copy(
                update={
                    "status": order.status,
                    "payment_status": order.payment_status,
                    "version": current.version + 1,
                    "updated_at": utcnow(),
                }
            )
            self.orders[order.id] = stored
            return _copy(stored)

    def list_orders(self, filters: OrderFilters, page: int, limit: int) -> Tuple[List[Order], int]:
        with self._lock:
            rows = [o for o in self.orders.values() if _matches(o, filters)]
            rows.sort(key=lambda o: o.created_at, reverse=True)
            return [_copy(o) for o in _page(rows, page, limit)], len(rows)

    def orders_for_payment(self, payment_id: str) -> List[Order]:
        with self._lock:
            return [_copy(o) for o in self.orders.values() if o.payment_id == payment_id]

    def orders_for_checkout(self, checkout_id: str) -> List[Order]:
        with self._lock:
            return [_copy(o) for o in self.orders.values() if o.checkout_id == checkout_id]

    def order_stats(self, buyer_id: Optional[str] = None, seller_id: Optional[str] = None) -> Dict[str, Any]:
        with self._lock:
            rows = [o for o in self.orders.values() if _matches(o, OrderFilters(buyer_id=buyer_id, seller_id=seller_id))]
            counts = Counter(o.status.value for o in rows)
            revenue_by_month: Counter = Counter()
            for o in rows:
                if o.status != OrderStatus.CANCELLED:
                    revenue_by_month[o.created_at.strftime("%Y-%m")] += o.total_cents
            stats: Dict[str, Any] = {"total_orders": len(rows)}
            for status in OrderStatus:
                stats[f"{status.value}_orders"] = counts.get(status.value, 0)
            stats["total_revenue_cents"] = sum(revenue_by_month.values())
            stats["revenue_by_month"] = [
                {"month": month, "revenue_cents": revenue_by_month[month]}
                for month in sorted(revenue_by_month, reverse=True)[:6]
            ]
            return stats

    # checkouts ------------------------------------------------------------

    def insert_checkout(self, checkout: Checkout) -> Checkout:
        with self._lock:
            self.checkouts[checkout.id] = _copy(checkout)
            return _copy(checkout)

    def get_checkout(self, checkout_id: str) -> Optional[Checkout]:
        with self._lock:
            checkout = self.checkouts.get(checkout_id)
            return _copy(checkout) if checkout else None

    # idempotency ----------------------------------------------------------

    def get_idempotency(self, idem_key: str) -> Optional[IdempotencyEntry]:
        with self._lock:
            entry = self.idempotency.get(idem_key)
            return _copy(entry) if entry else None

    def reserve_idempotency(self, idem_key: str, request_hash: str, resource_id: Optional[str] = None) -> bool:
        with self._lock:
            if idem_key in self.idempotency:
                return False
            self.idempotency[idem_key] = IdempotencyEntry(
                idem_key=idem_key, request_hash=request_hash, resource_id=resource_id
            )
            return True

    def complete_idempotency(self, idem_key: str, status_code: int, response: Dict[str, Any]) -> None:
        with self._lock:
            entry = self.idempotency[idem_key]
            self.idempotency[idem_key] = entry.model_copy(
                update={"status_code": status_code, "response_json": response}
            )

    # webhook events -------------------------------------------------------

    def webhook_event_seen(self, event_id: str) -> bool:
        with self._lock:
            return event_id in self.webhook_events

    def record_webhook_event(self, event_id: str, provider_ref: str, payload: Dict[str, Any]) -> bool:
        with self._lock:
            if event_id in self.webhook_events:
                return False
            self.webhook_events[event_id] = {
                "provider_ref": provider_ref,
                "payload": payload,
                "processed_at": utcnow(),
            }
            return True

    # payment transactions ------------------------------------------------

    def add_transaction(self, transaction: PaymentTransaction) -> PaymentTransaction:
        with self._lock:
            self.transactions.append(_copy(transaction))
            return _copy(transaction)

    def list_transactions(self, payment_id: str) -> List[PaymentTransaction]:
        with self._lock:
            return [_copy(t) for t in self.transactions if t.payment_id == payment_id]

    # compensations --------------------------------------------------------

    def add_compensation(self, event: CompensationEvent) -> CompensationEvent:
        with self._lock:
            self.compensations[event.id] = _copy(event)
            return _copy(event)

    def update_compensation(self, event: CompensationEvent) -> CompensationEvent:
        with self._lock:
            stored = event.model_copy(update={"updated_at": utcnow()})
            self.compensations[event.id] = stored
            return _copy(stored)

    def list_compensations(
        self,
        order_id: Optional[str] = None,
        payment_id: Optional[str] = None,
        status: Optional[str] = None,
    ) -> List[CompensationEvent]:
        with self._lock:
            rows = [
                e
                for e in self.compensations.values()
                if (order_id is None or e.order_id == order_id)
                and (payment_id is None or e.payment_id == payment_id)
                and (status is None or e.status == status)
            ]
            rows.sort(key=lambda e: e.created_at)
            return [_copy(e) for e in rows]


def _matches(order: Order, filters: OrderFilters) -> bool:
    return (
        (filters.buyer_id is None or order.buyer_id == filters.buyer_id)
        and (filters.seller_id is None or order.seller_id == filters.seller_id)
        and (filters.status is None or order.status == filters.status)
        and (filters.payment_status is None or order.payment_status == filters.payment_status)
    )
