"""
Payment Intent Coordinator.

Owns the PaymentRecord state machine. Gateway payments are two-phase:
``begin_gateway_payment`` creates the charge (one provider call) and
``confirm`` captures it (one provider call). Cash on delivery needs no
provider round-trip and is admissible as soon as it is created.

Every mutation of one record runs under that record's lock and is written
with a version compare-and-swap, so a webhook and a synchronous confirm
cannot interleave into an inconsistent status.
"""

import logging
from typing import Awaitable, Callable, List, Optional, Tuple

from .errors import InvalidTransition, NotFound, PaymentRejected, ProviderTransientError, StaleRecord
from .locks import KeyedLock
from .models import PaymentMethod, PaymentRecord, PaymentStatus, PaymentTransaction, new_id
from .provider import PaymentProvider
from .settings import CAS_RETRIES
from .store import Store
from .transitions import check_payment_transition

logger = logging.getLogger(__name__)

P = PaymentStatus

StatusListener = Callable[[PaymentRecord], Awaitable[None]]
Mutation = Callable[[PaymentRecord], Optional[dict]]

CANCELLABLE = frozenset({P.INITIATED, P.AUTHORIZED, P.COD_PENDING})


class PaymentCoordinator:
    def __init__(self, store: Store, provider: PaymentProvider, locks: Optional[KeyedLock] = None):
        self.store = store
        self.provider = provider
        self.locks = locks or KeyedLock()
        self._listeners: List[StatusListener] = []

    def on_status_change(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    def get(self, payment_id: str) -> PaymentRecord:
        record = self.store.get_payment(payment_id)
        if record is None:
            raise NotFound(f"Payment {payment_id} not found")
        return record

    def transactions(self, payment_id: str) -> List[PaymentTransaction]:
        return self.store.list_transactions(payment_id)

    def _record(
        self,
        record: PaymentRecord,
        kind: str,
        status: str,
        amount_cents: int,
        reason: Optional[str] = None,
        gateway_transaction_id: Optional[str] = None,
    ) -> PaymentTransaction:
        return self.store.add_transaction(
            PaymentTransaction(
                id=new_id("txn"),
                payment_id=record.id,
                kind=kind,
                status=status,
                amount_cents=amount_cents,
                currency=record.currency,
                provider_ref=record.provider_ref,
                gateway_transaction_id=gateway_transaction_id,
                reason=reason,
            )
        )

    # -- writes -------------------------------------------------------------

    async def _apply(self, record: PaymentRecord, mutate: Mutation) -> Tuple[PaymentRecord, bool]:
        for _ in range(CAS_RETRIES):
            changes = mutate(record)
            if changes is None:
                return record, False
            target = changes.get("status", record.status)
            if target != record.status:
                check_payment_transition(record.status, target)
            try:
                updated = self.store.update_payment(record.model_copy(update=changes))
            except StaleRecord:
                fresh = self.get(record.id)
                if fresh.version == record.version:
                    raise
                logger.info("payment %s changed concurrently (v%s -> v%s), re-reading", record.id, record.version, fresh.version)
                record = fresh
                continue
            if target != record.status:
                logger.info("payment %s %s -> %s", record.id, record.status.value, target.value)
                for listener in self._listeners:
                    await listener(updated)
            return updated, True
        raise StaleRecord(f"Payment {record.id} kept changing concurrently")

    async def _transition(self, record: PaymentRecord, target: PaymentStatus, **changes) -> PaymentRecord:
        updated, _ = await self._apply(record, lambda r: {"status": target, **changes})
        return updated

    async def guarded_update(self, payment_id: str, mutate: Mutation) -> Tuple[PaymentRecord, bool]:
        """Apply ``mutate`` under the record lock; ``None`` from ``mutate`` means leave it alone."""
        async with self.locks.hold(payment_id):
            return await self._apply(self.get(payment_id), mutate)

    # -- gateway ------------------------------------------------------------

    def _resumable(self, checkout_id: Optional[str], method: PaymentMethod, seller_id: Optional[str] = None):
        """A payment an earlier, interrupted begin of the same checkout left behind."""
        if checkout_id is None:
            return None
        for record in self.store.payments_for_checkout(checkout_id):
            if record.method == method and record.seller_id == seller_id and record.status != P.CANCELLED:
                return record
        return None

    async def begin_gateway_payment(
        self,
        total_cents: int,
        currency: str,
        buyer_id: str,
        checkout_id: Optional[str] = None,
    ) -> Tuple[PaymentRecord, Optional[str]]:
        if total_cents <= 0:
            raise PaymentRejected("Invalid amount for payment")
        record = self._resumable(checkout_id, PaymentMethod.GATEWAY)
        if record is not None and (record.amount_cents != total_cents or record.status not in (P.INITIATED, P.AUTHORIZED)):
            if record.status in CANCELLABLE:
                await self.cancel(record.id, "superseded by a retried checkout")
            record = None
        if record is None:
            record = self.store.insert_payment(
                PaymentRecord(
                    id=new_id("pay"),
                    buyer_id=buyer_id,
                    checkout_id=checkout_id,
                    amount_cents=total_cents,
                    currency=currency.upper(),
                    method=PaymentMethod.GATEWAY,
                )
            )
            logger.info("payment %s initiated: gateway %s %s for buyer %s", record.id, total_cents, record.currency, buyer_id)
        else:
            logger.info("payment %s resumed for checkout %s", record.id, checkout_id)

        async with self.locks.hold(record.id):
            record = self.get(record.id)
            try:
                # keyed by payment id so a resumed begin replays the same charge
                created = await self.provider.create_charge(
                    total_cents,
                    record.currency,
                    idempotency_key=record.id,
                    metadata={"payment_id": record.id, "checkout_id": checkout_id, "buyer_id": buyer_id},
                )
            except ProviderTransientError:
                logger.warning("payment %s left initiated: provider unavailable on create", record.id)
                raise
            if created.status == "declined":
                record = await self._transition(
                    record, P.DECLINED, provider_ref=created.provider_ref, failure_reason=created.failure_reason or "declined"
                )
                self._record(record, "charge", "failed", total_cents, reason=record.failure_reason)
                raise PaymentRejected(f"Payment declined: {created.failure_reason or 'declined by provider'}")
            if record.status == P.INITIATED:
                record = await self._transition(record, P.AUTHORIZED, provider_ref=created.provider_ref)
                self._record(record, "charge", "success", total_cents)
        return record, created.client_secret

    async def confirm(self, payment_id: str) -> PaymentRecord:
        async with self.locks.hold(payment_id):
            record = self.get(payment_id)
            if record.method != PaymentMethod.GATEWAY:
                raise InvalidTransition("Cash-on-delivery payments are confirmed on delivery, not by the gateway")
            if record.status in (P.PAID, P.REFUND_REQUESTED, P.REFUNDED):
                return record
            if record.status == P.DECLINED:
                raise PaymentRejected(f"Payment {payment_id} was declined: {record.failure_reason}")
            if record.status != P.AUTHORIZED:
                raise InvalidTransition(f"Payment {payment_id} is {record.status.value} and cannot be confirmed")

            try:
                outcome = await self.provider.confirm_charge(record.provider_ref)
            except ProviderTransientError:
                logger.warning("payment %s stays authorized: provider unavailable on confirm", payment_id)
                raise

            if outcome.status == "succeeded":
                record = await self._transition(record, P.PAID)
                self._record(record, "capture", "success", record.amount_cents)
                return record
            if outcome.status == "declined":
                record = await self._transition(record, P.DECLINED, failure_reason=outcome.failure_reason or "declined")
                self._record(record, "capture", "failed", record.amount_cents, reason=record.failure_reason)
                raise PaymentRejected(f"Payment declined: {outcome.failure_reason or 'declined by provider'}")
            logger.info("payment %s stays authorized: provider reports confirmation pending", payment_id)
            return record

    async def refund(self, payment_id: str, amount_cents: int, reason: str) -> PaymentRecord:
        async with self.locks.hold(payment_id):
            record = self.get(payment_id)
            if record.method != PaymentMethod.GATEWAY:
                raise InvalidTransition("Only gateway payments can be refunded")
            resuming = record.status == P.REFUND_REQUESTED and record.pending_refund_cents == amount_cents
            if not resuming:
                if record.status != P.PAID:
                    raise InvalidTransition(f"Only paid payments can be refunded (payment is {record.status.value})")
                if amount_cents <= 0 or amount_cents > record.refundable_cents:
                    raise InvalidTransition(
                        "Refund amount exceeds available balance",
                        requested=amount_cents,
                        refundable=record.refundable_cents,
                    )
                record = await self._transition(record, P.REFUND_REQUESTED, pending_refund_cents=amount_cents)

            key = f"{record.id}:refund:{record.refunded_cents}:{amount_cents}"
            try:
                issued = await self.provider.refund(record.provider_ref, amount_cents, key)
            except ProviderTransientError:
                logger.warning("payment %s stays refund_requested: provider unavailable on refund", payment_id)
                raise

            if issued.status == "failed":
                record = await self._transition(record, P.PAID, pending_refund_cents=0)
                self._record(record, "refund", "failed", amount_cents, reason=issued.failure_reason or reason)
                raise PaymentRejected(f"Refund refused by provider: {issued.failure_reason or reason}")

            def settle(r: PaymentRecord) -> Optional[dict]:
                if r.status != P.REFUND_REQUESTED:
                    return None
                refunded = r.refunded_cents + r.pending_refund_cents
                target = P.REFUNDED if refunded >= r.amount_cents else P.PAID
                return {"status": target, "refunded_cents": refunded, "pending_refund_cents": 0}

            record, settled = await self._apply(record, settle)
            if settled:
                self._record(record, "refund", "success", amount_cents, reason=reason, gateway_transaction_id=issued.refund_ref)
            logger.info("payment %s refunded %s (%s): total refunded %s", payment_id, amount_cents, reason, record.refunded_cents)
            return record

    # -- cash on delivery ---------------------------------------------------

    async def begin_cash_on_delivery(
        self,
        per_seller_total: int,
        buyer_id: str,
        seller_id: str,
        currency: str,
        checkout_id: Optional[str] = None,
    ) -> PaymentRecord:
        if per_seller_total <= 0:
            raise PaymentRejected("Invalid amount for payment")
        record = self._resumable(checkout_id, PaymentMethod.COD, seller_id)
        if record is not None and record.amount_cents != per_seller_total:
            if record.status in CANCELLABLE:
                await self.cancel(record.id, "superseded by a retried checkout")
            record = None
        if record is None:
            record = self.store.insert_payment(
                PaymentRecord(
                    id=new_id("pay"),
                    buyer_id=buyer_id,
                    checkout_id=checkout_id,
                    seller_id=seller_id,
                    amount_cents=per_seller_total,
                    currency=currency.upper(),
                    method=PaymentMethod.COD,
                )
            )
        async with self.locks.hold(record.id):
            record = self.get(record.id)
            if record.status != P.INITIATED:
                return record
            return await self._transition(record, P.COD_PENDING)

    async def confirm_cash_on_delivery(self, payment_id: str, confirmed_by: str) -> PaymentRecord:
        async with self.locks.hold(payment_id):
            record = self.get(payment_id)
            if record.method != PaymentMethod.COD:
                raise InvalidTransition("Only cash-on-delivery payments can be confirmed on delivery")
            if record.status == P.COD_CONFIRMED:
                return record
            record = await self._transition(record, P.COD_CONFIRMED, confirmed_by=confirmed_by)
            self._record(record, "cash_collected", "success", record.amount_cents, reason=f"confirmed by {confirmed_by}")
            return record

    # -- cancellation -------------------------------------------------------

    async def cancel(self, payment_id: str, reason: str) -> PaymentRecord:
        async with self.locks.hold(payment_id):
            record = self.get(payment_id)
            if record.status == P.CANCELLED:
                return record
            if record.status not in CANCELLABLE:
                raise InvalidTransition(f"Payment {payment_id} is {record.status.value} and cannot be cancelled")
            record = await self._transition(record, P.CANCELLED, failure_reason=reason)
            self._record(record, "cancel", "success", 0, reason=reason)
            return record
