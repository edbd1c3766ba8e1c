"""
Reconciliation Listener.

Provider notifications are applied with a guard: each notification status
names the payment states it may move a record out of, and anything else is
logged and discarded. Notifications are deduplicated by event id, or by a
hash of the payload when the provider sends none.
"""

import logging
from typing import Dict, FrozenSet, Optional, Tuple

from .errors import DuplicateNotification, NotFound
from .hashing import sha256_json
from .locks import KeyedLock
from .logging_config import log_context
from .models import NotificationStatus, PaymentRecord, PaymentStatus, ProviderWebhook, WebhookAck
from .orders import OrderService
from .payments import PaymentCoordinator
from .provider import PaymentProvider
from .store import Store

logger = logging.getLogger(__name__)

P = PaymentStatus

# notification status -> (target, allowed source states)
RULES: Dict[str, Tuple[PaymentStatus, FrozenSet[PaymentStatus]]] = {
    "authorized": (P.AUTHORIZED, frozenset({P.INITIATED})),
    "succeeded": (P.PAID, frozenset({P.AUTHORIZED})),
    "declined": (P.DECLINED, frozenset({P.INITIATED, P.AUTHORIZED})),
    "refunded": (P.REFUNDED, frozenset({P.PAID, P.REFUND_REQUESTED})),
    "partially_refunded": (P.PAID, frozenset({P.PAID})),
}

# A late notification moving a payment here cancels the orders it backs.
FAILURE_STATES = frozenset({P.DECLINED, P.REFUNDED})


def notification_changes(record: PaymentRecord, status: NotificationStatus, amount: int) -> Optional[dict]:
    """Field changes for ``record`` or ``None`` when the notification is out of window."""
    target, sources = RULES[status]
    if record.status not in sources:
        return None
    if status == "refunded":
        return {"status": target, "refunded_cents": record.amount_cents, "pending_refund_cents": 0}
    if status == "partially_refunded":
        # amount is the cumulative refunded total reported by the provider
        refunded = max(record.refunded_cents, min(amount, record.amount_cents))
        if refunded == record.refunded_cents:
            return None
        return {"status": P.REFUNDED if refunded >= record.amount_cents else P.PAID, "refunded_cents": refunded}
    if status == "declined":
        return {"status": target, "failure_reason": record.failure_reason or "declined by provider"}
    return {"status": target}


class ReconciliationListener:
    def __init__(
        self,
        store: Store,
        provider: PaymentProvider,
        coordinator: PaymentCoordinator,
        orders: OrderService,
        locks: Optional[KeyedLock] = None,
    ):
        self.store = store
        self.provider = provider
        self.coordinator = coordinator
        self.orders = orders
        self.locks = locks or KeyedLock()

    @staticmethod
    def event_id_for(payload: ProviderWebhook) -> str:
        return payload.event_id or sha256_json(payload.model_dump(exclude={"event_id"}))

    def _ensure_fresh(self, event_id: str) -> None:
        if self.store.webhook_event_seen(event_id):
            raise DuplicateNotification(f"Notification {event_id} already processed", event_id=event_id)

    async def handle_webhook(self, payload: ProviderWebhook) -> WebhookAck:
        event_id = self.event_id_for(payload)
        with log_context(payload.provider_ref):
            try:
                return await self._process(event_id, payload)
            except DuplicateNotification as exc:
                logger.info("%s; discarded", exc.message)
                return WebhookAck(duplicate=True)

    async def _process(self, event_id: str, payload: ProviderWebhook) -> WebhookAck:
        async with self.locks.hold(f"webhook:{payload.provider_ref}"):
            self._ensure_fresh(event_id)

            payment = self.store.get_payment_by_provider_ref(payload.provider_ref)
            if payment is None:
                # Not recorded, so the provider's retry is processed once the charge is linked.
                logger.warning("notification %s for unknown provider reference %s", event_id, payload.provider_ref)
                raise NotFound(f"No payment for provider reference {payload.provider_ref}")

            if payload.status == "succeeded" and payload.amount != payment.amount_cents:
                logger.warning(
                    "payment %s: provider reports %s captured, expected %s",
                    payment.id, payload.amount, payment.amount_cents,
                )

            updated, changed = await self._apply(payment, payload.status, payload.amount, payload.event_type)
            self.store.record_webhook_event(event_id, payload.provider_ref, payload.model_dump())
        return WebhookAck(applied=updated.status if changed else None)

    async def poll(self, payment_id: str) -> PaymentRecord:
        """Pull the charge status from the provider and apply it like a notification."""
        payment = self.coordinator.get(payment_id)
        if not payment.provider_ref:
            logger.info("payment %s has no provider reference yet; nothing to reconcile", payment_id)
            return payment
        with log_context(payment.provider_ref):
            snapshot = await self.provider.fetch_charge_status(payment.provider_ref)
            amount = snapshot.amount_refunded_cents if "refund" in snapshot.status else snapshot.amount_cents
            async with self.locks.hold(f"webhook:{payment.provider_ref}"):
                updated, _ = await self._apply(payment, snapshot.status, amount, "poll")
        return updated

    async def _apply(
        self, payment: PaymentRecord, status: NotificationStatus, amount: int, source: str
    ) -> Tuple[PaymentRecord, bool]:
        updated, changed = await self.coordinator.guarded_update(
            payment.id, lambda r: notification_changes(r, status, amount)
        )
        if not changed:
            if updated.status in FAILURE_STATES and self.orders.awaiting_cancellation(updated.id):
                # an earlier delivery moved the payment but did not finish cancelling its orders
                logger.warning(
                    "%s %s for payment %s: payment already %s, finishing order cancellation",
                    source, status, payment.id, updated.status.value,
                )
                await self._cancel_orders(updated, source)
                return updated, False
            logger.info(
                "%s %s for payment %s ignored: payment is %s", source, status, payment.id, updated.status.value
            )
            return updated, False

        if updated.status in FAILURE_STATES and self.store.orders_for_payment(updated.id):
            await self._cancel_orders(updated, source)
        return updated, True

    async def _cancel_orders(self, payment: PaymentRecord, source: str) -> None:
        reason = f"provider reported payment {payment.id} {payment.status.value} ({source})"
        cancelled = await self.orders.cancel_for_payment_failure(payment, reason)
        logger.warning("payment %s %s: %d linked order(s) cancelled", payment.id, payment.status.value, len(cancelled))
