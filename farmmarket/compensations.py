import logging
from typing import List, Optional

from .catalog import Catalog
from .errors import CatalogUnavailable, InvalidTransition, PaymentRejected, ProviderTransientError
from .hashing import cancel_restore_key
from .models import CompensationEvent, CompensationKind, CompensationStatus, Order, PaymentStatus, new_id
from .payments import PaymentCoordinator
from .store import Store

logger = logging.getLogger(__name__)


class CompensationLedger:
    """Records every corrective action and retries the ones that could not run yet."""

    def __init__(self, store: Store, coordinator: PaymentCoordinator, catalog: Catalog):
        self.store = store
        self.coordinator = coordinator
        self.catalog = catalog

    def record(
        self,
        kind: CompensationKind,
        status: CompensationStatus,
        reason: str,
        payment_id: Optional[str] = None,
        order_id: Optional[str] = None,
        seller_id: Optional[str] = None,
        amount_cents: Optional[int] = None,
    ) -> CompensationEvent:
        event = self.store.add_compensation(
            CompensationEvent(
                id=new_id("cmp"),
                kind=kind,
                status=status,
                reason=reason,
                payment_id=payment_id,
                order_id=order_id,
                seller_id=seller_id,
                amount_cents=amount_cents,
                attempts=1 if status != "pending" else 0,
            )
        )
        level = logging.ERROR if status == "failed" else logging.WARNING
        logger.log(
            level,
            "compensation %s %s: %s (payment=%s order=%s seller=%s amount=%s)",
            kind, status, reason, payment_id, order_id, seller_id, amount_cents,
        )
        return event

    async def refund_share(
        self,
        payment_id: str,
        amount_cents: int,
        reason: str,
        order_id: Optional[str] = None,
        seller_id: Optional[str] = None,
    ) -> CompensationEvent:
        """Refund one seller's slice of a combined gateway charge, or park it for retry."""
        payment = self.coordinator.get(payment_id)
        refs = dict(payment_id=payment_id, order_id=order_id, seller_id=seller_id, amount_cents=amount_cents)
        if payment.status == PaymentStatus.AUTHORIZED:
            return self.record("partial_refund", "pending", f"{reason}; awaiting capture", **refs)
        status = await self._attempt_refund(payment_id, amount_cents, reason)
        return self.record("partial_refund", status, reason, **refs)

    async def _attempt_refund(self, payment_id: str, amount_cents: int, reason: str) -> CompensationStatus:
        try:
            await self.coordinator.refund(payment_id, amount_cents, reason)
        except ProviderTransientError:
            return "pending"
        except InvalidTransition as exc:
            payment = self.coordinator.get(payment_id)
            if payment.status in (PaymentStatus.AUTHORIZED, PaymentStatus.REFUND_REQUESTED):
                return "pending"
            logger.error("refund of %s on payment %s impossible: %s", amount_cents, payment_id, exc.message)
            return "failed"
        except PaymentRejected as exc:
            logger.error("refund of %s on payment %s refused: %s", amount_cents, payment_id, exc.message)
            return "failed"
        return "applied"

    async def restore_order_stock(self, order: Order, reason: str) -> CompensationEvent:
        """Put a cancelled order's items back on sale, or park the restore for retry."""
        status = await self._attempt_restore(order)
        return self.record(
            "stock_restore",
            status,
            reason,
            payment_id=order.payment_id,
            order_id=order.id,
            seller_id=order.seller_id,
        )

    async def _attempt_restore(self, order: Order) -> CompensationStatus:
        # keyed per order line, so a partial restore can be replayed whole
        try:
            for item in order.items:
                await self.catalog.restore_stock(
                    item.product_id, item.quantity, cancel_restore_key(order.id, item.line_index)
                )
        except CatalogUnavailable as exc:
            logger.warning("stock restore for order %s deferred: %s", order.id, exc.message)
            return "pending"
        return "applied"

    async def _retry(self, event: CompensationEvent) -> Optional[CompensationStatus]:
        if event.kind == "stock_restore" and event.order_id:
            order = self.store.get_order(event.order_id)
            if order is None:
                logger.error("compensation %s names unknown order %s", event.id, event.order_id)
                return "failed"
            return await self._attempt_restore(order)
        if event.kind == "partial_refund" and event.payment_id and event.amount_cents:
            if self.coordinator.get(event.payment_id).status == PaymentStatus.AUTHORIZED:
                return None
            return await self._attempt_refund(event.payment_id, event.amount_cents, event.reason)
        return None

    async def retry_pending(self) -> List[CompensationEvent]:
        retried = []
        for event in self.store.list_compensations(status="pending"):
            status = await self._retry(event)
            if status is None:
                continue
            updated = self.store.update_compensation(
                event.model_copy(update={"status": status, "attempts": event.attempts + 1})
            )
            logger.info("compensation %s (%s) retried: %s", event.id, event.kind, status)
            retried.append(updated)
        return retried

    def for_order(self, order_id: str) -> List[CompensationEvent]:
        return self.store.list_compensations(order_id=order_id)

    def for_payment(self, payment_id: str) -> List[CompensationEvent]:
        return self.store.list_compensations(payment_id=payment_id)
