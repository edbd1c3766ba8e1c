"""
Order Commit Orchestrator.

Each seller's slice of a checkout is its own saga: verify prices, reserve
stock, write the order. A failing step compensates the steps already done
for that seller only; other sellers' orders stand. The payment share of a
rejected seller is then compensated (partial refund of a combined charge,
or cancellation of that seller's cash-on-delivery record).

An infrastructure failure is not a rejection. The saga stops without
compensating so its stock stays reserved; the retried commit replays those
reservations by key instead of taking the stock twice.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Union
from uuid import uuid4

from .catalog import Catalog
from .compensations import CompensationLedger
from .errors import CommitConflict, DuplicateOrderNumber, InvalidTransition, PaymentRejected
from .hashing import restore_key, stock_key
from .models import (
    Checkout,
    CommitResult,
    Order,
    OrderItem,
    PaymentMethod,
    PaymentRecord,
    PaymentStatus,
    RejectedSeller,
    ValidatedLine,
    ValidatedSellerOrder,
    new_id,
)
from .payments import PaymentCoordinator
from .store import Store
from .transitions import ADMISSIBLE_PAYMENT_STATES, mirror_for

logger = logging.getLogger(__name__)

ORDER_NUMBER_ATTEMPTS = 3


def generate_order_number() -> str:
    return f"ORD-{int(time.time() * 1000)}-{uuid4().hex[:6].upper()}"


@dataclass
class SellerCommit:
    checkout: Checkout
    seller_order: ValidatedSellerOrder
    payment: PaymentRecord
    commit_key: str
    reserved: List[Tuple[ValidatedLine, str]] = field(default_factory=list)
    order: Optional[Order] = None

    @property
    def label(self) -> str:
        return f"checkout={self.checkout.id} seller={self.seller_order.seller_id}"


class Step(ABC):
    def __init__(self, ctx: SellerCommit, orchestrator: "OrderCommitOrchestrator"):
        self.ctx = ctx
        self.orchestrator = orchestrator

    @abstractmethod
    def name(self) -> str: ...

    @abstractmethod
    async def execute(self) -> None: ...

    @abstractmethod
    async def compensate(self) -> None: ...

    async def run(self) -> None:
        logger.info("[%s] STEP %s", self.ctx.label, self.name())
        await self.execute()
        logger.info("[%s] STEP %s OK", self.ctx.label, self.name())

    async def run_compensation(self) -> None:
        logger.warning("[%s] COMPENSATE %s", self.ctx.label, self.name())
        await self.compensate()
        logger.warning("[%s] COMPENSATE %s OK", self.ctx.label, self.name())


class VerifyPricing(Step):
    """Price or withdrawal changes since validation are conflicts, never silently absorbed."""

    def name(self) -> str:
        return "VerifyPricing"

    async def execute(self) -> None:
        lines = self.ctx.seller_order.lines
        catalog = self.orchestrator.catalog
        quotes = await asyncio.gather(*(catalog.get_authoritative_price(line.product_id) for line in lines))
        for line, quote in zip(lines, quotes):
            if quote is None or quote.withdrawn:
                raise CommitConflict(
                    f"Product {line.product_id} was withdrawn after validation",
                    seller_id=self.ctx.seller_order.seller_id,
                    product_id=line.product_id,
                )
            if quote.price_cents != line.unit_price_cents:
                raise CommitConflict(
                    f"Price of {line.product_id} changed from {line.unit_price_cents} to {quote.price_cents}",
                    seller_id=self.ctx.seller_order.seller_id,
                    product_id=line.product_id,
                )

    async def compensate(self) -> None:
        pass


class ReserveStock(Step):
    def name(self) -> str:
        return "ReserveStock"

    async def execute(self) -> None:
        seller_id = self.ctx.seller_order.seller_id
        for line in self.ctx.seller_order.lines:
            key = stock_key(self.ctx.commit_key, seller_id, line.line_index)
            result = await self.orchestrator.catalog.decrement_stock(line.product_id, line.quantity, key)
            if result.outcome == "conflict":
                raise CommitConflict(
                    f"Insufficient stock for {line.product_id}: available {result.available_quantity}, "
                    f"need {line.quantity}",
                    seller_id=seller_id,
                    product_id=line.product_id,
                )
            self.ctx.reserved.append((line, key))

    async def compensate(self) -> None:
        for line, key in reversed(self.ctx.reserved):
            await self.orchestrator.catalog.restore_stock(line.product_id, line.quantity, restore_key(key))
            self.orchestrator.ledger.record(
                "stock_restore",
                "applied",
                f"released {line.quantity} x {line.product_id} after failed commit",
                payment_id=self.ctx.payment.id,
                seller_id=self.ctx.seller_order.seller_id,
            )
        self.ctx.reserved.clear()


class MaterializeOrder(Step):
    def name(self) -> str:
        return "MaterializeOrder"

    def _build(self) -> Order:
        ctx = self.ctx
        return Order(
            id=new_id("ord"),
            order_number=generate_order_number(),
            buyer_id=ctx.checkout.buyer_id,
            seller_id=ctx.seller_order.seller_id,
            checkout_id=ctx.checkout.id,
            payment_id=ctx.payment.id,
            payment_status=mirror_for(ctx.payment.status),
            delivery_address=ctx.checkout.delivery_address,
            delivery_date=ctx.checkout.delivery_date,
            special_instructions=ctx.checkout.special_instructions,
            items=[
                OrderItem(
                    line_index=line.line_index,
                    product_id=line.product_id,
                    quantity=line.quantity,
                    unit_price_cents=line.unit_price_cents,
                    total_cents=line.line_total_cents,
                )
                for line in ctx.seller_order.lines
            ],
            total_cents=ctx.seller_order.total_cents,
            currency=ctx.checkout.currency,
        )

    async def execute(self) -> None:
        for attempt in range(1, ORDER_NUMBER_ATTEMPTS + 1):
            try:
                self.ctx.order = self.orchestrator.store.insert_order(self._build())
                break
            except DuplicateOrderNumber:
                if attempt == ORDER_NUMBER_ATTEMPTS:
                    raise
                logger.info("[%s] order number collision, regenerating", self.ctx.label)
        logger.info("[%s] order %s written (%s)", self.ctx.label, self.ctx.order.id, self.ctx.order.order_number)

    async def compensate(self) -> None:
        # The insert is the last step and atomic; nothing to undo.
        logger.info("[%s] materialize has no compensation", self.ctx.label)


CommitOutcome = Union[Order, RejectedSeller]


class OrderCommitOrchestrator:
    def __init__(self, store: Store, catalog: Catalog, coordinator: PaymentCoordinator, ledger: CompensationLedger):
        self.store = store
        self.catalog = catalog
        self.coordinator = coordinator
        self.ledger = ledger

    async def commit(self, checkout: Checkout, payments: List[PaymentRecord], commit_key: str) -> CommitResult:
        by_seller = self._payments_by_seller(checkout, payments)
        for payment in payments:
            if payment.status not in ADMISSIBLE_PAYMENT_STATES:
                if payment.status in (PaymentStatus.DECLINED, PaymentStatus.CANCELLED):
                    raise PaymentRejected(f"Payment {payment.id} is {payment.status.value}; nothing can be committed")
                raise InvalidTransition(f"Payment {payment.id} is {payment.status.value} and not admissible for commit")

        existing = {o.seller_id: o for o in self.store.orders_for_checkout(checkout.id)}
        outcomes = await asyncio.gather(
            *(
                self._commit_seller(checkout, so, by_seller[so.seller_id], commit_key, existing.get(so.seller_id))
                for so in checkout.orders
            ),
            return_exceptions=True,
        )
        # An infrastructure failure fails the whole commit for retry; reservations
        # are kept and materialized sellers are reused.
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome

        committed: List[Order] = []
        rejected: List[RejectedSeller] = []
        for seller_order, outcome in zip(checkout.orders, outcomes):
            if isinstance(outcome, Order):
                committed.append(outcome)
            else:
                rejected.append(await self._compensate_payment(checkout, seller_order, by_seller[seller_order.seller_id], outcome))

        for order in committed:
            logger.info("order %s linked to payment %s (%s)", order.id, order.payment_id, order.payment_status.value)
        logger.info(
            "checkout %s committed: %d order(s), %d seller(s) rejected", checkout.id, len(committed), len(rejected)
        )
        return CommitResult(checkout_id=checkout.id, committed_orders=committed, rejected_sellers=rejected)

    def _payments_by_seller(self, checkout: Checkout, payments: List[PaymentRecord]) -> Dict[str, PaymentRecord]:
        if checkout.method == PaymentMethod.GATEWAY:
            (payment,) = payments
            return {so.seller_id: payment for so in checkout.orders}
        by_seller = {p.seller_id: p for p in payments}
        missing = [so.seller_id for so in checkout.orders if so.seller_id not in by_seller]
        if missing:
            raise InvalidTransition(f"No cash-on-delivery payment for seller(s) {', '.join(missing)}")
        return by_seller

    async def _commit_seller(
        self,
        checkout: Checkout,
        seller_order: ValidatedSellerOrder,
        payment: PaymentRecord,
        commit_key: str,
        existing: Optional[Order],
    ) -> CommitOutcome:
        if existing is not None:
            logger.info("checkout %s seller %s already materialized as %s", checkout.id, seller_order.seller_id, existing.id)
            return existing

        ctx = SellerCommit(checkout=checkout, seller_order=seller_order, payment=payment, commit_key=commit_key)
        steps: List[Step] = [VerifyPricing(ctx, self), ReserveStock(ctx, self), MaterializeOrder(ctx, self)]
        completed: List[Step] = []
        try:
            for step in steps:
                completed.append(step)
                await step.run()
            return ctx.order
        except (CommitConflict, DuplicateOrderNumber) as exc:
            logger.warning("[%s] SAGA FAILED: %s", ctx.label, exc.message)
            await self._compensate_steps(ctx, completed)
            return RejectedSeller(
                seller_id=seller_order.seller_id,
                seller_order_key=seller_order.seller_order_key,
                code=exc.code,
                reason=exc.message,
            )
        except Exception:
            logger.exception(
                "[%s] SAGA ABORTED after %s; %d reservation(s) kept for the retry",
                ctx.label, completed[-1].name(), len(ctx.reserved),
            )
            raise

    async def _compensate_steps(self, ctx: SellerCommit, completed: List[Step]) -> None:
        for step in reversed(completed):
            try:
                await step.run_compensation()
            except Exception as exc:
                logger.error("[%s] COMPENSATION FAILED at %s: %s", ctx.label, step.name(), exc)
                self.ledger.record(
                    "manual_review",
                    "failed",
                    f"compensation of {step.name()} failed: {exc}",
                    payment_id=ctx.payment.id,
                    seller_id=ctx.seller_order.seller_id,
                )

    async def _compensate_payment(
        self,
        checkout: Checkout,
        seller_order: ValidatedSellerOrder,
        payment: PaymentRecord,
        rejection: RejectedSeller,
    ) -> RejectedSeller:
        reason = f"seller {seller_order.seller_id} rejected at commit: {rejection.reason}"
        if checkout.method == PaymentMethod.GATEWAY:
            event = await self.ledger.refund_share(
                payment.id, seller_order.total_cents, reason, seller_id=seller_order.seller_id
            )
            return rejection.model_copy(
                update={"refund_cents": seller_order.total_cents, "compensation_status": event.status}
            )

        try:
            await self.coordinator.cancel(payment.id, reason)
            status = "applied"
        except InvalidTransition as exc:
            logger.error("cannot cancel cash-on-delivery payment %s: %s", payment.id, exc.message)
            status = "failed"
        event = self.ledger.record(
            "cod_cancel", status, reason, payment_id=payment.id, seller_id=seller_order.seller_id
        )
        return rejection.model_copy(update={"compensation_status": event.status})
