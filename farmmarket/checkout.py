import logging
from typing import List, Optional

from .catalog import Catalog
from .errors import NotFound
from .hashing import commit_key
from .locks import KeyedLock
from .logging_config import log_context
from .models import (
    BeginCheckoutRequest,
    BeginCheckoutResponse,
    CartLine,
    CartValidation,
    Checkout,
    CommitResult,
    PaymentMethod,
    new_id,
)
from .orchestrator import OrderCommitOrchestrator
from .payments import PaymentCoordinator
from .store import Store
from .validator import OrderValidator

logger = logging.getLogger(__name__)


class CheckoutService:
    """ValidateCart, BeginCheckout and ConfirmCheckout as one facade."""

    def __init__(
        self,
        store: Store,
        catalog: Catalog,
        validator: OrderValidator,
        coordinator: PaymentCoordinator,
        orchestrator: OrderCommitOrchestrator,
        locks: Optional[KeyedLock] = None,
    ):
        self.store = store
        self.catalog = catalog
        self.validator = validator
        self.coordinator = coordinator
        self.orchestrator = orchestrator
        self.locks = locks or KeyedLock()

    async def validate_cart(self, buyer_id: str, lines: Optional[List[CartLine]] = None) -> CartValidation:
        if lines is None:
            lines = await self.catalog.get_cart_snapshot(buyer_id)
        return await self.validator.validate(buyer_id, lines)

    async def begin_checkout(
        self, validation: CartValidation, request: BeginCheckoutRequest, checkout_id: Optional[str] = None
    ) -> BeginCheckoutResponse:
        """
        Open the payment(s) for a validated cart.

        Passing the ``checkout_id`` of an interrupted earlier attempt resumes
        the payments it already created instead of opening new ones.
        """
        checkout_id = checkout_id or new_id("chk")
        currency = request.currency.upper()
        client_secret = None

        with log_context(checkout_id):
            if request.payment_method == PaymentMethod.GATEWAY:
                record, client_secret = await self.coordinator.begin_gateway_payment(
                    validation.total_cents, currency, validation.buyer_id, checkout_id
                )
                payment_ids = [record.id]
            else:
                payment_ids = []
                for seller_order in validation.orders:
                    record = await self.coordinator.begin_cash_on_delivery(
                        seller_order.total_cents, validation.buyer_id, seller_order.seller_id, currency, checkout_id
                    )
                    payment_ids.append(record.id)

            checkout = self.store.insert_checkout(
                Checkout(
                    id=checkout_id,
                    buyer_id=validation.buyer_id,
                    method=request.payment_method,
                    currency=currency,
                    cart_hash=validation.cart_hash,
                    orders=validation.orders,
                    payment_ids=payment_ids,
                    delivery_address=request.delivery_address,
                    delivery_date=request.delivery_date,
                    special_instructions=request.special_instructions,
                )
            )
            logger.info(
                "checkout %s begun: %s for %d seller(s), total %s %s",
                checkout.id, checkout.method.value, len(checkout.orders), checkout.total_cents, currency,
            )

        return BeginCheckoutResponse(
            payment_handle=checkout.id,
            client_secret=client_secret,
            payment_ids=payment_ids,
            method=checkout.method,
            total_cents=checkout.total_cents,
            currency=currency,
            orders=checkout.orders,
            rejected=validation.rejected,
        )

    async def confirm_checkout(self, handle: str) -> CommitResult:
        checkout = self.store.get_checkout(handle)
        if checkout is None:
            raise NotFound(f"Checkout {handle} not found")

        key = commit_key(checkout.cart_hash, checkout.payment_ids)
        with log_context(handle):
            async with self.locks.hold(f"checkout:{handle}"):
                entry = self.store.get_idempotency(key)
                if entry is not None and entry.response_json is not None:
                    logger.info("checkout %s already committed; returning stored result", handle)
                    return CommitResult.model_validate(entry.response_json)

                if checkout.method == PaymentMethod.GATEWAY:
                    await self.coordinator.confirm(checkout.payment_ids[0])

                payments = [self.coordinator.get(pid) for pid in checkout.payment_ids]
                self.store.reserve_idempotency(key, checkout.cart_hash)
                result = await self.orchestrator.commit(checkout, payments, key)
                self.store.complete_idempotency(key, 200, result.model_dump(mode="json"))
                return result
