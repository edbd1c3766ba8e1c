import hashlib
import hmac
import json
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .container import Container, build_container
from .errors import CheckoutError, Forbidden, IdempotencyMismatch, InvalidSignature, MalformedPayload
from .hashing import sha256_json
from .logging_config import setup_logging
from .models import (
    ActorRole,
    BeginCheckoutRequest,
    BeginCheckoutResponse,
    CartValidation,
    CodConfirmRequest,
    CommitResult,
    CompensationEvent,
    Order,
    OrderFilters,
    OrderPage,
    OrderStatus,
    Pagination,
    PaymentDetails,
    PaymentMirror,
    PaymentPage,
    PaymentRecord,
    ProviderWebhook,
    RefundRequest,
    StatusUpdateRequest,
    ValidateCartRequest,
    WebhookAck,
    new_id,
)
from .settings import SIMULATOR_ENABLED, WEBHOOK_SECRET

logger = logging.getLogger(__name__)

router = APIRouter()

PAYMENT_METHODS = [
    {"name": "Card payment", "type": "gateway", "gateways": ["provider"]},
    {"name": "Cash on Delivery", "type": "cash_on_delivery", "gateways": ["none"]},
]


def get_container(request: Request) -> Container:
    return request.app.state.container


def require_admin(role: ActorRole) -> None:
    if role not in (ActorRole.ADMIN, ActorRole.SYSTEM):
        raise Forbidden("Admin access required")


def verify_signature(raw: bytes, signature: Optional[str], secret: str = WEBHOOK_SECRET) -> None:
    """HMAC-SHA256 of the raw body, hex encoded. Disabled when no secret is configured."""
    if not secret:
        return
    if not signature:
        raise InvalidSignature("Missing X-Provider-Signature header")
    expected = hmac.new(secret.encode("utf-8"), raw, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, signature):
        raise InvalidSignature("Webhook signature mismatch")


@router.get("/health")
def health():
    return {"ok": True}


# -- checkout ---------------------------------------------------------------

@router.post("/checkout/validate", response_model=CartValidation)
async def validate_cart(req: ValidateCartRequest, c: Container = Depends(get_container)):
    return await c.checkout.validate_cart(req.buyer_id, req.lines)


@router.post("/checkout/begin", response_model=BeginCheckoutResponse)
async def begin_checkout(
    req: BeginCheckoutRequest,
    idempotency_key: str = Header(None, alias="Idempotency-Key"),
    c: Container = Depends(get_container),
):
    if not idempotency_key:
        raise HTTPException(status_code=400, detail="Missing Idempotency-Key header")

    idem_key = f"begin:{idempotency_key}"
    request_hash = sha256_json(req.model_dump(mode="json"))

    # 1) Idempotency lookup
    existing = c.store.get_idempotency(idem_key)
    if existing:
        if existing.request_hash != request_hash:
            raise IdempotencyMismatch("Idempotency-Key reuse with different request body")
        if existing.status_code and existing.response_json is not None:
            return JSONResponse(status_code=existing.status_code, content=existing.response_json)

    # 2) Reserve idempotency key (insert if new) bound to the checkout it opens
    if existing and existing.resource_id:
        checkout_id = existing.resource_id
        logger.info("resuming checkout %s for a retried begin", checkout_id)
    else:
        checkout_id = new_id("chk")
        c.store.reserve_idempotency(idem_key, request_hash, checkout_id)

    # 3) Validate and open the payment
    validation = await c.checkout.validate_cart(req.buyer_id, req.lines)
    resp = await c.checkout.begin_checkout(validation, req, checkout_id)

    # 4) Store idempotent response
    c.store.complete_idempotency(idem_key, 200, resp.model_dump(mode="json"))
    return resp


@router.post("/checkout/{handle}/confirm", response_model=CommitResult)
async def confirm_checkout(handle: str, c: Container = Depends(get_container)):
    return await c.checkout.confirm_checkout(handle)


# -- provider notifications -------------------------------------------------

@router.post("/webhooks/provider", response_model=WebhookAck)
async def provider_webhook(
    request: Request,
    signature: Optional[str] = Header(None, alias="X-Provider-Signature"),
    c: Container = Depends(get_container),
):
    """
    Replay-safe: a notification already processed is acknowledged as a duplicate.
    """
    raw = await request.body()
    verify_signature(raw, signature)
    try:
        payload = ProviderWebhook.model_validate(json.loads(raw))
    except ValueError as exc:
        logger.warning("malformed provider notification rejected: %s", exc)
        if isinstance(exc, ValidationError):
            errors = [{"loc": list(e["loc"]), "msg": e["msg"]} for e in exc.errors()]
            raise MalformedPayload("Invalid notification payload", errors=errors) from exc
        raise MalformedPayload("Notification body is not valid JSON") from exc
    return await c.reconciliation.handle_webhook(payload)


# -- payments ---------------------------------------------------------------

@router.get("/payments/methods")
def payment_methods():
    return {"methods": PAYMENT_METHODS}


@router.get("/payments/stats")
def payment_stats(actor_role: ActorRole, c: Container = Depends(get_container)):
    require_admin(actor_role)
    return c.store.payment_stats()


@router.get("/payments", response_model=PaymentPage)
def list_payments(
    actor_id: str,
    actor_role: ActorRole,
    buyer_id: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    c: Container = Depends(get_container),
):
    if actor_role == ActorRole.BUYER:
        buyer_id = actor_id
    elif actor_role == ActorRole.SELLER:
        raise Forbidden("Sellers see payments through their orders")
    items, total = c.store.list_payments(buyer_id, page, limit)
    return PaymentPage(items=items, pagination=Pagination.build(page, limit, total))


@router.get("/payments/{payment_id}", response_model=PaymentDetails)
def get_payment(payment_id: str, actor_id: str, actor_role: ActorRole, c: Container = Depends(get_container)):
    return c.orders.payment_details(payment_id, actor_id, actor_role)


@router.post("/payments/{payment_id}/reconcile", response_model=PaymentRecord)
async def reconcile_payment(payment_id: str, c: Container = Depends(get_container)):
    return await c.reconciliation.poll(payment_id)


@router.post("/payments/{payment_id}/cod/confirm", response_model=PaymentRecord)
async def confirm_cash_on_delivery(payment_id: str, req: CodConfirmRequest, c: Container = Depends(get_container)):
    payment = c.coordinator.get(payment_id)
    if req.actor_role == ActorRole.BUYER:
        raise Forbidden("Only the seller or an admin can confirm cash on delivery")
    if req.actor_role == ActorRole.SELLER and payment.seller_id != req.actor_id:
        raise Forbidden("Access denied")
    return await c.coordinator.confirm_cash_on_delivery(payment_id, req.actor_id)


@router.post("/payments/{payment_id}/refund", response_model=PaymentRecord)
async def refund_payment(payment_id: str, req: RefundRequest, c: Container = Depends(get_container)):
    require_admin(req.actor_role)
    return await c.coordinator.refund(payment_id, req.amount_cents, req.reason)


# -- orders -----------------------------------------------------------------

@router.get("/orders/stats")
def order_stats(actor_id: str, actor_role: ActorRole, c: Container = Depends(get_container)):
    return c.orders.statistics(actor_id, actor_role)


@router.get("/orders", response_model=OrderPage)
def list_orders(
    actor_id: str,
    actor_role: ActorRole,
    buyer_id: Optional[str] = None,
    seller_id: Optional[str] = None,
    status: Optional[OrderStatus] = None,
    payment_status: Optional[PaymentMirror] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    c: Container = Depends(get_container),
):
    filters = OrderFilters(buyer_id=buyer_id, seller_id=seller_id, status=status, payment_status=payment_status)
    return c.orders.list_orders(filters, actor_id, actor_role, page, limit)


@router.get("/orders/{order_id}", response_model=Order)
def get_order(order_id: str, actor_id: str, actor_role: ActorRole, c: Container = Depends(get_container)):
    return c.orders.get_order(order_id, actor_id, actor_role)


@router.get("/orders/{order_id}/payment", response_model=PaymentDetails)
def order_payment(order_id: str, actor_id: str, actor_role: ActorRole, c: Container = Depends(get_container)):
    return c.orders.payment_for_order(order_id, actor_id, actor_role)


@router.put("/orders/{order_id}/status", response_model=Order)
async def update_order_status(order_id: str, req: StatusUpdateRequest, c: Container = Depends(get_container)):
    return await c.orders.update_status(order_id, req.status, req.actor_id, req.actor_role)


@router.get("/orders/{order_id}/compensations", response_model=List[CompensationEvent])
def order_compensations(order_id: str, actor_id: str, actor_role: ActorRole, c: Container = Depends(get_container)):
    return c.orders.compensations(order_id, actor_id, actor_role)


@router.post("/compensations/retry", response_model=List[CompensationEvent])
async def retry_compensations(actor_role: ActorRole, c: Container = Depends(get_container)):
    require_admin(actor_role)
    return await c.ledger.retry_pending()


def create_app(container: Optional[Container] = None) -> FastAPI:
    setup_logging()
    app = FastAPI(title="Farm Market Checkout", version="0.1.0")
    app.state.container = container or build_container()

    @app.exception_handler(CheckoutError)
    async def checkout_error_handler(request: Request, exc: CheckoutError):
        if exc.status_code >= 500:
            logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    app.include_router(router)
    if SIMULATOR_ENABLED:
        from .simulator import router as simulator_router

        app.include_router(simulator_router)
    return app


app = create_app()
