from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from .settings import DEFAULT_CURRENCY


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex}"


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    INITIATED = "initiated"
    AUTHORIZED = "authorized"
    DECLINED = "declined"
    PAID = "paid"
    REFUND_REQUESTED = "refund_requested"
    REFUNDED = "refunded"
    COD_PENDING = "cash_on_delivery_pending"
    COD_CONFIRMED = "cash_on_delivery_confirmed"
    CANCELLED = "cancelled"


class PaymentMirror(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    GATEWAY = "gateway"
    COD = "cash_on_delivery"


class ActorRole(str, Enum):
    BUYER = "buyer"
    SELLER = "seller"
    ADMIN = "admin"
    SYSTEM = "system"


RejectionReason = Literal[
    "invalid_seller",
    "invalid_product",
    "invalid_quantity",
    "withdrawn",
    "seller_mismatch",
    "below_minimum",
    "insufficient_stock",
]

CompensationKind = Literal[
    "stock_restore", "partial_refund", "cod_cancel", "payment_cancel", "order_cancel", "manual_review"
]
CompensationStatus = Literal["applied", "pending", "failed"]
TransactionKind = Literal["charge", "capture", "refund", "cash_collected", "cancel"]


# ---------------------------------------------------------------------------
# Cart and catalog
# ---------------------------------------------------------------------------

class CartLine(BaseModel):
    product_id: str
    seller_id: str
    quantity: int
    unit_price_cents: int = Field(ge=0)


class CatalogQuote(BaseModel):
    product_id: str
    seller_id: Optional[str] = None
    price_cents: int = Field(ge=0)
    available_quantity: int = Field(ge=0)
    withdrawn: bool = False
    min_order_quantity: int = Field(default=1, ge=1)


class StockResult(BaseModel):
    product_id: str
    outcome: Literal["ok", "conflict"]
    available_quantity: Optional[int] = None


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class ValidatedLine(BaseModel):
    line_index: int
    product_id: str
    quantity: int = Field(gt=0)
    unit_price_cents: int = Field(ge=0)
    line_total_cents: int = Field(ge=0)
    price_changed: bool = False

    @model_validator(mode="after")
    def _total_matches(self):
        if self.line_total_cents != self.unit_price_cents * self.quantity:
            raise ValueError("line total must equal unit price times quantity")
        return self


class RejectedLine(BaseModel):
    line_index: int
    product_id: str
    seller_id: str
    quantity: int
    reason: RejectionReason
    message: str


class ValidatedSellerOrder(BaseModel):
    seller_order_key: str
    seller_id: str
    lines: List[ValidatedLine]
    rejected: List[RejectedLine] = Field(default_factory=list)
    total_cents: int = Field(ge=0)

    @model_validator(mode="after")
    def _total_is_sum_of_lines(self):
        if self.total_cents != sum(line.line_total_cents for line in self.lines):
            raise ValueError("order total must equal the sum of its line totals")
        return self

    @property
    def is_valid(self) -> bool:
        return bool(self.lines)

    @property
    def is_partial(self) -> bool:
        return bool(self.lines) and bool(self.rejected)


class CartValidation(BaseModel):
    buyer_id: str
    cart_hash: str
    orders: List[ValidatedSellerOrder]
    rejected: List[RejectedLine] = Field(default_factory=list)

    @property
    def total_cents(self) -> int:
        return sum(o.total_cents for o in self.orders)


# ---------------------------------------------------------------------------
# Persisted aggregates
# ---------------------------------------------------------------------------

class PaymentRecord(BaseModel):
    id: str
    buyer_id: str
    checkout_id: Optional[str] = None
    seller_id: Optional[str] = None
    amount_cents: int = Field(ge=0)
    currency: str = Field(default=DEFAULT_CURRENCY, min_length=3, max_length=3)
    method: PaymentMethod
    status: PaymentStatus = PaymentStatus.INITIATED
    provider_ref: Optional[str] = None
    refunded_cents: int = Field(default=0, ge=0)
    pending_refund_cents: int = Field(default=0, ge=0)
    failure_reason: Optional[str] = None
    confirmed_by: Optional[str] = None
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _refund_within_amount(self):
        if self.refunded_cents + self.pending_refund_cents > self.amount_cents:
            raise ValueError("refunded amount cannot exceed the payment amount")
        return self

    @property
    def refundable_cents(self) -> int:
        return self.amount_cents - self.refunded_cents - self.pending_refund_cents


class OrderItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    line_index: int
    product_id: str
    quantity: int = Field(gt=0)
    unit_price_cents: int = Field(ge=0)
    total_cents: int = Field(ge=0)


class Order(BaseModel):
    id: str
    order_number: str
    buyer_id: str
    seller_id: str
    checkout_id: Optional[str] = None
    payment_id: str
    status: OrderStatus = OrderStatus.PENDING
    payment_status: PaymentMirror = PaymentMirror.PENDING
    delivery_address: str
    delivery_date: Optional[date] = None
    special_instructions: Optional[str] = None
    items: List[OrderItem]
    total_cents: int = Field(ge=0)
    currency: str = DEFAULT_CURRENCY
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _total_is_sum_of_items(self):
        if self.total_cents != sum(item.total_cents for item in self.items):
            raise ValueError("order total must equal the sum of its items")
        return self


class Checkout(BaseModel):
    id: str
    buyer_id: str
    method: PaymentMethod
    currency: str
    cart_hash: str
    orders: List[ValidatedSellerOrder]
    payment_ids: List[str]
    delivery_address: str
    delivery_date: Optional[date] = None
    special_instructions: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def total_cents(self) -> int:
        return sum(o.total_cents for o in self.orders)


class CompensationEvent(BaseModel):
    id: str
    kind: CompensationKind
    status: CompensationStatus
    reason: str
    payment_id: Optional[str] = None
    order_id: Optional[str] = None
    seller_id: Optional[str] = None
    amount_cents: Optional[int] = None
    attempts: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class PaymentTransaction(BaseModel):
    """Append-only record of one money movement on a payment."""

    id: str
    payment_id: str
    kind: TransactionKind
    status: Literal["success", "failed"]
    amount_cents: int = Field(ge=0)
    currency: str
    provider_ref: Optional[str] = None
    gateway_transaction_id: Optional[str] = None
    reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class IdempotencyEntry(BaseModel):
    idem_key: str
    request_hash: str
    resource_id: Optional[str] = None
    status_code: Optional[int] = None
    response_json: Optional[Dict[str, Any]] = None


class RejectedSeller(BaseModel):
    seller_id: str
    seller_order_key: str
    code: str
    reason: str
    refund_cents: int = 0
    compensation_status: Optional[CompensationStatus] = None


class CommitResult(BaseModel):
    checkout_id: str
    committed_orders: List[Order]
    rejected_sellers: List[RejectedSeller] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# API payloads
# ---------------------------------------------------------------------------

class ValidateCartRequest(BaseModel):
    buyer_id: str = Field(min_length=1)
    lines: Optional[List[CartLine]] = None


class BeginCheckoutRequest(BaseModel):
    buyer_id: str = Field(min_length=1)
    payment_method: PaymentMethod
    currency: str = Field(default=DEFAULT_CURRENCY, min_length=3, max_length=3)
    delivery_address: str = Field(min_length=1)
    delivery_date: Optional[date] = None
    special_instructions: Optional[str] = None
    lines: Optional[List[CartLine]] = None


class BeginCheckoutResponse(BaseModel):
    payment_handle: str
    client_secret: Optional[str] = None
    payment_ids: List[str]
    method: PaymentMethod
    total_cents: int
    currency: str
    orders: List[ValidatedSellerOrder]
    rejected: List[RejectedLine] = Field(default_factory=list)


NotificationStatus = Literal["authorized", "succeeded", "declined", "refunded", "partially_refunded"]


class ProviderWebhook(BaseModel):
    """Inbound provider notification. Accepts snake_case or camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    provider_ref: str = Field(min_length=1)
    event_type: str = Field(min_length=1)
    amount: int = Field(ge=0)
    status: NotificationStatus
    event_id: Optional[str] = None


class WebhookAck(BaseModel):
    ok: bool = True
    duplicate: bool = False
    applied: Optional[PaymentStatus] = None


class StatusUpdateRequest(BaseModel):
    status: OrderStatus
    actor_id: str = Field(min_length=1)
    actor_role: ActorRole


class CodConfirmRequest(BaseModel):
    actor_id: str = Field(min_length=1)
    actor_role: ActorRole


class RefundRequest(BaseModel):
    amount_cents: int = Field(gt=0)
    reason: str = Field(min_length=1)
    actor_role: ActorRole


class OrderFilters(BaseModel):
    buyer_id: Optional[str] = None
    seller_id: Optional[str] = None
    status: Optional[OrderStatus] = None
    payment_status: Optional[PaymentMirror] = None


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int
    has_next: bool
    has_prev: bool

    @classmethod
    def build(cls, page: int, limit: int, total: int) -> "Pagination":
        pages = (total + limit - 1) // limit if limit else 0
        return cls(page=page, limit=limit, total=total, pages=pages, has_next=page < pages, has_prev=page > 1)


class OrderPage(BaseModel):
    items: List[Order]
    pagination: Pagination


class PaymentPage(BaseModel):
    items: List[PaymentRecord]
    pagination: Pagination


class PaymentDetails(BaseModel):
    payment: PaymentRecord
    transactions: List[PaymentTransaction]
