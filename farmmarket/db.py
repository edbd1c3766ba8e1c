import json
from contextlib import contextmanager
from typing import Any, Dict, List, Optional, Tuple

import psycopg
from psycopg.rows import dict_row

from .errors import CheckoutError, DuplicateOrderNumber, StaleRecord
from .models import (
    Checkout,
    CompensationEvent,
    IdempotencyEntry,
    Order,
    OrderFilters,
    OrderItem,
    OrderStatus,
    PaymentRecord,
    PaymentTransaction,
)
from .settings import DATABASE_URL
from .store import Store

# Named in SCHEMA so insert_order can tell an order-number clash from a repeated id.
ORDER_NUMBER_CONSTRAINT = "orders_order_number_key"

def order_conflict(order: Order, exc: psycopg.errors.UniqueViolation) -> CheckoutError:
    """Only a clash on the order number is a DuplicateOrderNumber; any other key means the row exists."""
    if exc.diag.constraint_name == ORDER_NUMBER_CONSTRAINT:
        return DuplicateOrderNumber(f"Order number {order.order_number} already taken")
    return StaleRecord(f"Order {order.id} already exists")


SCHEMA = """
CREATE TABLE IF NOT EXISTS payments (
    id TEXT PRIMARY KEY,
    buyer_id TEXT NOT NULL,
    checkout_id TEXT,
    seller_id TEXT,
    amount_cents BIGINT NOT NULL CHECK (amount_cents >= 0),
    currency CHAR(3) NOT NULL,
    method TEXT NOT NULL,
    status TEXT NOT NULL,
    provider_ref TEXT UNIQUE,
    refunded_cents BIGINT NOT NULL DEFAULT 0,
    pending_refund_cents BIGINT NOT NULL DEFAULT 0,
    failure_reason TEXT,
    confirmed_by TEXT,
    version INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    CHECK (refunded_cents + pending_refund_cents <= amount_cents)
);

CREATE TABLE IF NOT EXISTS orders (
    id TEXT PRIMARY KEY,
    order_number TEXT NOT NULL CONSTRAINT orders_order_number_key UNIQUE,
    buyer_id TEXT NOT NULL,
    seller_id TEXT NOT NULL,
    checkout_id TEXT,
    payment_id TEXT NOT NULL REFERENCES payments(id),
    status TEXT NOT NULL,
    payment_status TEXT NOT NULL,
    delivery_address TEXT NOT NULL,
    delivery_date DATE,
    special_instructions TEXT,
    total_cents BIGINT NOT NULL,
    currency CHAR(3) NOT NULL,
    version INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS order_items (
    order_id TEXT NOT NULL REFERENCES orders(id) ON DELETE CASCADE,
    line_index INTEGER NOT NULL,
    product_id TEXT NOT NULL,
    quantity INTEGER NOT NULL CHECK (quantity > 0),
    unit_price_cents BIGINT NOT NULL,
    total_cents BIGINT NOT NULL,
    PRIMARY KEY (order_id, line_index)
);

CREATE TABLE IF NOT EXISTS checkouts (
    id TEXT PRIMARY KEY,
    payload JSONB NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS idempotency_keys (
    idem_key TEXT PRIMARY KEY,
    request_hash TEXT NOT NULL,
    resource_id TEXT,
    status_code INTEGER,
    response_json JSONB,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS payment_transactions (
    id TEXT PRIMARY KEY,
    payment_id TEXT NOT NULL REFERENCES payments(id),
    kind TEXT NOT NULL,
    status TEXT NOT NULL,
    amount_cents BIGINT NOT NULL,
    currency CHAR(3) NOT NULL,
    provider_ref TEXT,
    gateway_transaction_id TEXT,
    reason TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS webhook_events (
    event_id TEXT PRIMARY KEY,
    provider_ref TEXT NOT NULL,
    payload JSONB NOT NULL,
    processed_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS compensation_events (
    id TEXT PRIMARY KEY,
    payload JSONB NOT NULL,
    order_id TEXT,
    payment_id TEXT,
    status TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

ALTER TABLE idempotency_keys ADD COLUMN IF NOT EXISTS resource_id TEXT;

CREATE INDEX IF NOT EXISTS payments_checkout_idx ON payments(checkout_id);
CREATE INDEX IF NOT EXISTS payment_transactions_payment_idx ON payment_transactions(payment_id, created_at);
CREATE INDEX IF NOT EXISTS orders_payment_idx ON orders(payment_id);
CREATE INDEX IF NOT EXISTS orders_checkout_idx ON orders(checkout_id);
CREATE INDEX IF NOT EXISTS orders_buyer_idx ON orders(buyer_id, created_at DESC);
CREATE INDEX IF NOT EXISTS orders_seller_idx ON orders(seller_id, created_at DESC);
"""

PAYMENT_COLUMNS = (
    "id, buyer_id, checkout_id, seller_id, amount_cents, currency, method, status, provider_ref, "
    "refunded_cents, pending_refund_cents, failure_reason, confirmed_by, version, created_at, updated_at"
)

ORDER_COLUMNS = (
    "id, order_number, buyer_id, seller_id, checkout_id, payment_id, status, payment_status, "
    "delivery_address, delivery_date, special_instructions, total_cents, currency, version, created_at, updated_at"
)


@contextmanager
def get_conn(dsn: str = DATABASE_URL):
    conn = psycopg.connect(dsn, row_factory=dict_row)
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_schema(dsn: str = DATABASE_URL) -> None:
    with get_conn(dsn) as conn:
        conn.execute(SCHEMA)


def _payment(row) -> PaymentRecord:
    return PaymentRecord.model_validate(row)


class PostgresStore(Store):
    def __init__(self, dsn: str = DATABASE_URL):
        self.dsn = dsn

    # payments -------------------------------------------------------------

    def insert_payment(self, payment: PaymentRecord) -> PaymentRecord:
        data = payment.model_dump(mode="json")
        with get_conn(self.dsn) as conn:
            try:
                conn.execute(
                    f"INSERT INTO payments({PAYMENT_COLUMNS}) VALUES ("
                    "%(id)s, %(buyer_id)s, %(checkout_id)s, %(seller_id)s, %(amount_cents)s, %(currency)s, "
                    "%(method)s, %(status)s, %(provider_ref)s, %(refunded_cents)s, %(pending_refund_cents)s, "
                    "%(failure_reason)s, %(confirmed_by)s, %(version)s, %(created_at)s, %(updated_at)s)",
                    data,
                )
            except psycopg.errors.UniqueViolation as exc:
                raise StaleRecord(f"Payment {payment.id} conflicts with an existing row") from exc
        return payment

    def get_payment(self, payment_id: str) -> Optional[PaymentRecord]:
        with get_conn(self.dsn) as conn:
            row = conn.execute(f"SELECT {PAYMENT_COLUMNS} FROM payments WHERE id = %s", (payment_id,)).fetchone()
        return _payment(row) if row else None

    def get_payment_by_provider_ref(self, provider_ref: str) -> Optional[PaymentRecord]:
        with get_conn(self.dsn) as conn:
            row = conn.execute(
                f"SELECT {PAYMENT_COLUMNS} FROM payments WHERE provider_ref = %s", (provider_ref,)
            ).fetchone()
        return _payment(row) if row else None

    def update_payment(self, payment: PaymentRecord) -> PaymentRecord:
        data = payment.model_dump(mode="json")
        with get_conn(self.dsn) as conn:
            try:
                row = conn.execute(
                    "UPDATE payments SET status = %(status)s, provider_ref = %(provider_ref)s, "
                    "refunded_cents = %(refunded_cents)s, pending_refund_cents = %(pending_refund_cents)s, "
                    "failure_reason = %(failure_reason)s, confirmed_by = %(confirmed_by)s, "
                    "version = version + 1, updated_at = NOW() "
                    f"WHERE id = %(id)s AND version = %(version)s RETURNING {PAYMENT_COLUMNS}",
                    data,
                ).fetchone()
            except psycopg.errors.UniqueViolation as exc:
                raise StaleRecord(f"Provider reference {payment.provider_ref} already linked") from exc
        if not row:
            raise StaleRecord(f"Payment {payment.id} changed concurrently")
        return _payment(row)

    def payments_for_checkout(self, checkout_id: str) -> List[PaymentRecord]:
        with get_conn(self.dsn) as conn:
            rows = conn.execute(
                f"SELECT {PAYMENT_COLUMNS} FROM payments WHERE checkout_id = %s ORDER BY created_at", (checkout_id,)
            ).fetchall()
        return [_payment(r) for r in rows]

    def list_payments(self, buyer_id: Optional[str], page: int, limit: int) -> Tuple[List[PaymentRecord], int]:
        where, params = ("WHERE buyer_id = %s", [buyer_id]) if buyer_id else ("", [])
        with get_conn(self.dsn) as conn:
            rows = conn.execute(
                f"SELECT {PAYMENT_COLUMNS} FROM payments {where} ORDER BY created_at DESC LIMIT %s OFFSET %s",
                (*params, limit, (page - 1) * limit),
            ).fetchall()
            total = conn.execute(f"SELECT COUNT(*) AS n FROM payments {where}", params).fetchone()["n"]
        return [_payment(r) for r in rows], total

    def payment_stats(self) -> Dict[str, Any]:
        with get_conn(self.dsn) as conn:
            totals = conn.execute(
                "SELECT COUNT(*) AS total_payments, "
                "COALESCE(SUM(amount_cents), 0) AS total_amount_cents, "
                "COALESCE(SUM(CASE WHEN status IN ('paid', 'cash_on_delivery_confirmed', 'refund_requested') "
                "THEN amount_cents ELSE 0 END), 0) AS successful_amount_cents, "
                "COALESCE(SUM(refunded_cents), 0) AS refunded_amount_cents "
                "FROM payments"
            ).fetchone()
            by_status = conn.execute("SELECT status, COUNT(*) AS n FROM payments GROUP BY status").fetchall()
            by_method = conn.execute("SELECT method, COUNT(*) AS n FROM payments GROUP BY method").fetchall()
        stats = dict(totals)
        stats["by_status"] = {r["status"]: r["n"] for r in by_status}
        stats["by_method"] = {r["method"]: r["n"] for r in by_method}
        return stats

    # orders ---------------------------------------------------------------

    def insert_order(self, order: Order) -> Order:
        data = order.model_dump(mode="json")
        with get_conn(self.dsn) as conn:
            try:
                conn.execute(
                    f"INSERT INTO orders({ORDER_COLUMNS}) VALUES ("
                    "%(id)s, %(order_number)s, %(buyer_id)s, %(seller_id)s, %(checkout_id)s, %(payment_id)s, "
                    "%(status)s, %(payment_status)s, %(delivery_address)s, %(delivery_date)s, "
                    "%(special_instructions)s, %(total_cents)s, %(currency)s, %(version)s, "
                    "%(created_at)s, %(updated_at)s)",
                    data,
                )
            except psycopg.errors.UniqueViolation as exc:
                raise order_conflict(order, exc) from exc
            for item in order.items:
                conn.execute(
                    "INSERT INTO order_items(order_id, line_index, product_id, quantity, unit_price_cents, total_cents) "
                    "VALUES (%s, %s, %s, %s, %s, %s)",
                    (order.id, item.line_index, item.product_id, item.quantity, item.unit_price_cents, item.total_cents),
                )
        return order

    def _load_orders(self, conn, rows) -> List[Order]:
        if not rows:
            return []
        ids = [r["id"] for r in rows]
        items = conn.execute(
            "SELECT order_id, line_index, product_id, quantity, unit_price_cents, total_cents "
            "FROM order_items WHERE order_id = ANY(%s) ORDER BY order_id, line_index",
            (ids,),
        ).fetchall()
        grouped: Dict[str, List[OrderItem]] = {order_id: [] for order_id in ids}
        for item in items:
            grouped[item.pop("order_id")].append(OrderItem.model_validate(item))
        return [Order.model_validate({**r, "items": grouped[r["id"]]}) for r in rows]

    def get_order(self, order_id: str) -> Optional[Order]:
        with get_conn(self.dsn) as conn:
            row = conn.execute(f"SELECT {ORDER_COLUMNS} FROM orders WHERE id = %s", (order_id,)).fetchone()
            orders = self._load_orders(conn, [row] if row else [])
        return orders[0] if orders else None

    def update_order(self, order: Order) -> Order:
        with get_conn(self.dsn) as conn:
            row = conn.execute(
                "UPDATE orders SET status = %s, payment_status = %s, version = version + 1, updated_at = NOW() "
                f"WHERE id = %s AND version = %s RETURNING {ORDER_COLUMNS}",
                (order.status.value, order.payment_status.value, order.id, order.version),
            ).fetchone()
            if not row:
                raise StaleRecord(f"Order {order.id} changed concurrently")
            return self._load_orders(conn, [row])[0]

    def list_orders(self, filters: OrderFilters, page: int, limit: int) -> Tuple[List[Order], int]:
        conditions, params = [], []
        for column, value in filters.model_dump(mode="json").items():
            if value is not None:
                conditions.append(f"{column} = %s")
                params.append(value)
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        with get_conn(self.dsn) as conn:
            rows = conn.execute(
                f"SELECT {ORDER_COLUMNS} FROM orders {where} ORDER BY created_at DESC LIMIT %s OFFSET %s",
                (*params, limit, (page - 1) * limit),
            ).fetchall()
            total = conn.execute(f"SELECT COUNT(*) AS n FROM orders {where}", params).fetchone()["n"]
            return self._load_orders(conn, rows), total

    def _orders_where(self, column: str, value: str) -> List[Order]:
        with get_conn(self.dsn) as conn:
            rows = conn.execute(
                f"SELECT {ORDER_COLUMNS} FROM orders WHERE {column} = %s ORDER BY created_at", (value,)
            ).fetchall()
            return self._load_orders(conn, rows)

    def orders_for_payment(self, payment_id: str) -> List[Order]:
        return self._orders_where("payment_id", payment_id)

    def orders_for_checkout(self, checkout_id: str) -> List[Order]:
        return self._orders_where("checkout_id", checkout_id)

    def order_stats(self, buyer_id: Optional[str] = None, seller_id: Optional[str] = None) -> Dict[str, Any]:
        conditions, params = [], []
        if buyer_id:
            conditions.append("buyer_id = %s")
            params.append(buyer_id)
        if seller_id:
            conditions.append("seller_id = %s")
            params.append(seller_id)
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        not_cancelled = " AND ".join(conditions + ["status != 'cancelled'"])
        counts = ", ".join(
            f"COUNT(CASE WHEN status = '{s.value}' THEN 1 END) AS {s.value}_orders" for s in OrderStatus
        )
        with get_conn(self.dsn) as conn:
            stats = conn.execute(
                f"SELECT COUNT(*) AS total_orders, {counts}, "
                "COALESCE(SUM(CASE WHEN status != 'cancelled' THEN total_cents END), 0) AS total_revenue_cents "
                f"FROM orders {where}",
                params,
            ).fetchone()
            months = conn.execute(
                "SELECT TO_CHAR(created_at, 'YYYY-MM') AS month, COALESCE(SUM(total_cents), 0) AS revenue_cents "
                f"FROM orders WHERE {not_cancelled} "
                "GROUP BY TO_CHAR(created_at, 'YYYY-MM') ORDER BY month DESC LIMIT 6",
                params,
            ).fetchall()
        result = dict(stats)
        result["revenue_by_month"] = [dict(m) for m in months]
        return result

    # checkouts ------------------------------------------------------------

    def insert_checkout(self, checkout: Checkout) -> Checkout:
        with get_conn(self.dsn) as conn:
            conn.execute(
                "INSERT INTO checkouts(id, payload) VALUES (%s, %s) "
                "ON CONFLICT (id) DO UPDATE SET payload = EXCLUDED.payload",
                (checkout.id, checkout.model_dump_json()),
            )
        return checkout

    def get_checkout(self, checkout_id: str) -> Optional[Checkout]:
        with get_conn(self.dsn) as conn:
            row = conn.execute("SELECT payload FROM checkouts WHERE id = %s", (checkout_id,)).fetchone()
        return Checkout.model_validate(row["payload"]) if row else None

    # idempotency ----------------------------------------------------------

    def get_idempotency(self, idem_key: str) -> Optional[IdempotencyEntry]:
        with get_conn(self.dsn) as conn:
            row = conn.execute(
                "SELECT idem_key, request_hash, resource_id, status_code, response_json "
                "FROM idempotency_keys WHERE idem_key = %s",
                (idem_key,),
            ).fetchone()
        return IdempotencyEntry.model_validate(row) if row else None

    def reserve_idempotency(self, idem_key: str, request_hash: str, resource_id: Optional[str] = None) -> bool:
        with get_conn(self.dsn) as conn:
            row = conn.execute(
                "INSERT INTO idempotency_keys(idem_key, request_hash, resource_id) VALUES (%s, %s, %s) "
                "ON CONFLICT (idem_key) DO NOTHING RETURNING idem_key",
                (idem_key, request_hash, resource_id),
            ).fetchone()
        return row is not None

    def complete_idempotency(self, idem_key: str, status_code: int, response: Dict[str, Any]) -> None:
        with get_conn(self.dsn) as conn:
            conn.execute(
                "UPDATE idempotency_keys SET status_code = %s, response_json = %s, updated_at = NOW() "
                "WHERE idem_key = %s",
                (status_code, json.dumps(response), idem_key),
            )

    # webhook events -------------------------------------------------------

    def webhook_event_seen(self, event_id: str) -> bool:
        with get_conn(self.dsn) as conn:
            row = conn.execute("SELECT event_id FROM webhook_events WHERE event_id = %s", (event_id,)).fetchone()
        return row is not None

    def record_webhook_event(self, event_id: str, provider_ref: str, payload: Dict[str, Any]) -> bool:
        with get_conn(self.dsn) as conn:
            row = conn.execute(
                "INSERT INTO webhook_events(event_id, provider_ref, payload) VALUES (%s, %s, %s) "
                "ON CONFLICT (event_id) DO NOTHING RETURNING event_id",
                (event_id, provider_ref, json.dumps(payload)),
            ).fetchone()
        return row is not None

    # payment transactions ------------------------------------------------

    def add_transaction(self, transaction: PaymentTransaction) -> PaymentTransaction:
        with get_conn(self.dsn) as conn:
            conn.execute(
                "INSERT INTO payment_transactions(id, payment_id, kind, status, amount_cents, currency, "
                "provider_ref, gateway_transaction_id, reason, created_at) VALUES ("
                "%(id)s, %(payment_id)s, %(kind)s, %(status)s, %(amount_cents)s, %(currency)s, "
                "%(provider_ref)s, %(gateway_transaction_id)s, %(reason)s, %(created_at)s)",
                transaction.model_dump(mode="json"),
            )
        return transaction

    def list_transactions(self, payment_id: str) -> List[PaymentTransaction]:
        with get_conn(self.dsn) as conn:
            rows = conn.execute(
                "SELECT id, payment_id, kind, status, amount_cents, currency, provider_ref, "
                "gateway_transaction_id, reason, created_at FROM payment_transactions "
                "WHERE payment_id = %s ORDER BY created_at",
                (payment_id,),
            ).fetchall()
        return [PaymentTransaction.model_validate(r) for r in rows]

    # compensations --------------------------------------------------------

    def add_compensation(self, event: CompensationEvent) -> CompensationEvent:
        with get_conn(self.dsn) as conn:
            conn.execute(
                "INSERT INTO compensation_events(id, payload, order_id, payment_id, status) "
                "VALUES (%s, %s, %s, %s, %s)",
                (event.id, event.model_dump_json(), event.order_id, event.payment_id, event.status),
            )
        return event

    def update_compensation(self, event: CompensationEvent) -> CompensationEvent:
        with get_conn(self.dsn) as conn:
            conn.execute(
                "UPDATE compensation_events SET payload = %s, status = %s, updated_at = NOW() WHERE id = %s",
                (event.model_dump_json(), event.status, event.id),
            )
        return event

    def list_compensations(
        self,
        order_id: Optional[str] = None,
        payment_id: Optional[str] = None,
        status: Optional[str] = None,
    ) -> List[CompensationEvent]:
        conditions, params = [], []
        for column, value in (("order_id", order_id), ("payment_id", payment_id), ("status", status)):
            if value is not None:
                conditions.append(f"{column} = %s")
                params.append(value)
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        with get_conn(self.dsn) as conn:
            rows = conn.execute(
                f"SELECT payload FROM compensation_events {where} ORDER BY created_at", params
            ).fetchall()
        return [CompensationEvent.model_validate(r["payload"]) for r in rows]
