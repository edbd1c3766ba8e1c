"""HTTP surface tests through FastAPI's TestClient."""

import hashlib
import hmac
import json

import pytest

from conftest import BUYER, OTHER_BUYER, P_A1, P_B1, SELLER_A, SELLER_B
from farmmarket.errors import InvalidSignature
from farmmarket.main import verify_signature

CART = [
    {"product_id": P_A1, "seller_id": SELLER_A, "quantity": 2, "unit_price_cents": 1000},
    {"product_id": P_B1, "seller_id": SELLER_B, "quantity": 1, "unit_price_cents": 100},
]


def begin_body(**overrides):
    body = {
        "buyer_id": BUYER,
        "payment_method": "gateway",
        "currency": "usd",
        "delivery_address": "12 Orchard Lane",
        "lines": CART,
    }
    body.update(overrides)
    return body


def begin(client, key="idem-1", **overrides):
    return client.post("/checkout/begin", json=begin_body(**overrides), headers={"Idempotency-Key": key})


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"ok": True}


def test_validate_returns_seller_orders(client):
    r = client.post("/checkout/validate", json={"buyer_id": BUYER, "lines": CART})

    assert r.status_code == 200
    body = r.json()
    assert [o["seller_id"] for o in body["orders"]] == [SELLER_A, SELLER_B]
    assert body["rejected"] == []


def test_validate_rejects_cart_with_nothing_orderable(client):
    bad = [{"product_id": P_B1, "seller_id": SELLER_B, "quantity": 99, "unit_price_cents": 100}]

    r = client.post("/checkout/validate", json={"buyer_id": BUYER, "lines": bad})

    assert r.status_code == 422
    body = r.json()
    assert body["code"] == "validation_rejected"
    assert body["details"]["rejected"][0]["reason"] == "insufficient_stock"


def test_begin_requires_idempotency_key(client):
    r = client.post("/checkout/begin", json=begin_body())

    assert r.status_code == 400
    assert r.json()["detail"] == "Missing Idempotency-Key header"


def test_begin_replays_stored_response(client, provider):
    first = begin(client)
    second = begin(client)

    assert first.status_code == 200
    assert second.json() == first.json()
    assert first.json()["total_cents"] == 2100
    assert first.json()["currency"] == "USD"
    assert first.json()["client_secret"]
    assert provider.count("create_charge") == 1


def test_begin_key_reuse_with_different_body_conflicts(client):
    begin(client)

    r = begin(client, currency="eur")

    assert r.status_code == 409
    assert r.json()["code"] == "idempotency_mismatch"


def test_begin_outage_is_retryable_with_same_key(client, store, provider):
    provider.next_create = "timeout"

    failed = begin(client)
    retried = begin(client)

    assert failed.status_code == 503
    assert failed.json()["code"] == "provider_unavailable"
    assert retried.status_code == 200
    (payment,) = store.payments.values()
    assert retried.json()["payment_ids"] == [payment.id]
    assert payment.status.value == "authorized"
    assert [call["key"] for call in provider.calls if call["method"] == "create_charge"] == [payment.id, payment.id]


def test_confirm_commits_and_is_idempotent(client, store):
    handle = begin(client).json()["payment_handle"]

    first = client.post(f"/checkout/{handle}/confirm")
    second = client.post(f"/checkout/{handle}/confirm")

    assert first.status_code == 200
    assert len(first.json()["committed_orders"]) == 2
    assert second.json() == first.json()
    assert len(store.orders) == 2


def test_confirm_unknown_handle(client):
    r = client.post("/checkout/chk_missing/confirm")
    assert r.status_code == 404
    assert r.json()["code"] == "not_found"


def test_declined_confirm_is_payment_required(client, provider):
    handle = begin(client).json()["payment_handle"]
    provider.next_confirm = "decline"

    r = client.post(f"/checkout/{handle}/confirm")

    assert r.status_code == 402
    assert r.json()["code"] == "payment_rejected"


def test_webhook_accepts_camel_case_and_dedupes(client, store):
    handle = begin(client).json()["payment_handle"]
    client.post(f"/checkout/{handle}/confirm")
    payment = next(iter(store.payments.values()))
    payload = {"providerRef": payment.provider_ref, "eventType": "charge.refunded", "amount": 2100, "status": "refunded"}

    first = client.post("/webhooks/provider", json=payload)
    second = client.post("/webhooks/provider", json=payload)

    assert first.status_code == 200
    assert first.json() == {"ok": True, "duplicate": False, "applied": "refunded"}
    assert second.json()["duplicate"] is True
    assert {o.status.value for o in store.orders.values()} == {"cancelled"}


@pytest.mark.parametrize(
    "raw",
    [
        b"not json",
        b"[]",
        json.dumps({"provider_ref": "ch_1", "event_type": "x", "amount": -1, "status": "refunded"}).encode(),
        json.dumps({"provider_ref": "ch_1", "event_type": "x", "amount": 1, "status": "exploded"}).encode(),
    ],
)
def test_malformed_webhook_is_a_client_error(client, raw):
    r = client.post("/webhooks/provider", content=raw, headers={"Content-Type": "application/json"})

    assert r.status_code == 400
    assert r.json()["code"] == "malformed_payload"


def test_webhook_for_unknown_charge_is_not_found(client):
    payload = {"provider_ref": "ch_nope", "event_type": "charge.succeeded", "amount": 1, "status": "succeeded"}

    r = client.post("/webhooks/provider", json=payload)

    assert r.status_code == 404


def test_signature_verification():
    raw = b'{"provider_ref":"ch_1"}'
    good = hmac.new(b"s3cret", raw, hashlib.sha256).hexdigest()

    verify_signature(raw, good, secret="s3cret")
    verify_signature(raw, None, secret="")
    with pytest.raises(InvalidSignature):
        verify_signature(raw, None, secret="s3cret")
    with pytest.raises(InvalidSignature):
        verify_signature(raw, "0" * 64, secret="s3cret")


def test_order_routes_enforce_roles(client):
    handle = begin(client).json()["payment_handle"]
    orders = client.post(f"/checkout/{handle}/confirm").json()["committed_orders"]
    order_a = next(o for o in orders if o["seller_id"] == SELLER_A)

    own = client.get(f"/orders/{order_a['id']}", params={"actor_id": BUYER, "actor_role": "buyer"})
    assert own.status_code == 200
    assert own.json()["order_number"] == order_a["order_number"]

    foreign = client.get(f"/orders/{order_a['id']}", params={"actor_id": OTHER_BUYER, "actor_role": "buyer"})
    assert foreign.status_code == 403

    r = client.put(
        f"/orders/{order_a['id']}/status",
        json={"status": "confirmed", "actor_id": SELLER_A, "actor_role": "seller"},
    )
    assert r.status_code == 200
    assert r.json()["status"] == "confirmed"

    r = client.put(
        f"/orders/{order_a['id']}/status",
        json={"status": "delivered", "actor_id": SELLER_A, "actor_role": "seller"},
    )
    assert r.status_code == 409
    assert r.json()["code"] == "invalid_transition"

    r = client.put(
        f"/orders/{order_a['id']}/status",
        json={"status": "cancelled", "actor_id": BUYER, "actor_role": "buyer"},
    )
    assert r.status_code == 200
    comps = client.get(
        f"/orders/{order_a['id']}/compensations", params={"actor_id": BUYER, "actor_role": "buyer"}
    ).json()
    assert [c["kind"] for c in comps] == ["stock_restore", "partial_refund"]


def test_order_listing_and_stats(client):
    handle = begin(client).json()["payment_handle"]
    client.post(f"/checkout/{handle}/confirm")

    page = client.get("/orders", params={"actor_id": SELLER_B, "actor_role": "seller", "limit": 1}).json()
    assert page["pagination"] == {"page": 1, "limit": 1, "total": 1, "pages": 1, "has_next": False, "has_prev": False}
    assert page["items"][0]["seller_id"] == SELLER_B

    stats = client.get("/orders/stats", params={"actor_id": BUYER, "actor_role": "buyer"}).json()
    assert stats["total_orders"] == 2
    assert stats["total_revenue_cents"] == 2100


def test_payment_routes(client, store):
    handle = begin(client, payment_method="cash_on_delivery").json()["payment_handle"]
    orders = client.post(f"/checkout/{handle}/confirm").json()["committed_orders"]
    order_a = next(o for o in orders if o["seller_id"] == SELLER_A)

    assert client.post(
        f"/payments/{order_a['payment_id']}/cod/confirm", json={"actor_id": SELLER_B, "actor_role": "seller"}
    ).status_code == 403
    r = client.post(f"/payments/{order_a['payment_id']}/cod/confirm", json={"actor_id": SELLER_A, "actor_role": "seller"})
    assert r.status_code == 200
    assert r.json()["status"] == "cash_on_delivery_confirmed"

    listed = client.get("/payments", params={"actor_id": BUYER, "actor_role": "buyer"}).json()
    assert listed["pagination"]["total"] == 2

    assert client.get("/payments/stats", params={"actor_role": "buyer"}).status_code == 403
    stats = client.get("/payments/stats", params={"actor_role": "admin"}).json()
    assert stats["by_method"] == {"cash_on_delivery": 2}

    methods = client.get("/payments/methods").json()["methods"]
    assert {m["type"] for m in methods} == {"gateway", "cash_on_delivery"}


def test_admin_refund_and_reconcile(client, store, provider):
    handle = begin(client).json()["payment_handle"]
    client.post(f"/checkout/{handle}/confirm")
    payment = next(iter(store.payments.values()))

    denied = client.post(
        f"/payments/{payment.id}/refund", json={"amount_cents": 100, "reason": "damaged", "actor_role": "buyer"}
    )
    assert denied.status_code == 403

    r = client.post(f"/payments/{payment.id}/refund", json={"amount_cents": 100, "reason": "damaged", "actor_role": "admin"})
    assert r.status_code == 200
    assert r.json()["refunded_cents"] == 100

    too_much = client.post(
        f"/payments/{payment.id}/refund", json={"amount_cents": 5000, "reason": "oops", "actor_role": "admin"}
    )
    assert too_much.status_code == 409

    polled = client.post(f"/payments/{payment.id}/reconcile")
    assert polled.status_code == 200
    assert polled.json()["status"] == "paid"
    assert provider.count("fetch_charge_status") == 1


def test_retry_compensations_requires_admin(client):
    assert client.post("/compensations/retry", params={"actor_role": "seller"}).status_code == 403
    r = client.post("/compensations/retry", params={"actor_role": "admin"})
    assert r.status_code == 200
    assert r.json() == []


def test_payment_details_are_scoped_to_participants(client):
    handle = begin(client).json()["payment_handle"]
    orders = client.post(f"/checkout/{handle}/confirm").json()["committed_orders"]
    order_a = next(o for o in orders if o["seller_id"] == SELLER_A)
    payment_id = order_a["payment_id"]

    def details(actor_id, actor_role):
        return client.get(f"/payments/{payment_id}", params={"actor_id": actor_id, "actor_role": actor_role})

    mine = details(BUYER, "buyer")
    assert mine.status_code == 200
    assert mine.json()["payment"]["status"] == "paid"
    assert [t["kind"] for t in mine.json()["transactions"]] == ["charge", "capture"]
    assert details(OTHER_BUYER, "buyer").status_code == 403
    assert details(SELLER_B, "seller").status_code == 200
    assert details("someone-else", "seller").status_code == 403
    assert details("ops", "admin").status_code == 200

    by_order = client.get(f"/orders/{order_a['id']}/payment", params={"actor_id": SELLER_A, "actor_role": "seller"})
    assert by_order.status_code == 200
    assert by_order.json()["payment"]["id"] == payment_id
    assert client.get(
        f"/orders/{order_a['id']}/payment", params={"actor_id": SELLER_B, "actor_role": "seller"}
    ).status_code == 403

    missing = client.get("/payments/pay_missing", params={"actor_id": "ops", "actor_role": "admin"})
    assert missing.status_code == 404
    assert client.get("/payments/methods").status_code == 200
