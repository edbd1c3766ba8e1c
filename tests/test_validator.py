"""Tests for the Order Validator."""

import pytest

from conftest import BUYER, P_A1, P_A2, P_B1, P_B2, SELLER_A, SELLER_B, line
from farmmarket.errors import ValidationRejected
from farmmarket.validator import OrderValidator, group_by_seller, is_valid_uuid


@pytest.mark.asyncio
async def test_partial_failure_cart_admits_a_and_rejects_b(catalog):
    validation = await OrderValidator(catalog).validate(
        BUYER, [line(P_A1, SELLER_A, 2, 1000), line(P_B1, SELLER_B, 10, 100)]
    )

    assert [o.seller_id for o in validation.orders] == [SELLER_A]
    order_a = validation.orders[0]
    assert [l.product_id for l in order_a.lines] == [P_A1]
    assert order_a.total_cents == 2000
    assert not order_a.is_partial

    assert len(validation.rejected) == 1
    rejected = validation.rejected[0]
    assert rejected.seller_id == SELLER_B
    assert rejected.reason == "insufficient_stock"
    assert "Available: 3" in rejected.message


@pytest.mark.asyncio
async def test_mixed_seller_group_keeps_both_lists(catalog):
    validation = await OrderValidator(catalog).validate(
        BUYER, [line(P_A1, SELLER_A, 1, 1000), line(P_A2, SELLER_A, 1, 250)]
    )

    (order_a,) = validation.orders
    assert order_a.is_partial
    assert [l.product_id for l in order_a.lines] == [P_A1]
    assert [(r.product_id, r.reason) for r in order_a.rejected] == [(P_A2, "below_minimum")]
    assert order_a.total_cents == 1000


@pytest.mark.asyncio
async def test_line_is_admitted_at_authoritative_price(catalog):
    validation = await OrderValidator(catalog).validate(BUYER, [line(P_A1, SELLER_A, 2, 900)])

    admitted = validation.orders[0].lines[0]
    assert admitted.unit_price_cents == 1000
    assert admitted.line_total_cents == 2000
    assert admitted.price_changed is True


@pytest.mark.asyncio
async def test_every_line_invalid_raises_with_structured_rejections(catalog):
    catalog.withdraw(P_B2)
    lines = [
        line(P_A1, "farmer-7", 1, 1000),
        line("not-a-uuid", SELLER_A, 1, 1000),
        line(P_B2, SELLER_B, 1, 500),
        line(P_A1, SELLER_B, 1, 1000),
        line(P_B1, SELLER_B, 0, 100),
    ]

    with pytest.raises(ValidationRejected) as exc_info:
        await OrderValidator(catalog).validate(BUYER, lines)

    reasons = [r["reason"] for r in exc_info.value.rejected]
    assert reasons == ["invalid_seller", "invalid_product", "withdrawn", "seller_mismatch", "invalid_quantity"]
    assert exc_info.value.status_code == 422


@pytest.mark.asyncio
async def test_empty_cart_is_rejected(catalog):
    with pytest.raises(ValidationRejected, match="Cart is empty"):
        await OrderValidator(catalog).validate(BUYER, [])


@pytest.mark.asyncio
async def test_seller_order_keys_are_reproducible(catalog):
    lines = [line(P_B1, SELLER_B, 1, 100), line(P_A1, SELLER_A, 1, 1000), line(P_B2, SELLER_B, 2, 500)]
    validator = OrderValidator(catalog)

    first = await validator.validate(BUYER, lines)
    second = await validator.validate(BUYER, lines)

    assert first.cart_hash == second.cart_hash
    assert [o.seller_order_key for o in first.orders] == [o.seller_order_key for o in second.orders]
    # sellers keep first-appearance order
    assert [o.seller_id for o in first.orders] == [SELLER_B, SELLER_A]
    assert [l.line_index for l in first.orders[0].lines] == [0, 2]


@pytest.mark.asyncio
async def test_each_product_is_quoted_once(catalog):
    lines = [line(P_A1, SELLER_A, 1, 1000), line(P_A1, SELLER_A, 1, 1000), line(P_B1, SELLER_B, 1, 100)]

    await OrderValidator(catalog).validate(BUYER, lines)

    assert catalog.quote_reads == 2


@pytest.mark.asyncio
async def test_validate_cart_reads_the_cart_snapshot(container, catalog):
    catalog.set_cart(BUYER, [line(P_B2, SELLER_B, 3, 500)])

    validation = await container.checkout.validate_cart(BUYER)

    assert validation.total_cents == 1500


def test_group_by_seller_is_stable():
    lines = [line(P_B1, SELLER_B, 1, 100), line(P_A1, SELLER_A, 1, 1000), line(P_B2, SELLER_B, 1, 500)]

    groups = group_by_seller(lines)

    assert list(groups) == [SELLER_B, SELLER_A]
    assert [i for i, _ in groups[SELLER_B]] == [0, 2]


def test_uuid_format_check():
    assert is_valid_uuid(SELLER_A)
    assert is_valid_uuid(SELLER_A.upper())
    assert not is_valid_uuid("")
    assert not is_valid_uuid("farmer-7")
