"""Tests for order status queries and updates."""

import pytest

from conftest import BUYER, OTHER_BUYER, P_A1, P_B1, SELLER_A, SELLER_B, line
from farmmarket.errors import Forbidden, InvalidTransition, NotFound
from farmmarket.models import ActorRole, OrderFilters, OrderStatus, PaymentMethod, PaymentMirror, PaymentStatus


def order_for(result, seller_id):
    return next(o for o in result.committed_orders if o.seller_id == seller_id)


@pytest.mark.asyncio
async def test_seller_walks_the_happy_path(place_checkout, container, two_seller_cart):
    _, result = await place_checkout(two_seller_cart)
    order = order_for(result, SELLER_A)

    for status in (OrderStatus.CONFIRMED, OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.DELIVERED):
        order = await container.orders.update_status(order.id, status, SELLER_A, ActorRole.SELLER)
        assert order.status == status

    with pytest.raises(InvalidTransition):
        await container.orders.update_status(order.id, OrderStatus.CANCELLED, BUYER, ActorRole.BUYER)
    with pytest.raises(InvalidTransition):
        await container.orders.update_status(order.id, OrderStatus.PENDING, "admin-1", ActorRole.ADMIN)


@pytest.mark.asyncio
async def test_states_cannot_be_skipped(place_checkout, container, two_seller_cart):
    _, result = await place_checkout(two_seller_cart)
    order = order_for(result, SELLER_A)

    with pytest.raises(InvalidTransition):
        await container.orders.update_status(order.id, OrderStatus.SHIPPED, SELLER_A, ActorRole.SELLER)


@pytest.mark.asyncio
async def test_buyer_may_only_cancel_own_orders(place_checkout, container, two_seller_cart):
    _, result = await place_checkout(two_seller_cart)
    order = order_for(result, SELLER_A)

    with pytest.raises(Forbidden):
        await container.orders.update_status(order.id, OrderStatus.CONFIRMED, BUYER, ActorRole.BUYER)
    with pytest.raises(Forbidden):
        await container.orders.update_status(order.id, OrderStatus.CANCELLED, OTHER_BUYER, ActorRole.BUYER)
    with pytest.raises(Forbidden):
        await container.orders.update_status(order.id, OrderStatus.CONFIRMED, SELLER_B, ActorRole.SELLER)


@pytest.mark.asyncio
async def test_buyer_cancel_restores_stock_and_refunds_that_share(
    place_checkout, container, store, catalog, two_seller_cart
):
    begun, result = await place_checkout(two_seller_cart)
    order = order_for(result, SELLER_A)

    cancelled = await container.orders.update_status(order.id, OrderStatus.CANCELLED, BUYER, ActorRole.BUYER)

    assert cancelled.status == OrderStatus.CANCELLED
    assert catalog.products[P_A1].available_quantity == 5
    payment = store.get_payment(begun.payment_ids[0])
    assert payment.status == PaymentStatus.PAID
    assert payment.refunded_cents == 2000
    kinds = [(e.kind, e.status) for e in container.ledger.for_order(order.id)]
    assert kinds == [("stock_restore", "applied"), ("partial_refund", "applied")]

    other = store.get_order(order_for(result, SELLER_B).id)
    assert other.status == OrderStatus.PENDING
    assert other.payment_status == PaymentMirror.PAID


@pytest.mark.asyncio
async def test_cancelling_every_order_of_a_charge_refunds_it_fully(place_checkout, container, store, two_seller_cart):
    begun, result = await place_checkout(two_seller_cart)

    for order in result.committed_orders:
        await container.orders.update_status(order.id, OrderStatus.CANCELLED, BUYER, ActorRole.BUYER)

    payment = store.get_payment(begun.payment_ids[0])
    assert payment.status == PaymentStatus.REFUNDED
    assert payment.refunded_cents == 2100
    assert {o.payment_status for o in store.orders_for_payment(payment.id)} == {PaymentMirror.REFUNDED}


@pytest.mark.asyncio
async def test_cancelling_authorized_charge_cancels_payment_once_all_orders_are_gone(
    place_checkout, container, store, provider
):
    provider.next_confirm = "pending"
    begun, result = await place_checkout([line(P_A1, SELLER_A, 1, 1000)])
    (order,) = result.committed_orders

    await container.orders.update_status(order.id, OrderStatus.CANCELLED, BUYER, ActorRole.BUYER)

    assert store.get_payment(begun.payment_ids[0]).status == PaymentStatus.CANCELLED
    assert [e.kind for e in container.ledger.for_order(order.id)] == ["stock_restore", "payment_cancel"]
    assert provider.count("refund") == 0


@pytest.mark.asyncio
async def test_cash_on_delivery_cancel_and_confirm(place_checkout, container, store, two_seller_cart):
    begun, result = await place_checkout(two_seller_cart, method=PaymentMethod.COD)
    order_a = order_for(result, SELLER_A)
    order_b = order_for(result, SELLER_B)

    await container.orders.update_status(order_b.id, OrderStatus.CANCELLED, BUYER, ActorRole.BUYER)
    await container.coordinator.confirm_cash_on_delivery(order_a.payment_id, SELLER_A)

    assert store.get_payment(order_b.payment_id).status == PaymentStatus.CANCELLED
    assert store.get_order(order_b.id).payment_status == PaymentMirror.FAILED
    assert store.get_order(order_a.id).payment_status == PaymentMirror.PAID
    assert [e.kind for e in container.ledger.for_order(order_b.id)] == ["stock_restore", "cod_cancel"]


@pytest.mark.asyncio
async def test_reads_are_scoped_to_the_actor(place_checkout, container, two_seller_cart):
    _, result = await place_checkout(two_seller_cart)
    order_a = order_for(result, SELLER_A)

    assert container.orders.get_order(order_a.id, BUYER, ActorRole.BUYER).id == order_a.id
    assert container.orders.get_order(order_a.id, SELLER_A, ActorRole.SELLER).id == order_a.id
    assert container.orders.get_order(order_a.id, "admin-1", ActorRole.ADMIN).id == order_a.id
    with pytest.raises(Forbidden):
        container.orders.get_order(order_a.id, SELLER_B, ActorRole.SELLER)
    with pytest.raises(Forbidden):
        container.orders.get_order(order_a.id, OTHER_BUYER, ActorRole.BUYER)
    with pytest.raises(NotFound):
        container.orders.get_order("ord_missing", "admin-1", ActorRole.ADMIN)


@pytest.mark.asyncio
async def test_listing_and_pagination(place_checkout, container, two_seller_cart):
    await place_checkout(two_seller_cart)
    await place_checkout(two_seller_cart)

    buyer_page = container.orders.list_orders(OrderFilters(), BUYER, ActorRole.BUYER, page=1, limit=3)
    assert buyer_page.pagination.total == 4
    assert buyer_page.pagination.pages == 2
    assert buyer_page.pagination.has_next and not buyer_page.pagination.has_prev
    assert len(buyer_page.items) == 3

    seller_page = container.orders.list_orders(OrderFilters(seller_id=SELLER_B), SELLER_A, ActorRole.SELLER)
    assert {o.seller_id for o in seller_page.items} == {SELLER_A}

    other = container.orders.list_orders(OrderFilters(), OTHER_BUYER, ActorRole.BUYER)
    assert other.items == [] and other.pagination.total == 0


@pytest.mark.asyncio
async def test_statistics_exclude_cancelled_revenue(place_checkout, container, two_seller_cart):
    _, result = await place_checkout(two_seller_cart)
    await container.orders.update_status(order_for(result, SELLER_B).id, OrderStatus.CANCELLED, BUYER, ActorRole.BUYER)

    stats = container.orders.statistics(BUYER, ActorRole.BUYER)
    assert stats["total_orders"] == 2
    assert stats["pending_orders"] == 1
    assert stats["cancelled_orders"] == 1
    assert stats["total_revenue_cents"] == 2000

    seller_stats = container.orders.statistics(SELLER_B, ActorRole.SELLER)
    assert seller_stats["total_orders"] == 1
    assert seller_stats["total_revenue_cents"] == 0


@pytest.mark.asyncio
async def test_cancel_restores_stock_once(place_checkout, container, catalog):
    _, result = await place_checkout([line(P_B1, SELLER_B, 2, 100)])
    (order,) = result.committed_orders

    await container.orders.update_status(order.id, OrderStatus.CANCELLED, BUYER, ActorRole.BUYER)
    with pytest.raises(InvalidTransition):
        await container.orders.update_status(order.id, OrderStatus.CANCELLED, "admin-1", ActorRole.ADMIN)

    assert catalog.products[P_B1].available_quantity == 3
