"""Pytest fixtures for the checkout core (memory store, in-memory catalog, scripted provider)."""

from typing import List

import pytest
from fastapi.testclient import TestClient

from farmmarket.catalog import InMemoryCatalog
from farmmarket.container import Container, build_container
from farmmarket.main import create_app
from farmmarket.models import BeginCheckoutRequest, CartLine, PaymentMethod
from farmmarket.provider import FakeProvider
from farmmarket.store import MemoryStore

BUYER = "buyer-1"
OTHER_BUYER = "buyer-2"

SELLER_A = "5b0e4c1e-8a7d-4a53-9d55-2f1b0c6a1a01"
SELLER_B = "9c3f2d7a-1b4e-4c8f-a6d2-3e5f7a9b0c02"

P_A1 = "0f6b1b9e-3c1a-4b6e-9f0d-1a2b3c4d5e01"  # seller A, 10.00, stock 5
P_A2 = "0f6b1b9e-3c1a-4b6e-9f0d-1a2b3c4d5e02"  # seller A, 2.50, stock 20, min 2
P_B1 = "7d2c9a4f-5e6b-4d1c-8a3f-2b4c6d8e0f01"  # seller B, 1.00, stock 3
P_B2 = "7d2c9a4f-5e6b-4d1c-8a3f-2b4c6d8e0f02"  # seller B, 5.00, stock 10


def line(product_id: str, seller_id: str, quantity: int, unit_price_cents: int) -> CartLine:
    return CartLine(product_id=product_id, seller_id=seller_id, quantity=quantity, unit_price_cents=unit_price_cents)


@pytest.fixture
def catalog() -> InMemoryCatalog:
    catalog = InMemoryCatalog()
    catalog.add_product(P_A1, SELLER_A, price_cents=1000, available_quantity=5)
    catalog.add_product(P_A2, SELLER_A, price_cents=250, available_quantity=20, min_order_quantity=2)
    catalog.add_product(P_B1, SELLER_B, price_cents=100, available_quantity=3)
    catalog.add_product(P_B2, SELLER_B, price_cents=500, available_quantity=10)
    return catalog


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def container(store, catalog, provider) -> Container:
    return build_container(store=store, catalog=catalog, provider=provider)


@pytest.fixture
def client(container) -> TestClient:
    return TestClient(create_app(container))


@pytest.fixture
def two_seller_cart() -> List[CartLine]:
    """Seller A: 2 x P_A1 (20.00). Seller B: 1 x P_B1 (1.00)."""
    return [line(P_A1, SELLER_A, 2, 1000), line(P_B1, SELLER_B, 1, 100)]


@pytest.fixture
def place_checkout(container):
    """Validate, begin and (optionally) confirm a checkout through the service facade."""

    async def _place(lines, method=PaymentMethod.GATEWAY, confirm=True):
        validation = await container.checkout.validate_cart(BUYER, lines)
        begun = await container.checkout.begin_checkout(
            validation,
            BeginCheckoutRequest(buyer_id=BUYER, payment_method=method, delivery_address="12 Orchard Lane", lines=lines),
        )
        if not confirm:
            return begun, None
        return begun, await container.checkout.confirm_checkout(begun.payment_handle)

    return _place
