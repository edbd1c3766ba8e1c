"""
Catalog and cart collaborators.

The core only reads carts and price/availability quotes and moves the
available-quantity counter; everything else about products lives elsewhere.
Stock moves carry an idempotency key and the catalog applies each key once.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

import httpx
from pydantic import BaseModel, ValidationError

from .errors import CatalogUnavailable
from .models import CartLine, CatalogQuote, StockResult
from .settings import CATALOG_BASE_URL, CATALOG_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)


class Catalog(ABC):
    @abstractmethod
    async def get_cart_snapshot(self, buyer_id: str) -> List[CartLine]: ...

    @abstractmethod
    async def get_authoritative_price(self, product_id: str) -> Optional[CatalogQuote]:
        """None when the product is unknown to the catalog."""

    @abstractmethod
    async def decrement_stock(self, product_id: str, quantity: int, idempotency_key: str) -> StockResult: ...

    @abstractmethod
    async def restore_stock(self, product_id: str, quantity: int, idempotency_key: str) -> StockResult: ...


class CartSnapshot(BaseModel):
    buyer_id: str
    lines: List[CartLine]


class HttpCatalog(Catalog):
    def __init__(
        self,
        base_url: str = CATALOG_BASE_URL,
        timeout: float = CATALOG_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            async with httpx.AsyncClient(base_url=self.base_url, transport=self.transport) as client:
                return await client.request(method, path, timeout=self.timeout, **kwargs)
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            logger.warning("catalog %s %s failed: %s", method, path, exc)
            raise CatalogUnavailable(f"Catalog unavailable: {exc.__class__.__name__}") from exc

    async def get_cart_snapshot(self, buyer_id: str) -> List[CartLine]:
        r = await self._request("GET", f"/cart/{buyer_id}")
        if r.status_code == 404:
            return []
        if r.status_code >= 400:
            raise CatalogUnavailable(f"Cart lookup failed with HTTP {r.status_code}")
        try:
            return CartSnapshot.model_validate(r.json()).lines
        except ValidationError as exc:
            raise CatalogUnavailable("Cart service returned an unexpected payload") from exc

    async def get_authoritative_price(self, product_id: str) -> Optional[CatalogQuote]:
        r = await self._request("GET", f"/products/{product_id}/quote")
        if r.status_code == 404:
            return None
        if r.status_code >= 400:
            raise CatalogUnavailable(f"Quote lookup failed with HTTP {r.status_code}")
        try:
            return CatalogQuote.model_validate(r.json())
        except ValidationError as exc:
            raise CatalogUnavailable("Catalog returned an unexpected quote payload") from exc

    async def _move_stock(self, action: str, product_id: str, quantity: int, idempotency_key: str) -> StockResult:
        r = await self._request(
            "POST",
            f"/products/{product_id}/stock/{action}",
            json={"quantity": quantity},
            headers={"Idempotency-Key": idempotency_key},
        )
        if r.status_code == 409:
            body = r.json() if r.content else {}
            return StockResult(
                product_id=product_id, outcome="conflict", available_quantity=body.get("available_quantity")
            )
        if r.status_code >= 400:
            raise CatalogUnavailable(f"Stock {action} failed with HTTP {r.status_code}")
        body = r.json() if r.content else {}
        return StockResult(product_id=product_id, outcome="ok", available_quantity=body.get("available_quantity"))

    async def decrement_stock(self, product_id: str, quantity: int, idempotency_key: str) -> StockResult:
        return await self._move_stock("decrement", product_id, quantity, idempotency_key)

    async def restore_stock(self, product_id: str, quantity: int, idempotency_key: str) -> StockResult:
        return await self._move_stock("restore", product_id, quantity, idempotency_key)


class Product(BaseModel):
    product_id: str
    seller_id: str
    price_cents: int
    available_quantity: int
    withdrawn: bool = False
    min_order_quantity: int = 1


class InMemoryCatalog(Catalog):
    """
    Local catalog used by the test-suite and by ``CATALOG_BACKEND=memory``.

    ``applied_keys`` keeps every stock idempotency key for the life of the
    instance so replays stay exact; it grows with traffic and is meant for
    tests and single-process demos, not long-running deployments.
    """

    def __init__(self) -> None:
        self.products: Dict[str, Product] = {}
        self.carts: Dict[str, List[CartLine]] = {}
        self.applied_keys: Dict[str, Tuple[str, int]] = {}
        self.quote_reads = 0

    def add_product(
        self,
        product_id: str,
        seller_id: str,
        price_cents: int,
        available_quantity: int,
        min_order_quantity: int = 1,
    ) -> Product:
        product = Product(
            product_id=product_id,
            seller_id=seller_id,
            price_cents=price_cents,
            available_quantity=available_quantity,
            min_order_quantity=min_order_quantity,
        )
        self.products[product_id] = product
        return product

    def set_price(self, product_id: str, price_cents: int) -> None:
        self.products[product_id].price_cents = price_cents

    def set_available(self, product_id: str, available_quantity: int) -> None:
        self.products[product_id].available_quantity = available_quantity

    def withdraw(self, product_id: str) -> None:
        self.products[product_id].withdrawn = True

    def set_cart(self, buyer_id: str, lines: List[CartLine]) -> None:
        self.carts[buyer_id] = list(lines)

    async def get_cart_snapshot(self, buyer_id: str) -> List[CartLine]:
        return [line.model_copy() for line in self.carts.get(buyer_id, [])]

    async def get_authoritative_price(self, product_id: str) -> Optional[CatalogQuote]:
        self.quote_reads += 1
        product = self.products.get(product_id)
        if product is None:
            return None
        return CatalogQuote(
            product_id=product.product_id,
            seller_id=product.seller_id,
            price_cents=product.price_cents,
            available_quantity=product.available_quantity,
            withdrawn=product.withdrawn,
            min_order_quantity=product.min_order_quantity,
        )

    async def decrement_stock(self, product_id: str, quantity: int, idempotency_key: str) -> StockResult:
        product = self.products.get(product_id)
        if idempotency_key in self.applied_keys:
            return StockResult(
                product_id=product_id,
                outcome="ok",
                available_quantity=product.available_quantity if product else None,
            )
        if product is None or product.withdrawn or product.available_quantity < quantity:
            return StockResult(
                product_id=product_id,
                outcome="conflict",
                available_quantity=product.available_quantity if product else None,
            )
        product.available_quantity -= quantity
        self.applied_keys[idempotency_key] = (product_id, -quantity)
        return StockResult(product_id=product_id, outcome="ok", available_quantity=product.available_quantity)

    async def restore_stock(self, product_id: str, quantity: int, idempotency_key: str) -> StockResult:
        product = self.products.get(product_id)
        if product is None:
            return StockResult(product_id=product_id, outcome="conflict")
        if idempotency_key not in self.applied_keys:
            product.available_quantity += quantity
            self.applied_keys[idempotency_key] = (product_id, quantity)
        return StockResult(product_id=product_id, outcome="ok", available_quantity=product.available_quantity)
