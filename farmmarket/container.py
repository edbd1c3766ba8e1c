from dataclasses import dataclass
from typing import Optional

from .catalog import Catalog, HttpCatalog, InMemoryCatalog
from .checkout import CheckoutService
from .compensations import CompensationLedger
from .locks import KeyedLock
from .orchestrator import OrderCommitOrchestrator
from .orders import OrderService
from .payments import PaymentCoordinator
from .provider import FakeProvider, HttpProvider, PaymentProvider
from .reconciliation import ReconciliationListener
from .settings import CATALOG_BACKEND, PROVIDER_BACKEND, STORAGE_BACKEND
from .store import MemoryStore, Store
from .validator import OrderValidator


@dataclass
class Container:
    store: Store
    catalog: Catalog
    provider: PaymentProvider
    coordinator: PaymentCoordinator
    ledger: CompensationLedger
    validator: OrderValidator
    orchestrator: OrderCommitOrchestrator
    orders: OrderService
    reconciliation: ReconciliationListener
    checkout: CheckoutService


def default_store() -> Store:
    if STORAGE_BACKEND == "postgres":
        from .db import PostgresStore

        return PostgresStore()
    return MemoryStore()


def default_catalog() -> Catalog:
    return InMemoryCatalog() if CATALOG_BACKEND == "memory" else HttpCatalog()


def default_provider() -> PaymentProvider:
    return FakeProvider() if PROVIDER_BACKEND == "fake" else HttpProvider()


def build_container(
    store: Optional[Store] = None,
    catalog: Optional[Catalog] = None,
    provider: Optional[PaymentProvider] = None,
) -> Container:
    store = store or default_store()
    catalog = catalog or default_catalog()
    provider = provider or default_provider()

    # Payment locks are shared so webhooks and confirms on one record serialize.
    payment_locks = KeyedLock()
    coordinator = PaymentCoordinator(store, provider, payment_locks)
    ledger = CompensationLedger(store, coordinator, catalog)
    validator = OrderValidator(catalog)
    orchestrator = OrderCommitOrchestrator(store, catalog, coordinator, ledger)
    orders = OrderService(store, coordinator, ledger, KeyedLock())
    coordinator.on_status_change(orders.sync_payment_mirror)
    reconciliation = ReconciliationListener(store, provider, coordinator, orders, KeyedLock())
    checkout = CheckoutService(store, catalog, validator, coordinator, orchestrator, KeyedLock())

    return Container(
        store=store,
        catalog=catalog,
        provider=provider,
        coordinator=coordinator,
        ledger=ledger,
        validator=validator,
        orchestrator=orchestrator,
        orders=orders,
        reconciliation=reconciliation,
        checkout=checkout,
    )
