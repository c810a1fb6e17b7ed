"""
Pytest configuration and shared fixtures.
"""
import itertools
import pytest
import pytest_asyncio
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from crm_analytics.cache import TwoTierCache
from crm_analytics.config import CacheConfig
from crm_analytics.store import AnalyticsStore


NOW = datetime(2026, 1, 15, 12, 0, 0)


class FixedClock:
    """Deterministic clock that tests advance explicitly."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class LedgerBuilder:
    """Builds customers, products and transactions, then bulk-loads them."""

    def __init__(self, now: datetime):
        self.now = now
        self.customers: List[Dict[str, Any]] = []
        self.products: List[Dict[str, Any]] = []
        self.transactions: List[Dict[str, Any]] = []
        self._tx_ids = itertools.count(1)

    def customer(self, customer_id: int, loyalty_tier: Optional[str] = "silver", **fields) -> "LedgerBuilder":
        self.customers.append({
            "id": customer_id,
            "email": f"customer{customer_id}@example.com",
            "first_name": f"First{customer_id}",
            "last_name": f"Last{customer_id}",
            "registration_date": self.now - timedelta(days=400),
            "total_spent": 0.0,
            "loyalty_tier": loyalty_tier,
            **fields,
        })
        return self

    def product(self, product_id: int, stock: int = 10, price: float = 100.0, **fields) -> "LedgerBuilder":
        self.products.append({
            "id": product_id,
            "name": f"Product {product_id}",
            "category": "Skincare",
            "price": price,
            "stock_quantity": stock,
            **fields,
        })
        return self

    def purchase(
        self,
        customer_id: int,
        product_id: int,
        amount: float = 100.0,
        days_ago: float = 1,
        status: str = "completed",
    ) -> "LedgerBuilder":
        self.transactions.append({
            "id": next(self._tx_ids),
            "customer_id": customer_id,
            "product_id": product_id,
            "quantity": 1,
            "unit_price": amount,
            "total_amount": amount,
            "status": status,
            "ordered_at": self.now - timedelta(days=days_ago),
            "payment_method": "card",
        })
        return self

    def purchases(
        self,
        customer_id: int,
        count: int,
        amount: float,
        latest_days_ago: float,
        spacing_days: float = 1,
        product_id: int = 1,
    ) -> "LedgerBuilder":
        """``count`` equal purchases, the newest ``latest_days_ago`` days back."""
        for i in range(count):
            self.purchase(customer_id, product_id, amount, latest_days_ago + i * spacing_days)
        return self

    async def load(self, store: AnalyticsStore) -> None:
        if self.customers:
            await store.insert_customers(self.customers)
        if self.products:
            await store.insert_products(self.products)
        if self.transactions:
            await store.insert_transactions(self.transactions)


@pytest.fixture
def clock() -> FixedClock:
    """Clock pinned to NOW."""
    return FixedClock(NOW)


@pytest.fixture
def ledger(clock) -> LedgerBuilder:
    """Ledger builder anchored to the fixed clock."""
    return LedgerBuilder(clock.now)


@pytest_asyncio.fixture
async def store():
    """Connected in-memory store with the full schema."""
    analytics_store = AnalyticsStore(":memory:")
    await analytics_store.connect()
    yield analytics_store
    await analytics_store.close()


@pytest.fixture
def cache_config() -> CacheConfig:
    return CacheConfig(memory_max_entries=1000)


@pytest.fixture
def cache(store, clock, cache_config) -> TwoTierCache:
    """Two-tier cache over the in-memory store."""
    return TwoTierCache(store, cache_config, clock=clock)
