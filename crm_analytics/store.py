"""
DuckDB store for the transaction ledger and derived analytics.

Holds the ledger tables (customers, products, transactions) the scorers read,
and the derived tables they write (customer_analytics, product_recommendations,
analytics_cache). Everything derived can be rebuilt from the ledger.

Domain-specific query methods are organized into repository mixins:
- LedgerMixin: customers, products, transactions, recommendation candidates
- AnalyticsMixin: per-customer RFM / CLV / churn rows and rollups
- RecommendationsMixin: persisted recommendation sets
- CacheRowsMixin: durable tier of the analytics cache
"""
import asyncio
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TypeVar

import duckdb

from crm_analytics.exceptions import UpstreamError
from crm_analytics.observability import get_logger
from crm_analytics.repositories import (
    AnalyticsMixin, CacheRowsMixin, LedgerMixin, RecommendationsMixin,
)

logger = get_logger(__name__)

T = TypeVar("T")

SCHEMA_SQL = """
-- No secondary indexes: DuckDB cannot upsert columns referenced by an index
-- Ledger
CREATE TABLE IF NOT EXISTS customers (
    id INTEGER PRIMARY KEY,
    email VARCHAR,
    first_name VARCHAR,
    last_name VARCHAR,
    registration_date TIMESTAMP,
    total_spent DOUBLE DEFAULT 0,
    loyalty_tier VARCHAR
);

CREATE TABLE IF NOT EXISTS products (
    id INTEGER PRIMARY KEY,
    name VARCHAR NOT NULL,
    category VARCHAR,
    price DOUBLE DEFAULT 0,
    stock_quantity INTEGER DEFAULT 0
);

CREATE TABLE IF NOT EXISTS transactions (
    id INTEGER PRIMARY KEY,
    customer_id INTEGER NOT NULL,
    product_id INTEGER NOT NULL,
    quantity INTEGER DEFAULT 1,
    unit_price DOUBLE DEFAULT 0,
    total_amount DOUBLE NOT NULL,
    status VARCHAR NOT NULL,
    ordered_at TIMESTAMP NOT NULL,
    payment_method VARCHAR
);

-- Derived: one row per customer, each scorer owns its column group
CREATE TABLE IF NOT EXISTS customer_analytics (
    customer_id INTEGER PRIMARY KEY,
    recency_days INTEGER,
    frequency_count INTEGER,
    monetary_value DOUBLE,
    recency_score INTEGER,
    frequency_score INTEGER,
    monetary_score INTEGER,
    rfm_score INTEGER,
    rfm_segment VARCHAR,
    rfm_calculated_at TIMESTAMP,
    clv_predicted DOUBLE,
    clv_confidence DOUBLE,
    clv_details VARCHAR,
    clv_calculated_at TIMESTAMP,
    churn_risk_score INTEGER,
    churn_risk_level VARCHAR,
    churn_indicators VARCHAR,
    prevention_strategies VARCHAR,
    churn_calculated_at TIMESTAMP,
    last_calculated TIMESTAMP
);

-- Derived: one row per (customer, product)
CREATE TABLE IF NOT EXISTS product_recommendations (
    customer_id INTEGER NOT NULL,
    product_id INTEGER NOT NULL,
    recommendation_score DOUBLE NOT NULL,
    recommendation_types VARCHAR,
    reasons VARCHAR,
    generated_at TIMESTAMP NOT NULL,
    expires_at TIMESTAMP NOT NULL,
    PRIMARY KEY (customer_id, product_id)
);

-- Durable cache tier
CREATE TABLE IF NOT EXISTS analytics_cache (
    cache_key VARCHAR PRIMARY KEY,
    cache_value VARCHAR NOT NULL,
    cache_type VARCHAR NOT NULL DEFAULT 'general',
    expires_at TIMESTAMP NOT NULL,
    created_at TIMESTAMP NOT NULL
);
"""


class AnalyticsStore(LedgerMixin, AnalyticsMixin, RecommendationsMixin, CacheRowsMixin):
    """
    Async-compatible DuckDB store.

    Features:
    - Single connection, all access serialized through an asyncio lock
    - Blocking DuckDB calls offloaded to a one-thread executor
    - Driver errors surface as UpstreamError
    """

    def __init__(self, db_path: str = "data/analytics.duckdb"):
        self.db_path = str(db_path)
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._lock = asyncio.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._total_queries = 0

    async def connect(self) -> None:
        """Open the connection, create the schema and start the executor."""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        async with self._lock:
            if self._connection is not None:
                return
            # Single worker: a DuckDB connection is not thread-safe
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="duckdb")
            try:
                self._connection = duckdb.connect(self.db_path)
                await self._in_executor(lambda: self._connection.execute(SCHEMA_SQL))
            except duckdb.Error as e:
                self._executor.shutdown(wait=False)
                self._executor = None
                self._connection = None
                raise UpstreamError("Failed to open analytics store", str(e), "connect") from e
            logger.info(f"DuckDB connected: {self.db_path}")

    async def close(self) -> None:
        """Close the connection and executor."""
        async with self._lock:
            if self._executor:
                self._executor.shutdown(wait=True)
                self._executor = None
            if self._connection:
                self._connection.close()
                self._connection = None
                logger.info("DuckDB connection closed")

    @property
    def is_connected(self) -> bool:
        return self._connection is not None

    def get_connection_info(self) -> Dict[str, Any]:
        return {
            "status": "active" if self._connection else "not_initialized",
            "total_queries": self._total_queries,
            "db_path": self.db_path,
        }

    @asynccontextmanager
    async def connection(self):
        """Yield the connection while holding the store lock."""
        if self._connection is None:
            await self.connect()
        async with self._lock:
            yield self._connection

    async def _in_executor(self, fn: Callable[[], T]) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, fn)

    # ─── Query Execution ─────────────────────────────────────────────────────

    async def _run(self, operation: str, fn: Callable[[duckdb.DuckDBPyConnection], T]) -> T:
        """
        Run ``fn(conn)`` on the store thread.

        Raises:
            UpstreamError: If DuckDB raises
        """
        async with self.connection() as conn:
            self._total_queries += 1
            try:
                return await self._in_executor(lambda: fn(conn))
            except duckdb.Error as e:
                logger.error(f"Store operation {operation} failed: {e}")
                raise UpstreamError("Data store query failed", str(e), operation) from e

    async def _execute(self, query: str, params: list = None, operation: str = "execute") -> None:
        await self._run(operation, lambda conn: conn.execute(query, params or []))

    async def _fetch_one(self, query: str, params: list = None, operation: str = "fetch_one") -> Optional[tuple]:
        return await self._run(operation, lambda conn: conn.execute(query, params or []).fetchone())

    async def _fetch_all(self, query: str, params: list = None, operation: str = "fetch_all") -> List[tuple]:
        return await self._run(operation, lambda conn: conn.execute(query, params or []).fetchall())

    async def _fetch_dicts(self, query: str, params: list = None, operation: str = "fetch_dicts") -> List[Dict[str, Any]]:
        """Fetch rows as dicts keyed by column name."""
        def _query(conn):
            cursor = conn.execute(query, params or [])
            columns = [d[0] for d in cursor.description]
            return [dict(zip(columns, row)) for row in cursor.fetchall()]

        return await self._run(operation, _query)

    async def get_stats(self) -> Dict[str, Any]:
        """Row counts for monitoring."""
        row = await self._fetch_one("""
            SELECT
                (SELECT COUNT(*) FROM customers),
                (SELECT COUNT(*) FROM products),
                (SELECT COUNT(*) FROM transactions),
                (SELECT COUNT(*) FROM customer_analytics),
                (SELECT COUNT(*) FROM product_recommendations),
                (SELECT COUNT(*) FROM analytics_cache)
        """, operation="get_stats")
        return {
            "customers": row[0],
            "products": row[1],
            "transactions": row[2],
            "customer_analytics": row[3],
            "product_recommendations": row[4],
            "cache_rows": row[5],
            **self.get_connection_info(),
        }
