"""AnalyticsStore ledger reads and bulk loads."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

import pandas as pd

from crm_analytics.models import Customer, Product, Transaction
from crm_analytics.observability import get_logger

logger = get_logger(__name__)

CUSTOMER_COLUMNS = [
    "id", "email", "first_name", "last_name",
    "registration_date", "total_spent", "loyalty_tier",
]
PRODUCT_COLUMNS = ["id", "name", "category", "price", "stock_quantity"]
TRANSACTION_COLUMNS = [
    "id", "customer_id", "product_id", "quantity", "unit_price",
    "total_amount", "status", "ordered_at", "payment_method",
]

# Shared CTE: distinct products the target customer completed a purchase of
_PURCHASED_CTE = """
    purchased AS (
        SELECT DISTINCT product_id
        FROM transactions
        WHERE customer_id = ? AND status = 'completed'
    )
"""


class LedgerMixin:

    # ─── Customers ───────────────────────────────────────────────────────────

    async def get_customer(self, customer_id: int) -> Optional[Customer]:
        rows = await self._fetch_dicts(f"""
            SELECT {', '.join(CUSTOMER_COLUMNS)}
            FROM customers
            WHERE id = ?
        """, [customer_id], operation="get_customer")
        return Customer.from_row(rows[0]) if rows else None

    async def customer_exists(self, customer_id: int) -> bool:
        row = await self._fetch_one(
            "SELECT 1 FROM customers WHERE id = ?", [customer_id], operation="customer_exists"
        )
        return row is not None

    async def get_all_customer_ids(self) -> List[int]:
        rows = await self._fetch_all(
            "SELECT id FROM customers ORDER BY id", operation="get_all_customer_ids"
        )
        return [row[0] for row in rows]

    # ─── Products ────────────────────────────────────────────────────────────

    async def get_product(self, product_id: int) -> Optional[Product]:
        rows = await self._fetch_dicts(f"""
            SELECT {', '.join(PRODUCT_COLUMNS)}
            FROM products
            WHERE id = ?
        """, [product_id], operation="get_product")
        return Product.from_row(rows[0]) if rows else None

    async def get_products(self, product_ids: Iterable[int]) -> Dict[int, Product]:
        """Display attributes for a set of products, keyed by id."""
        ids = sorted(set(product_ids))
        if not ids:
            return {}
        placeholders = ", ".join("?" for _ in ids)
        rows = await self._fetch_dicts(f"""
            SELECT {', '.join(PRODUCT_COLUMNS)}
            FROM products
            WHERE id IN ({placeholders})
        """, ids, operation="get_products")
        return {int(row["id"]): Product.from_row(row) for row in rows}

    # ─── Transactions ────────────────────────────────────────────────────────

    async def get_completed_transactions(
        self,
        customer_id: int,
        newest_first: bool = True
    ) -> List[Transaction]:
        """All completed transactions for a customer, ordered by time."""
        direction = "DESC" if newest_first else "ASC"
        rows = await self._fetch_dicts(f"""
            SELECT {', '.join(TRANSACTION_COLUMNS)}
            FROM transactions
            WHERE customer_id = ? AND status = 'completed'
            ORDER BY ordered_at {direction}, id {direction}
        """, [customer_id], operation="get_completed_transactions")
        return [Transaction.from_row(row) for row in rows]

    async def count_failed_transactions(self, customer_id: int, since: datetime) -> int:
        row = await self._fetch_one("""
            SELECT COUNT(*)
            FROM transactions
            WHERE customer_id = ? AND status = 'failed' AND ordered_at >= ?
        """, [customer_id, since], operation="count_failed_transactions")
        return int(row[0] or 0)

    async def get_purchased_product_ids(self, customer_id: int) -> Set[int]:
        rows = await self._fetch_all("""
            SELECT DISTINCT product_id
            FROM transactions
            WHERE customer_id = ? AND status = 'completed'
        """, [customer_id], operation="get_purchased_product_ids")
        return {row[0] for row in rows}

    async def get_customers_who_purchased(self, product_id: int) -> Set[int]:
        rows = await self._fetch_all("""
            SELECT DISTINCT customer_id
            FROM transactions
            WHERE product_id = ? AND status = 'completed'
        """, [product_id], operation="get_customers_who_purchased")
        return {row[0] for row in rows}

    # ─── Recommendation candidates ───────────────────────────────────────────
    # Every candidate query excludes products the customer already bought
    # and products that are out of stock, then applies the limit.

    async def get_affinity_candidates(self, customer_id: int, limit: int) -> List[Tuple[int, int]]:
        """(product_id, distinct co-purchaser count) for products bought by customers sharing a purchase."""
        return await self._fetch_all(f"""
            WITH {_PURCHASED_CTE},
            co_buyers AS (
                SELECT DISTINCT t.customer_id
                FROM transactions t
                JOIN purchased p ON p.product_id = t.product_id
                WHERE t.status = 'completed' AND t.customer_id <> ?
            )
            SELECT t.product_id, COUNT(DISTINCT t.customer_id) AS score
            FROM transactions t
            JOIN co_buyers c ON c.customer_id = t.customer_id
            JOIN products pr ON pr.id = t.product_id
            WHERE t.status = 'completed'
              AND pr.stock_quantity > 0
              AND t.product_id NOT IN (SELECT product_id FROM purchased)
            GROUP BY t.product_id
            ORDER BY score DESC, t.product_id ASC
            LIMIT ?
        """, [customer_id, customer_id, limit], operation="get_affinity_candidates")

    async def get_collaborative_candidates(
        self,
        customer_id: int,
        segment: str,
        sample_size: int,
        limit: int
    ) -> List[Tuple[int, int]]:
        """(product_id, purchase count) among a bounded sample of same-segment peers."""
        return await self._fetch_all(f"""
            WITH {_PURCHASED_CTE},
            peers AS (
                SELECT customer_id
                FROM customer_analytics
                WHERE rfm_segment = ? AND customer_id <> ?
                ORDER BY customer_id
                LIMIT ?
            )
            SELECT t.product_id, COUNT(*) AS score
            FROM transactions t
            JOIN peers s ON s.customer_id = t.customer_id
            JOIN products pr ON pr.id = t.product_id
            WHERE t.status = 'completed'
              AND pr.stock_quantity > 0
              AND t.product_id NOT IN (SELECT product_id FROM purchased)
            GROUP BY t.product_id
            ORDER BY score DESC, t.product_id ASC
            LIMIT ?
        """, [customer_id, segment, customer_id, sample_size, limit],
            operation="get_collaborative_candidates")

    async def get_segment_candidates(
        self,
        customer_id: int,
        segment: str,
        limit: int
    ) -> List[Tuple[int, int, float]]:
        """(product_id, purchase count, revenue) across the whole segment cohort."""
        return await self._fetch_all(f"""
            WITH {_PURCHASED_CTE},
            cohort AS (
                SELECT customer_id
                FROM customer_analytics
                WHERE rfm_segment = ?
            )
            SELECT t.product_id, COUNT(*) AS purchase_count, SUM(t.total_amount) AS revenue
            FROM transactions t
            JOIN cohort c ON c.customer_id = t.customer_id
            JOIN products pr ON pr.id = t.product_id
            WHERE t.status = 'completed'
              AND pr.stock_quantity > 0
              AND t.product_id NOT IN (SELECT product_id FROM purchased)
            GROUP BY t.product_id
            ORDER BY purchase_count DESC, revenue DESC, t.product_id ASC
            LIMIT ?
        """, [customer_id, segment, limit], operation="get_segment_candidates")

    async def get_cross_sell_candidates(self, product_id: int, limit: int) -> List[Tuple[int, int]]:
        """(product_id, distinct co-buyer count) for in-stock products bought alongside ``product_id``."""
        return await self._fetch_all("""
            WITH buyers AS (
                SELECT DISTINCT customer_id
                FROM transactions
                WHERE product_id = ? AND status = 'completed'
            )
            SELECT t.product_id, COUNT(DISTINCT t.customer_id) AS co_purchase_count
            FROM transactions t
            JOIN buyers b ON b.customer_id = t.customer_id
            JOIN products pr ON pr.id = t.product_id
            WHERE t.status = 'completed'
              AND t.product_id <> ?
              AND pr.stock_quantity > 0
            GROUP BY t.product_id
            ORDER BY co_purchase_count DESC, t.product_id ASC
            LIMIT ?
        """, [product_id, product_id, limit], operation="get_cross_sell_candidates")

    # ─── Bulk loads ──────────────────────────────────────────────────────────

    async def _bulk_replace(self, table: str, columns: List[str], records: List[Dict[str, Any]]) -> int:
        """Stage records as a DataFrame and INSERT OR REPLACE them in one statement."""
        if not records:
            return 0

        df = pd.DataFrame.from_records(records)
        for column in columns:
            if column not in df.columns:
                df[column] = None
        df = df[columns]
        staging = f"stg_{table}"
        column_sql = ", ".join(columns)

        def _load(conn):
            conn.register(staging, df)
            try:
                conn.execute(f"INSERT OR REPLACE INTO {table} ({column_sql}) SELECT {column_sql} FROM {staging}")
            finally:
                conn.unregister(staging)
            return len(df)

        count = await self._run(f"insert_{table}", _load)
        logger.info(f"Loaded {count} rows into {table}")
        return count

    async def insert_customers(self, customers: List[Dict[str, Any]]) -> int:
        return await self._bulk_replace("customers", CUSTOMER_COLUMNS, customers)

    async def insert_products(self, products: List[Dict[str, Any]]) -> int:
        return await self._bulk_replace("products", PRODUCT_COLUMNS, products)

    async def insert_transactions(self, transactions: List[Dict[str, Any]]) -> int:
        """Load ledger entries. Accepts ``timestamp`` as an alias of ``ordered_at``."""
        records = []
        for tx in transactions:
            record = dict(tx)
            if "ordered_at" not in record and "timestamp" in record:
                record["ordered_at"] = record.pop("timestamp")
            records.append(record)
        return await self._bulk_replace("transactions", TRANSACTION_COLUMNS, records)

    async def update_product_stock(self, product_id: int, stock_quantity: int) -> None:
        await self._execute(
            "UPDATE products SET stock_quantity = ? WHERE id = ?",
            [stock_quantity, product_id],
            operation="update_product_stock",
        )

