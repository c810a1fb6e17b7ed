"""AnalyticsStore product_recommendations methods."""
from __future__ import annotations

import json
from datetime import datetime
from typing import List

from crm_analytics.models import Product, Recommendation, RecommendationType


class RecommendationsMixin:

    async def replace_recommendations(
        self,
        customer_id: int,
        recommendations: List[Recommendation],
        generated_at: datetime,
        expires_at: datetime
    ) -> int:
        """Delete every stored recommendation for the customer and insert the new set atomically."""
        rows = [
            [
                customer_id,
                rec.product.id,
                rec.recommendation_score,
                json.dumps([t.value for t in rec.recommendation_types]),
                json.dumps(rec.reasons),
                generated_at,
                expires_at,
            ]
            for rec in recommendations
        ]

        def _replace(conn):
            conn.execute("BEGIN TRANSACTION")
            try:
                conn.execute("DELETE FROM product_recommendations WHERE customer_id = ?", [customer_id])
                if rows:
                    conn.executemany("""
                        INSERT INTO product_recommendations (
                            customer_id, product_id, recommendation_score,
                            recommendation_types, reasons, generated_at, expires_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """, rows)
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
            return len(rows)

        return await self._run("replace_recommendations", _replace)

    async def get_recent_recommendations(
        self,
        customer_id: int,
        generated_since: datetime,
        limit: int
    ) -> List[Recommendation]:
        """
        Stored recommendations generated after ``generated_since``.

        Rows whose product went out of stock or has since been purchased
        are skipped.
        """
        rows = await self._fetch_dicts("""
            SELECT
                r.product_id, r.recommendation_score, r.recommendation_types, r.reasons,
                p.id, p.name, p.category, p.price, p.stock_quantity
            FROM product_recommendations r
            JOIN products p ON p.id = r.product_id
            WHERE r.customer_id = ?
              AND r.generated_at > ?
              AND p.stock_quantity > 0
              AND r.product_id NOT IN (
                  SELECT product_id FROM transactions
                  WHERE customer_id = ? AND status = 'completed'
              )
            ORDER BY r.recommendation_score DESC, r.product_id ASC
            LIMIT ?
        """, [customer_id, generated_since, customer_id, limit], operation="get_recent_recommendations")

        return [
            Recommendation(
                product=Product.from_row(row).summary(),
                recommendation_score=float(row["recommendation_score"]),
                recommendation_types=[RecommendationType(t) for t in json.loads(row["recommendation_types"] or "[]")],
                reasons=list(json.loads(row["reasons"] or "[]")),
            )
            for row in rows
        ]
