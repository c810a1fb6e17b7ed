"""AnalyticsStore customer_analytics methods."""
from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from crm_analytics.models import (
    ChurnLevel,
    ChurnResult,
    CLVMetrics,
    CLVResult,
    CustomerAnalytics,
    RFMResult,
    RFMSegment,
)

ANALYTICS_COLUMNS = [
    "customer_id", "recency_days", "frequency_count", "monetary_value",
    "recency_score", "frequency_score", "monetary_score", "rfm_score",
    "rfm_segment", "rfm_calculated_at", "clv_predicted", "clv_confidence",
    "clv_details", "clv_calculated_at", "churn_risk_score", "churn_risk_level",
    "churn_indicators", "prevention_strategies", "churn_calculated_at",
    "last_calculated",
]


def _json_list(value: Optional[str]) -> List[str]:
    return list(json.loads(value)) if value else []


def _row_to_analytics(row: Dict[str, Any]) -> CustomerAnalytics:
    segment = row.get("rfm_segment")
    level = row.get("churn_risk_level")
    details = row.get("clv_details")
    return CustomerAnalytics(
        customer_id=int(row["customer_id"]),
        recency_days=row.get("recency_days"),
        frequency_count=row.get("frequency_count"),
        monetary_value=row.get("monetary_value"),
        recency_score=row.get("recency_score"),
        frequency_score=row.get("frequency_score"),
        monetary_score=row.get("monetary_score"),
        rfm_score=row.get("rfm_score"),
        rfm_segment=RFMSegment(segment) if segment else None,
        rfm_calculated_at=row.get("rfm_calculated_at"),
        clv_predicted=row.get("clv_predicted"),
        clv_confidence=row.get("clv_confidence"),
        clv_details=CLVMetrics.from_dict(json.loads(details)) if details else None,
        clv_calculated_at=row.get("clv_calculated_at"),
        churn_risk_score=row.get("churn_risk_score"),
        churn_risk_level=ChurnLevel(level) if level else None,
        churn_indicators=_json_list(row.get("churn_indicators")),
        prevention_strategies=_json_list(row.get("prevention_strategies")),
        churn_calculated_at=row.get("churn_calculated_at"),
        last_calculated=row.get("last_calculated"),
    )


class AnalyticsMixin:

    async def get_customer_analytics(self, customer_id: int) -> Optional[CustomerAnalytics]:
        rows = await self._fetch_dicts(f"""
            SELECT {', '.join(ANALYTICS_COLUMNS)}
            FROM customer_analytics
            WHERE customer_id = ?
        """, [customer_id], operation="get_customer_analytics")
        return _row_to_analytics(rows[0]) if rows else None

    async def get_customer_segment(self, customer_id: int) -> Optional[RFMSegment]:
        row = await self._fetch_one(
            "SELECT rfm_segment FROM customer_analytics WHERE customer_id = ?",
            [customer_id],
            operation="get_customer_segment",
        )
        return RFMSegment(row[0]) if row and row[0] else None

    # ─── Per-scorer upserts (each touches only its own column group) ─────────

    async def upsert_rfm(self, result: RFMResult) -> None:
        await self._execute("""
            INSERT INTO customer_analytics (
                customer_id, recency_days, frequency_count, monetary_value,
                recency_score, frequency_score, monetary_score, rfm_score,
                rfm_segment, rfm_calculated_at, last_calculated
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (customer_id) DO UPDATE SET
                recency_days = EXCLUDED.recency_days,
                frequency_count = EXCLUDED.frequency_count,
                monetary_value = EXCLUDED.monetary_value,
                recency_score = EXCLUDED.recency_score,
                frequency_score = EXCLUDED.frequency_score,
                monetary_score = EXCLUDED.monetary_score,
                rfm_score = EXCLUDED.rfm_score,
                rfm_segment = EXCLUDED.rfm_segment,
                rfm_calculated_at = EXCLUDED.rfm_calculated_at,
                last_calculated = EXCLUDED.last_calculated
        """, [
            result.customer_id, result.recency_days, result.frequency_count,
            result.monetary_value, result.recency_score, result.frequency_score,
            result.monetary_score, result.rfm_score, result.segment.value,
            result.calculated_at, result.calculated_at,
        ], operation="upsert_rfm")

    async def upsert_clv(self, result: CLVResult) -> None:
        await self._execute("""
            INSERT INTO customer_analytics (
                customer_id, clv_predicted, clv_confidence, clv_details,
                clv_calculated_at, last_calculated
            ) VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT (customer_id) DO UPDATE SET
                clv_predicted = EXCLUDED.clv_predicted,
                clv_confidence = EXCLUDED.clv_confidence,
                clv_details = EXCLUDED.clv_details,
                clv_calculated_at = EXCLUDED.clv_calculated_at,
                last_calculated = EXCLUDED.last_calculated
        """, [
            result.customer_id, result.clv_predicted, result.confidence,
            json.dumps(result.metrics.to_dict()), result.calculated_at, result.calculated_at,
        ], operation="upsert_clv")

    async def upsert_churn(self, result: ChurnResult) -> None:
        await self._execute("""
            INSERT INTO customer_analytics (
                customer_id, churn_risk_score, churn_risk_level, churn_indicators,
                prevention_strategies, churn_calculated_at, last_calculated
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (customer_id) DO UPDATE SET
                churn_risk_score = EXCLUDED.churn_risk_score,
                churn_risk_level = EXCLUDED.churn_risk_level,
                churn_indicators = EXCLUDED.churn_indicators,
                prevention_strategies = EXCLUDED.prevention_strategies,
                churn_calculated_at = EXCLUDED.churn_calculated_at,
                last_calculated = EXCLUDED.last_calculated
        """, [
            result.customer_id, result.risk_score, result.risk_level.value,
            json.dumps(result.indicators), json.dumps(result.prevention_strategies),
            result.calculated_at, result.calculated_at,
        ], operation="upsert_churn")

    # ─── Rollups ─────────────────────────────────────────────────────────────

    async def get_segment_rollup(self) -> List[Dict[str, Any]]:
        """Per-segment count, total monetary value and average RFM score."""
        return await self._fetch_dicts("""
            SELECT
                rfm_segment AS segment,
                COUNT(*) AS count,
                COALESCE(SUM(monetary_value), 0) AS total_value,
                COALESCE(AVG(rfm_score), 0) AS avg_rfm_score
            FROM customer_analytics
            WHERE rfm_segment IS NOT NULL
            GROUP BY rfm_segment
        """, operation="get_segment_rollup")

    async def get_top_clv_rows(self, limit: int) -> List[Dict[str, Any]]:
        return await self._fetch_dicts("""
            SELECT
                a.customer_id, c.email, c.first_name, c.last_name,
                a.clv_predicted, a.clv_confidence, a.rfm_segment,
                a.churn_risk_level, a.clv_calculated_at
            FROM customer_analytics a
            JOIN customers c ON c.id = a.customer_id
            WHERE a.clv_predicted IS NOT NULL
            ORDER BY a.clv_predicted DESC, a.customer_id ASC
            LIMIT ?
        """, [limit], operation="get_top_clv_rows")

    async def get_high_risk_rows(self, limit: int) -> List[Dict[str, Any]]:
        rows = await self._fetch_dicts("""
            SELECT
                a.customer_id, c.email, c.first_name, c.last_name,
                a.churn_risk_score, a.churn_risk_level, a.churn_indicators,
                a.prevention_strategies, a.rfm_segment, a.clv_predicted,
                a.churn_calculated_at
            FROM customer_analytics a
            JOIN customers c ON c.id = a.customer_id
            WHERE a.churn_risk_level IN ('critical', 'high')
            ORDER BY a.churn_risk_score DESC, a.customer_id ASC
            LIMIT ?
        """, [limit], operation="get_high_risk_rows")
        for row in rows:
            row["churn_indicators"] = _json_list(row["churn_indicators"])
            row["prevention_strategies"] = _json_list(row["prevention_strategies"])
        return rows

    async def get_analytics_averages(self) -> Dict[str, Any]:
        row = await self._fetch_one("""
            SELECT
                COUNT(*),
                AVG(rfm_score),
                AVG(clv_predicted),
                AVG(churn_risk_score),
                MAX(last_calculated)
            FROM customer_analytics
        """, operation="get_analytics_averages")
        return {
            "analysed_customers": int(row[0] or 0),
            "avg_rfm_score": round(float(row[1]), 2) if row[1] is not None else None,
            "avg_clv": round(float(row[2]), 2) if row[2] is not None else None,
            "avg_churn_risk": round(float(row[3]), 2) if row[3] is not None else None,
            "last_calculated": row[4].isoformat() if isinstance(row[4], datetime) else None,
        }
