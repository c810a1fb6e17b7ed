"""
Customer lifetime value prediction.

basic CLV = average order value x monthly purchase frequency x horizon,
adjusted by a behaviour multiplier clamped to [0.5, 2.0]. A separate
confidence score (0-100) reflects how much history backs the prediction.
"""
import math
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from crm_analytics.batch import BatchSummary, run_batch
from crm_analytics.cache import TwoTierCache, customer_key, top_clv_key
from crm_analytics.config import CacheConfig, ScoringConfig
from crm_analytics.exceptions import NotFoundError
from crm_analytics.models import CLVMetrics, CLVResult, Transaction, utcnow
from crm_analytics.observability import get_logger, timed
from crm_analytics.validators import validate_customer_id, validate_limit

logger = get_logger(__name__)

MIN_MULTIPLIER = 0.5
MAX_MULTIPLIER = 2.0


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def clv_multiplier(
    days_since_last: int,
    purchase_frequency: float,
    amounts: List[float]
) -> float:
    """
    Behaviour adjustment for the basic CLV.

    Args:
        days_since_last: Days since the latest purchase
        purchase_frequency: Orders per month
        amounts: Order amounts, oldest first
    """
    multiplier = 1.0

    if days_since_last <= 30:
        multiplier += 0.30
    elif days_since_last <= 60:
        multiplier += 0.15

    if purchase_frequency >= 2:
        multiplier += 0.25
    elif purchase_frequency >= 1:
        multiplier += 0.15

    if len(amounts) >= 3:
        recent, older = amounts[-3:], amounts[:-3]
        if older and sum(recent) / len(recent) < 0.7 * (sum(older) / len(older)):
            multiplier -= 0.20

    return _clamp(multiplier, MIN_MULTIPLIER, MAX_MULTIPLIER)


def clv_confidence(order_count: int, lifespan_months: float, days_since_last: int) -> float:
    confidence = 50.0

    if order_count >= 10:
        confidence += 25
    elif order_count >= 5:
        confidence += 15
    elif order_count >= 3:
        confidence += 5

    if lifespan_months >= 12:
        confidence += 15
    elif lifespan_months >= 6:
        confidence += 10
    elif lifespan_months >= 3:
        confidence += 5

    if days_since_last <= 30:
        confidence += 10
    elif days_since_last <= 60:
        confidence += 5
    elif days_since_last > 180:
        confidence -= 15

    return _clamp(confidence, 0.0, 100.0)


def compute_clv(
    customer_id: int,
    transactions: List[Transaction],
    now: datetime,
    horizon_months: int = 24
) -> CLVResult:
    """Predict CLV from completed transactions ordered oldest first."""
    if not transactions:
        return CLVResult(customer_id=customer_id, clv_predicted=0.0, confidence=0.0,
                         metrics=CLVMetrics(), calculated_at=now)

    amounts = [t.total_amount for t in transactions]
    total_spent = sum(amounts)
    order_count = len(amounts)
    avg_order_value = total_spent / order_count

    first, last = transactions[0].timestamp, transactions[-1].timestamp
    lifespan_days = max(1, math.floor((last - first).total_seconds() / 86400))
    lifespan_months = max(1.0, lifespan_days / 30)
    purchase_frequency = order_count / lifespan_months
    basic_clv = avg_order_value * purchase_frequency * horizon_months

    days_since_last = max(0, math.floor((now - last).total_seconds() / 86400))
    multiplier = clv_multiplier(days_since_last, purchase_frequency, amounts)

    metrics = CLVMetrics(
        total_spent=round(total_spent, 2),
        order_count=order_count,
        avg_order_value=round(avg_order_value, 2),
        lifespan_days=lifespan_days,
        lifespan_months=round(lifespan_months, 2),
        purchase_frequency=round(purchase_frequency, 4),
        days_since_last_purchase=days_since_last,
        basic_clv=round(basic_clv, 2),
        multiplier=round(multiplier, 2),
    )

    return CLVResult(
        customer_id=customer_id,
        clv_predicted=round(basic_clv * multiplier, 2),
        confidence=clv_confidence(order_count, lifespan_months, days_since_last),
        metrics=metrics,
        calculated_at=now,
    )


class CLVService:
    """CLV prediction backed by the store and the two-tier cache."""

    def __init__(
        self,
        store,
        cache: TwoTierCache,
        scoring: ScoringConfig = None,
        cache_config: CacheConfig = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.cache = cache
        self.scoring = scoring or ScoringConfig()
        self.cache_config = cache_config or CacheConfig()
        self._clock = clock

    async def calculate_customer_clv(self, customer_id: int) -> CLVResult:
        """
        Recompute and persist CLV for one customer.

        Raises:
            NotFoundError: If the customer does not exist
        """
        if not await self.store.customer_exists(customer_id):
            raise NotFoundError("customer", customer_id)

        transactions = await self.store.get_completed_transactions(customer_id, newest_first=False)
        result = compute_clv(customer_id, transactions, self._clock(), self.scoring.clv_horizon_months)
        await self.store.upsert_clv(result)
        return result

    @timed("clv_batch")
    async def calculate_all_customers_clv(self) -> BatchSummary:
        customer_ids = await self.store.get_all_customer_ids()

        def _accumulate(summary: BatchSummary, result: CLVResult) -> None:
            summary.aggregates["total_clv"] += result.clv_predicted

        summary = await run_batch(
            "clv",
            customer_ids,
            self.calculate_customer_clv,
            aggregate=_accumulate,
            initial={"total_clv": 0.0},
        )
        total = summary.aggregates["total_clv"]
        summary.aggregates["total_clv"] = round(total, 2)
        summary.aggregates["average_clv"] = round(total / summary.processed, 2) if summary.processed else 0.0
        return summary

    async def get_customer_clv_analysis(self, customer_id: int) -> CLVResult:
        """Cache, then persisted row if calculated within the staleness window, then recompute."""
        validate_customer_id(customer_id)
        key = customer_key(customer_id, "clv")

        cached = await self.cache.get(key)
        if cached is not None:
            return CLVResult.from_dict(cached)

        result = await self._load_fresh(customer_id)
        if result is None:
            result = await self.calculate_customer_clv(customer_id)

        await self.cache.set(key, result.to_dict(), self.cache_config.clv_ttl_hours, "clv")
        return result

    async def _load_fresh(self, customer_id: int) -> Optional[CLVResult]:
        row = await self.store.get_customer_analytics(customer_id)
        result = row.clv_result() if row else None
        if result is None or result.calculated_at is None:
            return None

        cutoff = self._clock() - timedelta(hours=self.scoring.clv_stale_hours)
        return result if result.calculated_at >= cutoff else None

    async def get_top_customers_by_clv(self, limit: int = 10) -> List[Dict[str, Any]]:
        """Customers ranked by predicted CLV, highest first."""
        validate_limit(limit)

        async def _compute() -> List[Dict[str, Any]]:
            rows = await self.store.get_top_clv_rows(limit)
            return [
                {
                    "rank": rank,
                    "customer_id": row["customer_id"],
                    "email": row["email"],
                    "name": " ".join(p for p in (row["first_name"], row["last_name"]) if p) or "Unknown",
                    "clv_predicted": round(float(row["clv_predicted"]), 2),
                    "clv_confidence": float(row["clv_confidence"] or 0),
                    "rfm_segment": row["rfm_segment"],
                    "churn_risk_level": row["churn_risk_level"],
                }
                for rank, row in enumerate(rows, start=1)
            ]

        return await self.cache.get_or_set(
            top_clv_key(limit), _compute, self.cache_config.top_clv_ttl_hours, "clv"
        )
