"""
RFM (Recency / Frequency / Monetary) segmentation.

Each sub-score is a 1-5 bucket over completed transactions; their sum
(3-15) plus the sub-scores decide the customer's segment.
"""
import math
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from crm_analytics.batch import BatchSummary, run_batch
from crm_analytics.cache import SEGMENTS_OVERVIEW_KEY, TwoTierCache, customer_key
from crm_analytics.config import CacheConfig, ScoringConfig
from crm_analytics.exceptions import NotFoundError
from crm_analytics.models import (
    RFMResult,
    RFMSegment,
    SegmentOverview,
    SegmentStats,
    Transaction,
    utcnow,
)
from crm_analytics.observability import get_logger, timed
from crm_analytics.validators import validate_customer_id

logger = get_logger(__name__)

# Recency for customers without any completed purchase
NO_PURCHASE_RECENCY_DAYS = 9999


# ═══════════════════════════════════════════════════════════════════════════════
# SCORING
# ═══════════════════════════════════════════════════════════════════════════════

def days_between(later: datetime, earlier: datetime) -> int:
    """Whole days elapsed from ``earlier`` to ``later``."""
    return math.floor((later - earlier).total_seconds() / 86400)


def score_recency(days: int) -> int:
    if days <= 30:
        return 5
    if days <= 60:
        return 4
    if days <= 90:
        return 3
    if days <= 180:
        return 2
    return 1


def score_frequency(count: int) -> int:
    if count >= 20:
        return 5
    if count >= 10:
        return 4
    if count >= 5:
        return 3
    if count >= 2:
        return 2
    return 1


def score_monetary(amount: float) -> int:
    if amount >= 10000:
        return 5
    if amount >= 5000:
        return 4
    if amount >= 2000:
        return 3
    if amount >= 500:
        return 2
    return 1


def classify_segment(recency: int, frequency: int, monetary: int) -> RFMSegment:
    """First matching rule wins."""
    total = recency + frequency + monetary

    if total >= 13 and recency >= 4 and frequency >= 4 and monetary >= 4:
        return RFMSegment.CHAMPIONS
    if total >= 10 and frequency >= 3 and monetary >= 3:
        return RFMSegment.LOYAL
    if total >= 8 and recency <= 2 and (frequency >= 3 or monetary >= 3):
        return RFMSegment.AT_RISK
    if total <= 7 or recency == 1:
        return RFMSegment.LOST
    return RFMSegment.POTENTIAL


def compute_rfm(customer_id: int, transactions: List[Transaction], now: datetime) -> RFMResult:
    """
    Score a customer from completed transactions ordered newest first.

    A customer with no transactions gets the "Lost" sentinel.
    """
    if not transactions:
        return RFMResult(
            customer_id=customer_id,
            recency_days=NO_PURCHASE_RECENCY_DAYS,
            frequency_count=0,
            monetary_value=0.0,
            recency_score=1,
            frequency_score=1,
            monetary_score=1,
            rfm_score=3,
            segment=RFMSegment.LOST,
            calculated_at=now,
        )

    recency_days = max(0, days_between(now, transactions[0].timestamp))
    frequency_count = len(transactions)
    monetary_value = round(sum(t.total_amount for t in transactions), 2)

    r = score_recency(recency_days)
    f = score_frequency(frequency_count)
    m = score_monetary(monetary_value)

    return RFMResult(
        customer_id=customer_id,
        recency_days=recency_days,
        frequency_count=frequency_count,
        monetary_value=monetary_value,
        recency_score=r,
        frequency_score=f,
        monetary_score=m,
        rfm_score=r + f + m,
        segment=classify_segment(r, f, m),
        calculated_at=now,
    )


# ═══════════════════════════════════════════════════════════════════════════════
# SERVICE
# ═══════════════════════════════════════════════════════════════════════════════

class RFMService:
    """RFM scoring backed by the store and the two-tier cache."""

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

    async def calculate_customer_rfm(self, customer_id: int) -> RFMResult:
        """
        Recompute and persist RFM for one customer.

        Raises:
            NotFoundError: If the customer does not exist
        """
        if not await self.store.customer_exists(customer_id):
            raise NotFoundError("customer", customer_id)

        transactions = await self.store.get_completed_transactions(customer_id, newest_first=True)
        result = compute_rfm(customer_id, transactions, self._clock())
        await self.store.upsert_rfm(result)
        return result

    @timed("rfm_batch")
    async def calculate_all_customers_rfm(self) -> BatchSummary:
        """Score every customer; failures are counted, never raised."""
        customer_ids = await self.store.get_all_customer_ids()

        def _count_segment(summary: BatchSummary, result: RFMResult) -> None:
            summary.aggregates["segments"][result.segment.value] += 1

        summary = await run_batch(
            "rfm",
            customer_ids,
            self.calculate_customer_rfm,
            aggregate=_count_segment,
            initial={"segments": {segment.value: 0 for segment in RFMSegment.ordered()}},
        )

        # Segment membership changed for the whole population
        await self.cache.delete(SEGMENTS_OVERVIEW_KEY)
        logger.info("RFM segments", extra={"segments": summary.aggregates["segments"]})
        return summary

    async def get_customer_rfm_analysis(self, customer_id: int) -> RFMResult:
        """
        Cached RFM analysis.

        Resolution: cache, then persisted row if fresh, then recompute.
        """
        validate_customer_id(customer_id)
        key = customer_key(customer_id, "rfm")

        cached = await self.cache.get(key)
        if cached is not None:
            return RFMResult.from_dict(cached)

        result = await self._load_fresh(customer_id)
        if result is None:
            result = await self.calculate_customer_rfm(customer_id)

        await self.cache.set(key, result.to_dict(), self.cache_config.rfm_ttl_hours, "rfm")
        return result

    async def _load_fresh(self, customer_id: int) -> Optional[RFMResult]:
        row = await self.store.get_customer_analytics(customer_id)
        result = row.rfm_result() if row else None
        if result is None or result.calculated_at is None:
            return None

        cutoff = self._clock() - timedelta(hours=self.scoring.rfm_stale_hours)
        if result.calculated_at < cutoff:
            logger.debug(f"RFM for customer {customer_id} is stale")
            return None
        return result

    async def get_segment_overview(self) -> SegmentOverview:
        """Per-segment count, value, average score and share of the population."""
        cached = await self.cache.get(SEGMENTS_OVERVIEW_KEY)
        if cached is not None:
            return SegmentOverview.from_dict(cached)

        rollup = {row["segment"]: row for row in await self.store.get_segment_rollup()}
        total = sum(int(row["count"]) for row in rollup.values())

        segments: Dict[str, SegmentStats] = {}
        for segment in RFMSegment.ordered():
            row = rollup.get(segment.value)
            if row is None:
                continue
            count = int(row["count"])
            segments[segment.value] = SegmentStats(
                count=count,
                total_value=round(float(row["total_value"]), 2),
                avg_rfm_score=round(float(row["avg_rfm_score"]), 2),
                percentage=round(count / total * 100, 2) if total else 0.0,
            )

        overview = SegmentOverview(total_customers=total, segments=segments)
        await self.cache.set(
            SEGMENTS_OVERVIEW_KEY,
            overview.to_dict(),
            self.cache_config.segments_ttl_hours,
            "segments",
        )
        return overview
