"""
Hybrid product recommendations.

Three sub-algorithms each propose up to ``2 x limit`` scored candidates:

- affinity: products bought by customers who share a purchase with the target
- collaborative: popular products among a bounded sample of same-segment peers
- segment: top products across the whole segment cohort

Scores are min-max normalized per source and summed with fixed weights.
Already-purchased and out-of-stock products never appear.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Mapping, Optional

from crm_analytics.batch import BatchSummary, run_batch
from crm_analytics.cache import TwoTierCache, customer_key
from crm_analytics.config import CacheConfig, ScoringConfig
from crm_analytics.exceptions import NotFoundError
from crm_analytics.models import (
    CrossSellItem,
    Recommendation,
    RecommendationType,
    RFMSegment,
    ScoredCandidate,
    utcnow,
)
from crm_analytics.observability import get_logger, timed
from crm_analytics.validators import validate_customer_id, validate_limit

logger = get_logger(__name__)

AFFINITY_REASON = "Frequently bought together with your previous purchases"


def collaborative_reason(segment: RFMSegment) -> str:
    return f"Popular among {segment.value} customers like you"


def segment_reason(segment: RFMSegment) -> str:
    return f"Top choice for {segment.value} segment"


# ═══════════════════════════════════════════════════════════════════════════════
# COMBINER
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class RankedCandidate:
    """Product after merging all sources."""
    product_id: int
    score: float
    types: List[RecommendationType] = field(default_factory=list)
    reasons: List[str] = field(default_factory=list)


def normalize_scores(candidates: List[ScoredCandidate]) -> Dict[int, float]:
    """Min-max normalize to [0, 1]; every score is 1 when all are equal."""
    if not candidates:
        return {}
    scores = [c.score for c in candidates]
    low, high = min(scores), max(scores)
    if high == low:
        return {c.product_id: 1.0 for c in candidates}
    return {c.product_id: (c.score - low) / (high - low) for c in candidates}


def combine_recommendations(
    sources: Mapping[RecommendationType, List[ScoredCandidate]],
    weights: Mapping[str, float],
    limit: Optional[int] = None,
) -> List[RankedCandidate]:
    """
    Merge per-source candidates into one ranked list.

    Each product's score is the weighted sum of its normalized scores over
    the sources that proposed it, scaled to 0-100 and rounded to 2 decimals.
    Ties are broken by product id.
    """
    merged: Dict[int, RankedCandidate] = {}
    totals: Dict[int, float] = {}

    for rec_type in RecommendationType:
        candidates = sources.get(rec_type) or []
        weight = weights.get(rec_type.value, 0.0)
        normalized = normalize_scores(candidates)

        for candidate in candidates:
            entry = merged.setdefault(candidate.product_id, RankedCandidate(candidate.product_id, 0.0))
            totals[candidate.product_id] = totals.get(candidate.product_id, 0.0) + normalized[candidate.product_id] * weight
            if rec_type not in entry.types:
                entry.types.append(rec_type)
            if candidate.reason not in entry.reasons:
                entry.reasons.append(candidate.reason)

    for product_id, entry in merged.items():
        entry.score = round(totals[product_id] * 100, 2)

    ranked = sorted(merged.values(), key=lambda c: (-c.score, c.product_id))
    return ranked[:limit] if limit is not None else ranked


# ═══════════════════════════════════════════════════════════════════════════════
# SERVICE
# ═══════════════════════════════════════════════════════════════════════════════

class RecommendationService:
    """Personalized and cross-sell recommendations."""

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

    async def generate_personalized_recommendations(
        self,
        customer_id: int,
        limit: Optional[int] = None
    ) -> List[Recommendation]:
        """
        Ranked recommendations for one customer.

        Resolution: cache, then rows generated within the window (still in
        stock and not yet purchased), then full recompute. Cached entries are
        re-checked against stock and purchases; a cached or stored set left
        shorter than ``limit`` is not reused.

        Raises:
            NotFoundError: If the customer does not exist
        """
        validate_customer_id(customer_id)
        if limit is None:
            limit = self.scoring.default_recommendation_limit
        limit = validate_limit(limit)

        if not await self.store.customer_exists(customer_id):
            raise NotFoundError("customer", customer_id)

        key = customer_key(customer_id, "recommendations")
        cached = await self.cache.get(key)
        if cached:
            current = await self._still_eligible(
                customer_id, [Recommendation.from_dict(item) for item in cached]
            )
            if len(current) >= limit:
                return current[:limit]
            logger.debug(f"Cached recommendations for customer {customer_id} no longer cover limit {limit}")

        since = self._clock() - timedelta(hours=self.scoring.recommendation_window_hours)
        stored = await self.store.get_recent_recommendations(customer_id, since, limit)
        if stored and len(stored) >= limit:
            logger.debug(f"Using stored recommendations for customer {customer_id}")
            return stored

        return await self._recompute(customer_id, limit)

    async def _still_eligible(
        self,
        customer_id: int,
        recommendations: List[Recommendation]
    ) -> List[Recommendation]:
        """Drop entries that are now purchased or out of stock."""
        purchased = await self.store.get_purchased_product_ids(customer_id)
        products = await self.store.get_products(r.product.id for r in recommendations)
        return [
            r for r in recommendations
            if r.product.id not in purchased
            and r.product.id in products
            and products[r.product.id].in_stock
        ]

    async def _recompute(self, customer_id: int, limit: int) -> List[Recommendation]:
        pool = limit * 2
        purchased = await self.store.get_purchased_product_ids(customer_id)

        sources: Dict[RecommendationType, List[ScoredCandidate]] = {}
        if purchased:
            sources[RecommendationType.AFFINITY] = [
                ScoredCandidate(product_id, float(score), AFFINITY_REASON)
                for product_id, score in await self.store.get_affinity_candidates(customer_id, pool)
            ]

        segment = await self.store.get_customer_segment(customer_id)
        if segment is not None:
            sources[RecommendationType.COLLABORATIVE] = [
                ScoredCandidate(product_id, float(score), collaborative_reason(segment))
                for product_id, score in await self.store.get_collaborative_candidates(
                    customer_id, segment.value, self.scoring.collaborative_sample_size, pool
                )
            ]
            sources[RecommendationType.SEGMENT] = [
                ScoredCandidate(product_id, float(count), segment_reason(segment))
                for product_id, count, _revenue in await self.store.get_segment_candidates(
                    customer_id, segment.value, pool
                )
            ]

        ranked = combine_recommendations(sources, self.scoring.recommendation_weights, limit)
        products = await self.store.get_products(c.product_id for c in ranked)

        recommendations = [
            Recommendation(
                product=products[c.product_id].summary(),
                recommendation_score=c.score,
                recommendation_types=c.types,
                reasons=c.reasons,
            )
            for c in ranked
            if c.product_id in products
        ]

        now = self._clock()
        await self.store.replace_recommendations(
            customer_id,
            recommendations,
            generated_at=now,
            expires_at=now + timedelta(hours=self.cache_config.recommendations_ttl_hours),
        )

        key = customer_key(customer_id, "recommendations")
        if recommendations:
            await self.cache.set(
                key,
                [r.to_dict() for r in recommendations],
                self.cache_config.recommendations_ttl_hours,
                "recommendations",
            )
        else:
            await self.cache.delete(key)

        logger.debug(
            f"Generated {len(recommendations)} recommendations for customer {customer_id}",
            extra={"sources": {t.value: len(c) for t, c in sources.items()}},
        )
        return recommendations

    async def get_product_cross_sell(self, product_id: int, limit: int = 5) -> List[CrossSellItem]:
        """
        In-stock products most often bought by customers who bought ``product_id``.

        Raises:
            NotFoundError: If the product does not exist
        """
        validate_customer_id(product_id, field="product_id")
        validate_limit(limit)

        if await self.store.get_product(product_id) is None:
            raise NotFoundError("product", product_id)

        buyers = await self.store.get_customers_who_purchased(product_id)
        if not buyers:
            return []

        rows = await self.store.get_cross_sell_candidates(product_id, limit)
        products = await self.store.get_products(pid for pid, _ in rows)

        return [
            CrossSellItem(
                product=products[pid].summary(),
                co_purchase_count=int(count),
                affinity_score=round(count / len(buyers) * 100, 2),
            )
            for pid, count in rows
            if pid in products
        ]

    @timed("recommendations_batch")
    async def generate_all_recommendations(self) -> BatchSummary:
        """Recompute recommendation sets for every customer."""
        customer_ids = await self.store.get_all_customer_ids()
        limit = self.scoring.batch_recommendation_limit

        async def _regenerate(customer_id: int) -> List[Recommendation]:
            return await self._recompute(customer_id, limit)

        def _count(summary: BatchSummary, recommendations: List[Recommendation]) -> None:
            summary.aggregates["total_recommendations"] += len(recommendations)

        return await run_batch(
            "recommendations",
            customer_ids,
            _regenerate,
            aggregate=_count,
            initial={"total_recommendations": 0},
        )
