"""
Analytics engine: wires the store, cache, event bus, scorers and scheduler.

This is the public entry point for callers. Everything is constructed once
from an AppConfig and passed by reference, so there is exactly one cache
and one store connection per engine.

Usage:
    engine = AnalyticsEngine()
    await engine.start()

    rfm = await engine.get_customer_rfm_analysis(42)
    overview = await engine.get_dashboard_overview()

    await engine.stop()
"""
import asyncio
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from crm_analytics.cache import TwoTierCache, customer_key, register_cache_invalidation_handlers
from crm_analytics.churn_service import ChurnService
from crm_analytics.clv_service import CLVService
from crm_analytics.config import AppConfig, config as default_config, validate_config
from crm_analytics.events import EventBus
from crm_analytics.models import (
    ChurnResult,
    CLVResult,
    CrossSellItem,
    Recommendation,
    RFMResult,
    SegmentOverview,
    utcnow,
)
from crm_analytics.observability import correlation_context, generate_correlation_id, get_logger
from crm_analytics.recommendation_service import RecommendationService
from crm_analytics.rfm_service import RFMService
from crm_analytics.scheduler import AnalyticsScheduler
from crm_analytics.store import AnalyticsStore
from crm_analytics.validators import validate_customer_id

logger = get_logger(__name__)

DASHBOARD_TOP_N = 5
COMPLETE_RECOMMENDATIONS = 5


class AnalyticsEngine:
    """Facade over the analytics services."""

    def __init__(
        self,
        app_config: AppConfig = None,
        store: Optional[AnalyticsStore] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = app_config or default_config
        validate_config(self.config)
        self._clock = clock

        self.bus = EventBus()
        self.store = store or AnalyticsStore(self.config.store.db_path)
        self.cache = TwoTierCache(self.store, self.config.cache, clock=clock, bus=self.bus)

        self.rfm = RFMService(self.store, self.cache, self.config.scoring, self.config.cache, clock)
        self.clv = CLVService(self.store, self.cache, self.config.scoring, self.config.cache, clock)
        self.churn = ChurnService(self.store, self.config.scoring, clock)
        self.recommendations = RecommendationService(
            self.store, self.cache, self.config.scoring, self.config.cache, clock
        )

        self.scheduler = AnalyticsScheduler(
            self.rfm,
            self.clv,
            self.churn,
            self.recommendations,
            self.cache,
            self.config.scheduler,
            bus=self.bus,
        )
        self._handlers_registered = False

    async def start(self, with_scheduler: bool = True) -> None:
        """Connect the store, hook cache invalidation and start the scheduler."""
        await self.store.connect()
        if not self._handlers_registered:
            register_cache_invalidation_handlers(self.bus, self.cache)
            self._handlers_registered = True
        if with_scheduler:
            await self.scheduler.start()
        logger.info("Analytics engine started", extra={"version": self.config.version})

    async def stop(self) -> None:
        self.scheduler.shutdown(wait=False)
        await self.store.close()
        logger.info("Analytics engine stopped")

    async def __aenter__(self) -> "AnalyticsEngine":
        await self.start(with_scheduler=False)
        return self

    async def __aexit__(self, *args) -> None:
        await self.stop()

    # ─── Per-customer analytics ──────────────────────────────────────────────

    async def get_customer_rfm_analysis(self, customer_id: int) -> RFMResult:
        return await self.rfm.get_customer_rfm_analysis(customer_id)

    async def get_customer_clv_analysis(self, customer_id: int) -> CLVResult:
        return await self.clv.get_customer_clv_analysis(customer_id)

    async def get_customer_churn_analysis(self, customer_id: int) -> ChurnResult:
        return await self.churn.get_customer_churn_analysis(customer_id)

    async def generate_personalized_recommendations(
        self,
        customer_id: int,
        limit: Optional[int] = None
    ) -> List[Recommendation]:
        return await self.recommendations.generate_personalized_recommendations(customer_id, limit)

    async def get_product_cross_sell(self, product_id: int, limit: int = 5) -> List[CrossSellItem]:
        return await self.recommendations.get_product_cross_sell(product_id, limit)

    async def get_customer_complete_analytics(self, customer_id: int) -> Dict[str, Any]:
        """
        RFM, CLV, churn and top recommendations for one customer.

        The four parts are resolved concurrently. The combined view is
        cached under the customer's "complete" key.

        Raises:
            NotFoundError: If the customer does not exist
        """
        validate_customer_id(customer_id)
        key = customer_key(customer_id, "complete")

        cached = await self.cache.get(key)
        if cached is not None:
            return cached

        with correlation_context(generate_correlation_id("complete")):
            rfm, clv, churn, recommendations = await asyncio.gather(
                self.rfm.get_customer_rfm_analysis(customer_id),
                self.clv.get_customer_clv_analysis(customer_id),
                self.churn.get_customer_churn_analysis(customer_id),
                self.recommendations.generate_personalized_recommendations(
                    customer_id, COMPLETE_RECOMMENDATIONS
                ),
            )

        result = {
            "customer_id": customer_id,
            "rfm": rfm.to_dict(),
            "clv": clv.to_dict(),
            "churn": churn.to_dict(),
            "recommendations": [r.to_dict() for r in recommendations],
            "generated_at": self._clock().isoformat(),
        }
        await self.cache.set(key, result, self.config.cache.default_ttl_hours, "complete")
        return result

    # ─── Population views ────────────────────────────────────────────────────

    async def get_segment_overview(self) -> SegmentOverview:
        return await self.rfm.get_segment_overview()

    async def get_high_risk_customers(self, limit: int = 20) -> List[Dict[str, Any]]:
        return await self.churn.get_high_risk_customers(limit)

    async def get_top_customers_by_clv(self, limit: int = 10) -> List[Dict[str, Any]]:
        return await self.clv.get_top_customers_by_clv(limit)

    async def get_dashboard_overview(self) -> Dict[str, Any]:
        """Segments, top CLV customers, highest churn risks and population averages."""
        segments, top_clv, high_risk, averages = await asyncio.gather(
            self.rfm.get_segment_overview(),
            self.clv.get_top_customers_by_clv(DASHBOARD_TOP_N),
            self.churn.get_high_risk_customers(DASHBOARD_TOP_N),
            self.store.get_analytics_averages(),
        )
        return {
            "segments": segments.to_dict(),
            "top_clv_customers": top_clv,
            "high_risk_customers": high_risk,
            "averages": averages,
        }

    async def run_all_analytics_now(self) -> Dict[str, Dict[str, Any]]:
        return await self.scheduler.run_all_analytics_now()

    # ─── Cache admin ─────────────────────────────────────────────────────────

    async def cache_stats(self) -> Dict[str, Any]:
        return await self.cache.get_stats()

    async def clear_cache(self, cache_type: Optional[str] = None) -> int:
        return await self.cache.clear(cache_type)

    async def invalidate_customer(self, customer_id: int) -> int:
        validate_customer_id(customer_id)
        return await self.cache.invalidate_customer_cache(customer_id)

    async def clean_expired_cache(self) -> int:
        return await self.cache.clean_expired()

    async def health(self) -> Dict[str, Any]:
        """Store, cache and scheduler status."""
        return {
            "version": self.config.version,
            "store": self.store.get_connection_info(),
            "cache": await self.cache.get_stats(),
            "scheduler_running": self.scheduler.is_running,
            "jobs": self.scheduler.get_jobs(),
        }
