"""
Repository mixins for AnalyticsStore.

- LedgerMixin: customers, products, transactions and recommendation candidates
- AnalyticsMixin: customer_analytics rows (RFM / CLV / churn column groups)
- RecommendationsMixin: product_recommendations rows
- CacheRowsMixin: analytics_cache rows (durable cache tier)
"""
from crm_analytics.repositories.ledger import LedgerMixin
from crm_analytics.repositories.analytics_repo import AnalyticsMixin
from crm_analytics.repositories.recommendations_repo import RecommendationsMixin
from crm_analytics.repositories.cache_repo import CacheRowsMixin

__all__ = [
    "LedgerMixin",
    "AnalyticsMixin",
    "RecommendationsMixin",
    "CacheRowsMixin",
]
