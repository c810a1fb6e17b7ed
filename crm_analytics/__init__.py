"""
Customer analytics engine.

This package contains the scoring and recommendation logic:
- exceptions: Error hierarchy
- validators: Input validation functions
- config: Centralized configuration
- engine: AnalyticsEngine facade wiring store, cache, scorers and scheduler
"""

# Import in dependency order
from crm_analytics.exceptions import (
    AnalyticsError,
    NotFoundError,
    UpstreamError,
    ValidationError,
)

from crm_analytics.validators import (
    validate_cache_type,
    validate_customer_id,
    validate_limit,
)

from crm_analytics.config import config, AppConfig

from crm_analytics.engine import AnalyticsEngine

__all__ = [
    # Exceptions
    "AnalyticsError",
    "NotFoundError",
    "UpstreamError",
    "ValidationError",
    # Validators
    "validate_cache_type",
    "validate_customer_id",
    "validate_limit",
    # Config
    "config",
    "AppConfig",
    # Engine
    "AnalyticsEngine",
]
