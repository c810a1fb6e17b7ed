"""
Centralized configuration for the customer analytics engine.

This module provides a single source of truth for all configuration values.
Configuration is loaded from environment variables with sensible defaults.

Usage:
    from crm_analytics.config import config

    db_path = config.store.db_path
    rfm_ttl = config.cache.rfm_ttl_hours
"""

import os
from dataclasses import dataclass, field
from typing import Dict, List

from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value and value.strip().isdigit() else default


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class StoreConfig:
    """DuckDB store configuration."""

    db_path: str = field(
        default_factory=lambda: os.getenv("ANALYTICS_DB_PATH", "data/analytics.duckdb")
    )

    @property
    def in_memory(self) -> bool:
        return self.db_path == ":memory:"


@dataclass(frozen=True)
class CacheConfig:
    """Two-tier cache configuration (TTLs in hours)."""

    memory_max_entries: int = field(
        default_factory=lambda: _env_int("CACHE_MEMORY_MAX_ENTRIES", 10000)
    )
    default_ttl_hours: float = 6
    rfm_ttl_hours: float = 24
    clv_ttl_hours: float = 168  # 7 days
    recommendations_ttl_hours: float = 12
    segments_ttl_hours: float = 6
    top_clv_ttl_hours: float = 12

    # Keys dropped by invalidate_customer_cache()
    customer_key_types: List[str] = field(default_factory=lambda: [
        "rfm", "clv", "churn", "recommendations", "complete",
    ])

    # Allowed values for the cache_type tag
    cache_types: List[str] = field(default_factory=lambda: [
        "general", "rfm", "clv", "churn", "recommendations", "segments", "complete",
    ])


@dataclass(frozen=True)
class ScoringConfig:
    """Scoring windows and recommendation tuning."""

    rfm_stale_hours: float = 24
    clv_stale_hours: float = 168
    clv_horizon_months: int = 24
    recommendation_window_hours: float = 12
    collaborative_sample_size: int = 50
    default_recommendation_limit: int = 5
    batch_recommendation_limit: int = 10
    failed_transaction_window_days: int = 90

    recommendation_weights: Dict[str, float] = field(default_factory=lambda: {
        "affinity": 0.4,
        "collaborative": 0.3,
        "segment": 0.3,
    })


@dataclass(frozen=True)
class SchedulerConfig:
    """Batch job schedule (intervals in hours)."""

    timezone: str = field(default_factory=lambda: os.getenv("SCHEDULER_TIMEZONE", "UTC"))
    rfm_interval_hours: int = 6
    clv_interval_hours: int = 24
    churn_interval_hours: int = 12
    recommendations_interval_hours: int = 24
    cache_cleanup_interval_hours: int = 1
    run_initial_analytics: bool = field(
        default_factory=lambda: _env_bool("RUN_INITIAL_ANALYTICS")
    )
    max_history: int = 50


@dataclass(frozen=True)
class LoggingConfig:
    """Logging output configuration."""

    level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    format: str = field(default_factory=lambda: os.getenv("LOG_FORMAT", "text"))

    @property
    def json_format(self) -> bool:
        return self.format.lower() == "json"


@dataclass(frozen=True)
class AppConfig:
    """Main application configuration."""

    version: str = "1.0.0"
    store: StoreConfig = field(default_factory=StoreConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    scoring: ScoringConfig = field(default_factory=ScoringConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


# Global config instance
config = AppConfig()


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


def validate_config(app_config: AppConfig = config) -> None:
    """
    Validate configuration values.

    Call this on startup to fail fast with clear error messages
    instead of cryptic runtime failures.

    Raises:
        ConfigurationError: If configuration is invalid
    """
    errors = []

    if not app_config.store.db_path:
        errors.append("ANALYTICS_DB_PATH must not be empty")

    if app_config.cache.memory_max_entries <= 0:
        errors.append("CACHE_MEMORY_MAX_ENTRIES must be positive")

    weights = app_config.scoring.recommendation_weights
    missing = {"affinity", "collaborative", "segment"} - set(weights)
    if missing:
        errors.append(f"Recommendation weights missing: {', '.join(sorted(missing))}")
    if any(w < 0 for w in weights.values()):
        errors.append("Recommendation weights must be non-negative")

    sched = app_config.scheduler
    for name in (
        "rfm_interval_hours", "clv_interval_hours", "churn_interval_hours",
        "recommendations_interval_hours", "cache_cleanup_interval_hours",
    ):
        if getattr(sched, name) <= 0:
            errors.append(f"Scheduler {name} must be positive")

    if app_config.logging.level.upper() not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
        errors.append(f"LOG_LEVEL is invalid: {app_config.logging.level}")

    if errors:
        error_msg = "Configuration validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
        raise ConfigurationError(error_msg)
