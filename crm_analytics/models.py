"""
Domain models for customer analytics.

Typed records for the ledger (customers, products, transactions) and for
everything derived from it (RFM, CLV, churn, recommendations, cache entries).
Derived records round-trip through ``to_dict()`` / ``from_dict()`` so the
same shape is used for persistence, cache payloads and API output.

All timestamps are naive UTC.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any


def utcnow() -> datetime:
    """Current time as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Any) -> Optional[datetime]:
    """Accept datetime, ISO string or None; return naive UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


# ═══════════════════════════════════════════════════════════════════════════════
# ENUMS
# ═══════════════════════════════════════════════════════════════════════════════

class RFMSegment(str, Enum):
    """Customer segments derived from RFM sub-scores."""
    CHAMPIONS = "Champions"
    LOYAL = "Loyal"
    POTENTIAL = "Potential"
    AT_RISK = "At Risk"
    LOST = "Lost"

    @classmethod
    def ordered(cls) -> List["RFMSegment"]:
        """Segments in display order, best first."""
        return [cls.CHAMPIONS, cls.LOYAL, cls.POTENTIAL, cls.AT_RISK, cls.LOST]


class ChurnLevel(str, Enum):
    """Churn risk buckets."""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @classmethod
    def from_score(cls, score: float) -> "ChurnLevel":
        if score >= 70:
            return cls.CRITICAL
        if score >= 50:
            return cls.HIGH
        if score >= 30:
            return cls.MEDIUM
        return cls.LOW


class RecommendationType(str, Enum):
    """Recommendation sub-algorithms."""
    AFFINITY = "affinity"
    COLLABORATIVE = "collaborative"
    SEGMENT = "segment"


class LoyaltyTier(str, Enum):
    """Loyalty tiers, lowest first."""
    BRONZE = "bronze"
    SILVER = "silver"
    GOLD = "gold"
    PLATINUM = "platinum"

    @property
    def is_lowest(self) -> bool:
        return self is LoyaltyTier.BRONZE


class TransactionStatus(str, Enum):
    """Ledger entry status."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


# ═══════════════════════════════════════════════════════════════════════════════
# LEDGER RECORDS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class Customer:
    """Customer profile (read-only for analytics)."""
    id: int
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    registration_date: Optional[datetime] = None
    total_spent: float = 0.0
    loyalty_tier: Optional[LoyaltyTier] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Customer":
        tier = row.get("loyalty_tier")
        return cls(
            id=int(row["id"]),
            email=row.get("email"),
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            registration_date=_parse_dt(row.get("registration_date")),
            total_spent=float(row.get("total_spent") or 0),
            loyalty_tier=LoyaltyTier(str(tier).lower()) if tier else None,
        )

    @property
    def full_name(self) -> str:
        parts = [self.first_name, self.last_name]
        return " ".join(p for p in parts if p) or "Unknown"


@dataclass
class Product:
    """Catalog product with current stock."""
    id: int
    name: str
    category: Optional[str] = None
    price: float = 0.0
    stock_quantity: int = 0

    @property
    def in_stock(self) -> bool:
        return self.stock_quantity > 0

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Product":
        return cls(
            id=int(row["id"]),
            name=row.get("name") or "",
            category=row.get("category"),
            price=float(row.get("price") or 0),
            stock_quantity=int(row.get("stock_quantity") or 0),
        )

    def summary(self) -> "ProductSummary":
        return ProductSummary(
            id=self.id,
            name=self.name,
            category=self.category,
            price=self.price,
            stock_quantity=self.stock_quantity,
        )


@dataclass
class ProductSummary:
    """Display attributes of a product embedded in recommendation output."""
    id: int
    name: str
    category: Optional[str] = None
    price: float = 0.0
    stock_quantity: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "category": self.category,
            "price": self.price,
            "stock_quantity": self.stock_quantity,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProductSummary":
        return cls(
            id=int(data["id"]),
            name=data.get("name") or "",
            category=data.get("category"),
            price=float(data.get("price") or 0),
            stock_quantity=int(data.get("stock_quantity") or 0),
        )


@dataclass
class Transaction:
    """Ledger entry."""
    id: int
    customer_id: int
    product_id: int
    quantity: int
    unit_price: float
    total_amount: float
    status: TransactionStatus
    timestamp: datetime
    payment_method: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Transaction":
        return cls(
            id=int(row["id"]),
            customer_id=int(row["customer_id"]),
            product_id=int(row["product_id"]),
            quantity=int(row.get("quantity") or 1),
            unit_price=float(row.get("unit_price") or 0),
            total_amount=float(row.get("total_amount") or 0),
            status=TransactionStatus(row.get("status") or "completed"),
            timestamp=_parse_dt(row.get("ordered_at") or row.get("timestamp")),
            payment_method=row.get("payment_method"),
        )


# ═══════════════════════════════════════════════════════════════════════════════
# SCORER OUTPUT
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class RFMResult:
    """RFM sub-scores and raw metrics for one customer."""
    customer_id: int
    recency_days: int
    frequency_count: int
    monetary_value: float
    recency_score: int
    frequency_score: int
    monetary_score: int
    rfm_score: int
    segment: RFMSegment
    calculated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "customer_id": self.customer_id,
            "recency_days": self.recency_days,
            "frequency_count": self.frequency_count,
            "monetary_value": self.monetary_value,
            "recency_score": self.recency_score,
            "frequency_score": self.frequency_score,
            "monetary_score": self.monetary_score,
            "rfm_score": self.rfm_score,
            "segment": self.segment.value,
            "calculated_at": _iso(self.calculated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RFMResult":
        return cls(
            customer_id=int(data["customer_id"]),
            recency_days=int(data["recency_days"]),
            frequency_count=int(data["frequency_count"]),
            monetary_value=float(data["monetary_value"]),
            recency_score=int(data["recency_score"]),
            frequency_score=int(data["frequency_score"]),
            monetary_score=int(data["monetary_score"]),
            rfm_score=int(data["rfm_score"]),
            segment=RFMSegment(data["segment"]),
            calculated_at=_parse_dt(data.get("calculated_at")) or utcnow(),
        )


@dataclass
class CLVMetrics:
    """Inputs behind a CLV prediction."""
    total_spent: float = 0.0
    order_count: int = 0
    avg_order_value: float = 0.0
    lifespan_days: int = 0
    lifespan_months: float = 0.0
    purchase_frequency: float = 0.0
    days_since_last_purchase: Optional[int] = None
    basic_clv: float = 0.0
    multiplier: float = 1.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_spent": self.total_spent,
            "order_count": self.order_count,
            "avg_order_value": self.avg_order_value,
            "lifespan_days": self.lifespan_days,
            "lifespan_months": self.lifespan_months,
            "purchase_frequency": self.purchase_frequency,
            "days_since_last_purchase": self.days_since_last_purchase,
            "basic_clv": self.basic_clv,
            "multiplier": self.multiplier,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "CLVMetrics":
        if not data:
            return cls()
        days_since = data.get("days_since_last_purchase")
        return cls(
            total_spent=float(data.get("total_spent") or 0),
            order_count=int(data.get("order_count") or 0),
            avg_order_value=float(data.get("avg_order_value") or 0),
            lifespan_days=int(data.get("lifespan_days") or 0),
            lifespan_months=float(data.get("lifespan_months") or 0),
            purchase_frequency=float(data.get("purchase_frequency") or 0),
            days_since_last_purchase=int(days_since) if days_since is not None else None,
            basic_clv=float(data.get("basic_clv") or 0),
            multiplier=float(data.get("multiplier") if data.get("multiplier") is not None else 1.0),
        )


@dataclass
class CLVResult:
    """Predicted lifetime value for one customer."""
    customer_id: int
    clv_predicted: float
    confidence: float
    metrics: CLVMetrics = field(default_factory=CLVMetrics)
    calculated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "customer_id": self.customer_id,
            "clv_predicted": self.clv_predicted,
            "confidence": self.confidence,
            "metrics": self.metrics.to_dict(),
            "calculated_at": _iso(self.calculated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CLVResult":
        return cls(
            customer_id=int(data["customer_id"]),
            clv_predicted=float(data["clv_predicted"]),
            confidence=float(data["confidence"]),
            metrics=CLVMetrics.from_dict(data.get("metrics")),
            calculated_at=_parse_dt(data.get("calculated_at")) or utcnow(),
        )


@dataclass
class ChurnResult:
    """Churn risk assessment for one customer."""
    customer_id: int
    risk_score: int
    risk_level: ChurnLevel
    indicators: List[str] = field(default_factory=list)
    prevention_strategies: List[str] = field(default_factory=list)
    days_since_last_purchase: Optional[int] = None
    total_transactions: int = 0
    calculated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "customer_id": self.customer_id,
            "risk_score": self.risk_score,
            "risk_level": self.risk_level.value,
            "indicators": list(self.indicators),
            "prevention_strategies": list(self.prevention_strategies),
            "days_since_last_purchase": self.days_since_last_purchase,
            "total_transactions": self.total_transactions,
            "calculated_at": _iso(self.calculated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChurnResult":
        return cls(
            customer_id=int(data["customer_id"]),
            risk_score=int(data["risk_score"]),
            risk_level=ChurnLevel(data["risk_level"]),
            indicators=list(data.get("indicators") or []),
            prevention_strategies=list(data.get("prevention_strategies") or []),
            days_since_last_purchase=data.get("days_since_last_purchase"),
            total_transactions=int(data.get("total_transactions") or 0),
            calculated_at=_parse_dt(data.get("calculated_at")) or utcnow(),
        )


@dataclass
class CustomerAnalytics:
    """
    Persisted analytics row (one per customer).

    Each scorer owns its own columns; a column group is None until that
    scorer has run at least once.
    """
    customer_id: int
    # RFM
    recency_days: Optional[int] = None
    frequency_count: Optional[int] = None
    monetary_value: Optional[float] = None
    recency_score: Optional[int] = None
    frequency_score: Optional[int] = None
    monetary_score: Optional[int] = None
    rfm_score: Optional[int] = None
    rfm_segment: Optional[RFMSegment] = None
    rfm_calculated_at: Optional[datetime] = None
    # CLV
    clv_predicted: Optional[float] = None
    clv_confidence: Optional[float] = None
    clv_details: Optional[CLVMetrics] = None
    clv_calculated_at: Optional[datetime] = None
    # Churn
    churn_risk_score: Optional[int] = None
    churn_risk_level: Optional[ChurnLevel] = None
    churn_indicators: List[str] = field(default_factory=list)
    prevention_strategies: List[str] = field(default_factory=list)
    churn_calculated_at: Optional[datetime] = None

    last_calculated: Optional[datetime] = None

    def rfm_result(self) -> Optional[RFMResult]:
        """RFM view of the row, or None if RFM was never computed."""
        if self.rfm_score is None or self.rfm_segment is None:
            return None
        return RFMResult(
            customer_id=self.customer_id,
            recency_days=self.recency_days,
            frequency_count=self.frequency_count,
            monetary_value=self.monetary_value,
            recency_score=self.recency_score,
            frequency_score=self.frequency_score,
            monetary_score=self.monetary_score,
            rfm_score=self.rfm_score,
            segment=self.rfm_segment,
            calculated_at=self.rfm_calculated_at,
        )

    def clv_result(self) -> Optional[CLVResult]:
        """CLV view of the row, or None if CLV was never computed."""
        if self.clv_predicted is None:
            return None
        return CLVResult(
            customer_id=self.customer_id,
            clv_predicted=self.clv_predicted,
            confidence=self.clv_confidence or 0.0,
            metrics=self.clv_details or CLVMetrics(),
            calculated_at=self.clv_calculated_at,
        )


# ═══════════════════════════════════════════════════════════════════════════════
# RECOMMENDATIONS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class ScoredCandidate:
    """One product proposed by a single recommendation sub-algorithm."""
    product_id: int
    score: float
    reason: str


@dataclass
class Recommendation:
    """Ranked recommendation returned to callers."""
    product: ProductSummary
    recommendation_score: float
    recommendation_types: List[RecommendationType] = field(default_factory=list)
    reasons: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "product": self.product.to_dict(),
            "recommendation_score": self.recommendation_score,
            "recommendation_types": [t.value for t in self.recommendation_types],
            "reasons": list(self.reasons),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Recommendation":
        return cls(
            product=ProductSummary.from_dict(data["product"]),
            recommendation_score=float(data["recommendation_score"]),
            recommendation_types=[RecommendationType(t) for t in data.get("recommendation_types") or []],
            reasons=list(data.get("reasons") or []),
        )


@dataclass
class CrossSellItem:
    """Product frequently bought by customers who bought a given product."""
    product: ProductSummary
    co_purchase_count: int
    affinity_score: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "product": self.product.to_dict(),
            "co_purchase_count": self.co_purchase_count,
            "affinity_score": self.affinity_score,
        }


# ═══════════════════════════════════════════════════════════════════════════════
# AGGREGATES
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class SegmentStats:
    """Population statistics for one RFM segment."""
    count: int
    total_value: float
    avg_rfm_score: float
    percentage: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "total_value": self.total_value,
            "avg_rfm_score": self.avg_rfm_score,
            "percentage": self.percentage,
        }


@dataclass
class SegmentOverview:
    """Per-segment breakdown of the analysed population."""
    total_customers: int
    segments: Dict[str, SegmentStats] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_customers": self.total_customers,
            "segments": {name: stats.to_dict() for name, stats in self.segments.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SegmentOverview":
        return cls(
            total_customers=int(data["total_customers"]),
            segments={
                name: SegmentStats(
                    count=int(s["count"]),
                    total_value=float(s["total_value"]),
                    avg_rfm_score=float(s["avg_rfm_score"]),
                    percentage=float(s["percentage"]),
                )
                for name, s in (data.get("segments") or {}).items()
            },
        )


@dataclass
class CacheEntry:
    """Value held by either cache tier."""
    key: str
    value: Any
    cache_type: str
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def remaining_hours(self, now: datetime) -> float:
        return max(0.0, (self.expires_at - now).total_seconds() / 3600)
