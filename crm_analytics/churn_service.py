"""
Churn risk scoring and retention strategies.

Risk is an additive 0-100 score over independent behavioural signals.
Each signal that fires records an indicator tag and may propose
prevention strategies.
"""
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from crm_analytics.batch import BatchSummary, run_batch
from crm_analytics.config import ScoringConfig
from crm_analytics.exceptions import NotFoundError
from crm_analytics.models import ChurnLevel, ChurnResult, LoyaltyTier, Transaction, utcnow
from crm_analytics.observability import get_logger, timed
from crm_analytics.validators import validate_customer_id, validate_limit

logger = get_logger(__name__)


PREVENTION_STRATEGIES: Dict[str, Dict[str, str]] = {
    "win_back_campaign": {
        "title": "Win-Back Campaign",
        "description": "Send personalized email with special comeback offer",
        "discount": "20-30%",
        "timing": "immediate",
    },
    "exclusive_discount": {
        "title": "Exclusive Discount",
        "description": "VIP discount code for next purchase",
        "discount": "25%",
        "timing": "immediate",
    },
    "re_engagement_email": {
        "title": "Re-engagement Email",
        "description": "Reminder email with product recommendations",
        "discount": "10-15%",
        "timing": "within 24 hours",
    },
    "special_offer": {
        "title": "Special Limited Offer",
        "description": "Time-limited special pricing on popular items",
        "discount": "15%",
        "timing": "within 48 hours",
    },
    "reminder_email": {
        "title": "Gentle Reminder",
        "description": "Check-in email with new arrivals",
        "discount": "10%",
        "timing": "within 7 days",
    },
    "loyalty_reward": {
        "title": "Loyalty Reward",
        "description": "Bonus loyalty points or free gift",
        "discount": "points/gift",
        "timing": "immediate",
    },
    "personalized_recommendations": {
        "title": "Personalized Recommendations",
        "description": "Product suggestions based on purchase history",
        "discount": "0%",
        "timing": "ongoing",
    },
    "vip_incentive": {
        "title": "VIP Incentive",
        "description": "Upgrade to VIP status with benefits",
        "discount": "tier upgrade",
        "timing": "immediate",
    },
    "bundle_discount": {
        "title": "Bundle Discount",
        "description": "Special pricing on product bundles",
        "discount": "20%",
        "timing": "within 72 hours",
    },
    "payment_assistance": {
        "title": "Payment Assistance",
        "description": "Help resolving payment issues",
        "discount": "0%",
        "timing": "immediate",
    },
    "customer_support_outreach": {
        "title": "Support Outreach",
        "description": "Proactive customer support contact",
        "discount": "0%",
        "timing": "within 24 hours",
    },
    "loyalty_upgrade_offer": {
        "title": "Loyalty Tier Upgrade",
        "description": "Special offer to upgrade loyalty status",
        "discount": "tier benefits",
        "timing": "within 48 hours",
    },
    "welcome_campaign": {
        "title": "Welcome Campaign",
        "description": "New customer onboarding series",
        "discount": "15%",
        "timing": "immediate",
    },
    "first_purchase_incentive": {
        "title": "First Purchase Incentive",
        "description": "Special discount for first order",
        "discount": "20%",
        "timing": "immediate",
    },
    "maintain_engagement": {
        "title": "Maintain Engagement",
        "description": "Regular updates and exclusive content",
        "discount": "0%",
        "timing": "ongoing",
    },
}


def get_prevention_strategy_details(strategy_key: str) -> Dict[str, str]:
    """Catalog entry for a strategy tag, or a generic entry for unknown tags."""
    details = PREVENTION_STRATEGIES.get(strategy_key)
    if details is None:
        return {
            "title": strategy_key,
            "description": "Custom retention strategy",
            "discount": "varies",
            "timing": "as needed",
        }
    return dict(details)


@dataclass
class _RiskTally:
    score: int = 0
    indicators: List[str] = field(default_factory=list)
    strategies: List[str] = field(default_factory=list)

    def add(self, points: int, indicator: str, *strategies: str) -> None:
        self.score += points
        self.indicators.append(indicator)
        self.strategies.extend(strategies)


def half_frequency(transactions: List[Transaction]) -> float:
    """Orders per month across a slice of history; 0 below two orders."""
    if len(transactions) < 2:
        return 0.0
    stamps = [t.timestamp for t in transactions]
    span_months = (max(stamps) - min(stamps)).total_seconds() / (86400 * 30)
    return len(transactions) / max(1.0, span_months)


def compute_churn(
    customer_id: int,
    transactions: List[Transaction],
    failed_recent: int,
    loyalty_tier: Optional[LoyaltyTier],
    now: datetime,
) -> ChurnResult:
    """
    Score churn risk from completed transactions ordered newest first.

    Args:
        failed_recent: Failed transactions in the lookback window
        loyalty_tier: Current tier, None if never assigned
    """
    if not transactions:
        return ChurnResult(
            customer_id=customer_id,
            risk_score=100,
            risk_level=ChurnLevel.CRITICAL,
            indicators=["no_purchase_history"],
            prevention_strategies=["welcome_campaign", "first_purchase_incentive"],
            days_since_last_purchase=None,
            total_transactions=0,
            calculated_at=now,
        )

    tally = _RiskTally()
    n = len(transactions)

    days_since_last = math.floor((now - transactions[0].timestamp).total_seconds() / 86400)
    if days_since_last > 180:
        tally.add(40, "no_purchase_6_months", "win_back_campaign", "exclusive_discount")
    elif days_since_last > 90:
        tally.add(30, "no_purchase_3_months", "re_engagement_email", "special_offer")
    elif days_since_last > 60:
        tally.add(15, "declining_activity", "reminder_email", "loyalty_reward")

    # Halves split by position: newer half is the first floor(n/2) orders
    if n >= 4:
        half = n // 2
        newer, older = transactions[:half], transactions[half:]

        recent_freq = half_frequency(newer)
        older_freq = half_frequency(older)
        if recent_freq < older_freq * 0.5:
            tally.add(25, "frequency_decline_50%", "personalized_recommendations")
        elif recent_freq < older_freq * 0.7:
            tally.add(15, "frequency_decline_30%")

        recent_avg = sum(t.total_amount for t in newer) / half
        older_avg = sum(t.total_amount for t in older) / math.ceil(n / 2)
        if recent_avg < older_avg * 0.6:
            tally.add(20, "spending_decline_40%", "vip_incentive", "bundle_discount")
        elif recent_avg < older_avg * 0.8:
            tally.add(10, "spending_decline_20%")

    if failed_recent >= 3:
        tally.add(15, "multiple_failed_transactions", "payment_assistance", "customer_support_outreach")
    elif failed_recent >= 1:
        tally.add(5, "failed_transaction")

    if n >= 3:
        avg_amount = sum(t.total_amount for t in transactions) / n
        if transactions[0].total_amount < avg_amount * 0.5:
            tally.add(10, "low_value_last_order")

    if loyalty_tier is None or loyalty_tier.is_lowest:
        tally.add(10, "low_loyalty_tier", "loyalty_upgrade_offer")

    if not tally.indicators:
        tally.strategies.append("maintain_engagement")

    score = min(100, tally.score)
    return ChurnResult(
        customer_id=customer_id,
        risk_score=score,
        risk_level=ChurnLevel.from_score(score),
        indicators=tally.indicators,
        prevention_strategies=list(dict.fromkeys(tally.strategies)),
        days_since_last_purchase=days_since_last,
        total_transactions=n,
        calculated_at=now,
    )


class ChurnService:
    """Churn scoring; always recomputed on read, never served stale."""

    def __init__(
        self,
        store,
        scoring: ScoringConfig = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.scoring = scoring or ScoringConfig()
        self._clock = clock

    async def calculate_churn_risk(self, customer_id: int) -> ChurnResult:
        """
        Raises:
            NotFoundError: If the customer does not exist
        """
        customer = await self.store.get_customer(customer_id)
        if customer is None:
            raise NotFoundError("customer", customer_id)

        now = self._clock()
        transactions = await self.store.get_completed_transactions(customer_id, newest_first=True)
        failed = await self.store.count_failed_transactions(
            customer_id, now - timedelta(days=self.scoring.failed_transaction_window_days)
        )
        return compute_churn(customer_id, transactions, failed, customer.loyalty_tier, now)

    async def _calculate_and_persist(self, customer_id: int) -> ChurnResult:
        result = await self.calculate_churn_risk(customer_id)
        await self.store.upsert_churn(result)
        return result

    @timed("churn_batch")
    async def calculate_all_customers_churn_risk(self) -> BatchSummary:
        customer_ids = await self.store.get_all_customer_ids()

        def _distribute(summary: BatchSummary, result: ChurnResult) -> None:
            summary.aggregates["risk_distribution"][result.risk_level.value] += 1

        return await run_batch(
            "churn",
            customer_ids,
            self._calculate_and_persist,
            aggregate=_distribute,
            initial={"risk_distribution": {level.value: 0 for level in ChurnLevel}},
        )

    async def get_customer_churn_analysis(self, customer_id: int) -> ChurnResult:
        """Recompute, persist and return the current churn assessment."""
        validate_customer_id(customer_id)
        return await self._calculate_and_persist(customer_id)

    async def get_high_risk_customers(self, limit: int = 20) -> List[Dict[str, Any]]:
        """Persisted critical/high assessments, highest score first."""
        validate_limit(limit)
        rows = await self.store.get_high_risk_rows(limit)
        return [
            {
                "customer_id": row["customer_id"],
                "email": row["email"],
                "name": " ".join(p for p in (row["first_name"], row["last_name"]) if p) or "Unknown",
                "churn_risk_score": int(row["churn_risk_score"]),
                "churn_risk_level": row["churn_risk_level"],
                "churn_indicators": row["churn_indicators"],
                "prevention_strategies": row["prevention_strategies"],
                "rfm_segment": row["rfm_segment"],
                "clv_predicted": float(row["clv_predicted"] or 0),
            }
            for row in rows
        ]

    def get_prevention_strategy_details(self, strategy_key: str) -> Dict[str, str]:
        return get_prevention_strategy_details(strategy_key)
