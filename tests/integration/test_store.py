"""
Integration tests for crm_analytics/store.py

Runs the store and its repository mixins against in-memory DuckDB.
"""
import pytest
from datetime import timedelta

from crm_analytics.exceptions import UpstreamError
from crm_analytics.models import (
    ChurnLevel,
    ChurnResult,
    CLVMetrics,
    CLVResult,
    LoyaltyTier,
    Recommendation,
    RecommendationType,
    RFMResult,
    RFMSegment,
)
from crm_analytics.store import AnalyticsStore


def _rfm(customer_id, segment=RFMSegment.LOYAL, score=11, when=None):
    return RFMResult(
        customer_id=customer_id, recency_days=10, frequency_count=6, monetary_value=2500.0,
        recency_score=5, frequency_score=3, monetary_score=3, rfm_score=score,
        segment=segment, calculated_at=when,
    )


class TestConnection:
    """Tests for store lifecycle."""

    @pytest.mark.asyncio
    async def test_schema_created(self, store):
        stats = await store.get_stats()
        assert stats["customers"] == 0
        assert stats["cache_rows"] == 0
        assert store.is_connected

    @pytest.mark.asyncio
    async def test_connection_info(self, store):
        info = store.get_connection_info()
        assert info["status"] == "active"
        assert info["db_path"] == ":memory:"

    @pytest.mark.asyncio
    async def test_close(self):
        s = AnalyticsStore(":memory:")
        await s.connect()
        await s.close()
        assert not s.is_connected
        assert s.get_connection_info()["status"] == "not_initialized"

    @pytest.mark.asyncio
    async def test_query_error_wrapped(self, store):
        """DuckDB errors surface as UpstreamError with the operation name."""
        with pytest.raises(UpstreamError) as exc_info:
            await store._fetch_one("SELECT * FROM missing_table", operation="probe")
        assert exc_info.value.operation == "probe"


class TestLedger:
    """Tests for ledger reads."""

    @pytest.mark.asyncio
    async def test_customer_roundtrip(self, store, ledger):
        await ledger.customer(1, loyalty_tier="Bronze").customer(2, loyalty_tier=None).load(store)

        customer = await store.get_customer(1)
        assert customer.email == "customer1@example.com"
        assert customer.loyalty_tier == LoyaltyTier.BRONZE
        assert (await store.get_customer(2)).loyalty_tier is None
        assert await store.get_customer(99) is None
        assert await store.customer_exists(1)
        assert not await store.customer_exists(99)

    @pytest.mark.asyncio
    async def test_all_customer_ids_ordered(self, store, ledger):
        await ledger.customer(3).customer(1).customer(2).load(store)
        assert await store.get_all_customer_ids() == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_completed_transactions(self, store, ledger):
        """Only completed orders, ordered by time."""
        (ledger.customer(1).product(1)
            .purchase(1, 1, 100, days_ago=10)
            .purchase(1, 1, 200, days_ago=5)
            .purchase(1, 1, 300, days_ago=1, status="failed")
            .purchase(1, 1, 400, days_ago=20))
        await ledger.load(store)

        newest = await store.get_completed_transactions(1)
        assert [t.total_amount for t in newest] == [200, 100, 400]
        oldest = await store.get_completed_transactions(1, newest_first=False)
        assert [t.total_amount for t in oldest] == [400, 100, 200]

    @pytest.mark.asyncio
    async def test_failed_transaction_window(self, store, ledger, clock):
        (ledger.customer(1).product(1)
            .purchase(1, 1, days_ago=10, status="failed")
            .purchase(1, 1, days_ago=100, status="failed")
            .purchase(1, 1, days_ago=5))
        await ledger.load(store)

        since = clock.now - timedelta(days=90)
        assert await store.count_failed_transactions(1, since) == 1

    @pytest.mark.asyncio
    async def test_purchase_sets(self, store, ledger):
        (ledger.customer(1).customer(2).product(1).product(2)
            .purchase(1, 1).purchase(1, 2, status="failed").purchase(2, 1))
        await ledger.load(store)

        assert await store.get_purchased_product_ids(1) == {1}
        assert await store.get_customers_who_purchased(1) == {1, 2}

    @pytest.mark.asyncio
    async def test_insert_replaces_by_id(self, store, ledger):
        await ledger.product(1, stock=5).load(store)
        await store.insert_products([{"id": 1, "name": "Renamed", "stock_quantity": 0}])

        product = await store.get_product(1)
        assert product.name == "Renamed"
        assert not product.in_stock

    @pytest.mark.asyncio
    async def test_timestamp_alias(self, store, clock):
        await store.insert_customers([{"id": 1}])
        await store.insert_transactions([{
            "id": 1, "customer_id": 1, "product_id": 1, "total_amount": 10.0,
            "status": "completed", "timestamp": clock.now,
        }])
        [tx] = await store.get_completed_transactions(1)
        assert tx.timestamp == clock.now

    @pytest.mark.asyncio
    async def test_update_stock(self, store, ledger):
        await ledger.product(1, stock=5).load(store)
        await store.update_product_stock(1, 0)
        assert (await store.get_product(1)).stock_quantity == 0


class TestAnalyticsRows:
    """Tests for per-scorer upserts."""

    @pytest.mark.asyncio
    async def test_scorers_own_their_columns(self, store, ledger, clock):
        """Writing CLV does not clear RFM and vice versa."""
        await ledger.customer(1).load(store)

        await store.upsert_rfm(_rfm(1, when=clock.now))
        await store.upsert_clv(CLVResult(
            customer_id=1, clv_predicted=1500.0, confidence=60.0,
            metrics=CLVMetrics(total_spent=300.0, order_count=3), calculated_at=clock.now,
        ))

        row = await store.get_customer_analytics(1)
        assert row.rfm_segment == RFMSegment.LOYAL
        assert row.rfm_calculated_at == clock.now
        assert row.clv_predicted == 1500.0
        assert row.clv_details.order_count == 3
        assert row.churn_risk_score is None

    @pytest.mark.asyncio
    async def test_rfm_upsert_overwrites(self, store, ledger, clock):
        await ledger.customer(1).load(store)
        await store.upsert_rfm(_rfm(1, when=clock.now))
        await store.upsert_rfm(_rfm(1, segment=RFMSegment.LOST, score=3, when=clock.now))

        assert await store.get_customer_segment(1) == RFMSegment.LOST
        assert (await store.get_stats())["customer_analytics"] == 1

    @pytest.mark.asyncio
    async def test_segment_absent(self, store):
        assert await store.get_customer_segment(1) is None
        assert await store.get_customer_analytics(1) is None

    @pytest.mark.asyncio
    async def test_high_risk_rows(self, store, ledger, clock):
        await ledger.customer(1).customer(2).customer(3).load(store)
        for customer_id, score in [(1, 80), (2, 55), (3, 10)]:
            await store.upsert_churn(ChurnResult(
                customer_id=customer_id, risk_score=score, risk_level=ChurnLevel.from_score(score),
                indicators=["x"], prevention_strategies=["win_back_campaign"], calculated_at=clock.now,
            ))

        rows = await store.get_high_risk_rows(10)
        assert [r["customer_id"] for r in rows] == [1, 2]
        assert rows[0]["churn_indicators"] == ["x"]

    @pytest.mark.asyncio
    async def test_segment_rollup(self, store, ledger, clock):
        await ledger.customer(1).customer(2).customer(3).load(store)
        await store.upsert_rfm(_rfm(1, when=clock.now))
        await store.upsert_rfm(_rfm(2, when=clock.now))
        await store.upsert_rfm(_rfm(3, segment=RFMSegment.LOST, score=3, when=clock.now))

        rollup = {r["segment"]: r for r in await store.get_segment_rollup()}
        assert rollup["Loyal"]["count"] == 2
        assert rollup["Lost"]["count"] == 1

    @pytest.mark.asyncio
    async def test_last_calculated_follows_results(self, store, ledger, clock):
        """The rollup timestamp comes from the scorer results, not wall time."""
        await ledger.customer(1).load(store)
        later = clock.now + timedelta(hours=1)

        await store.upsert_rfm(_rfm(1, when=clock.now))
        await store.upsert_churn(ChurnResult(
            customer_id=1, risk_score=10, risk_level=ChurnLevel.LOW,
            indicators=[], prevention_strategies=["maintain_engagement"], calculated_at=later,
        ))

        averages = await store.get_analytics_averages()
        assert averages["last_calculated"] == later.isoformat()
        assert (await store.get_customer_analytics(1)).last_calculated == later

    @pytest.mark.asyncio
    async def test_averages_empty(self, store):
        averages = await store.get_analytics_averages()
        assert averages["analysed_customers"] == 0
        assert averages["avg_clv"] is None


class TestRecommendationRows:
    """Tests for persisted recommendation sets."""

    @pytest.mark.asyncio
    async def test_replace_and_read(self, store, ledger, clock):
        await ledger.customer(1).product(1).product(2).product(3).load(store)
        products = await store.get_products([1, 2, 3])

        def rec(pid, score):
            return Recommendation(
                product=products[pid].summary(), recommendation_score=score,
                recommendation_types=[RecommendationType.SEGMENT], reasons=["r"],
            )

        expires = clock.now + timedelta(hours=12)
        await store.replace_recommendations(1, [rec(1, 50.0), rec(2, 80.0)], clock.now, expires)
        await store.replace_recommendations(1, [rec(3, 10.0), rec(2, 90.0)], clock.now, expires)

        stored = await store.get_recent_recommendations(1, clock.now - timedelta(hours=1), 10)
        assert [r.product.id for r in stored] == [2, 3]
        assert stored[0].recommendation_types == [RecommendationType.SEGMENT]

    @pytest.mark.asyncio
    async def test_stale_rows_ignored(self, store, ledger, clock):
        await ledger.customer(1).product(1).load(store)
        product = (await store.get_products([1]))[1]
        await store.replace_recommendations(
            1,
            [Recommendation(product=product.summary(), recommendation_score=10.0)],
            clock.now - timedelta(hours=13),
            clock.now - timedelta(hours=1),
        )
        assert await store.get_recent_recommendations(1, clock.now - timedelta(hours=12), 5) == []
