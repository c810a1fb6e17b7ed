"""
Integration tests for crm_analytics/rfm_service.py

Scores customers against in-memory DuckDB and checks persistence,
caching and the batch segment breakdown.
"""
import pytest

from crm_analytics.cache import customer_key
from crm_analytics.exceptions import NotFoundError, ValidationError
from crm_analytics.models import RFMSegment
from crm_analytics.rfm_service import RFMService


@pytest.fixture
def service(store, cache, clock):
    return RFMService(store, cache, clock=clock)


async def _population(store, ledger):
    """2 Champions, 3 Loyal and 5 customers without purchases."""
    ledger.product(1)
    for customer_id in (1, 2):
        ledger.customer(customer_id).purchases(customer_id, 20, 600.0, latest_days_ago=1)
    for customer_id in (3, 4, 5):
        ledger.customer(customer_id).purchases(customer_id, 5, 500.0, latest_days_ago=40)
    for customer_id in range(6, 11):
        ledger.customer(customer_id)
    await ledger.load(store)


class TestCalculateCustomerRFM:
    """Tests for single-customer scoring."""

    @pytest.mark.asyncio
    async def test_champion_persisted(self, service, store, ledger, clock):
        await ledger.customer(1).product(1).purchases(1, 25, 480.0, latest_days_ago=5).load(store)

        result = await service.calculate_customer_rfm(1)

        assert result.segment == RFMSegment.CHAMPIONS
        assert (result.recency_days, result.frequency_count, result.monetary_value) == (5, 25, 12000.0)
        assert result.rfm_score == 15

        row = await store.get_customer_analytics(1)
        assert row.rfm_segment == RFMSegment.CHAMPIONS
        assert row.rfm_calculated_at == clock.now

    @pytest.mark.asyncio
    async def test_idempotent(self, service, store, ledger):
        """Recomputing without new data yields the same row."""
        await ledger.customer(1).product(1).purchases(1, 3, 200.0, latest_days_ago=10).load(store)

        first = await service.calculate_customer_rfm(1)
        second = await service.calculate_customer_rfm(1)

        assert first == second
        assert (await store.get_stats())["customer_analytics"] == 1

    @pytest.mark.asyncio
    async def test_failed_orders_ignored(self, service, store, ledger):
        (ledger.customer(1).product(1)
            .purchase(1, 1, 50.0, days_ago=200)
            .purchase(1, 1, 9000.0, days_ago=1, status="failed"))
        await ledger.load(store)

        result = await service.calculate_customer_rfm(1)
        assert result.segment == RFMSegment.LOST
        assert result.frequency_count == 1
        assert result.recency_days == 200

    @pytest.mark.asyncio
    async def test_no_transactions(self, service, store, ledger):
        await ledger.customer(1).load(store)
        result = await service.calculate_customer_rfm(1)
        assert result.segment == RFMSegment.LOST
        assert result.rfm_score == 3

    @pytest.mark.asyncio
    async def test_unknown_customer(self, service):
        with pytest.raises(NotFoundError) as exc_info:
            await service.calculate_customer_rfm(404)
        assert exc_info.value.entity_id == 404


class TestGetCustomerRFMAnalysis:
    """Tests for the cached read path."""

    @pytest.mark.asyncio
    async def test_invalid_id(self, service):
        with pytest.raises(ValidationError):
            await service.get_customer_rfm_analysis(0)

    @pytest.mark.asyncio
    async def test_not_found_propagates(self, service):
        with pytest.raises(NotFoundError):
            await service.get_customer_rfm_analysis(404)

    @pytest.mark.asyncio
    async def test_result_cached(self, service, store, ledger, cache):
        await ledger.customer(1).product(1).purchases(1, 25, 480.0, latest_days_ago=5).load(store)

        result = await service.get_customer_rfm_analysis(1)

        assert await cache.get(customer_key(1, "rfm")) == result.to_dict()

    @pytest.mark.asyncio
    async def test_cached_value_served(self, service, store, ledger):
        """A cached result wins over new ledger data until invalidated."""
        await ledger.customer(1).product(1).purchase(1, 1, 50.0, days_ago=200).load(store)
        first = await service.get_customer_rfm_analysis(1)

        await store.insert_transactions([{
            "id": 999, "customer_id": 1, "product_id": 1, "total_amount": 20000.0,
            "status": "completed", "ordered_at": ledger.now,
        }])

        again = await service.get_customer_rfm_analysis(1)
        assert again == first

    @pytest.mark.asyncio
    async def test_fresh_row_reused(self, service, store, ledger, cache):
        """With a cold cache a row within the staleness window is reused."""
        await ledger.customer(1).product(1).purchase(1, 1, 50.0, days_ago=200).load(store)
        persisted = await service.calculate_customer_rfm(1)

        await store.insert_transactions([{
            "id": 999, "customer_id": 1, "product_id": 1, "total_amount": 20000.0,
            "status": "completed", "ordered_at": ledger.now,
        }])

        assert await service.get_customer_rfm_analysis(1) == persisted

    @pytest.mark.asyncio
    async def test_stale_row_recomputed(self, service, store, ledger, clock):
        await ledger.customer(1).product(1).purchase(1, 1, 50.0, days_ago=200).load(store)
        await service.calculate_customer_rfm(1)

        clock.advance(hours=25)
        result = await service.get_customer_rfm_analysis(1)
        assert result.calculated_at == clock.now
        assert result.recency_days == 201


class TestBatch:
    """Tests for calculate_all_customers_rfm."""

    @pytest.mark.asyncio
    async def test_segment_breakdown(self, service, store, ledger):
        await _population(store, ledger)

        summary = await service.calculate_all_customers_rfm()

        assert summary.processed == 10
        assert summary.failed == 0
        assert summary.aggregates["segments"]["Champions"] == 2
        assert summary.aggregates["segments"]["Loyal"] == 3
        assert summary.aggregates["segments"]["Lost"] == 5

    @pytest.mark.asyncio
    async def test_overview_percentages(self, service, store, ledger):
        await _population(store, ledger)
        await service.calculate_all_customers_rfm()

        overview = await service.get_segment_overview()

        assert overview.total_customers == 10
        assert overview.segments["Champions"].percentage == 20.0
        assert overview.segments["Loyal"].percentage == 30.0
        assert overview.segments["Lost"].percentage == 50.0
        assert sum(s.percentage for s in overview.segments.values()) == pytest.approx(100.0)
        assert overview.segments["Champions"].total_value == 24000.0
        assert "Potential" not in overview.segments

    @pytest.mark.asyncio
    async def test_batch_refreshes_overview(self, service, store, ledger):
        """The cached overview is dropped after a batch run."""
        await ledger.customer(1).load(store)
        await service.calculate_all_customers_rfm()
        assert (await service.get_segment_overview()).total_customers == 1

        await ledger.customer(2).load(store)
        await service.calculate_all_customers_rfm()
        assert (await service.get_segment_overview()).total_customers == 2

    @pytest.mark.asyncio
    async def test_continues_past_failures(self, service, store, ledger, monkeypatch):
        """One failing customer is counted and the rest are still scored."""
        await ledger.customer(1).customer(2).customer(3).load(store)
        original = store.get_completed_transactions

        async def flaky(customer_id, newest_first=True):
            if customer_id == 2:
                raise RuntimeError("disk hiccup")
            return await original(customer_id, newest_first=newest_first)

        monkeypatch.setattr(store, "get_completed_transactions", flaky)

        summary = await service.calculate_all_customers_rfm()

        assert summary.processed == 2
        assert summary.failed == 1
        assert summary.errors[0]["customer_id"] == 2
        assert await store.get_customer_segment(3) == RFMSegment.LOST
        assert await store.get_customer_segment(2) is None
