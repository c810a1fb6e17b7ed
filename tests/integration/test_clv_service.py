"""
Integration tests for crm_analytics/clv_service.py
"""
import pytest

from crm_analytics.cache import customer_key
from crm_analytics.clv_service import CLVService
from crm_analytics.exceptions import NotFoundError, ValidationError


@pytest.fixture
def service(store, cache, clock):
    return CLVService(store, cache, clock=clock)


async def _customers(store, ledger):
    """Customer 1: 4 x $100 a month apart; customer 2: one $100 order; customer 3: nothing."""
    (ledger.product(1)
        .customer(1).purchases(1, 4, 100.0, latest_days_ago=10, spacing_days=30)
        .customer(2).purchase(2, 1, 100.0, days_ago=5)
        .customer(3))
    await ledger.load(store)


class TestCalculateCustomerCLV:
    """Tests for single-customer prediction."""

    @pytest.mark.asyncio
    async def test_regular_customer(self, service, store, ledger, clock):
        await _customers(store, ledger)

        result = await service.calculate_customer_clv(1)

        # 4 orders over 3 months, recent and steady: 3200 x 1.45
        assert result.clv_predicted == pytest.approx(4640.0)
        assert result.confidence == 70.0
        assert result.metrics.lifespan_days == 90
        assert result.metrics.multiplier == 1.45

        row = await store.get_customer_analytics(1)
        assert row.clv_predicted == pytest.approx(4640.0)
        assert row.clv_details.order_count == 4
        assert row.clv_calculated_at == clock.now

    @pytest.mark.asyncio
    async def test_no_purchases(self, service, store, ledger):
        await _customers(store, ledger)
        result = await service.calculate_customer_clv(3)
        assert result.clv_predicted == 0.0
        assert result.confidence == 0.0

    @pytest.mark.asyncio
    async def test_unknown_customer(self, service):
        with pytest.raises(NotFoundError):
            await service.calculate_customer_clv(404)


class TestGetCustomerCLVAnalysis:
    """Tests for the cached read path."""

    @pytest.mark.asyncio
    async def test_invalid_id(self, service):
        with pytest.raises(ValidationError):
            await service.get_customer_clv_analysis(-1)

    @pytest.mark.asyncio
    async def test_cached(self, service, store, ledger, cache):
        await _customers(store, ledger)
        result = await service.get_customer_clv_analysis(2)

        cached = await cache.get(customer_key(2, "clv"))
        assert cached["clv_predicted"] == result.clv_predicted

    @pytest.mark.asyncio
    async def test_fresh_row_reused(self, service, store, ledger, clock):
        """A row inside the 7-day window is served without recomputing."""
        await _customers(store, ledger)
        persisted = await service.calculate_customer_clv(2)

        await store.insert_transactions([{
            "id": 999, "customer_id": 2, "product_id": 1, "total_amount": 5000.0,
            "status": "completed", "ordered_at": clock.now,
        }])
        clock.advance(hours=100)

        result = await service.get_customer_clv_analysis(2)
        assert result.clv_predicted == persisted.clv_predicted
        assert result.calculated_at == persisted.calculated_at

    @pytest.mark.asyncio
    async def test_stale_row_recomputed(self, service, store, ledger, clock):
        await _customers(store, ledger)
        await service.calculate_customer_clv(2)

        clock.advance(hours=169)
        result = await service.get_customer_clv_analysis(2)
        assert result.calculated_at == clock.now


class TestTopCustomers:
    """Tests for CLV ranking."""

    @pytest.mark.asyncio
    async def test_ranking(self, service, store, ledger):
        await _customers(store, ledger)
        summary = await service.calculate_all_customers_clv()
        assert summary.processed == 3

        top = await service.get_top_customers_by_clv(10)

        assert [row["customer_id"] for row in top] == [1, 2, 3]
        assert [row["rank"] for row in top] == [1, 2, 3]
        assert top[0]["name"] == "First1 Last1"
        assert top[0]["email"] == "customer1@example.com"

    @pytest.mark.asyncio
    async def test_limit(self, service, store, ledger):
        await _customers(store, ledger)
        await service.calculate_all_customers_clv()
        assert len(await service.get_top_customers_by_clv(2)) == 2

    @pytest.mark.asyncio
    async def test_invalid_limit(self, service):
        with pytest.raises(ValidationError):
            await service.get_top_customers_by_clv(0)

    @pytest.mark.asyncio
    async def test_batch_aggregates(self, service, store, ledger):
        await _customers(store, ledger)
        summary = await service.calculate_all_customers_clv()

        total = summary.aggregates["total_clv"]
        assert total == pytest.approx(4640.0 + 3480.0)
        assert summary.aggregates["average_clv"] == pytest.approx(round(total / 3, 2))
