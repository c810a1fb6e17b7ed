"""
Tests for RFM scoring functions.
"""
import pytest
from datetime import datetime, timedelta

from crm_analytics.models import RFMSegment, Transaction, TransactionStatus
from crm_analytics.rfm_service import (
    NO_PURCHASE_RECENCY_DAYS,
    classify_segment,
    compute_rfm,
    days_between,
    score_frequency,
    score_monetary,
    score_recency,
)

NOW = datetime(2026, 1, 15, 12, 0, 0)


def _tx(tx_id: int, amount: float, days_ago: float) -> Transaction:
    return Transaction(
        id=tx_id, customer_id=1, product_id=1, quantity=1, unit_price=amount,
        total_amount=amount, status=TransactionStatus.COMPLETED,
        timestamp=NOW - timedelta(days=days_ago),
    )


def _history(count: int, amount: float, latest_days_ago: float) -> list:
    """Newest first."""
    return [_tx(i + 1, amount, latest_days_ago + i) for i in range(count)]


class TestSubScores:
    """Tests for the 1-5 bucket functions."""

    @pytest.mark.parametrize("days,expected", [
        (0, 5), (30, 5), (31, 4), (60, 4), (61, 3), (90, 3), (91, 2), (180, 2), (181, 1),
    ])
    def test_recency(self, days, expected):
        assert score_recency(days) == expected

    @pytest.mark.parametrize("count,expected", [
        (0, 1), (1, 1), (2, 2), (4, 2), (5, 3), (9, 3), (10, 4), (19, 4), (20, 5),
    ])
    def test_frequency(self, count, expected):
        assert score_frequency(count) == expected

    @pytest.mark.parametrize("amount,expected", [
        (0, 1), (499.99, 1), (500, 2), (1999, 2), (2000, 3), (4999, 3), (5000, 4), (9999, 4), (10000, 5),
    ])
    def test_monetary(self, amount, expected):
        assert score_monetary(amount) == expected

    def test_days_between_floors(self):
        """Partial days do not count."""
        assert days_between(NOW, NOW - timedelta(days=2, hours=23)) == 2


class TestClassifySegment:
    """Tests for segment rules (first match wins)."""

    def test_champions(self):
        assert classify_segment(5, 5, 5) == RFMSegment.CHAMPIONS
        assert classify_segment(4, 4, 5) == RFMSegment.CHAMPIONS

    def test_champions_needs_every_score(self):
        """Total 13 with recency 3 falls through to Loyal."""
        assert classify_segment(3, 5, 5) == RFMSegment.LOYAL

    def test_loyal(self):
        assert classify_segment(4, 3, 3) == RFMSegment.LOYAL

    def test_at_risk(self):
        """Old but once valuable."""
        assert classify_segment(2, 3, 3) == RFMSegment.AT_RISK
        assert classify_segment(1, 4, 4) == RFMSegment.AT_RISK

    def test_lost(self):
        assert classify_segment(1, 1, 1) == RFMSegment.LOST
        assert classify_segment(3, 2, 2) == RFMSegment.LOST
        assert classify_segment(1, 2, 4) == RFMSegment.LOST

    def test_potential(self):
        assert classify_segment(5, 2, 1) == RFMSegment.POTENTIAL
        assert classify_segment(4, 2, 2) == RFMSegment.POTENTIAL


class TestComputeRFM:
    """Tests for compute_rfm."""

    def test_no_transactions(self):
        """Zero-transaction customers get the Lost sentinel."""
        result = compute_rfm(7, [], NOW)
        assert result.segment == RFMSegment.LOST
        assert result.recency_days == NO_PURCHASE_RECENCY_DAYS
        assert result.frequency_count == 0
        assert result.monetary_value == 0.0
        assert (result.recency_score, result.frequency_score, result.monetary_score) == (1, 1, 1)
        assert result.rfm_score == 3

    def test_champion_scenario(self):
        """25 orders worth $12,000, latest 5 days ago."""
        result = compute_rfm(1, _history(25, 480.0, 5), NOW)
        assert result.recency_days == 5
        assert result.frequency_count == 25
        assert result.monetary_value == 12000.0
        assert result.rfm_score == 15
        assert result.segment == RFMSegment.CHAMPIONS

    def test_lost_scenario(self):
        """One $50 order 200 days ago."""
        result = compute_rfm(2, [_tx(1, 50.0, 200)], NOW)
        assert result.recency_days == 200
        assert (result.recency_score, result.frequency_score, result.monetary_score) == (1, 1, 1)
        assert result.segment == RFMSegment.LOST

    def test_score_is_sum(self):
        result = compute_rfm(3, _history(6, 400.0, 45), NOW)
        assert result.rfm_score == result.recency_score + result.frequency_score + result.monetary_score
        assert 3 <= result.rfm_score <= 15

    def test_idempotent(self):
        """Same inputs, same output."""
        history = _history(8, 150.0, 20)
        assert compute_rfm(4, history, NOW) == compute_rfm(4, history, NOW)

    def test_future_timestamp_clamped(self):
        """Clock skew never yields negative recency."""
        result = compute_rfm(5, [_tx(1, 10.0, -1)], NOW)
        assert result.recency_days == 0
