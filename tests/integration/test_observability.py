"""
Integration tests for crm_analytics/observability.py

Tests structured logging, correlation IDs, timing and metrics collection.
"""
import logging
import json
import pytest
import time as time_module

from crm_analytics.observability import (
    HumanReadableFormatter,
    MetricsCollector,
    StructuredFormatter,
    Timer,
    add_log_context,
    clear_log_context,
    correlation_context,
    generate_correlation_id,
    get_correlation_id,
    get_logger,
    metrics,
    timed,
)


def _record(msg: str = "Test message", **extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="test.logger",
        level=logging.INFO,
        pathname="test.py",
        lineno=10,
        msg=msg,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestCorrelationId:
    """Tests for correlation ID management."""

    def test_generate_not_empty(self):
        """Generated ID is not empty."""
        cid = generate_correlation_id()
        assert cid
        assert len(cid) == 8

    def test_prefix(self):
        assert generate_correlation_id("rfm").startswith("rfm-")

    def test_context_sets_and_resets(self):
        """Context binds an ID and restores the previous one."""
        assert get_correlation_id() is None
        with correlation_context("outer") as outer:
            assert outer == "outer"
            with correlation_context("inner"):
                assert get_correlation_id() == "inner"
            assert get_correlation_id() == "outer"
        assert get_correlation_id() is None


class TestTimer:
    """Tests for Timer context manager."""

    def test_measures_elapsed_time(self):
        """Timer measures elapsed time correctly."""
        with Timer("test_operation") as timer:
            time_module.sleep(0.05)

        assert timer.elapsed_ms >= 45
        assert timer.elapsed_ms < 1000

    def test_records_timing_sample(self):
        metrics.reset()
        with Timer("timer_sample"):
            pass
        assert metrics.get_stats()["timing"]["timer_sample"]["count"] == 1


class TestTimedDecorator:
    """Tests for @timed."""

    @pytest.mark.asyncio
    async def test_async_function(self):
        metrics.reset()

        @timed("async_op")
        async def work(x):
            return x + 1

        assert await work(1) == 2
        assert metrics.get_stats()["timing"]["async_op"]["count"] == 1

    def test_sync_function_records_on_error(self):
        metrics.reset()

        @timed()
        def explode():
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            explode()
        assert "explode" in metrics.get_stats()["timing"]


class TestMetricsCollector:
    """Tests for MetricsCollector class."""

    def test_record_item(self):
        """Counts processed and failed items per operation."""
        collector = MetricsCollector()
        collector.record_item("rfm", True)
        collector.record_item("rfm", True)
        collector.record_item("rfm", False)

        stats = collector.get_stats()
        assert stats["processed"]["rfm"] == 2
        assert stats["failed"]["rfm"] == 1

    def test_record_timing(self):
        """Records timing statistics."""
        collector = MetricsCollector()
        for value in (100.0, 200.0, 150.0):
            collector.record_timing("batch_rfm", value)

        timings = collector.get_stats()["timing"]["batch_rfm"]
        assert timings["count"] == 3
        assert timings["avg_ms"] == 150.0
        assert timings["min_ms"] == 100.0
        assert timings["max_ms"] == 200.0
        assert timings["p95_ms"] is None

    def test_samples_bounded(self):
        collector = MetricsCollector(max_samples=10)
        for i in range(25):
            collector.record_timing("op", float(i))
        assert collector.get_stats()["timing"]["op"]["count"] == 10
        assert collector.get_stats()["timing"]["op"]["min_ms"] == 15.0

    def test_reset(self):
        collector = MetricsCollector()
        collector.record_item("rfm", True)
        collector.record_timing("rfm", 1.0)
        collector.reset()

        stats = collector.get_stats()
        assert stats == {"processed": {}, "failed": {}, "timing": {}}


class TestStructuredFormatter:
    """Tests for JSON log formatter."""

    def teardown_method(self):
        clear_log_context()

    def test_formats_as_json(self):
        """Outputs valid JSON."""
        parsed = json.loads(StructuredFormatter().format(_record()))

        assert parsed["message"] == "Test message"
        assert parsed["level"] == "INFO"
        assert parsed["logger"] == "test.logger"
        assert "T" in parsed["timestamp"]

    def test_includes_correlation_id(self):
        with correlation_context("clv-abc"):
            parsed = json.loads(StructuredFormatter().format(_record()))
        assert parsed["correlation_id"] == "clv-abc"

    def test_includes_extras_and_context(self):
        add_log_context(job="rfm")
        parsed = json.loads(StructuredFormatter().format(_record(processed=12)))
        assert parsed["job"] == "rfm"
        assert parsed["processed"] == 12


class TestHumanReadableFormatter:
    """Tests for console formatter."""

    def test_line_shape(self):
        with correlation_context("churn-1"):
            line = HumanReadableFormatter().format(_record("Scored", failed=0))
        assert "INFO" in line
        assert "[churn-1]" in line
        assert "Scored" in line
        assert "'failed': 0" in line


class TestGetLogger:
    """Tests for get_logger function."""

    def test_returns_logger(self):
        logger = get_logger("crm_analytics.test")
        assert isinstance(logger, logging.Logger)
        assert logger.name == "crm_analytics.test"
