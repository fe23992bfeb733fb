"""
Integration tests for fulfillment.observability

Tests correlation IDs, log formatting, timing and the metrics collector.
"""
import json
import logging
import pytest
import time as time_module

from fulfillment.observability import (
    HumanReadableFormatter,
    MetricsCollector,
    StructuredFormatter,
    Timer,
    bind_run_id,
    correlation_context,
    generate_correlation_id,
    get_correlation_id,
    metrics,
    run_context,
    timed,
)


def make_record(msg: str = "Test message", **extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="fulfillment.test",
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

    def test_generated_ids_are_short_and_unique(self):
        """Generated IDs are 8 characters and differ."""
        first, second = generate_correlation_id(), generate_correlation_id()
        assert len(first) == 8
        assert first != second

    def test_context_sets_and_restores(self):
        """The context manager scopes the ID."""
        before = get_correlation_id()
        with correlation_context("run-123") as cid:
            assert cid == "run-123"
            assert get_correlation_id() == "run-123"
        assert get_correlation_id() == before

    def test_nested_contexts(self):
        """Inner contexts restore the outer ID on exit."""
        with correlation_context("tick"):
            with correlation_context("account-run"):
                assert get_correlation_id() == "account-run"
            assert get_correlation_id() == "tick"


class TestTimer:
    """Tests for Timer context manager."""

    def test_measures_elapsed_time(self):
        """Timer measures elapsed time."""
        with Timer("fetch_window") as timer:
            time_module.sleep(0.05)

        assert timer.name == "fetch_window"
        assert 45 <= timer.elapsed_ms < 500


class TestTimedDecorator:
    """Tests for the timed decorator."""

    def setup_method(self):
        metrics.reset()

    @pytest.mark.asyncio
    async def test_records_timing(self):
        """Each call adds a timing sample."""
        @timed("reconcile_batch")
        async def work():
            return 7

        assert await work() == 7
        assert metrics.get_stats()["timing"]["reconcile_batch"]["count"] == 1

    @pytest.mark.asyncio
    async def test_records_timing_on_error(self):
        """Failures are timed too."""
        @timed()
        async def explode():
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await explode()
        assert "explode" in metrics.get_stats()["timing"]

    def test_rejects_sync_functions(self):
        """Only coroutine functions can be timed."""
        with pytest.raises(TypeError):
            timed()(lambda: None)


class TestMetricsCollector:
    """Tests for MetricsCollector class."""

    def test_record_run(self):
        """Runs are counted by tier and status and timed per tier."""
        collector = MetricsCollector()
        collector.record_run("fast", "completed", 120.0)
        collector.record_run("fast", "completed", 80.0)
        collector.record_run("deep", "failed", 500.0)

        stats = collector.get_stats()
        assert stats["runs"] == {"fast.completed": 2, "deep.failed": 1}
        assert stats["timing"]["sync_run.fast"]["avg_ms"] == 100.0

    def test_record_orders(self):
        """Staging outcomes are summed per tier."""
        collector = MetricsCollector()
        collector.record_orders("fast", created=3, updated=1, skipped=0)
        collector.record_orders("fast", created=0, updated=2, skipped=1)

        assert collector.get_stats()["orders"] == {"fast": {"created": 3, "updated": 3, "skipped": 1}}

    def test_record_request_and_error(self):
        """Requests and errors are counted by key."""
        collector = MetricsCollector()
        collector.record_request("fhb")
        collector.record_request("fhb")
        collector.record_error("ProviderAPIError")

        stats = collector.get_stats()
        assert stats["requests"] == {"fhb": 2}
        assert stats["errors"] == {"ProviderAPIError": 1}

    def test_timing_summary(self):
        """Timing stats summarize samples; p95 needs 20 samples."""
        collector = MetricsCollector()
        for value in (100.0, 200.0, 150.0):
            collector.record_timing("fetch_window", value)

        timings = collector.get_stats()["timing"]["fetch_window"]
        assert timings["count"] == 3
        assert timings["min_ms"] == 100.0
        assert timings["max_ms"] == 200.0
        assert timings["p50_ms"] == 150.0
        assert timings["p95_ms"] is None

    def test_samples_capped(self):
        """Only the newest samples are kept."""
        collector = MetricsCollector()
        for i in range(150):
            collector.record_timing("op", float(i))
        timings = collector.get_stats()["timing"]["op"]
        assert timings["count"] == 100
        assert timings["min_ms"] == 50.0

    def test_reset(self):
        """Reset clears everything."""
        collector = MetricsCollector()
        collector.record_run("fast", "completed", 1.0)
        collector.record_error("Error")
        collector.reset()

        assert collector.get_stats() == {"runs": {}, "orders": {}, "requests": {}, "errors": {}, "timing": {}}


class TestFormatters:
    """Tests for the log formatters."""

    def test_json_output(self):
        """Structured logs are JSON with level, logger and message."""
        parsed = json.loads(StructuredFormatter().format(make_record()))

        assert parsed["message"] == "Test message"
        assert parsed["level"] == "INFO"
        assert parsed["logger"] == "fulfillment.test"
        assert parsed["timestamp"].endswith("Z")

    def test_json_includes_correlation_and_extras(self):
        """Correlation ID and record extras are merged in."""
        with correlation_context("run-456"):
            output = StructuredFormatter().format(make_record(account_id="acc-1", records=3))
        parsed = json.loads(output)

        assert parsed["correlation_id"] == "run-456"
        assert parsed["account_id"] == "acc-1"
        assert parsed["records"] == 3

    def test_run_fields_attached(self):
        """Lines logged inside a run carry its account, tier and run id."""
        with run_context("acc-1", "deep") as correlation_id:
            bind_run_id("run-9")
            parsed = json.loads(StructuredFormatter().format(make_record("Window fetched")))
        outside = json.loads(StructuredFormatter().format(make_record("Tick")))

        assert parsed["correlation_id"] == correlation_id
        assert parsed["account_id"] == "acc-1"
        assert parsed["sync_type"] == "deep"
        assert parsed["run_id"] == "run-9"
        assert "run_id" not in outside
        assert "account_id" not in outside

    def test_human_readable(self):
        """Text logs show the correlation ID and extras."""
        with correlation_context("run-789"):
            output = HumanReadableFormatter().format(make_record("Window fetched", records=15))

        assert "[run-789]" in output
        assert "Window fetched" in output
        assert "'records': 15" in output


class TestRunContext:
    """Tests for run_context and bind_run_id."""

    def test_fields_restored_on_exit(self):
        """Leaving the run drops its fields and correlation ID."""
        before = get_correlation_id()
        with run_context("acc-1", "fast"):
            bind_run_id("run-1")
            assert get_correlation_id() is not None
        assert get_correlation_id() == before
        record_text = HumanReadableFormatter().format(make_record("after"))
        assert "run-1" not in record_text

    def test_bind_outside_run_is_ignored(self):
        """Binding a run id with no run in progress attaches nothing."""
        bind_run_id("run-stray")
        parsed = json.loads(StructuredFormatter().format(make_record()))
        assert "run_id" not in parsed

    def test_explicit_extra_wins(self):
        """A record's own extra overrides the bound field."""
        with run_context("acc-1", "fast"):
            parsed = json.loads(StructuredFormatter().format(make_record(account_id="acc-other")))
        assert parsed["account_id"] == "acc-other"
