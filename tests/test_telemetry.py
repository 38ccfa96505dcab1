"""
Tests for worker spans and metrics.
"""

import asyncio
from datetime import timedelta

import pytest
from opentelemetry.trace import StatusCode

from minimalworker.cancellation import CancellationToken
from minimalworker.clock import SystemClock
from minimalworker.core.telemetry import SPAN_NAME
from minimalworker.testing import advance_time


def worker_spans(exporter):
    return [s for s in exporter.get_finished_spans() if s.name == SPAN_NAME]


def total(points):
    return sum(p.value for p in points)


class TestSpans:
    """Test the worker.execute span."""

    @pytest.mark.asyncio
    async def test_name_last_write_wins(self, make_host, span_exporter):
        """Verify with_name('a').with_name('b') is reported as 'b'."""
        done = asyncio.Event()

        async def job():
            done.set()

        host = make_host()
        reg = host.add_continuous_worker(job).with_name("a").with_name("b").registration
        await host.start()
        await asyncio.wait_for(done.wait(), timeout=1)
        await host.stop()

        spans = worker_spans(span_exporter)
        assert len(spans) == 1
        span = spans[0]
        assert span.attributes["worker.name"] == "b"
        assert span.attributes["worker.id"] == reg.id
        assert span.attributes["worker.type"] == "continuous"
        assert "worker.schedule" not in span.attributes
        assert "worker.iteration" not in span.attributes
        assert span.status.status_code is StatusCode.OK

    @pytest.mark.asyncio
    async def test_periodic_attributes(self, make_host, clock, span_exporter):
        """Verify periodic spans carry the schedule and iteration."""

        async def job():
            pass

        host = make_host()
        host.add_periodic_worker(timedelta(minutes=1), job).with_name("ticker")
        await host.start()
        await advance_time(clock, timedelta(minutes=2, seconds=30), steps=5)
        await host.stop()

        spans = worker_spans(span_exporter)
        assert [s.attributes["worker.iteration"] for s in spans] == [1, 2]
        assert all(s.attributes["worker.type"] == "periodic" for s in spans)
        assert all(s.attributes["worker.schedule"] == "0:01:00" for s in spans)

    @pytest.mark.asyncio
    async def test_cron_attributes(self, make_host, clock, span_exporter):
        """Verify cron spans carry the expression."""

        async def job():
            pass

        host = make_host()
        host.add_cron_worker("*/5 * * * *", job)
        await host.start()
        await advance_time(clock, timedelta(minutes=5), steps=5)
        await host.stop()

        spans = worker_spans(span_exporter)
        assert len(spans) == 1
        assert spans[0].attributes["worker.type"] == "cron"
        assert spans[0].attributes["worker.schedule"] == "*/5 * * * *"
        assert spans[0].attributes["worker.iteration"] == 1

    @pytest.mark.asyncio
    async def test_failed_attempts(self, make_host, span_exporter):
        """Verify every failed attempt gets an error span with the exception type."""
        done = asyncio.Event()

        async def broken():
            raise ValueError("boom")

        host = make_host(clock=SystemClock())
        host.add_continuous_worker(broken).with_retry(3, 0.01).with_error_handler(lambda e: done.set())
        await host.start()
        await asyncio.wait_for(done.wait(), timeout=1)
        await host.stop()

        spans = worker_spans(span_exporter)
        assert [s.attributes["worker.attempt"] for s in spans] == [1, 2, 3]
        for span in spans:
            assert span.status.status_code is StatusCode.ERROR
            assert span.attributes["exception.type"] == "ValueError"
            assert any(event.name == "exception" for event in span.events)

    @pytest.mark.asyncio
    async def test_span_is_current_in_callback(self, make_host, span_exporter):
        """Verify spans opened by the callback are children of the worker span."""
        from opentelemetry import trace

        done = asyncio.Event()
        seen = []

        async def job():
            seen.append(trace.get_current_span().get_span_context().span_id)
            done.set()

        host = make_host()
        host.add_continuous_worker(job)
        await host.start()
        await asyncio.wait_for(done.wait(), timeout=1)
        await host.stop()

        assert seen == [worker_spans(span_exporter)[0].context.span_id]

    @pytest.mark.asyncio
    async def test_shutdown_span_is_error(self, make_host, span_exporter, read_metric):
        """Verify an attempt cancelled by shutdown ends with an error status but no error count."""
        started = asyncio.Event()

        async def job(token: CancellationToken):
            started.set()
            await asyncio.sleep(10)

        host = make_host()
        host.add_continuous_worker(job).with_error_handler(print)
        await host.start()
        await asyncio.wait_for(started.wait(), timeout=1)
        await host.stop()

        spans = worker_spans(span_exporter)
        assert len(spans) == 1
        assert spans[0].status.status_code is StatusCode.ERROR
        assert "exception.type" not in spans[0].attributes
        assert total(read_metric("worker.executions")) == 1
        assert read_metric("worker.errors") == []


class TestMetrics:
    """Test worker counters, histogram and gauges."""

    @pytest.mark.asyncio
    async def test_counters_for_retried_failure(self, make_host, read_metric):
        """Verify a retried failure counts as one execution and one error."""
        done = asyncio.Event()

        async def broken():
            raise ValueError("boom")

        host = make_host(clock=SystemClock())
        host.add_continuous_worker(broken).with_retry(3, 0.01).with_error_handler(lambda e: done.set())
        await host.start()
        await asyncio.wait_for(done.wait(), timeout=1)
        await host.stop()

        assert total(read_metric("worker.executions")) == 1
        errors = read_metric("worker.errors")
        assert total(errors) == 1
        assert errors[0].attributes["exception.type"] == "ValueError"

    @pytest.mark.asyncio
    async def test_duration_recorded(self, make_host, read_metric):
        """Verify durations are recorded once per attempt."""
        done = asyncio.Event()

        async def job():
            await asyncio.sleep(0.01)
            done.set()

        host = make_host()
        host.add_continuous_worker(job)
        await host.start()
        await asyncio.wait_for(done.wait(), timeout=1)
        await asyncio.sleep(0.02)
        await host.stop()

        points = read_metric("worker.duration")
        assert sum(p.count for p in points) == 1
        assert points[0].sum >= 10

    @pytest.mark.asyncio
    async def test_gauges(self, make_host, clock, read_metric):
        """Verify failure streak and last success track outcomes."""
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise ValueError("boom")

        host = make_host()
        reg = host.add_periodic_worker(timedelta(minutes=1), flaky).with_error_handler(print).registration
        await host.start()

        await advance_time(clock, timedelta(minutes=2, seconds=30), steps=5)
        snapshot = host.telemetry.snapshot(reg)
        assert snapshot["consecutive_failures"] == 2
        assert snapshot["last_success"] is None
        assert [p.value for p in read_metric("worker.consecutive_failures")] == [2]

        await advance_time(clock, timedelta(minutes=1), steps=2)
        await host.stop()

        snapshot = host.telemetry.snapshot(reg)
        assert snapshot["consecutive_failures"] == 0
        assert snapshot["last_success"] is not None
        assert snapshot["active"] is False
        assert [p.value for p in read_metric("worker.active")] == [0]

    @pytest.mark.asyncio
    async def test_active_while_running(self, make_host):
        """Verify the active gauge is set during an invocation."""
        started = asyncio.Event()
        release = asyncio.Event()

        async def job():
            started.set()
            await release.wait()

        host = make_host()
        reg = host.add_continuous_worker(job).registration
        await host.start()
        await asyncio.wait_for(started.wait(), timeout=1)

        assert host.telemetry.snapshot(reg)["active"] is True

        release.set()
        await asyncio.sleep(0.02)
        assert host.telemetry.snapshot(reg)["active"] is False
        await host.stop()
