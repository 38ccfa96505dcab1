"""
Tests for continuous, periodic and cron worker loops.
"""

import asyncio
from datetime import timedelta

import pytest

from minimalworker.cancellation import CancellationToken
from minimalworker.clock import SystemClock
from minimalworker.services import ServiceCollection
from minimalworker.testing import FakeClock, advance_time


class Resource:
    """Scoped dependency that records its own lifecycle."""

    created = []

    def __init__(self):
        self.closed = False
        Resource.created.append(self)

    async def aclose(self):
        self.closed = True



class EarlyWakeClock(FakeClock):
    """Fake clock whose sleepers wake shortly before their deadline."""

    skew = timedelta(seconds=1)

    async def sleep_until(self, deadline, token):
        return await super().sleep_until(deadline - self.skew, token)


@pytest.fixture
def services():
    Resource.created = []
    collection = ServiceCollection()
    collection.add_scoped(Resource)
    return collection


class TestContinuousWorker:
    """Test workers invoked exactly once."""

    @pytest.mark.asyncio
    async def test_invoked_exactly_once(self, make_host, clock):
        """Verify the engine never re-invokes a continuous worker."""
        calls = []
        done = asyncio.Event()

        async def job():
            calls.append(1)
            done.set()

        host = make_host()
        host.add_continuous_worker(job)
        await host.start()
        await asyncio.wait_for(done.wait(), timeout=1)

        await advance_time(clock, timedelta(hours=1))
        await host.stop()

        assert calls == [1]
        assert host.fatal_error is None
        assert host.exit_code == 0

    @pytest.mark.asyncio
    async def test_scope_held_for_lifetime(self, make_host, services):
        """Verify the scope lives until the long-running callback returns."""
        seen = []

        async def job(resource: Resource, token: CancellationToken):
            seen.append(resource)
            await token.wait()
            assert not resource.closed

        host = make_host(services)
        host.add_continuous_worker(job)
        await host.start()
        await asyncio.sleep(0.05)

        assert len(seen) == 1
        assert not seen[0].closed

        await host.stop()
        assert seen[0].closed

    @pytest.mark.asyncio
    async def test_sync_callback(self, make_host):
        """Verify plain functions run to completion on a worker thread."""
        done = asyncio.Event()
        loop = asyncio.get_running_loop()
        calls = []

        def job(token: CancellationToken):
            calls.append(token.is_cancelled)
            loop.call_soon_threadsafe(done.set)

        host = make_host()
        host.add_continuous_worker(job)
        await host.start()
        await asyncio.wait_for(done.wait(), timeout=1)
        await host.stop()

        assert calls == [False]


class TestPeriodicWorker:
    """Test fixed-interval workers."""

    @pytest.mark.asyncio
    async def test_invocations_in_window(self, make_host, clock):
        """Verify a one-minute worker runs 4 times in a five-minute window."""
        calls = []

        async def job():
            calls.append(clock.now())

        host = make_host()
        host.add_periodic_worker(timedelta(minutes=1), job)
        await host.start()
        await advance_time(clock, timedelta(minutes=5), steps=10)
        await host.stop()

        assert len(calls) == 4

    @pytest.mark.asyncio
    async def test_fresh_scope_per_tick(self, make_host, clock, services):
        """Verify every tick gets its own scope, disposed after the run."""
        seen = []

        async def job(resource: Resource):
            assert not resource.closed
            seen.append(resource)

        host = make_host(services)
        host.add_periodic_worker(timedelta(minutes=1), job)
        await host.start()
        await advance_time(clock, timedelta(minutes=3, seconds=30), steps=7)
        await host.stop()

        assert len(seen) == 3
        assert len({id(r) for r in seen}) == 3
        assert all(r.closed for r in seen)

    @pytest.mark.asyncio
    async def test_ticks_never_overlap(self, make_host):
        """Verify a slow run delays the next tick instead of overlapping it."""
        active = 0
        max_active = 0
        calls = 0

        async def slow_job():
            nonlocal active, max_active, calls
            active += 1
            max_active = max(max_active, active)
            calls += 1
            await asyncio.sleep(0.05)
            active -= 1

        host = make_host(clock=SystemClock())
        host.add_periodic_worker(timedelta(milliseconds=10), slow_job)
        await host.start()
        await asyncio.sleep(0.2)
        await host.stop()

        assert max_active == 1
        assert 2 <= calls <= 5

    @pytest.mark.asyncio
    async def test_continues_after_handled_failure(self, make_host, clock):
        """Verify a handled failure does not stop the schedule."""
        calls = []
        errors = []

        async def flaky():
            calls.append(1)
            if len(calls) == 1:
                raise ValueError("first run fails")

        host = make_host()
        host.add_periodic_worker(timedelta(minutes=1), flaky).with_error_handler(errors.append)
        await host.start()
        await advance_time(clock, timedelta(minutes=3, seconds=30), steps=7)
        await host.stop()

        assert len(calls) == 3
        assert len(errors) == 1
        assert isinstance(errors[0], ValueError)

    @pytest.mark.asyncio
    async def test_iteration_counter(self, make_host, clock):
        """Verify each tick increments the per-worker iteration counter."""

        async def job():
            pass

        host = make_host()
        reg = host.add_periodic_worker(timedelta(minutes=1), job).registration
        await host.start()
        await advance_time(clock, timedelta(minutes=2, seconds=30), steps=5)
        await host.stop()

        assert host.telemetry.snapshot(reg)["iterations"] == 2


class TestCronWorker:
    """Test cron-scheduled workers."""

    @pytest.mark.asyncio
    async def test_every_five_minutes(self, make_host, clock):
        """Verify */5 fires 6 times in a 30-minute window."""
        calls = []

        async def job():
            calls.append(clock.now())

        host = make_host()
        host.add_cron_worker("*/5 * * * *", job)
        await host.start()
        await advance_time(clock, timedelta(minutes=30), steps=30)
        await host.stop()

        assert len(calls) == 6
        assert [c.minute for c in calls] == [5, 10, 15, 20, 25, 30]

    @pytest.mark.asyncio
    async def test_every_minute(self, make_host, clock):
        """Verify * * * * * fires once per minute."""
        calls = []

        async def job():
            calls.append(1)

        host = make_host()
        host.add_cron_worker("* * * * *", job)
        await host.start()
        await advance_time(clock, timedelta(minutes=3), steps=6)
        await host.stop()

        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_fresh_scope_per_occurrence(self, make_host, clock, services):
        """Verify each occurrence resolves a new scope."""
        seen = []

        async def job(resource: Resource):
            seen.append(resource)

        host = make_host(services)
        host.add_cron_worker("*/10 * * * *", job)
        await host.start()
        await advance_time(clock, timedelta(minutes=20), steps=20)
        await host.stop()

        assert len(seen) == 2
        assert seen[0] is not seen[1]
        assert all(r.closed for r in seen)

    @pytest.mark.asyncio
    async def test_occurrences_never_overlap(self, make_host, clock):
        """Verify an invocation running past later occurrences is never joined by another."""
        starts = []
        running = 0
        peak = 0

        async def slow(token: CancellationToken):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            starts.append(clock.now().minute)
            try:
                await clock.sleep(timedelta(minutes=12), token)
            finally:
                running -= 1

        host = make_host()
        host.add_cron_worker("*/5 * * * *", slow)
        await host.start()
        await advance_time(clock, timedelta(minutes=40), steps=40)
        await host.stop()

        assert peak == 1
        # Occurrences passed while running are skipped, not queued
        assert starts == [5, 20, 35]

    @pytest.mark.asyncio
    async def test_occurrence_not_refired_when_clock_lags(self, make_host):
        """Verify waking before the occurrence fires it once, not until the clock catches up."""
        clock = EarlyWakeClock()
        calls = []

        async def job():
            calls.append(clock.now())

        host = make_host(clock=clock)
        host.add_cron_worker("* * * * *", job)
        await host.start()

        await advance_time(clock, timedelta(seconds=59), steps=1)
        assert len(calls) == 1

        await advance_time(clock, timedelta(minutes=1), steps=1)
        await host.stop()
        assert len(calls) == 2


class TestShutdown:
    """Test host shutdown while workers wait or run."""

    @pytest.mark.asyncio
    async def test_stop_while_waiting(self, make_host):
        """Verify waiting loops exit promptly on stop."""

        async def job():
            pass

        host = make_host()
        host.add_periodic_worker(timedelta(hours=1), job)
        host.add_cron_worker("0 0 * * *", job)
        await host.start()
        await asyncio.wait_for(host.stop(), timeout=1)

        assert all(loop.invocations == 0 for loop in host.loops)

    @pytest.mark.asyncio
    async def test_stop_while_running(self, make_host):
        """Verify shutdown cancellation is not reported as a failure."""
        started = asyncio.Event()
        errors = []

        async def job(token: CancellationToken):
            started.set()
            await asyncio.sleep(10)

        host = make_host()
        host.add_continuous_worker(job).with_error_handler(errors.append).with_retry(3, 0.01)
        await host.start()
        await asyncio.wait_for(started.wait(), timeout=1)
        await asyncio.wait_for(host.stop(), timeout=1)

        assert errors == []
        assert host.fatal_error is None

    @pytest.mark.asyncio
    async def test_cooperative_sync_callback(self, make_host):
        """Verify a thread-bound callback observes shutdown through its token."""
        started = asyncio.Event()
        loop = asyncio.get_running_loop()
        errors = []

        def job(token: CancellationToken):
            loop.call_soon_threadsafe(started.set)
            token.wait_sync(5)
            token.raise_if_cancelled()

        host = make_host()
        host.add_continuous_worker(job).with_error_handler(errors.append)
        await host.start()
        await asyncio.wait_for(started.wait(), timeout=1)
        await asyncio.wait_for(host.stop(), timeout=1)

        assert errors == []
