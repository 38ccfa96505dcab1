"""
Shared fixtures: fake clock, in-memory telemetry and host factory.
"""

import pytest
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import InMemoryMetricReader
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from minimalworker.config import WorkerSettings
from minimalworker.core.telemetry import WorkerTelemetry
from minimalworker.host import WorkerHost
from minimalworker.testing import FakeClock


@pytest.fixture
def settings():
    return WorkerSettings(
        exit_on_fatal=False,
        shutdown_timeout=2.0,
        cancellation_grace=0.5,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def span_exporter():
    return InMemorySpanExporter()


@pytest.fixture
def metric_reader():
    return InMemoryMetricReader()


@pytest.fixture
def telemetry(span_exporter, metric_reader):
    tracer_provider = TracerProvider()
    tracer_provider.add_span_processor(SimpleSpanProcessor(span_exporter))
    meter_provider = MeterProvider(metric_readers=[metric_reader])
    return WorkerTelemetry(
        "minimalworker-tests",
        tracer_provider=tracer_provider,
        meter_provider=meter_provider,
    )


@pytest.fixture
def make_host(settings, clock, telemetry):
    """Build a host wired to the fake clock and in-memory telemetry."""

    def factory(services=None, clock=clock, **overrides):
        host_settings = settings.model_copy(update=overrides) if overrides else settings
        return WorkerHost(services, settings=host_settings, clock=clock, telemetry=telemetry)

    return factory


@pytest.fixture
def read_metric(metric_reader):
    """Collect the data points recorded for one instrument."""

    def read(name):
        data = metric_reader.get_metrics_data()
        points = []
        if data is None:
            return points
        for resource_metrics in data.resource_metrics:
            for scope_metrics in resource_metrics.scope_metrics:
                for metric in scope_metrics.metrics:
                    if metric.name == name:
                        points.extend(metric.data.data_points)
        return points

    return read
