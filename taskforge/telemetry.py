"""Telemetry setup for OpenTelemetry traces and metrics.

Configures tracing and metrics export via OTLP when enabled. When OTLP is
disabled (the default), SDK providers without exporters are installed so
instrumentation stays cheap and tests need no setup.

Metric instruments are module-level and created against the global meter
at import time, so code can record metrics before setup_telemetry() runs.
"""

import os

from opentelemetry import metrics, trace
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.trace import TracerProvider

from taskforge.config import ForgeConfig

# Module-level metric instruments (set by create_metrics)
tasks_counter: metrics.Counter
agent_calls_counter: metrics.Counter
agent_duration: metrics.Histogram
cost_counter: metrics.Counter
clarifications_counter: metrics.Counter
review_rejections_counter: metrics.Counter
review_fail_open_counter: metrics.Counter


def setup_telemetry(config: ForgeConfig) -> tuple[trace.Tracer, metrics.Meter]:
    """Initialize OpenTelemetry with optional OTLP export.

    If OTLP_ENABLED is not "true" or the endpoint is not configured,
    uses providers without exporters.

    Args:
        config: Configuration with OTLP endpoint and service name

    Returns:
        Tuple of (tracer, meter) for creating spans and recording metrics
    """
    otlp_enabled = os.getenv("OTLP_ENABLED", "false").lower() == "true"

    if otlp_enabled and config.otlp_endpoint:
        # Import OTLP exporters only when needed
        from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import (
            OTLPMetricExporter,
        )
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
            OTLPSpanExporter,
        )
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
        from opentelemetry.sdk.trace.export import BatchSpanProcessor

        trace_provider = TracerProvider()
        trace_provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=config.otlp_endpoint))
        )
        trace.set_tracer_provider(trace_provider)

        metric_reader = PeriodicExportingMetricReader(
            OTLPMetricExporter(endpoint=config.otlp_endpoint)
        )
        metrics.set_meter_provider(MeterProvider(metric_readers=[metric_reader]))
    else:
        trace.set_tracer_provider(TracerProvider())
        metrics.set_meter_provider(MeterProvider())

    tracer = trace.get_tracer(config.service_name)
    meter = metrics.get_meter(config.service_name)
    create_metrics(meter)

    return tracer, meter


def create_metrics(meter: metrics.Meter) -> None:
    """Create metric instruments for orchestrator tracking.

    Counters:
    - Tasks finished (by final status)
    - Agent invocations (by role and outcome)
    - Agent cost in USD (by role)
    - Clarifications requested
    - Review rejections and review fail-open events

    Histograms:
    - Agent invocation duration (by role)

    Args:
        meter: OpenTelemetry meter for creating instruments
    """
    global tasks_counter, agent_calls_counter, agent_duration, cost_counter
    global clarifications_counter, review_rejections_counter, review_fail_open_counter

    tasks_counter = meter.create_counter(
        "taskforge_tasks_total",
        description="Total tasks that finished a pipeline run",
    )

    agent_calls_counter = meter.create_counter(
        "taskforge_agent_calls_total",
        description="Total Claude Code invocations",
    )

    agent_duration = meter.create_histogram(
        "taskforge_agent_duration_seconds",
        description="Claude Code invocation duration",
        unit="s",
    )

    cost_counter = meter.create_counter(
        "taskforge_cost_usd_total",
        description="Total Claude Code cost in USD",
    )

    clarifications_counter = meter.create_counter(
        "taskforge_clarifications_total",
        description="Total clarification questions written",
    )

    review_rejections_counter = meter.create_counter(
        "taskforge_review_rejections_total",
        description="Total rejected reviews",
    )

    review_fail_open_counter = meter.create_counter(
        "taskforge_review_fail_open_total",
        description="Reviews treated as approved because the review agent failed",
    )


create_metrics(metrics.get_meter("taskforge"))
