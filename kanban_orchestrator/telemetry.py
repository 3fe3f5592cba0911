"""Telemetry setup for OpenTelemetry traces and metrics.

Exports spans and metrics over OTLP when OTLP_ENABLED=true; otherwise
installs in-process providers that record nothing externally.
"""

import logging
import os

from opentelemetry import metrics, trace
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider

from kanban_orchestrator.config import OrchestratorConfig

# Suppress gRPC warnings when collector is unavailable
logging.getLogger("opentelemetry.exporter.otlp.proto.grpc").setLevel(logging.ERROR)

# Module-level metric instruments (set by create_metrics)
tasks_counter: metrics.Counter
tokens_counter: metrics.Counter
cost_counter: metrics.Counter
retries_counter: metrics.Counter
verification_counter: metrics.Counter
task_duration: metrics.Histogram


def setup_telemetry(config: OrchestratorConfig) -> tuple[trace.Tracer, metrics.Meter]:
    """Install tracer and meter providers for the run.

    Spans and metrics are exported over OTLP gRPC only when OTLP_ENABLED is
    "true" and an endpoint is configured; otherwise the providers record
    in-process only.

    Args:
        config: Orchestrator configuration with OTLP endpoint and service name

    Returns:
        Tuple of (tracer, meter) for creating spans and recording metrics
    """
    resource = Resource.create({SERVICE_NAME: config.service_name})
    exporting = os.getenv("OTLP_ENABLED", "false").lower() == "true"

    if exporting and config.otlp_endpoint:
        # Import OTLP exporters only when needed
        from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import (
            OTLPMetricExporter,
        )
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
            OTLPSpanExporter,
        )
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
        from opentelemetry.sdk.trace.export import BatchSpanProcessor

        span_exporter = OTLPSpanExporter(endpoint=config.otlp_endpoint)
        tracer_provider = TracerProvider(resource=resource)
        tracer_provider.add_span_processor(BatchSpanProcessor(span_exporter))

        reader = PeriodicExportingMetricReader(
            OTLPMetricExporter(endpoint=config.otlp_endpoint)
        )
        meter_provider = MeterProvider(resource=resource, metric_readers=[reader])
    else:
        tracer_provider = TracerProvider(resource=resource)
        meter_provider = MeterProvider(resource=resource)

    trace.set_tracer_provider(tracer_provider)
    metrics.set_meter_provider(meter_provider)

    tracer = trace.get_tracer(config.service_name)
    meter = metrics.get_meter(config.service_name)

    return tracer, meter


def create_metrics(meter: metrics.Meter) -> None:
    """Create metric instruments for run tracking.

    Counters: tasks (by status and category), tokens, cost, retries,
    verification checks (by check and outcome). Histogram: task duration.

    Args:
        meter: OpenTelemetry meter for creating instruments
    """
    global tasks_counter, tokens_counter, cost_counter, task_duration
    global retries_counter, verification_counter

    tasks_counter = meter.create_counter(
        "kanban_tasks_total",
        description="Total tasks executed",
    )

    tokens_counter = meter.create_counter(
        "kanban_tokens_total",
        description="Final-turn tokens reported per task",
    )

    cost_counter = meter.create_counter(
        "kanban_cost_usd_total",
        description="Total cost in USD",
    )

    retries_counter = meter.create_counter(
        "kanban_retries_total",
        description="Tasks re-queued after a failure",
    )

    verification_counter = meter.create_counter(
        "kanban_verification_checks_total",
        description="Post-wave verification checks run",
    )

    task_duration = meter.create_histogram(
        "kanban_task_duration_seconds",
        description="Task execution duration",
        unit="s",
    )
