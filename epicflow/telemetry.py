"""Telemetry setup for OpenTelemetry traces and metrics.

Configures tracing and metrics export over OTLP when enabled, and no-op
providers otherwise. Metric instruments are module-level and created by
create_metrics(); record_* helpers are safe to call before that.
"""

import logging

from opentelemetry import metrics, trace
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider

from epicflow import __version__
from epicflow.config import EpicflowConfig

logger = logging.getLogger(__name__)

# Suppress gRPC warnings when collector is unavailable
logging.getLogger("opentelemetry.exporter.otlp.proto.grpc").setLevel(logging.ERROR)

# Module-level metric instruments (set by create_metrics)
phases_counter: metrics.Counter
tokens_counter: metrics.Counter
cost_counter: metrics.Counter
phase_duration: metrics.Histogram
circuit_breaker_counter: metrics.Counter
merge_conflicts_counter: metrics.Counter


def build_resource(config: EpicflowConfig) -> Resource:
    """Resource attached to every span and metric this process exports."""
    return Resource.create(
        {
            "service.name": config.service_name,
            "service.version": __version__,
            "epicflow.workspace_root": str(config.workspace_root),
        }
    )


def _otlp_providers(
    endpoint: str, resource: Resource
) -> tuple[TracerProvider, MeterProvider]:
    # Import OTLP exporters only when needed
    from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import (
        OTLPMetricExporter,
    )
    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
        OTLPSpanExporter,
    )
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    tracer_provider = TracerProvider(resource=resource)
    tracer_provider.add_span_processor(
        BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint))
    )
    reader = PeriodicExportingMetricReader(OTLPMetricExporter(endpoint=endpoint))
    return tracer_provider, MeterProvider(resource=resource, metric_readers=[reader])


def setup_telemetry(config: EpicflowConfig) -> tuple[trace.Tracer, metrics.Meter]:
    """Install tracer and meter providers for a run.

    Spans and metrics are exported over OTLP when config.otlp_enabled is set
    and an endpoint is configured. Otherwise the providers keep everything
    in process.

    Returns:
        Tuple of (tracer, meter) named after config.service_name
    """
    resource = build_resource(config)
    if config.otlp_enabled and config.otlp_endpoint:
        tracer_provider, meter_provider = _otlp_providers(
            config.otlp_endpoint, resource
        )
        logger.info(f"Exporting telemetry to {config.otlp_endpoint}")
    else:
        tracer_provider = TracerProvider(resource=resource)
        meter_provider = MeterProvider(resource=resource)

    trace.set_tracer_provider(tracer_provider)
    metrics.set_meter_provider(meter_provider)
    return (
        trace.get_tracer(config.service_name, __version__),
        metrics.get_meter(config.service_name, __version__),
    )


def create_metrics(meter: metrics.Meter) -> None:
    """Create metric instruments for run tracking.

    Counters: phases executed (by phase and status), tokens used, cost in
    USD, circuit breaker trips and merge conflicts (by resolution tier).
    Histogram: phase duration.

    Args:
        meter: OpenTelemetry meter for creating instruments
    """
    global phases_counter, tokens_counter, cost_counter, phase_duration
    global circuit_breaker_counter, merge_conflicts_counter

    phases_counter = meter.create_counter(
        "epicflow_phases_total",
        description="Total phase invocations",
    )

    tokens_counter = meter.create_counter(
        "epicflow_tokens_total",
        description="Total tokens used",
    )

    cost_counter = meter.create_counter(
        "epicflow_cost_usd_total",
        description="Total cost in USD",
    )

    phase_duration = meter.create_histogram(
        "epicflow_phase_duration_seconds",
        description="Phase execution duration",
        unit="s",
    )

    circuit_breaker_counter = meter.create_counter(
        "epicflow_circuit_breaker_trips_total",
        description="Runs aborted by the circuit breaker",
    )

    merge_conflicts_counter = meter.create_counter(
        "epicflow_merge_conflicts_total",
        description="Merge conflicts by resolution tier",
    )


def record_phase(
    task_id: str,
    phase: str,
    status: str,
    duration_seconds: float,
    cost_usd: float,
    tokens: int,
) -> None:
    """Record phase metrics if counters are initialized."""
    try:
        attributes = {"task": task_id, "phase": phase}
        phases_counter.add(1, {**attributes, "status": status})
        phase_duration.record(duration_seconds, attributes)
        cost_counter.add(cost_usd, attributes)
        tokens_counter.add(tokens, attributes)
    except NameError:
        # Counters not initialized - telemetry disabled
        pass


def record_circuit_breaker(task_id: str) -> None:
    try:
        circuit_breaker_counter.add(1, {"task": task_id})
    except NameError:
        pass


def record_merge_conflict(task_id: str, tier: str) -> None:
    try:
        merge_conflicts_counter.add(1, {"task": task_id, "tier": tier})
    except NameError:
        pass
