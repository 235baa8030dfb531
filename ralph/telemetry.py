"""Telemetry setup for OpenTelemetry traces and metrics.

Configures tracing and metrics export over OTLP when OTLP_ENABLED=true;
otherwise installs in-process SDK providers that export nothing.
Also provides the span decorator used by the side-channel tool.
"""

import functools
import inspect
import json
import logging
import os
from typing import Any, Callable, TypeVar

from opentelemetry import metrics, trace
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.trace import Status, StatusCode

from ralph.config import RalphConfig

# Suppress gRPC warnings when collector is unavailable
logging.getLogger("opentelemetry.exporter.otlp.proto.grpc").setLevel(logging.ERROR)

F = TypeVar("F", bound=Callable[..., Any])

# Module-level metric instruments (set by create_metrics)
tasks_counter: metrics.Counter
retries_counter: metrics.Counter
cost_counter: metrics.Counter
task_duration: metrics.Histogram


def setup_telemetry(config: RalphConfig) -> tuple[trace.Tracer, metrics.Meter]:
    """Initialize OpenTelemetry with OTLP export.

    If OTLP_ENABLED is not "true" or no endpoint is configured, uses
    providers without exporters.

    Args:
        config: Run configuration with OTLP endpoint and service name

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

    return tracer, meter


def create_metrics(meter: metrics.Meter) -> None:
    """Create metric instruments for run tracking.

    Counters:
    - Tasks resolved (by status)
    - Task retries (by task_id)
    - Agent cost in USD

    Histograms:
    - Task duration distribution

    Args:
        meter: OpenTelemetry meter for creating instruments
    """
    global tasks_counter, retries_counter, cost_counter, task_duration

    tasks_counter = meter.create_counter(
        "ralph_tasks_total",
        description="Total tasks resolved",
    )

    retries_counter = meter.create_counter(
        "ralph_task_retries_total",
        description="Total task attempts that were retried",
    )

    cost_counter = meter.create_counter(
        "ralph_cost_usd_total",
        description="Total agent cost in USD",
    )

    task_duration = meter.create_histogram(
        "ralph_task_duration_seconds",
        description="Task execution duration",
        unit="s",
    )


def trace_side_channel_tool(tool_name: str) -> Callable[[F], F]:
    """Decorator adding a span around a side-channel tool call.

    Span attributes:
    - mcp.tool: Tool name
    - mcp.params: Tool parameters (JSON serialized)
    - ralph.task_id: Bound task id, if the result carries one
    """

    def _start(span: trace.Span, args: tuple, kwargs: dict) -> None:
        span.set_attribute("mcp.tool", tool_name)
        params = {"args": args, "kwargs": kwargs}
        try:
            span.set_attribute("mcp.params", json.dumps(params, default=str))
        except (TypeError, ValueError):
            span.set_attribute("mcp.params", str(params))

    def _finish(span: trace.Span, result: Any) -> None:
        if isinstance(result, dict):
            if result.get("taskId"):
                span.set_attribute("ralph.task_id", result["taskId"])
            if result.get("success") is False:
                span.set_status(Status(StatusCode.ERROR, str(result.get("error"))))
                return
        span.set_status(Status(StatusCode.OK))

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def sync_wrapper(*args: Any, **kwargs: Any) -> Any:
            # Get tracer dynamically to support test fixtures
            tracer = trace.get_tracer(__name__)
            with tracer.start_as_current_span(f"mcp.tool.{tool_name}") as span:
                _start(span, args, kwargs)
                try:
                    result = func(*args, **kwargs)
                except Exception as e:
                    span.record_exception(e)
                    span.set_status(Status(StatusCode.ERROR, str(e)))
                    raise
                _finish(span, result)
                return result

        @functools.wraps(func)
        async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
            tracer = trace.get_tracer(__name__)
            with tracer.start_as_current_span(f"mcp.tool.{tool_name}") as span:
                _start(span, args, kwargs)
                try:
                    result = await func(*args, **kwargs)
                except Exception as e:
                    span.record_exception(e)
                    span.set_status(Status(StatusCode.ERROR, str(e)))
                    raise
                _finish(span, result)
                return result

        if inspect.iscoroutinefunction(func):
            return async_wrapper  # type: ignore
        return sync_wrapper  # type: ignore

    return decorator
