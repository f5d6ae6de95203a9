"""Telemetry utilities for logging, metrics, and tracing.

This module provides centralized observability infrastructure including:
- Structured logging with PII redaction
- Prometheus metrics for runs, permissions and subscribers
- OpenTelemetry tracing setup
- Operation timing with spans and standardized log lines
"""

import re
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from prometheus_client import Counter, Gauge, Histogram
from structlog.processors import JSONRenderer

# Prometheus metrics
OPERATION_COUNTER = Counter(
    "tether_operations_total",
    "Total number of operations",
    ["operation", "status"],
)

OPERATION_LATENCY = Histogram(
    "tether_operation_duration_seconds",
    "Operation latency in seconds",
    ["operation"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
)

RUNS_STARTED = Counter(
    "tether_runs_started_total",
    "Total number of agent runs launched",
    ["resumed"],
)

RUNS_FINISHED = Counter(
    "tether_runs_finished_total",
    "Total number of agent runs cleaned up",
    ["outcome"],
)

ACTIVE_RUNS_GAUGE = Gauge(
    "tether_active_runs",
    "Number of runs currently executing",
)

PERMISSION_REQUESTS = Counter(
    "tether_permission_requests_total",
    "Permission requests by tool and outcome",
    ["tool_name", "outcome"],
)

PERMISSION_WAIT_SECONDS = Histogram(
    "tether_permission_wait_seconds",
    "Time a tool call spent waiting for a permission decision",
    ["outcome"],
    buckets=[1, 5, 15, 30, 60, 300, 900, 1800, 3600],
)

EVENTS_BROADCAST = Counter(
    "tether_events_broadcast_total",
    "Canonical events broadcast to subscribers",
    ["event_type"],
)

ACTIVE_SUBSCRIBERS_GAUGE = Gauge(
    "tether_active_subscribers",
    "Number of live stream subscribers across all runs",
)

DEAD_SUBSCRIBERS = Counter(
    "tether_dead_subscribers_total",
    "Subscribers removed after a failed write",
)

ADAPTER_DEFAULT_SUBSTITUTIONS = Counter(
    "tether_adapter_default_substitutions_total",
    "Engine fields missing from a message and replaced with a default",
    ["event_type", "field"],
)

ENGINE_MESSAGES_DROPPED = Counter(
    "tether_engine_messages_dropped_total",
    "Engine messages with no canonical event",
    ["message_type"],
)

# PII patterns for redaction
PII_PATTERNS = {
    "email": re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Z|a-z]{2,}\b"),
    "phone": re.compile(
        r"\b(?:\+?1[-.\s]?)?\(?[0-9]{3}\)?[-.\s]?[0-9]{3}[-.\s]?[0-9]{4}\b"
    ),
    "token": re.compile(r"\b(?:sk|ghp|xox[bp])[-_][A-Za-z0-9_-]{16,}\b"),
}


def redact_pii(text: Any) -> Any:
    """Redact personally identifiable information from text.

    Args:
        text: Input text that may contain PII

    Returns:
        Text with PII patterns replaced with [REDACTED_<type>], or original input if not a string

    Example:
        >>> redact_pii("Contact john@example.com")
        'Contact [REDACTED_EMAIL]'
    """
    if not isinstance(text, str):
        return text

    result = text
    for pii_type, pattern in PII_PATTERNS.items():
        result = pattern.sub(f"[REDACTED_{pii_type.upper()}]", result)
    return result


def pii_redaction_processor(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Structlog processor to redact PII from log events."""

    def redact_value(value: Any) -> Any:
        if isinstance(value, str):
            return redact_pii(value)
        elif isinstance(value, dict):
            return {k: redact_value(v) for k, v in value.items()}
        elif isinstance(value, list):
            return [redact_value(item) for item in value]
        return value

    return {key: redact_value(value) for key, value in event_dict.items()}


def setup_logging(log_level: str = "INFO", enable_pii_redaction: bool = True) -> None:
    """Initialize structured logging with PII redaction.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        enable_pii_redaction: Whether to enable PII redaction processor
    """
    import logging

    logging.basicConfig(format="%(message)s", level=log_level.upper())

    processors: list[Any] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if enable_pii_redaction:
        processors.append(pii_redaction_processor)

    processors.append(JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def setup_tracing(
    service_name: str = "tether",
    otlp_endpoint: str | None = None,
    enable_fastapi_instrumentation: bool = True,
) -> None:
    """Initialize OpenTelemetry tracing.

    Args:
        service_name: Name of the service for tracing
        otlp_endpoint: OTLP endpoint URL (if None, uses console exporter)
        enable_fastapi_instrumentation: Whether to enable FastAPI auto-instrumentation
    """
    from tether import __version__

    resource = Resource.create(
        {
            "service.name": service_name,
            "service.version": __version__,
        }
    )

    tracer_provider = TracerProvider(resource=resource)
    trace.set_tracer_provider(tracer_provider)

    exporter: OTLPSpanExporter | ConsoleSpanExporter
    if otlp_endpoint:
        exporter = OTLPSpanExporter(endpoint=otlp_endpoint)
    else:
        exporter = ConsoleSpanExporter()

    tracer_provider.add_span_processor(BatchSpanProcessor(exporter))

    if enable_fastapi_instrumentation:
        try:
            FastAPIInstrumentor().instrument()
        except Exception as e:
            get_logger("tether.telemetry").warning(
                "Failed to instrument FastAPI", error=str(e)
            )


def get_tracer(name: str) -> trace.Tracer:
    """Get OpenTelemetry tracer for a component."""
    return trace.get_tracer(name)


def get_logger(name: str, **context: Any) -> Any:
    """Get a structured logger with optional context.

    Args:
        name: Logger name
        **context: Additional context to bind to logger

    Returns:
        Bound logger with context
    """
    logger = structlog.get_logger(name)
    if context:
        logger = logger.bind(**context)
    return logger


def log_operation(
    logger: Any,
    operation: str,
    status: str = "success",
    streaming_id: str | None = None,
    session_id: str | None = None,
    latency_ms: float | None = None,
    **extra_context: Any,
) -> None:
    """Log an operation with standardized fields for observability.

    Args:
        logger: Structured logger instance
        operation: Operation name
        status: Operation status (success, error, warning, cancelled)
        streaming_id: Run handle the operation belongs to
        session_id: Conversation identifier, once known
        latency_ms: Operation latency in milliseconds
        **extra_context: Additional context fields
    """
    log_data = {
        "operation": operation,
        "status": status,
        **extra_context,
    }

    if streaming_id is not None:
        log_data["streaming_id"] = streaming_id
    if session_id is not None:
        log_data["session_id"] = session_id
    if latency_ms is not None:
        log_data["latency_ms"] = latency_ms

    if status == "error":
        logger.error("Operation completed", **log_data)
    elif status == "warning":
        logger.warning("Operation completed", **log_data)
    else:
        logger.info("Operation completed", **log_data)


class OperationTimer:
    """Timing state shared with the body of ``async_performance_timer``."""

    def __init__(self, operation: str, streaming_id: str | None = None):
        self.operation = operation
        self.streaming_id = streaming_id
        self.session_id: str | None = None
        self.span: trace.Span | None = None
        self.start_time: float = time.perf_counter()
        self.end_time: float | None = None

    @property
    def duration(self) -> float | None:
        """Get operation duration in seconds."""
        if self.end_time is not None:
            return self.end_time - self.start_time
        return None


@asynccontextmanager
async def async_performance_timer(
    operation: str,
    streaming_id: str | None = None,
    logger: Any | None = None,
    tracer_name: str = "tether.performance",
) -> AsyncGenerator[OperationTimer, None]:
    """Async context manager for measuring operation performance.

    Records the operation counter and latency histogram, wraps the body in a
    tracing span, and emits a standardized operation log line. The body may
    set ``timer.session_id`` once it is known.

    Args:
        operation: Operation name for metrics/logging
        streaming_id: Run handle (optional)
        logger: Logger instance (optional)
        tracer_name: Tracer name for spans

    Yields:
        OperationTimer instance
    """
    timer = OperationTimer(operation, streaming_id)
    log = logger or get_logger("tether.performance")
    timer.span = get_tracer(tracer_name).start_span(operation)
    if streaming_id:
        timer.span.set_attribute("streaming_id", streaming_id)

    try:
        yield timer
    except Exception as e:
        timer.end_time = time.perf_counter()
        duration = timer.end_time - timer.start_time

        OPERATION_COUNTER.labels(operation=operation, status="error").inc()
        OPERATION_LATENCY.labels(operation=operation).observe(duration)

        timer.span.set_attribute("duration_seconds", duration)
        timer.span.set_status(trace.Status(trace.StatusCode.ERROR, str(e)))
        timer.span.record_exception(e)
        timer.span.end()

        log_operation(
            log,
            operation,
            status="error",
            streaming_id=timer.streaming_id,
            session_id=timer.session_id,
            latency_ms=duration * 1000,
            error=str(e),
            error_type=type(e).__name__,
        )
        raise
    except BaseException:
        timer.end_time = time.perf_counter()
        duration = timer.end_time - timer.start_time

        OPERATION_COUNTER.labels(operation=operation, status="cancelled").inc()
        OPERATION_LATENCY.labels(operation=operation).observe(duration)

        timer.span.set_attribute("duration_seconds", duration)
        timer.span.set_status(trace.Status(trace.StatusCode.ERROR, "cancelled"))
        timer.span.end()

        log_operation(
            log,
            operation,
            status="cancelled",
            streaming_id=timer.streaming_id,
            session_id=timer.session_id,
            latency_ms=duration * 1000,
        )
        raise
    else:
        timer.end_time = time.perf_counter()
        duration = timer.end_time - timer.start_time

        OPERATION_COUNTER.labels(operation=operation, status="success").inc()
        OPERATION_LATENCY.labels(operation=operation).observe(duration)

        if timer.session_id:
            timer.span.set_attribute("session_id", timer.session_id)
        timer.span.set_attribute("duration_seconds", duration)
        timer.span.set_status(trace.Status(trace.StatusCode.OK))
        timer.span.end()

        log_operation(
            log,
            operation,
            status="success",
            streaming_id=timer.streaming_id,
            session_id=timer.session_id,
            latency_ms=duration * 1000,
        )


def record_default_substitution(event_type: str, field: str) -> None:
    """Count a missing engine field replaced by a default during adaptation."""
    ADAPTER_DEFAULT_SUBSTITUTIONS.labels(event_type=event_type, field=field).inc()


def record_dropped_message(message_type: str) -> None:
    """Count an engine message that produced no canonical event."""
    ENGINE_MESSAGES_DROPPED.labels(message_type=message_type).inc()


def record_run_started(resumed: bool) -> None:
    """Record a launched run."""
    RUNS_STARTED.labels(resumed=str(resumed).lower()).inc()


def record_run_finished(outcome: str) -> None:
    """Record a cleaned-up run.

    Args:
        outcome: completed, cancelled, failed, or init_timeout
    """
    RUNS_FINISHED.labels(outcome=outcome).inc()


def update_active_runs(count: int) -> None:
    """Update the active runs gauge."""
    ACTIVE_RUNS_GAUGE.set(count)


def record_permission_outcome(
    tool_name: str, outcome: str, wait_seconds: float | None = None
) -> None:
    """Record a permission decision.

    Args:
        tool_name: Tool the request gated
        outcome: auto_approved, approved, denied, timed_out, or abandoned
        wait_seconds: Time spent waiting for the decision
    """
    PERMISSION_REQUESTS.labels(tool_name=tool_name, outcome=outcome).inc()
    if wait_seconds is not None:
        PERMISSION_WAIT_SECONDS.labels(outcome=outcome).observe(wait_seconds)


def record_event_broadcast(event_type: str) -> None:
    """Count a broadcast canonical event."""
    EVENTS_BROADCAST.labels(event_type=event_type).inc()


def update_active_subscribers(count: int) -> None:
    """Update the active subscribers gauge."""
    ACTIVE_SUBSCRIBERS_GAUGE.set(count)


def record_dead_subscriber() -> None:
    """Count a subscriber removed after a failed write."""
    DEAD_SUBSCRIBERS.inc()
