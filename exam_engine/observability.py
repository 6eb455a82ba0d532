from __future__ import annotations

import logging
import time
from collections import deque
from functools import wraps
from typing import Any, Callable, Optional

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SimpleSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

logger = logging.getLogger("exam_engine")


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def init_otel(
    *,
    app: object,
    enabled: bool,
    service_name: str,
    otlp_endpoint: Optional[str],
    console_exporter: bool,
    sample_rate: float,
) -> None:
    if not enabled:
        return

    resource = Resource.create({"service.name": service_name})
    provider = TracerProvider(resource=resource, sampler=TraceIdRatioBased(sample_rate))

    if console_exporter:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

    if otlp_endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint)))

    trace.set_tracer_provider(provider)

    # Auto-instrument inbound HTTP
    FastAPIInstrumentor.instrument_app(app)  # type: ignore[arg-type]


def get_tracer() -> trace.Tracer:
    return trace.get_tracer("exam_engine")


class OperationMetrics:
    """Track latency and error counts per engine operation.

    Latency stats cover the most recent ``window`` calls; call and error counts
    are totals since start or the last reset.
    """

    def __init__(self, window: int = 1000) -> None:
        self.window = window
        self.latency: dict[str, deque[float]] = {}
        self.counts: dict[str, int] = {}
        self.errors: dict[str, int] = {}

    def record(self, operation: str, latency_ms: float, error: bool = False) -> None:
        if operation not in self.latency:
            self.latency[operation] = deque(maxlen=self.window)
            self.counts[operation] = 0
            self.errors[operation] = 0

        self.latency[operation].append(latency_ms)
        self.counts[operation] += 1
        if error:
            self.errors[operation] += 1

    def get_stats(self, operation: Optional[str] = None) -> dict:
        if operation:
            latencies = self.latency.get(operation)
            if not latencies:
                return {"operation": operation, "status": "no_data"}
            return {
                "operation": operation,
                "avg_latency_ms": round(sum(latencies) / len(latencies), 2),
                "max_latency_ms": round(max(latencies), 2),
                "min_latency_ms": round(min(latencies), 2),
                "calls": self.counts[operation],
                "errors": self.errors[operation],
                "error_rate": round(self.errors[operation] / self.counts[operation] * 100, 2),
            }

        return {op: self.get_stats(op) for op in self.latency.keys()}

    def reset(self) -> None:
        self.latency.clear()
        self.counts.clear()
        self.errors.clear()


def track_operation(operation: str) -> Callable:
    """Decorator recording latency and failures of an async engine operation."""

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
            start = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                latency_ms = (time.perf_counter() - start) * 1000
                metrics.record(operation, latency_ms, error=True)
                logger.debug(f"{operation} failed after {latency_ms:.2f}ms: {e}")
                raise
            metrics.record(operation, (time.perf_counter() - start) * 1000)
            return result

        return async_wrapper

    return decorator


# Global metrics instance
metrics = OperationMetrics()
