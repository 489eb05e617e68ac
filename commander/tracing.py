"""
OpenTelemetry tracing — tracing.py
==================================
TracingConfig, configure_tracing(), get_tracer() and context-manager helpers
for the two instrumentation points: orchestration phases and worker calls.

Until configure_tracing(enabled=True) installs an SDK provider, spans come
from the OpenTelemetry API's default no-op tracer.

Usage:
    from commander.tracing import configure_tracing, TracingConfig
    configure_tracing(TracingConfig(enabled=True, otlp_endpoint="http://localhost:4317"))
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import ConsoleSpanExporter, SimpleSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

logger = logging.getLogger("commander.tracing")

# ── Module-level singletons (reset between tests) ──────────────────────────────
_tracer = None
_provider = None


@dataclass
class TracingConfig:
    enabled: bool = False
    service_name: str = "multi-model-commander"
    otlp_endpoint: Optional[str] = None   # None → ConsoleSpanExporter
    sample_rate: float = 1.0


def configure_tracing(cfg: TracingConfig) -> None:
    """Initialise the global tracer provider. Safe to call multiple times."""
    global _tracer, _provider

    if not cfg.enabled:
        _tracer = trace.get_tracer(__name__)
        return

    resource = Resource.create({"service.name": cfg.service_name})
    provider = TracerProvider(resource=resource, sampler=TraceIdRatioBased(cfg.sample_rate))

    if cfg.otlp_endpoint:
        # optional extra: pip install 'multi-model-commander[otlp]'
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
        exporter = OTLPSpanExporter(endpoint=cfg.otlp_endpoint, insecure=True)
        provider.add_span_processor(BatchSpanProcessor(exporter))
        logger.info(f"OTEL tracing → {cfg.otlp_endpoint}")
    else:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
        logger.info("OTEL tracing → console")

    trace.set_tracer_provider(provider)
    _provider = provider
    _tracer = provider.get_tracer(cfg.service_name)


def get_tracer():
    """Return the configured tracer (API default if configure_tracing() was not called)."""
    global _tracer
    if _tracer is None:
        _tracer = trace.get_tracer(__name__)
    return _tracer


# ── Context managers ───────────────────────────────────────────────────────────

@contextmanager
def traced_phase(phase: str, run_mode: str) -> Iterator:
    """Span covering one orchestration phase."""
    with get_tracer().start_as_current_span(f"phase:{phase}") as span:
        span.set_attribute("commander.phase", phase)
        span.set_attribute("commander.mode", run_mode)
        yield span


@contextmanager
def traced_worker(task_id: str, model: str, priority: str) -> Iterator:
    """Span for a single worker invocation; caller sets commander.status."""
    with get_tracer().start_as_current_span(f"worker:{task_id}") as span:
        span.set_attribute("task.id", task_id)
        span.set_attribute("llm.model", model)
        span.set_attribute("task.priority", priority)
        yield span
