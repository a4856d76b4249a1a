#!/usr/bin/env python3
"""
Telemetry setup using OpenTelemetry.

This module configures tracing for aiohttp client requests, sqlite3 calls and
the pipeline's own spans (fetch, parse, upsert, per-feed sync, sweeps).

Environment variables:
  - OTEL_SERVICE_NAME (default: feed-sync)
  - OTEL_ENVIRONMENT (maps to deployment.environment)
  - OTEL_CONSOLE_EXPORT=true to print finished spans to stdout
  - DISABLE_TELEMETRY=true to fully disable

The module is safe to import multiple times; initialization is idempotent.
"""

from __future__ import annotations

import os
import atexit
import logging
import threading
from contextlib import contextmanager
from typing import Any, Callable, Dict, Optional
import inspect
import functools

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.instrumentation.aiohttp_client import AioHttpClientInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.instrumentation.sqlite3 import SQLite3Instrumentor

_init_lock = threading.Lock()
_initialized = False
_provider: Optional[TracerProvider] = None

_logger = logging.getLogger(__name__)


def telemetry_disabled() -> bool:
    return os.environ.get("DISABLE_TELEMETRY", "false").lower() == "true"


def init_telemetry(service_name: Optional[str] = None) -> bool:
    """Initialize OpenTelemetry tracing and instrumentation.

    Safe to call multiple times. If DISABLE_TELEMETRY=true, it's a no-op.
    Returns True when a provider is active after the call.
    """
    global _initialized, _provider
    if telemetry_disabled():
        return False
    if _initialized:
        return True
    with _init_lock:
        if _initialized:
            return True

        svc = service_name or os.environ.get("OTEL_SERVICE_NAME", "feed-sync")
        env = os.environ.get("OTEL_ENVIRONMENT")
        attrs = {"service.name": svc}
        if env:
            attrs["deployment.environment"] = env
        resource = Resource.create(attrs)

        # If a provider was already set by external auto-instrumentation, reuse it
        existing = trace.get_tracer_provider()
        if isinstance(existing, TracerProvider):
            provider = existing
        else:
            provider = TracerProvider(resource=resource)

        console = os.environ.get("OTEL_CONSOLE_EXPORT", "false").lower() == "true"
        if console:
            provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
            _logger.info("Telemetry initialized with console exporter (service=%s)", svc)
        else:
            _logger.info("Telemetry initialized without exporter (service=%s); spans stay in-process", svc)

        if not isinstance(existing, TracerProvider):
            trace.set_tracer_provider(provider)
        _provider = provider

        for instrumentor in (AioHttpClientInstrumentor(), LoggingInstrumentor(), SQLite3Instrumentor()):
            try:
                instrumentor.instrument()
            except Exception as e:  # instrumentation must never block startup
                _logger.debug("Telemetry: %s failed to instrument: %s", type(instrumentor).__name__, e)

        _initialized = True
        atexit.register(shutdown_telemetry)
        return True


def shutdown_telemetry() -> None:
    """Flush pending spans; TracerProvider.shutdown() drains BatchSpanProcessor."""
    if _provider is not None:
        try:
            _provider.shutdown()
        except Exception as e:
            _logger.debug("Telemetry shutdown failed: %s", e)


def get_tracer(name: str = "feed-sync"):
    return trace.get_tracer(name)


@contextmanager
def _span(tracer, name: str, attrs: Dict[str, Any]):
    """Open a span, tag it, and mark it failed if the body raises."""
    with tracer.start_as_current_span(name) as span:
        for key, value in attrs.items():
            if value is not None:
                span.set_attribute(key, value)
        try:
            yield span
        except Exception as e:
            span.record_exception(e)
            span.set_status(Status(StatusCode.ERROR))
            raise


def trace_span(
    span_name: str | None = None,
    *,
    tracer_name: str | None = None,
    static_attrs: dict | None = None,
    attr_from_args: Optional[Callable[..., Dict[str, Any]]] = None,
):
    """Decorator running each call of a sync or async function inside a span.

    ``attr_from_args`` receives the call's arguments and returns extra span
    attributes; None values are dropped. The span name defaults to
    ``module.function`` and the tracer name to its first dotted segment.
    """

    def _decorator(func):
        name = span_name or f"{func.__module__}.{func.__name__}"
        tracer = get_tracer(tracer_name or name.split(".")[0] or "feed-sync")

        def _attrs(args, kwargs) -> Dict[str, Any]:
            attrs = dict(static_attrs or {})
            if attr_from_args is not None:
                try:
                    attrs.update(attr_from_args(*args, **kwargs) or {})
                except Exception as e:
                    _logger.debug("Span attributes for %s unavailable: %s", name, e)
            return attrs

        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def _async_wrapper(*args, **kwargs):
                with _span(tracer, name, _attrs(args, kwargs)):
                    return await func(*args, **kwargs)

            return _async_wrapper

        @functools.wraps(func)
        def _wrapper(*args, **kwargs):
            with _span(tracer, name, _attrs(args, kwargs)):
                return func(*args, **kwargs)

        return _wrapper

    return _decorator
