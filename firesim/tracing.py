import logging
import os
import socket
import time
from urllib.parse import urlparse

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from .config import OTEL_SERVICE_NAME, OTEL_TRACING_ENABLED

logger = logging.getLogger(__name__)

tracer = trace.get_tracer("firesim")

_tracing_initialized = False


def _normalized_otlp_endpoint() -> str:
    """
    Build an OTLP HTTP endpoint from env vars, ending in /v1/traces.
    """
    base = (
        os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT")
        or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
        or "http://otel-collector:4318"
    ).rstrip("/")
    if not base.endswith("/v1/traces"):
        base = f"{base}/v1/traces"
    return base


def _wait_for_collector(endpoint: str, timeout: int = 30) -> bool:
    """Wait for the OTEL collector to accept TCP connections."""
    parsed = urlparse(endpoint)
    host = parsed.hostname or "localhost"
    port = parsed.port or 4318

    start = time.time()
    while time.time() - start < timeout:
        try:
            with socket.create_connection((host, port), timeout=2):
                return True
        except OSError:
            time.sleep(1)
    return False


def init_tracing(app: FastAPI, enabled: bool = OTEL_TRACING_ENABLED) -> bool:
    """Initialize OpenTelemetry tracing. Returns whether tracing is active."""
    global _tracing_initialized
    if _tracing_initialized:
        return True
    if not enabled:
        logger.info("[otel] Tracing disabled")
        return False

    otlp_endpoint = _normalized_otlp_endpoint()
    if not _wait_for_collector(otlp_endpoint):
        logger.warning(f"[otel] Collector not reachable at {otlp_endpoint}, tracing disabled")
        return False

    provider = TracerProvider(resource=Resource.create({"service.name": OTEL_SERVICE_NAME}))
    try:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint)))
        trace.set_tracer_provider(provider)

        FastAPIInstrumentor.instrument_app(app)
        HTTPXClientInstrumentor().instrument()
        _tracing_initialized = True
        logger.info(f"[otel] Tracing initialized for {OTEL_SERVICE_NAME} -> {otlp_endpoint}")
    except Exception as exc:
        logger.error(f"[otel] Failed to initialize tracing: {exc}")
    return _tracing_initialized
