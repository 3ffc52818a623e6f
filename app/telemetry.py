import logging
import os

logger = logging.getLogger(__name__)

_TRUTHY = {"1", "true", "yes", "on"}


def setup_otel(app=None) -> None:
    """Export traces over OTLP when OTEL_ENABLED is set.

    With ``app`` the FastAPI routes are instrumented, without it the Celery
    worker is. SQLAlchemy and outbound httpx calls are traced in both.
    """
    if os.getenv("OTEL_ENABLED", "false").lower() not in _TRUTHY:
        return
    try:
        from opentelemetry import trace
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import (
            OTLPSpanExporter,
        )
        from opentelemetry.instrumentation.celery import CeleryInstrumentor
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
        from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
        from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor

        from app.db import SessionLocal
    except ImportError:
        logger.exception("OTEL_ENABLED is set but OpenTelemetry is not installed")
        return

    resource = Resource.create(
        {"service.name": os.getenv("OTEL_SERVICE_NAME", "billing-sync")}
    )
    provider = TracerProvider(resource=resource)
    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    exporter = OTLPSpanExporter(endpoint=endpoint) if endpoint else OTLPSpanExporter()
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)

    if app is not None:
        FastAPIInstrumentor.instrument_app(app)
    else:
        CeleryInstrumentor().instrument()
    SQLAlchemyInstrumentor().instrument(engine=SessionLocal.kw["bind"])
    HTTPXClientInstrumentor().instrument()
