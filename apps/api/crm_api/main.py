from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from crm_api.api.routes import router as api_router
from crm_api.core.config import get_settings
from crm_api.core.context import RequestContextMiddleware
from crm_api.events import InternalEvent, event_bus
from crm_api.logging import configure_logging
from crm_api.middleware.correlation_id import CorrelationIdMiddleware
from crm_api.middleware.request_logging import RequestLoggingMiddleware
from crm_api.otel import SERVICE_NAME, setup_otel


configure_logging()
logger = logging.getLogger("crm_api.lifecycle")
_subscriptions_registered = False

_logged_event_types = [
    "crm.contact.enriched",
    "crm.company.created",
]


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


def _on_crm_domain_event(event: InternalEvent) -> None:
    payload = event.payload.get("payload") if isinstance(event.payload, dict) else None
    if not isinstance(payload, dict):
        return
    logger.info(
        event.name,
        extra={
            "contact_id": payload.get("contact_id"),
            "lead_id": payload.get("lead_id"),
            "company_id": payload.get("company_id"),
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        for event_name in _logged_event_types:
            event_bus.subscribe(event_name, _on_crm_domain_event)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": SERVICE_NAME})
    yield


settings = get_settings()

app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

if settings.otel_enabled:
    setup_otel(SERVICE_NAME)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, excluded_urls="health,metrics")
