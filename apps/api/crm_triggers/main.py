import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from crm_triggers.api.routes import router as api_router
from crm_triggers.core.config import get_settings
from crm_triggers.logging import configure_logging
from crm_triggers.middleware.request_context import CorrelationIdMiddleware, RequestLoggingMiddleware
from crm_triggers.otel import SERVICE_NAME, get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("crm_triggers.lifecycle")

app = FastAPI(title="CRM Triggers API", version="0.1.0")
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

settings = get_settings()
if settings.otel_enabled:
    setup_otel(SERVICE_NAME, True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
