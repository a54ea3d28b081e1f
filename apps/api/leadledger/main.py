from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from leadledger.api.routes import router as api_router
from leadledger.core.config import get_settings
from leadledger.core.context import RequestContextMiddleware
from leadledger.core.events import InternalEvent, event_bus
from leadledger.crm.api import crm_error_response, error_response
from leadledger.errors import CRMError, ValidationError
from leadledger.logging import configure_logging
from leadledger.middleware.correlation_id import CorrelationIdMiddleware
from leadledger.middleware.request_logging import RequestLoggingMiddleware
from leadledger.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("leadledger.lifecycle")
_subscriptions_registered = False


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


def _on_crm_domain_event(event: InternalEvent) -> None:
    envelope = event.payload if isinstance(event.payload, dict) else {}
    logger.info(
        "domain_event",
        extra={
            "event_name": event.name,
            "user_id": envelope.get("actor_user_id"),
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        event_bus.subscribe("crm.*", _on_crm_domain_event)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api"})
    yield


app = FastAPI(title="LeadLedger API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)


@app.exception_handler(CRMError)
async def crm_exception_handler(request: Request, exc: CRMError):
    return crm_error_response(request, exc)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return error_response(
        request,
        status_code=422,
        code=ValidationError.code,
        message="request validation failed",
        details=jsonable_encoder(exc.errors()),
    )


settings = get_settings()
if settings.otel_enabled:
    setup_otel("leadledger-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
