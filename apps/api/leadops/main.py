from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from leadops.api.routes import router as api_router
from leadops.core.config import get_settings
from leadops.logging import configure_logging
from leadops.middleware.correlation_id import CorrelationIdMiddleware
from leadops.middleware.request_logging import RequestLoggingMiddleware
from leadops.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("leadops.lifecycle")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info("system.started", extra={"status": settings.app_env})
    yield
    logger.info("system.stopped", extra={"status": settings.app_env})


app = FastAPI(title="Lead Ops API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

settings = get_settings()
if settings.otel_enabled:
    setup_otel("leadops-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
