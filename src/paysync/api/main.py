"""FastAPI application factory."""
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from paysync.api.routes import integrations
from paysync.errors import (
    ConnectionNotActive,
    NotFoundError,
    ProviderAuthError,
    SyncAlreadyRunning,
    ValidationError,
)
from paysync.service import IntegrationService, build_service

logger = logging.getLogger(__name__)

CORRELATION_HEADER = "X-Correlation-Id"

_ERROR_STATUS = (
    (ValidationError, 400),
    (ProviderAuthError, 401),
    (NotFoundError, 404),
    (ConnectionNotActive, 409),
    (SyncAlreadyRunning, 409),
)


def create_app(service: Optional[IntegrationService] = None) -> FastAPI:
    """Build and return the FastAPI app.

    Args:
        service: pre-wired IntegrationService (tests). When omitted, one is
            built from settings at startup; a missing or malformed
            ENCRYPTION_KEY aborts startup with CryptoError.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.service = service or build_service()
        app.state.service.dispatcher.start()
        yield
        app.state.service.dispatcher.shutdown()

    app = FastAPI(
        title="Paysync API",
        description="Payroll provider connections and sync jobs",
        version="0.1.0",
        lifespan=lifespan,
    )

    @app.middleware("http")
    async def correlation_id(request: Request, call_next):
        request.state.correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        response = await call_next(request)
        response.headers[CORRELATION_HEADER] = request.state.correlation_id
        return response

    for exc_class, status_code in _ERROR_STATUS:
        app.add_exception_handler(exc_class, _error_handler(status_code))

    @app.get("/health")
    def health():
        return {"status": "ok"}

    app.include_router(integrations.router, prefix="/integrations", tags=["integrations"])

    return app


def _error_handler(status_code: int):
    async def handler(request: Request, exc: Exception) -> JSONResponse:
        logger.info("%s %s → %d: %s", request.method, request.url.path, status_code, exc)
        return JSONResponse(status_code=status_code, content={"error": str(exc)})
    return handler


# Module-level app instance for uvicorn
app = create_app()
