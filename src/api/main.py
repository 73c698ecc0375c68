"""QuotaGate FastAPI application — entry point for the admin API server."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from config.settings import get_settings
from src.core.exceptions import ErrorKind, NotFoundError, QuotaGateError
from src.core.logging import configure_logging, get_logger
from src.saas.manager import SubscriptionManager

log = get_logger(__name__)

_STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrorKind.CONFIGURATION: status.HTTP_400_BAD_REQUEST,
    ErrorKind.TRANSIENT_STORE: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorKind.NOTIFICATION_DELIVERY: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Startup/shutdown lifecycle — build the manager unless one was injected."""
    log.info("api_starting")
    owned = getattr(app.state, "manager", None) is None
    if owned:
        manager = SubscriptionManager.from_settings(get_settings())
        await manager.start()
        app.state.manager = manager
    yield
    if owned:
        await app.state.manager.aclose()
        app.state.manager = None
    log.info("api_shutdown")


async def _quotagate_error_handler(request: Request, exc: QuotaGateError) -> JSONResponse:
    if isinstance(exc, NotFoundError):
        code = status.HTTP_404_NOT_FOUND
    else:
        code = _STATUS_BY_KIND.get(exc.kind, status.HTTP_500_INTERNAL_SERVER_ERROR)

    if code >= 500:
        log.error("request_failed", path=request.url.path, kind=exc.kind.value, error=str(exc))
        return JSONResponse(status_code=code, content={"error": "Internal server error"})
    return JSONResponse(status_code=code, content={"error": str(exc)})


async def _http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)


async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = sorted({".".join(str(p) for p in err["loc"]) for err in exc.errors()})
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": f"Invalid request: {', '.join(fields)}"},
    )


async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    log.error("request_failed_unhandled", path=request.url.path, error=str(exc), exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Internal server error"},
    )


def create_app(manager: SubscriptionManager | None = None) -> FastAPI:
    """Build and return the FastAPI application."""
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)

    app = FastAPI(
        title="QuotaGate API",
        description="Per-tenant usage quotas and plan enforcement — admin REST API",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.manager = manager
    app.state.jwt_secret = settings.quotagate_jwt_secret.get_secret_value()

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url, "http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(QuotaGateError, _quotagate_error_handler)
    app.add_exception_handler(StarletteHTTPException, _http_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)

    # Register routers
    from src.api.routes.admin import router as admin_router
    from src.api.routes.health import router as health_router
    from src.api.routes.usage import router as usage_router

    app.include_router(health_router, prefix="/api")
    app.include_router(admin_router, prefix="/api")
    app.include_router(usage_router, prefix="/api")

    return app


app = create_app()
