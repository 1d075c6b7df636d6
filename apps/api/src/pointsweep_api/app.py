from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger
from starlette.exceptions import HTTPException

from pointsweep_api.core.errors import PipelineError
from pointsweep_api.core.settings import settings
from .api.routes import api_router
from .core.logging import configure_logging
from .observability.tracing import configure_tracing


APP_VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    http_client = httpx.AsyncClient(
        timeout=httpx.Timeout(settings.webhook_timeout_seconds, connect=settings.webhook_connect_timeout_seconds),
        headers={"User-Agent": settings.webhook_user_agent},
    )
    app.state.http_client = http_client
    logger.info(
        "Outbound HTTP client ready",
        timeout_seconds=settings.webhook_timeout_seconds,
        connect_timeout_seconds=settings.webhook_connect_timeout_seconds,
    )
    try:
        yield
    finally:
        app.state.http_client = None
        await http_client.aclose()


async def _pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("Request failed", path=request.url.path, error=exc.message, error_type=exc.error_type)
    else:
        logger.info("Request rejected", path=request.url.path, error=exc.message, error_type=exc.error_type)
    return JSONResponse(status_code=exc.status_code, content=exc.as_dict())


async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"field": ".".join(str(part) for part in error.get("loc", ()) if part != "body"), "message": error.get("msg")}
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": "Invalid request", "error_type": "validation_error", "details": {"errors": errors}},
    )


async def _http_error_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": str(exc.detail), "error_type": "http_error"},
        headers=getattr(exc, "headers", None),
    )


def create_app() -> FastAPI:
    """Application factory for the PointSweep settlement API."""
    configure_logging(
        service_name="pointsweep-api",
        environment=settings.environment,
        version=APP_VERSION,
    )
    app = FastAPI(
        title="PointSweep API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    if settings.tracing_enabled:
        configure_tracing(app, settings, service_version=APP_VERSION)

    app.add_exception_handler(PipelineError, _pipeline_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)
    app.add_exception_handler(HTTPException, _http_error_handler)

    @app.middleware("http")
    async def preflight(request: Request, call_next):
        if request.method == "OPTIONS":
            return Response(status_code=204)
        return await call_next(request)

    app.include_router(api_router)

    @app.get("/healthz", tags=["Health"])
    async def health_check() -> dict[str, str]:
        return {
            "status": "ok",
            "environment": settings.environment,
            "version": APP_VERSION,
        }

    return app
