"""FastAPI application entry point."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import PlainTextResponse, Response

from s3_sharepoint import __version__
from s3_sharepoint.api import objects
from s3_sharepoint.config import get_settings
from s3_sharepoint.core.exceptions import GatewayError, ValidationError
from s3_sharepoint.core.logging import configure_logging, get_logger, request_id_ctx
from s3_sharepoint.core.sharepoint.client import close_graph_client
from s3_sharepoint.middleware.request_context import RequestContextMiddleware
from s3_sharepoint.services.response_formatter import ResponseFormatter

settings = get_settings()

# Configure structured logging
configure_logging()
logger = get_logger(__name__)

formatter = ResponseFormatter()


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    logger.info(
        "application_starting",
        environment=settings.environment,
        debug=settings.debug,
        buckets=sorted(settings.bucket_sites),
        basic_auth=settings.is_basic_auth_enabled,
    )

    if not settings.is_sharepoint_configured:
        logger.warning(
            "sharepoint_not_configured",
            message="Object routes will fail. Set SHAREPOINT_TENANT_ID, "
            "SHAREPOINT_CLIENT_ID, and SHAREPOINT_CLIENT_SECRET.",
        )

    yield

    # Shutdown
    await close_graph_client()

    logger.info("application_shutdown")


app = FastAPI(
    title="S3 SharePoint Adapter",
    description=(
        "Read-only S3-compatible gateway over SharePoint document libraries. "
        "Serves ListObjectsV2 and GetObject for buckets mapped to SharePoint "
        "sites through Microsoft Graph."
    ),
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)

app.add_middleware(RequestContextMiddleware, formatter=formatter)


def _resource(request: Request) -> str:
    return getattr(request.state, "resource", request.url.path)


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError) -> Response:
    """Render gateway errors as S3 Error documents."""
    request.state.s3_code = exc.s3_code
    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "request_failed",
        path=request.url.path,
        resource=_resource(request),
        s3_code=exc.s3_code,
        status_code=exc.status_code,
        error_type=type(exc).__name__,
        error=str(exc),
    )
    return formatter.error_response(exc, _resource(request), request_id_ctx.get() or "")


@app.exception_handler(RequestValidationError)
async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> Response:
    """Render malformed request bodies as InvalidArgument."""
    details = "; ".join(
        f"{'.'.join(str(part) for part in error['loc'] if part != 'body')}: {error['msg']}"
        for error in exc.errors()
    )
    logger.info("request_invalid", path=request.url.path, details=details[:500])
    error = ValidationError(f"Invalid request body: {details}" if details else None)
    request.state.s3_code = error.s3_code
    return formatter.error_response(error, _resource(request), request_id_ctx.get() or "")


# Include routers
app.include_router(objects.router)


@app.get("/status", response_class=PlainTextResponse)
async def status_check() -> str:
    """Health check endpoint."""
    return "OK"
