"""FastAPI application entry point."""
import traceback
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
from sqlalchemy.exc import SQLAlchemyError

from creditflow.api.deps import close_task_queue
from creditflow.config import settings
from creditflow.errors import (
    CreditflowError,
    GenerationRejectedError,
    InsufficientCreditsError,
    InvalidStateError,
    LockContention,
    NotFoundError,
    TransportError,
    ValidationError,
)
from creditflow.middleware.logging import LoggingMiddleware, setup_logging
from creditflow.middleware.metrics import MetricsMiddleware
from creditflow.schemas.error import REMEDIATION_HINTS, ErrorCode, ErrorDetail

# Setup structured logging
setup_logging()
logger = structlog.get_logger(__name__)

# Domain error -> (HTTP status, error type)
DOMAIN_ERROR_RESPONSES: dict[type, tuple[int, str]] = {
    ValidationError: (status.HTTP_400_BAD_REQUEST, "ValidationError"),
    InsufficientCreditsError: (status.HTTP_402_PAYMENT_REQUIRED, "InsufficientCredits"),
    NotFoundError: (status.HTTP_404_NOT_FOUND, "NotFound"),
    InvalidStateError: (status.HTTP_409_CONFLICT, "InvalidState"),
    LockContention: (status.HTTP_409_CONFLICT, "LockContention"),
    TransportError: (status.HTTP_502_BAD_GATEWAY, "ExternalServiceError"),
    GenerationRejectedError: (status.HTTP_502_BAD_GATEWAY, "GenerationRejected"),
}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events."""
    logger.info("application_starting", env=settings.app_env)
    yield
    await close_task_queue()
    logger.info("application_shutting_down")


app = FastAPI(
    title="creditflow",
    description="Credit-metered generation tasks with idempotent payment reconciliation",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(MetricsMiddleware)
app.add_middleware(LoggingMiddleware)

# Mount Prometheus metrics endpoint
metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or request.headers.get("x-request-id") or str(uuid.uuid4())


def _error_body(
    request: Request,
    error: str,
    message: str,
    details: Optional[list[dict[str, Any]]] = None,
    remediation: Optional[str] = None,
) -> dict[str, Any]:
    return {
        "error": error,
        "message": message,
        "details": details,
        "remediation": remediation,
        "request_id": _request_id(request),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.exception_handler(CreditflowError)
async def domain_exception_handler(request: Request, exc: CreditflowError) -> JSONResponse:
    """
    Translate domain errors into structured responses.

    ValidationError -> 400, InsufficientCreditsError -> 402, NotFoundError -> 404,
    InvalidStateError -> 409, upstream failures -> 502.
    """
    status_code, error_type = next(
        (response for cls, response in DOMAIN_ERROR_RESPONSES.items() if isinstance(exc, cls)),
        (status.HTTP_500_INTERNAL_SERVER_ERROR, "InternalServerError"),
    )

    logger.info(
        "domain_error",
        path=request.url.path,
        error_code=exc.code,
        status_code=status_code,
        error_message=exc.message,
    )

    detail = ErrorDetail(code=exc.code, message=exc.message, value=exc.details or None).model_dump()
    return JSONResponse(
        status_code=status_code,
        content=_error_body(request, error_type, exc.message, [detail], REMEDIATION_HINTS.get(exc.code)),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Keep framework HTTP errors (401 and friends) in the structured format."""
    code = ErrorCode.UNAUTHENTICATED if exc.status_code == status.HTTP_401_UNAUTHORIZED else "http_error"
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(
            request,
            "Unauthenticated" if code == ErrorCode.UNAUTHENTICATED else "HTTPError",
            str(exc.detail),
            [{"code": code, "message": str(exc.detail)}],
            REMEDIATION_HINTS.get(code),
        ),
        headers=exc.headers,
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle request validation errors with field-level details (422)."""
    details = []
    for error in exc.errors():
        code = ErrorCode.MISSING_REQUIRED_FIELD if error["type"] == "missing" else ErrorCode.VALIDATION_ERROR
        details.append(
            ErrorDetail(
                code=code,
                message=error["msg"],
                field=".".join(str(loc) for loc in error["loc"]),
            ).model_dump()
        )

    logger.warning("validation_error", path=request.url.path, error_count=len(details))

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=_error_body(
            request,
            "ValidationError",
            "Request validation failed",
            details,
            "Check the API documentation for correct request format at /docs",
        ),
    )


@app.exception_handler(SQLAlchemyError)
async def database_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Database errors are transient from the client's view: 503 with Retry-After."""
    logger.error(
        "database_error",
        path=request.url.path,
        error_type=type(exc).__name__,
        error_message=str(exc),
    )

    # Don't expose internal database details in production
    error_message = "Database temporarily unavailable" if settings.app_env == "production" else str(exc)

    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content=_error_body(
            request,
            "DatabaseError",
            "A database error occurred",
            [{"code": ErrorCode.DATABASE_ERROR, "message": error_message}],
            REMEDIATION_HINTS.get(ErrorCode.DATABASE_ERROR),
        ),
        headers={"Retry-After": "5"},
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Unexpected exceptions: full trace in the log, safe message to the client."""
    logger.exception(
        "unhandled_exception",
        path=request.url.path,
        exception_type=type(exc).__name__,
        stack_trace=traceback.format_exc(),
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_error_body(
            request,
            "InternalServerError",
            "An unexpected error occurred",
            [{"code": ErrorCode.INTERNAL_ERROR, "message": str(exc) if settings.debug else "Internal server error"}],
            "Please contact support with the request ID",
        ),
    )


@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """Root endpoint with API information."""
    return {
        "service": "creditflow",
        "version": "0.1.0",
        "status": "operational",
        "docs": "/docs",
    }


# Include routers
from creditflow.api.v1 import credits, health, payments, tasks  # noqa: E402

app.include_router(health.router, tags=["Health"])
app.include_router(tasks.router, prefix="/v1", tags=["Tasks"])
app.include_router(credits.router, prefix="/v1", tags=["Credits"])
app.include_router(payments.router, prefix="/v1", tags=["Payments"])
