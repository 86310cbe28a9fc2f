"""FastAPI application for the incident capture API.

Provides the main application instance with routers and exception
handlers configured. Domain errors raised by the service layer are
rendered with their registry code, message and remediation.
"""

import logging
import sys
import time as _time
from contextlib import asynccontextmanager
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as _pkg_version

from fastapi import FastAPI, Request

# Configure logging to stdout for uvicorn to capture
logging.basicConfig(
    level=logging.INFO,
    format="%(levelname)s:%(name)s:%(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
# Ensure our application loggers are captured
logging.getLogger("src").setLevel(logging.INFO)
from fastapi.responses import JSONResponse

from src.api.routes import conversations, incidents, redaction
from src.api.schemas import ErrorResponse
from src.db.connection import close_db, init_db
from src.errors import DomainError
from src.errors.formatter import format_domain_error

logger = logging.getLogger(__name__)

_startup_time: float = 0.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables on startup and release the connection pool on shutdown."""
    global _startup_time
    _startup_time = _time.time()
    init_db()
    yield
    close_db()


app = FastAPI(
    title="Incident Capture API",
    description="Turns teacher conversations into signed, auditable ABC incident records",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    """Map typed domain errors to HTTP statuses with a registry-backed body."""
    body = format_domain_error(exc)
    if exc.http_status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    error = ErrorResponse(
        error_code=body["code"],
        message=body["message"],
        remediation=body["remediation"],
        is_retryable=body["is_retryable"],
        details=body["details"] or None,
    )
    return JSONResponse(status_code=exc.http_status, content=error.model_dump())


# Include routers
_ERROR_RESPONSES = {
    status: {"model": ErrorResponse} for status in (400, 404, 409, 423, 500)
}
app.include_router(conversations.router, prefix="/api/v1", responses=_ERROR_RESPONSES)
app.include_router(incidents.router, prefix="/api/v1", responses=_ERROR_RESPONSES)
app.include_router(redaction.router, prefix="/api/v1", responses=_ERROR_RESPONSES)


@app.get("/health")
def health_check() -> dict:
    """Health check endpoint with version and uptime."""
    uptime = int(_time.time() - _startup_time) if _startup_time else 0
    try:
        version = _pkg_version("incident-capture")
    except PackageNotFoundError:
        version = "unknown"
    return {
        "status": "healthy",
        "version": version,
        "uptime_seconds": uptime,
    }


def run() -> None:
    """Serve the API with uvicorn using configured host, port and log level."""
    import uvicorn

    from src.api.dependencies import get_settings

    settings = get_settings()
    uvicorn.run(
        "src.api.main:app",
        host=settings.api.host,
        port=settings.api.port,
        log_level=settings.api.log_level,
    )
