"""
Main FastAPI application entry point.
"""

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from quotedesk.db import initialize_database
from quotedesk.routers import ingest, carriers, automation
from quotedesk.middleware import PerformanceMiddleware, RequestContextMiddleware
from quotedesk.cache import config_cache
from quotedesk.deps import get_registry
from quotedesk.errors import (
    QuoteDeskError, ValidationError, NotFoundError, UnsupportedCarrierError,
    SessionAlreadyCompletedError, CarrierRequestError, TransientUpstreamError,
    ConfigurationError,
)
import logging

# Configure logging
logger = logging.getLogger("quotedesk")

# Domain error -> HTTP status for the /v1 routes
ERROR_STATUS = {
    ValidationError: 400,
    UnsupportedCarrierError: 400,
    NotFoundError: 404,
    SessionAlreadyCompletedError: 409,
    CarrierRequestError: 502,
    TransientUpstreamError: 503,
    ConfigurationError: 503,
}

app = FastAPI(
    title="QuoteDesk API",
    description="Carrier quote submission, browser automation and quote ingestion for the brokerage CRM",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

# Add performance middleware (innermost - executes first)
app.add_middleware(PerformanceMiddleware)

# Add request context middleware
app.add_middleware(RequestContextMiddleware)

# Add CORS middleware (outermost)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(QuoteDeskError)
async def domain_error_handler(request: Request, exc: QuoteDeskError):
    status_code = next(
        (code for error_cls, code in ERROR_STATUS.items() if isinstance(exc, error_cls)),
        500
    )
    request_id = getattr(request.state, "request_id", "unknown")
    if status_code >= 500:
        logger.error(
            f"Request failed | request_id={request_id} | path={request.url.path} | "
            f"error_type={type(exc).__name__} | error={exc}"
        )
        detail = "Upstream carrier unavailable" if status_code in (502, 503) else "Internal server error"
        return JSONResponse(status_code=status_code, content={"detail": detail, "error_type": type(exc).__name__})
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    # The ingestion contract reports malformed payloads as 400 {error}
    if request.url.path == f"/api{ingest.INGEST_PATH}":
        errors = "; ".join(
            f"{'.'.join(str(part) for part in err['loc'] if part != 'body')}: {err['msg']}"
            for err in exc.errors()
        )
        return JSONResponse(status_code=400, content={"error": f"Invalid request: {errors}"})
    return await request_validation_exception_handler(request, exc)


@app.on_event("startup")
async def startup_event():
    """Initialize database and build the carrier registry on startup."""
    logger.info("Starting QuoteDesk API...")

    # Initialize database
    initialize_database()
    logger.info("Database initialized")

    # Warm up config cache and registry
    settings = config_cache.get_settings()
    registry = get_registry()
    logger.info(f"Carrier registry ready: {', '.join(registry.list_supported())} | "
                f"stage_policy={settings['stage_policy']}")

    logger.info("Startup complete")


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"message": "QuoteDesk API", "status": "healthy"}


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": "1.0.0"}


# Include all routers
app.include_router(ingest.router, prefix="/api", tags=["ingest"])
app.include_router(carriers.router, prefix="/v1", tags=["carriers"])
app.include_router(automation.router, prefix="/v1", tags=["automation"])

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
