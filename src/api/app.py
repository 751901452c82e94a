"""Tether FastAPI Application - Main Entry Point

Teletherapy backend: quiz assignments, client roster, Calendly sessions
and encrypted therapist/client chat.
"""

import os

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from src.api.admin import router as admin_router
from src.api.calendly import router as calendly_router
from src.api.chat import router as chat_router
from src.api.me import router as me_router
from src.api.therapist_clients import router as therapist_clients_router
from src.services.errors import TetherError

logger = structlog.get_logger(__name__)


def _is_production() -> bool:
    return os.environ.get("TETHER_ENV") == "production"


# Create FastAPI app with environment-aware configuration
app = FastAPI(
    title="Tether - Teletherapy Backend",
    version="0.1.0",
    description="Quiz assignments, client roster, Calendly sessions and encrypted chat",
    docs_url="/docs" if not _is_production() else None,
    redoc_url="/redoc" if not _is_production() else None,
)


# =============================================================================
# Health Checks
# =============================================================================

@app.get("/health")
async def health_check():
    """Health check endpoint for the load balancer"""
    return {
        "status": "healthy",
        "service": "tether",
        "version": "0.1.0",
    }


# =============================================================================
# Error Handlers
# =============================================================================

def error_response(status_code: int, message: str, exc: Exception) -> JSONResponse:
    """Error envelope; the exception class is only named outside production."""
    content = {"status": "error", "message": message}
    if not _is_production():
        content["detail"] = type(exc).__name__
    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(TetherError)
async def tether_error_handler(request: Request, exc: TetherError):
    """Domain errors carry their own status code."""
    if exc.status_code >= 500:
        logger.error("request_failed", path=request.url.path, error_type=type(exc).__name__)
    else:
        logger.info(
            "request_rejected",
            path=request.url.path,
            status_code=exc.status_code,
            error_type=type(exc).__name__,
        )
    return error_response(exc.status_code, exc.message, exc)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Return validation errors without echoing the request body"""
    return error_response(400, "Invalid request", exc)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("request_crashed", path=request.url.path, error_type=type(exc).__name__)
    return error_response(500, "Something went wrong. Please try again later.", exc)


# =============================================================================
# API Routers
# =============================================================================

app.include_router(therapist_clients_router)
app.include_router(me_router)
app.include_router(admin_router)
app.include_router(calendly_router)
app.include_router(chat_router)


# =============================================================================
# Root Endpoint
# =============================================================================

@app.get("/")
async def root():
    """API root endpoint"""
    return {
        "service": "tether",
        "description": "Teletherapy backend",
        "version": "0.1.0",
        "docs": "/docs" if not _is_production() else None,
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000, workers=2)
