"""
Main FastAPI application entry point.

Responsibilities:
- Initialize FastAPI app
- Configure CORS and CSRF protection
- Include routers
- Setup startup/shutdown events
"""
from __future__ import annotations

import logging
import sys

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.routes import deals
from config import log_missing_env_vars, settings
from models.database import close_db, get_pool_status

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    stream=sys.stdout,
)

app = FastAPI(title="Deal Pipeline API", version="1.0.0")


def _normalize_origin(origin: str) -> str:
    """Normalize origin values for robust CORS/CSRF checks."""
    return origin.strip().rstrip("/")


cors_origins: list[str] = [
    "http://localhost:5173",  # Vite dev server
    "http://localhost:8080",
    settings.FRONTEND_URL,
]

allowed_origins = {_normalize_origin(origin) for origin in cors_origins if origin}


def get_cors_headers(origin: str | None) -> dict[str, str]:
    """Return CORS headers if origin is allowed."""
    normalized_origin = _normalize_origin(origin) if origin else None
    if normalized_origin and normalized_origin in allowed_origins:
        return {
            "Access-Control-Allow-Origin": normalized_origin,
            "Access-Control-Allow-Credentials": "true",
            "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS, PATCH",
            "Access-Control-Allow-Headers": "*",
        }
    return {}


app.add_middleware(
    CORSMiddleware,
    allow_origins=sorted(allowed_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Content-Disposition"],
)


@app.middleware("http")
async def csrf_protection_middleware(request: Request, call_next):
    """Block unsafe cross-site cookie requests."""
    unsafe_methods = {"POST", "PUT", "PATCH", "DELETE"}
    if request.method in unsafe_methods:
        origin = request.headers.get("origin")
        has_cookies = "cookie" in request.headers
        if origin and has_cookies:
            normalized_origin = _normalize_origin(origin)
            if normalized_origin not in allowed_origins:
                logging.warning(
                    "Blocked potential CSRF request",
                    extra={
                        "method": request.method,
                        "path": request.url.path,
                        "origin": origin,
                    },
                )
                return JSONResponse(
                    status_code=403,
                    content={"detail": "CSRF validation failed"},
                )
    return await call_next(request)


# Global exception handler to ensure CORS headers on all errors
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle all uncaught exceptions with CORS headers."""
    origin = request.headers.get("origin")
    cors_headers = get_cors_headers(origin)
    logging.error("Unhandled exception: %s", exc, exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
        headers=cors_headers,
    )


# Routes
app.include_router(deals.router, prefix="/api/deals", tags=["deals"])


@app.on_event("startup")
async def startup() -> None:
    # Schema is managed by Alembic migrations
    log_missing_env_vars(logging.getLogger("config"))
    logging.info("Deal Pipeline API started (environment=%s)", settings.ENVIRONMENT)


@app.on_event("shutdown")
async def shutdown() -> None:
    """Clean up database connections on shutdown."""
    logging.info("Shutting down, closing database connections...")
    await close_db()


@app.get("/")
async def root_health_check() -> dict[str, str]:
    """Root endpoint exposing the health check payload."""
    return await health_check()


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok"}


@app.get("/health/db")
async def db_health_check() -> dict[str, object]:
    """Database health check with pool status."""
    try:
        pool_status = get_pool_status()
        return {
            "status": "ok",
            "pool": pool_status,
        }
    except Exception as e:
        logging.error("Pool status check failed: %s", e)
        return {
            "status": "error",
            "error": str(e),
        }
