"""budgetsync - Encrypted user data sync server."""
import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from budgetsync.api.sync import router as sync_router
from budgetsync.dependencies import close_dependencies, get_request_handler
from budgetsync.errors import error_body
from budgetsync.logging_hardening import setup_logging
from budgetsync.routers import health
from budgetsync.settings import get_settings

logger = logging.getLogger(__name__)

# Initialize logging redaction filters early
setup_logging(get_settings().log_level)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup checks: fail fast on missing secrets or a non-durable store in prod
    try:
        get_request_handler()
    except RuntimeError as e:
        logger.critical(f"CRITICAL STARTUP ERROR: {e}")
        sys.exit(1)

    yield

    logger.info("Initiating graceful shutdown...")
    await close_dependencies()
    logger.info("Shutdown complete.")


app = FastAPI(
    title="budgetsync",
    description="Encrypted per-user data sync with hot cache and rate limiting",
    version="0.1.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_allow_origins,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.url.path}")
    return JSONResponse(status_code=500, content=error_body("Internal server error", "INTERNAL_ERROR"))


# Mount routers
app.include_router(sync_router.router, prefix="/api", tags=["Sync"])
app.include_router(health.router, tags=["Health"])
