"""
Secure Key Vault FastAPI application.

Sets up the app with lifespan management (MongoDB connection, index creation,
the challenge sweeper), request logging, the domain error handler and routers.
"""

import asyncio
from contextlib import asynccontextmanager
import time

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from secure_key_vault import __version__
from secure_key_vault.config import settings
from secure_key_vault.database import db_manager
from secure_key_vault.exceptions import KeyVaultError, StoreUnavailableError
from secure_key_vault.managers.logging_manager import get_logger
from secure_key_vault.managers.redis_manager import redis_manager
from secure_key_vault.periodics.cleanup import periodic_challenge_sweep
from secure_key_vault.routes import admin, fido
from secure_key_vault.routes.dependencies import get_challenge_store
from secure_key_vault.utils.logging_utils import (
    RequestLoggingMiddleware,
    log_application_lifecycle,
    log_error_with_context,
)

logger = get_logger()


@asynccontextmanager
async def lifespan(_app: FastAPI):
    """Connect to MongoDB, ensure indexes, run the sweeper; tear all of it down on exit."""
    startup_start_time = time.time()
    log_application_lifecycle(
        "startup_initiated",
        {
            "app_name": settings.APP_NAME,
            "version": __version__,
            "environment": "production" if settings.is_production else "development",
            "debug_mode": settings.DEBUG,
        },
    )

    try:
        await db_manager.connect()
        log_application_lifecycle("database_connected", {"database_name": settings.MONGODB_DATABASE})
        await db_manager.create_indexes()
        log_application_lifecycle("database_indexes_ready")
    except Exception as e:
        log_application_lifecycle("startup_failed", {"error": str(e), "error_type": type(e).__name__})
        log_error_with_context(e, {"operation": "application_startup", "phase": "database_connection"})
        raise

    background_tasks = {
        "challenge_sweep": asyncio.create_task(periodic_challenge_sweep(get_challenge_store())),
    }
    log_application_lifecycle(
        "startup_completed",
        {
            "startup_duration": f"{time.time() - startup_start_time:.3f}s",
            "tasks": list(background_tasks.keys()),
        },
    )

    yield

    log_application_lifecycle("shutdown_initiated", {"active_background_tasks": len(background_tasks)})
    for task_name, task in background_tasks.items():
        task.cancel()
        try:
            await asyncio.wait_for(task, timeout=5.0)
        except asyncio.CancelledError:
            logger.info("Background task %s cancelled successfully", task_name)
        except asyncio.TimeoutError:
            logger.warning("Background task %s cancellation timed out", task_name)

    try:
        await redis_manager.close()
        await db_manager.disconnect()
    except Exception as e:
        log_error_with_context(e, {"operation": "shutdown_disconnect"})

    log_application_lifecycle("shutdown_completed")


app = FastAPI(
    title="Secure Key Vault API",
    description="Custody and authentication service for FIDO2 hardware security keys.",
    version=__version__,
    lifespan=lifespan,
    openapi_tags=[
        {"name": "FIDO2", "description": "Key registration and key login ceremonies"},
        {"name": "Key Administration", "description": "Inventory, assignment and revocation of keys"},
        {"name": "System", "description": "Health checks"},
    ],
)

app.add_middleware(RequestLoggingMiddleware)


@app.exception_handler(KeyVaultError)
async def key_vault_error_handler(request: Request, exc: KeyVaultError) -> JSONResponse:
    """Map domain errors to HTTP responses without leaking internal detail."""
    if isinstance(exc, StoreUnavailableError):
        log_error_with_context(exc, {"path": request.url.path, **exc.context}, operation="request")
    else:
        logger.info("%s %s -> %d %s", request.method, request.url.path, exc.http_status, exc.error_code)

    headers = {"WWW-Authenticate": "Bearer"} if exc.http_status == 401 else None
    content = {"detail": exc.user_message}
    if getattr(exc, "retryable", False):
        content["retryable"] = True
    return JSONResponse(
        status_code=exc.http_status,
        content=content,
        headers=headers,
    )


@app.get("/health", tags=["System"])
async def health():
    database_ok = await db_manager.health_check()
    redis_ok = await redis_manager.health_check()
    healthy = database_ok and redis_ok
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "healthy" if healthy else "unhealthy",
            "database": "connected" if database_ok else "unavailable",
            "redis": "connected" if redis_ok else "unavailable",
        },
    )


app.include_router(fido.router)
app.include_router(admin.router)
