# /autoreply/main.py

import os
import time
import logging
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.gzip import GZipMiddleware

from autoreply.config.settings import settings
from autoreply.routes import knowledge_base, messages, public
from autoreply.routes import settings as settings_routes
from autoreply.utils.errors import (
    AutoReplyError,
    GenerationFailed,
    NotFoundError,
    PersistenceError,
    ValidationError,
    VersionConflictError,
)
from autoreply.utils.lifecycle import lifespan
from autoreply.utils.metrics import response_time_histogram

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Auto-Reply Service",
    version="1.0.0",
    description="Hierarchical auto-reply configuration and decision engine for WhatsApp tenants",
    lifespan=lifespan,
    openapi_url=f"/api/{settings.api_version}/openapi.json" if settings.environment != "production" else None,
    docs_url=f"/api/{settings.api_version}/docs" if settings.environment != "production" else None,
    redoc_url=None,
)

app.add_middleware(GZipMiddleware, minimum_size=1000)


@app.middleware("http")
async def performance_middleware(request: Request, call_next):
    start_time = time.time()
    response = await call_next(request)
    process_time = time.time() - start_time
    response_time_histogram.labels(endpoint=request.url.path).observe(process_time)
    response.headers["X-Process-Time"] = str(process_time)
    return response


# --- Error mapping ---
# Most specific first: VersionConflictError is also a PersistenceError.
ERROR_STATUS = [
    (ValidationError, 422),
    (NotFoundError, 404),
    (VersionConflictError, 409),
    (PersistenceError, 503),
    (GenerationFailed, 502),
]


@app.exception_handler(AutoReplyError)
async def auto_reply_error_handler(request: Request, exc: AutoReplyError):
    status_code = next((code for error_type, code in ERROR_STATUS if isinstance(exc, error_type)), 500)
    if status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": type(exc).__name__, "detail": str(exc)},
    )


# --- API Routers ---
app.include_router(public.router)
app.include_router(messages.router, prefix=f"/api/{settings.api_version}")
app.include_router(settings_routes.router, prefix=f"/api/{settings.api_version}")
app.include_router(knowledge_base.router, prefix=f"/api/{settings.api_version}")


if __name__ == "__main__":
    port = int(os.getenv("PORT", "8000"))
    host = os.getenv("HOST", "127.0.0.1")

    uvicorn.run(
        "autoreply.main:app",
        host=host,
        port=port,
        reload=settings.environment == "development",
    )
