"""FastAPI application entry point.

- Health check GET /health (no 307 redirect, redirect_slashes=False)
- Wallet, payments, research billing and admin APIs
- Moyasar webhook
- Realtime credits websocket
- Background payment reconciler
"""

from __future__ import annotations

import logging
import os
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

from shared.errors import LedgerError, generate_trace_id, log_exception, safe_user_message

# ---------------------------------------------------------------------------
# Logging configuration
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan (startup / shutdown)
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle."""
    logger.info("Starting up...")

    # Validate environment configuration
    from shared.config import validate_settings
    validate_settings()

    # Optional: Sentry error tracking
    dsn = os.getenv("SENTRY_DSN", "").strip()
    if dsn:
        try:
            import sentry_sdk  # type: ignore
            sentry_sdk.init(
                dsn=dsn,
                traces_sample_rate=float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0")),
                environment=os.getenv("SENTRY_ENV", os.getenv("ENV", "production")),
            )
            logger.info("Sentry enabled")
        except Exception:
            logger.exception("Failed to initialize Sentry")

    # Create DB tables and default pricing
    from shared.database import create_tables
    from services.pricing_service import seed_default_rules
    await create_tables()
    await seed_default_rules()
    logger.info("Database tables ready")

    # Start payment reconciler (missed webhooks fallback) - only if Moyasar is configured
    from services.payment_reconcile import start_reconciler, stop_reconciler
    await start_reconciler()

    yield

    # Shutdown
    logger.info("Shutting down...")
    await stop_reconciler()
    from services.notification_service import drain_notifications
    await drain_notifications()
    from shared.redis_client import close_redis
    await close_redis()
    from shared.database import engine
    await engine.dispose()
    logger.info("Shutdown complete")


# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Research Credits Ledger",
    version="1.0.0",
    lifespan=lifespan,
    redirect_slashes=False,
)


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------

@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    trace_id = generate_trace_id()
    if exc.http_status >= 500:
        log_exception(exc, trace_id=trace_id, context=f"{request.method} {request.url.path}")
    else:
        logger.info(
            "trace_id=%s | %s %s -> %s: %s",
            trace_id, request.method, request.url.path, exc.code, exc.detail,
        )
    return JSONResponse(
        status_code=exc.http_status,
        content={"error": exc.code, "message": exc.user_message, "trace_id": trace_id},
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    trace_id = log_exception(exc, context=f"{request.method} {request.url.path}")
    return JSONResponse(
        status_code=500,
        content={"error": "internal_error", "message": safe_user_message(trace_id), "trace_id": trace_id},
    )


# ---------------------------------------------------------------------------
# Basic request size guard for webhook endpoints
# ---------------------------------------------------------------------------

MAX_WEBHOOK_BODY_BYTES = int(os.getenv("MAX_WEBHOOK_BODY_BYTES", str(1_000_000)))


@app.middleware("http")
async def limit_webhook_body_size(request, call_next):
    if request.method in ("POST", "PUT", "PATCH") and request.url.path.startswith("/moyasar/webhook"):
        cl = request.headers.get("content-length")
        if cl and cl.isdigit() and int(cl) > MAX_WEBHOOK_BODY_BYTES:
            return Response(status_code=413)
    return await call_next(request)


# ---------------------------------------------------------------------------
# Health check (GET /health and GET /health/, no trailing slash redirect)
# ---------------------------------------------------------------------------

@app.get("/health")
@app.get("/health/")
async def health_check() -> Response:
    """Health check endpoint for Docker / reverse proxies."""
    return Response(content='{"status":"ok"}', media_type="application/json")


# ---------------------------------------------------------------------------
# Include routers
# ---------------------------------------------------------------------------

from web_api.handlers.admin import router as admin_router
from web_api.handlers.credits import router as credits_router
from web_api.handlers.payments import router as payments_router
from web_api.handlers.research import router as research_router
from web_api.realtime import router as realtime_router
from web_api.webhooks.moyasar import router as moyasar_router

app.include_router(credits_router)
app.include_router(payments_router)
app.include_router(research_router)
app.include_router(admin_router)
app.include_router(moyasar_router)
app.include_router(realtime_router)


if __name__ == "__main__":
    import uvicorn

    from shared.config import settings
    uvicorn.run("web_api.main:app", host="0.0.0.0", port=settings.PORT)
