# listing_bot/transport/http_app.py
"""
HTTP application: Meta webhook intake plus operational endpoints.

Security layers:
1. Public: Meta webhook (verify token on GET, signature on POST), /health, /ready
2. Bearer secret: /cron/process (CRON_SECRET), /metrics and /health/detailed (METRICS_TOKEN)
3. No information leakage in production
"""
from __future__ import annotations

from contextlib import asynccontextmanager

import httpx
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from listing_bot.config import settings
from listing_bot.core.orchestrator import PipelineOrchestrator
from listing_bot.core.scanner import ExpiryScanner
from listing_bot.core.state_machine import SessionStateMachine
from listing_bot.core.use_cases import IntakeService
from listing_bot.infra.db_async import close_pool, init_pool
from listing_bot.infra.gemini_extractor import GeminiExtractor
from listing_bot.infra.health_checks_async import AsyncHealthChecker
from listing_bot.infra.http_client import HttpSessions
from listing_bot.infra.logging_config import get_logger, setup_logging
from listing_bot.infra.media_intake import MetaMediaFetcher, S3MediaIntake
from listing_bot.infra.metrics import get_metrics_collector
from listing_bot.infra.migrations_async import current_schema_version
from listing_bot.infra.pg_debounce_timer_async import AsyncPostgresDebounceTimer
from listing_bot.infra.pg_inbound_repo_async import AsyncPostgresInboundMessageRepository
from listing_bot.infra.pg_listing_repo_async import (
    AsyncPostgresIdentityResolver,
    AsyncPostgresListingSink,
)
from listing_bot.infra.pg_session_store_async import AsyncPostgresSessionStore
from listing_bot.infra.rate_limiter import InMemoryRateLimiter
from listing_bot.infra.s3_storage import S3Storage
from listing_bot.transport.meta_sender import MetaNotifier, MetaSender
from listing_bot.transport.meta_webhook import meta_webhook_handler, meta_webhook_verify
from listing_bot.transport.middleware import (
    ErrorHandlingMiddleware,
    RequestIDMiddleware,
    RequestLoggingMiddleware,
    SecurityHeadersMiddleware,
)
from listing_bot.transport.security import check_bearer_secret

# Initialize logging first
setup_logging(
    level=settings.log_level,
    use_json=settings.is_production
)

logger = get_logger(__name__)


# ============================================================================
# DEPENDENCIES
# ============================================================================

def require_cron_auth(request: Request) -> None:
    check_bearer_secret(request, settings.cron_secret, endpoint="cron")


def require_metrics_auth(request: Request) -> None:
    if settings.is_production and not settings.metrics_token:
        raise HTTPException(status_code=404, detail="Not found")
    check_bearer_secret(request, settings.metrics_token, endpoint="metrics")


def get_scanner(request: Request) -> ExpiryScanner:
    return request.app.state.scanner


# ============================================================================
# LIFESPAN
# ============================================================================

async def _check_schema() -> str:
    """Fail fast when migrations have not been applied. Does NOT migrate."""
    current = await current_schema_version()
    expected = settings.expected_schema_version
    if current is None or current < expected:
        raise RuntimeError(
            f"Schema version {current or 'none'} is older than expected {expected}. "
            "Run migrations first: python -m listing_bot.infra.migrate"
        )
    return current


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    """Application lifecycle: startup and shutdown"""

    # STARTUP
    logger.info(
        f"Starting application: env={settings.app_env}, run_mode={settings.run_mode}"
    )

    if settings.is_production:
        missing = settings.validate_required_for_production()
        if missing:
            logger.critical(f"Missing required production settings: {missing}")
            raise RuntimeError(f"Missing production config: {missing}")

        if settings.require_webhook_validation and not settings.meta_app_secret:
            logger.critical("META_APP_SECRET is required when REQUIRE_WEBHOOK_VALIDATION=true")
            raise RuntimeError("Webhook signature secret not configured")

    if not settings.s3_enabled:
        logger.critical(
            "S3 storage is not configured. "
            "Set S3_ENDPOINT_URL, S3_ACCESS_KEY, S3_SECRET_KEY, S3_BUCKET_NAME."
        )
        raise RuntimeError("S3 storage not configured")

    await init_pool()
    logger.info("Database pool initialized")

    try:
        schema_version = await _check_schema()
        logger.info(f"Schema validated: {schema_version}")
    except Exception:
        logger.critical("Schema validation failed", exc_info=True)
        await close_pool()
        raise

    # Stores
    sessions = AsyncPostgresSessionStore(
        ttl_seconds=settings.session_ttl_seconds,
        batch_size=settings.scanner_batch_size,
    )
    timer = AsyncPostgresDebounceTimer()
    inbound = AsyncPostgresInboundMessageRepository()

    # Outbound clients
    http_sessions = HttpSessions.open()
    extraction_client = httpx.AsyncClient(timeout=settings.extraction_timeout_seconds)

    storage = S3Storage.from_settings(settings)
    media = S3MediaIntake(
        storage,
        MetaMediaFetcher(
            http_sessions.graph,
            http_sessions.media,
            access_token=settings.meta_access_token or "",
            graph_api_version=settings.meta_graph_api_version,
        ),
    )
    notifier = MetaNotifier(
        MetaSender(
            http_sessions.graph,
            access_token=settings.meta_access_token or "",
            phone_number_id=settings.meta_phone_number_id or "",
            graph_api_version=settings.meta_graph_api_version,
        )
    )
    extractor = GeminiExtractor(
        settings.gemini_api_key or "",
        client=extraction_client,
        model=settings.gemini_model,
        retries=settings.extraction_retries,
    )

    # Core
    state_machine = SessionStateMachine(
        sessions=sessions,
        timer=timer,
        debounce_window_seconds=settings.debounce_window_seconds,
    )
    orchestrator = PipelineOrchestrator(
        sessions=sessions,
        state_machine=state_machine,
        media=media,
        extractor=extractor,
        notifier=notifier,
        identities=AsyncPostgresIdentityResolver(),
        sink=AsyncPostgresListingSink(),
        min_media_items=settings.min_media_items,
        max_media_items=settings.max_media_items,
    )
    chat_rate_limiter = InMemoryRateLimiter(
        max_requests=settings.chat_rate_limit_per_minute,
        window_seconds=60,
    )

    async def housekeeping() -> None:
        await inbound.cleanup_old()
        chat_rate_limiter.cleanup()

    scanner = ExpiryScanner(
        sessions=sessions,
        orchestrator=orchestrator,
        interval_seconds=settings.scanner_interval_seconds,
        stall_after_seconds=settings.stall_after_seconds,
        housekeeping=housekeeping,
    )

    fastapi_app.state.intake = IntakeService(
        state_machine=state_machine,
        orchestrator=orchestrator,
        media=media,
        notifier=notifier,
        inbound=inbound,
        min_media_items=settings.min_media_items,
        max_media_items=settings.max_media_items,
    )
    fastapi_app.state.chat_rate_limiter = chat_rate_limiter
    fastapi_app.state.scanner = scanner

    # Only the "all" and "scanner" roles poll; "web" relies on POST /cron/process.
    scanner_running = settings.run_mode in ("all", "scanner") and settings.scanner_enabled
    if scanner_running:
        await scanner.start()
    else:
        logger.info(
            f"Expiry scanner skipped (run_mode={settings.run_mode}, enabled={settings.scanner_enabled})"
        )

    fastapi_app.state.health_checker = AsyncHealthChecker(
        scanner=scanner if scanner_running else None,
        scanner_interval_seconds=settings.scanner_interval_seconds,
    )

    logger.info(
        f"Session settings: ttl={settings.session_ttl_seconds}s, "
        f"debounce={settings.debounce_window_seconds}s, "
        f"media={settings.min_media_items}-{settings.max_media_items}"
    )
    logger.info("Meta webhook path: /webhooks/meta  (configure in Meta App Dashboard)")
    logger.info("Application startup complete")

    yield

    # SHUTDOWN
    logger.info("Shutting down application")

    if scanner_running:
        await scanner.stop()

    await http_sessions.close()
    await extraction_client.aclose()
    await close_pool()
    logger.info("Application shutdown complete")


# ============================================================================
# CREATE APP
# ============================================================================

app = FastAPI(
    title="Listing Bot",
    description="WhatsApp intake for vehicle marketplace listings",
    version="1.0.0",
    lifespan=lifespan,
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
    openapi_url=None if settings.is_production else "/openapi.json",
)

app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(ErrorHandlingMiddleware)
app.add_middleware(RequestLoggingMiddleware, enabled=settings.enable_request_logging)
app.add_middleware(RequestIDMiddleware)


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions with appropriate logging"""
    if exc.status_code >= 500:
        logger.error(f"Server error: {exc.detail}", extra={"status_code": exc.status_code})

    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions"""
    logger.error(f"Unhandled exception: {exc.__class__.__name__}", exc_info=True)

    message = "Internal server error" if settings.is_production else f"{exc.__class__.__name__}: {exc}"
    return JSONResponse(status_code=500, content={"error": message})


# ============================================================================
# PUBLIC ENDPOINTS
# ============================================================================

@app.get("/health")
def health():
    """Liveness: the process is up. Used by load balancers."""
    return {"status": "healthy"}


@app.get("/ready")
async def readiness(request: Request):
    """Readiness: database reachable and schema present."""
    result = await request.app.state.health_checker.run_checks(include_non_critical=False)

    if result["status"] == "unhealthy":
        return JSONResponse(status_code=503, content={"status": "unhealthy"})

    return {"status": "healthy"}


@app.get("/webhooks/meta")
async def webhook_meta_verify(request: Request):
    """Meta webhook ownership handshake."""
    return await meta_webhook_verify(request)


@app.post("/webhooks/meta")
async def webhook_meta(request: Request):
    """
    Meta WhatsApp Cloud API events.

    - X-Hub-Signature-256 verification (when META_APP_SECRET is set)
    - Per-sender rate limiting
    - Idempotency by provider message id
    """
    return await meta_webhook_handler(request)


# ============================================================================
# OPERATIONAL ENDPOINTS
# ============================================================================

@app.post("/cron/process", dependencies=[Depends(require_cron_auth)])
async def cron_process(scanner: ExpiryScanner = Depends(get_scanner)):
    """
    One expiry scan plus housekeeping, for deployments driven by an
    external scheduler (run_mode=web or scanner disabled).
    """
    result = await scanner.run_once()
    result.update(await scanner.cleanup())
    return {"status": "ok", **result}


@app.get("/health/detailed", dependencies=[Depends(require_metrics_auth)])
async def detailed_health(request: Request):
    return await request.app.state.health_checker.run_checks(include_non_critical=True)


@app.get("/metrics", dependencies=[Depends(require_metrics_auth)])
def metrics():
    return get_metrics_collector().get_metrics()


# ============================================================================
# CATCH-ALL (Return 404 for unknown routes)
# ============================================================================

@app.api_route("/{path:path}", methods=["GET", "POST", "PUT", "DELETE", "PATCH"])
async def catch_all(path: str):
    logger.warning(f"404 - Unknown route accessed: {path}")
    raise HTTPException(status_code=404, detail="Not found")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "listing_bot.transport.http_app:app",
        host="0.0.0.0",
        port=8099,
        reload=not settings.is_production,
        log_level=settings.log_level.lower(),
        access_log=not settings.is_production,
        server_header=False,
        date_header=False,
    )
