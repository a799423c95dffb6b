"""FastAPI application entry point."""
import asyncio
import logging
import uuid
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from booking.core.config import settings
from booking.core.errors import BookingError, ValidationError
from booking.core.mode_gate import SystemModeGate
from booking.core.structured_logging import build_log_context, configure_logging
from booking.db.session import SessionLocal
from booking.services import health_service
from booking.services.reconcile_service import single_flight

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
SYSTEM_MODE_HEADER = "X-System-Mode"

# ============================================================================
# Sentry Integration (optional, for production error tracking)
# ============================================================================

if settings.SENTRY_DSN and settings.ENV != "dev":
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENV,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
        ],
        traces_sample_rate=0.1,  # 10% of requests for performance monitoring
        send_default_pii=False,  # Client names/phones never leave the service
    )
    logging.info("Sentry initialized for error tracking")

# ============================================================================
# Rate Limiting
# ============================================================================

from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from booking.core.rate_limit import limiter


# ============================================================================
# Lifespan
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.LOG_LEVEL)
    logger.info("Booking API starting (env=%s, version=%s)", settings.ENV, settings.VERSION)

    probe_task = None
    if settings.HEALTH_PROBE_ENABLED:
        probe_task = asyncio.create_task(
            health_service.run_probe_loop(
                SessionLocal,
                app.state.mode_gate,
                app.state.single_flight,
                settings.HEALTH_PROBE_INTERVAL_SECONDS,
            )
        )

    yield

    if probe_task is not None:
        probe_task.cancel()
        with suppress(asyncio.CancelledError):
            await probe_task
    logger.info("Booking API shutting down")


# ============================================================================
# FastAPI App
# ============================================================================

app = FastAPI(
    title="Booking API",
    description="Reliable appointment mutation engine",
    version=settings.VERSION,
    docs_url="/docs" if settings.ENV == "dev" else None,
    redoc_url="/redoc" if settings.ENV == "dev" else None,
    lifespan=lifespan,
)

# Process-wide state: probes write the gate, mutations read it
app.state.mode_gate = SystemModeGate()
app.state.single_flight = single_flight

# Add rate limiter
app.state.limiter = limiter
app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Idempotency-Key", REQUEST_ID_HEADER],
    expose_headers=[REQUEST_ID_HEADER, SYSTEM_MODE_HEADER],
)


# ============================================================================
# Request ID + error envelopes
# ============================================================================

@app.middleware("http")
async def request_context(request: Request, call_next):
    request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers[REQUEST_ID_HEADER] = request_id
    # Degraded still accepts writes; clients surface this as a warning
    response.headers[SYSTEM_MODE_HEADER] = request.app.state.mode_gate.mode.value
    return response


def _error_response(request: Request, error: BookingError) -> JSONResponse:
    return JSONResponse(
        status_code=error.http_status,
        content={
            "ok": False,
            "error": error.to_dict(),
            "request_id": getattr(request.state, "request_id", None),
        },
    )


@app.exception_handler(BookingError)
async def booking_error_handler(request: Request, exc: BookingError):
    logger.info(
        "Request rejected: %s",
        exc.code,
        extra=build_log_context(
            request_id=getattr(request.state, "request_id", None),
            route=request.url.path,
            method=request.method,
        ),
    )
    return _error_response(request, exc)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"loc": [str(part) for part in error.get("loc", ())], "msg": error.get("msg", "")}
        for error in exc.errors()
    ]
    return _error_response(
        request, ValidationError("Request is invalid.", details={"errors": errors})
    )


@app.exception_handler(RateLimitExceeded)
def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    error = BookingError(f"Rate limit exceeded: {exc.detail}", retryable=True)
    error.code = "RATE_LIMITED"
    error.http_status = 429
    return _error_response(request, error)


# ============================================================================
# Routers
# ============================================================================

from booking.routers import appointments_router, offline_router, system_router

app.include_router(system_router)
app.include_router(appointments_router)
app.include_router(offline_router)
