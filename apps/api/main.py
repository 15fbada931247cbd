"""
AI Coach API entry point.

Wires the coach router into a FastAPI app with request-id tracking, CORS,
structured error responses and health probes.
"""
import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from core.config import settings
from core.database import check_db_connection
from core.exceptions import APIException
from core.logging import bind_request_id, setup_logging
from routers import ai_coach
from services.coach_modules.relay import new_request_id, session_registry

setup_logging()
logger = logging.getLogger(__name__)

if settings.SENTRY_DSN:
    try:
        import sentry_sdk
        from sentry_sdk.integrations.fastapi import FastApiIntegration

        sentry_sdk.init(
            dsn=settings.SENTRY_DSN,
            environment=settings.ENVIRONMENT,
            traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
            integrations=[FastApiIntegration(transaction_style="endpoint")],
            # Prompts and replies are athlete data
            send_default_pii=False,
        )
        logger.info(f"Sentry initialized for environment: {settings.ENVIRONMENT}")
    except ImportError:
        logger.warning("sentry-sdk not installed, error tracking disabled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Close the shared provider connection pool on shutdown."""
    yield
    if ai_coach.get_provider_gateway.cache_info().currsize:
        await ai_coach.get_provider_gateway().aclose()


app = FastAPI(
    title="AI Coach API",
    description="Metrics-grounded AI coaching with streamed replies",
    version="1.0.0",
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
    lifespan=lifespan,
)


if settings.DEBUG:
    allowed_origins = ["*"]
elif settings.CORS_ORIGINS:
    allowed_origins = [origin.strip() for origin in settings.CORS_ORIGINS.split(",")]
else:
    allowed_origins = ["http://localhost:3000", "http://127.0.0.1:3000"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "X-Request-ID"],
    # Browsers may only read these cross-origin when they are exposed
    expose_headers=["X-Request-ID", "X-History-Token"],
)


@app.middleware("http")
async def track_requests(request: Request, call_next):
    """
    Assign the request id and log one line per request.

    For streamed replies the timing is time-to-first-byte; the relay logs
    the stream's own duration when it finishes.
    """
    request_id = request.headers.get("x-request-id") or new_request_id()
    request.state.request_id = request_id
    bind_request_id(request_id)

    started = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = round((time.perf_counter() - started) * 1000, 2)

    response.headers["X-Request-ID"] = request_id
    logger.info(
        f"{request.method} {request.url.path} -> {response.status_code}",
        extra={
            "extra_fields": {
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "ttfb_ms": elapsed_ms,
            }
        },
    )
    return response


@app.exception_handler(APIException)
async def api_exception_handler(request: Request, exc: APIException):
    return JSONResponse(status_code=exc.status_code, content=exc.body(), headers=exc.headers)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Anything unhandled before a stream starts becomes a plain 500."""
    logger.error(
        f"Unhandled exception: {exc}",
        exc_info=True,
        extra={"extra_fields": {"method": request.method, "path": request.url.path}},
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error", "error_code": "INTERNAL_ERROR"},
    )


@app.get("/health")
async def health():
    """
    Readiness probe.

    503 when the database is unreachable. The provider is reported but does
    not fail the probe: the coach degrades to 503 on its own endpoint.
    """
    coach_missing = ai_coach.get_coach_config().missing()
    if not check_db_connection():
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "unhealthy", "database": "unavailable"},
        )
    return {
        "status": "healthy",
        "database": "ok",
        "coach_provider": "missing_config" if coach_missing else "configured",
        "active_streams": len(session_registry),
        "timestamp": time.time(),
    }


@app.get("/ping")
async def ping():
    """Liveness probe; checks nothing."""
    return {"pong": True}


app.include_router(ai_coach.router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host=settings.API_HOST, port=settings.API_PORT, reload=settings.API_RELOAD)
