import asyncio
import logging
import os
import time
from collections import defaultdict
from contextlib import asynccontextmanager, suppress
from threading import Lock

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.config import get_settings
from app.core.clock import utc_now
from app.core.errors import StorageUnavailableError
from app.database import engine, Base, SessionLocal
from app.models import all as models  # noqa: F401 - import for table creation
from app.routers.auth import router as auth_router
from app.routers.integrations import router as integrations_router
from app.routers.subscription import router as subscription_router
from app.routers.users import router as users_router
from app.routers.webhooks import router as webhooks_router
from app.services.session_guard import sweep_expired_sessions

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Simple in-memory rate limiter for credential endpoints.

    Limits requests based on client IP using a sliding window algorithm.
    Rate limit settings can be configured via environment variables:
    - RATE_LIMIT_AUTH: Max login/registration requests per window (default: 20)
    - RATE_LIMIT_WINDOW_SECONDS: Time window in seconds (default: 60)
    - RATE_LIMIT_DISABLED: Set to "1" to disable rate limiting (useful for testing)
    """

    def __init__(self, app, rate_limit: int = 20, window_seconds: int = 60):
        super().__init__(app)
        self.disabled = os.environ.get("RATE_LIMIT_DISABLED", "0") == "1"
        self.rate_limit = int(os.environ.get("RATE_LIMIT_AUTH", rate_limit))
        self.window_seconds = int(os.environ.get("RATE_LIMIT_WINDOW_SECONDS", window_seconds))
        self.requests: dict[str, list[float]] = defaultdict(list)
        self.lock = Lock()
        self.rate_limited_paths = {("/api/auth/login", "POST"), ("/api/auth/register", "POST")}

    def _get_client_ip(self, request: Request) -> str:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()
        return request.client.host if request.client else "unknown"

    def _is_rate_limited(self, key: str) -> bool:
        """Check if the key is rate limited and record the new request."""
        current_time = time.time()
        cutoff = current_time - self.window_seconds
        with self.lock:
            self.requests[key] = [t for t in self.requests[key] if t > cutoff]
            if len(self.requests[key]) >= self.rate_limit:
                return True
            self.requests[key].append(current_time)
            return False

    async def dispatch(self, request: Request, call_next):
        if self.disabled or (request.url.path, request.method) not in self.rate_limited_paths:
            return await call_next(request)

        key = f"{self._get_client_ip(request)}:{request.url.path}"
        if self._is_rate_limited(key):
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={
                    "detail": f"Rate limit exceeded. Maximum {self.rate_limit} requests per {self.window_seconds} seconds.",
                    "error": "rate_limit_exceeded",
                },
                headers={"Retry-After": str(self.window_seconds)},
            )
        return await call_next(request)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Middleware to add security headers to all responses."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        # Responses carry tokens and billing data
        response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate, private"
        response.headers["Pragma"] = "no-cache"
        return response


def _sweep_once() -> int:
    db = SessionLocal()
    try:
        return sweep_expired_sessions(db)
    finally:
        db.close()


async def _session_sweep_loop(interval_seconds: int) -> None:
    """Periodically delete expired sessions until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await run_in_threadpool(_sweep_once)
        except Exception:
            # The sweep is maintenance; access-time checks still reject expired sessions
            logger.exception("Expired session sweep failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info("Starting Bizlytics API (environment=%s)", settings.environment)
    if not settings.webhook_verification_enabled:
        logger.warning("Stripe webhooks run in development mode: signatures are not verified")

    sweeper = None
    if settings.session_sweep_interval_seconds > 0:
        sweeper = asyncio.create_task(_session_sweep_loop(settings.session_sweep_interval_seconds))
    try:
        yield
    finally:
        if sweeper is not None:
            sweeper.cancel()
            with suppress(asyncio.CancelledError):
                await sweeper


Base.metadata.create_all(bind=engine)

app = FastAPI(title="Bizlytics API", version="0.1.0", lifespan=lifespan)


@app.exception_handler(StorageUnavailableError)
async def storage_unavailable_handler(request: Request, exc: StorageUnavailableError):
    logger.error("Storage unavailable on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": {"error": "storage_unavailable", "message": "Please retry shortly"}},
        headers={"Retry-After": "5"},
    )


# In production, set CORS_ORIGINS to a comma-separated list of allowed origins
cors_origins_env = os.environ.get("CORS_ORIGINS", "")
if cors_origins_env:
    cors_origins = [origin.strip() for origin in cors_origins_env.split(",") if origin.strip()]
else:
    cors_origins = ["http://localhost:3000", "http://127.0.0.1:3000"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RateLimitMiddleware)

app.include_router(auth_router)
app.include_router(users_router)
app.include_router(integrations_router)
app.include_router(subscription_router)
app.include_router(webhooks_router)


@app.get("/health")
def health():
    """Health check endpoint that verifies database connectivity."""
    from sqlalchemy import text
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
    except Exception as exc:
        logger.error("Health check failed: %s", exc)
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "unhealthy", "database": "disconnected"},
        )
    finally:
        db.close()
    return {"status": "ok", "database": "connected", "timestamp": utc_now().isoformat()}
