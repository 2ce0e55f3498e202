"""API middleware for rate limiting and security.

Implements request throttling (in memory, or Redis when configured),
security headers and request ids.
"""

import asyncio
import hashlib
import time
from uuid import uuid4

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from ..config import get_settings
from ..logging import get_logger, log_api_request
from . import ErrorResponse

logger = get_logger(__name__)

# Rate limit configurations by endpoint category
RATE_LIMITS = {
    # Format: (requests, window_seconds)
    "read": (120, 60),
    "write": (60, 60),
    "upload": (10, 60),
    "auth": (20, 60),
    "webhook": (300, 60),
}

# Route prefixes with their own category; other routes are read or write by method
ROUTE_CATEGORIES = {
    "/api/v1/uploads": "upload",
    "/api/v1/auth": "auth",
    "/api/v1/webhooks": "webhook",
}

READ_METHODS = {"GET", "HEAD", "OPTIONS"}

# Idle in-memory windows are swept this often.
CLEANUP_INTERVAL_SECONDS = 300


def get_rate_limit_category(path: str, method: str = "GET") -> str:
    """Determine rate limit category for a request."""
    for pattern, category in ROUTE_CATEGORIES.items():
        if path.startswith(pattern):
            return category
    return "read" if method.upper() in READ_METHODS else "write"


def get_client_identifier(request: Request) -> str:
    """Get unique identifier for rate limiting.

    Uses the bearer token when present, otherwise the client IP.
    """
    auth = request.headers.get("Authorization", "")
    if auth.lower().startswith("bearer "):
        digest = hashlib.sha256(auth[7:].encode()).hexdigest()[:16]
        return f"token:{digest}"

    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        ip = forwarded.split(",")[0].strip()
    else:
        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            ip = real_ip
        elif request.client:
            ip = request.client.host
        else:
            ip = "unknown"

    return f"ip:{ip}"


class InMemoryRateLimiter:
    """Sliding window rate limiter held in process memory."""

    def __init__(self):
        self._windows: dict[str, list[float]] = {}
        self._lock = asyncio.Lock()
        self._last_cleanup = time.time()

    async def check_rate_limit(
        self, key: str, max_requests: int, window_seconds: int
    ) -> tuple[bool, int, int]:
        """Check if request is within rate limit.

        Args:
            key: Rate limit key (client + category)
            max_requests: Maximum requests in window
            window_seconds: Window size in seconds

        Returns:
            Tuple of (allowed, remaining, reset_seconds)
        """
        now = time.time()
        window_start = now - window_seconds

        async with self._lock:
            if now - self._last_cleanup >= CLEANUP_INTERVAL_SECONDS:
                self._evict_expired(now)
            timestamps = [ts for ts in self._windows.get(key, []) if ts > window_start]
            self._windows[key] = timestamps

            current_count = len(timestamps)
            if current_count >= max_requests:
                reset_seconds = int(min(timestamps) + window_seconds - now)
                return False, 0, max(1, reset_seconds)

            timestamps.append(now)
            return True, max(0, max_requests - current_count - 1), window_seconds

    def _evict_expired(self, now: float) -> None:
        """Drop keys with no request inside the longest window."""
        max_window = max(limit[1] for limit in RATE_LIMITS.values())
        for key in list(self._windows):
            timestamps = [ts for ts in self._windows[key] if ts > now - max_window]
            if timestamps:
                self._windows[key] = timestamps
            else:
                del self._windows[key]
        self._last_cleanup = now


class RedisRateLimiter:
    """Redis-based rate limiter using sorted sets."""

    def __init__(self, redis_client):
        self._redis = redis_client
        self._key_prefix = "dentarad:ratelimit:"

    async def check_rate_limit(
        self, key: str, max_requests: int, window_seconds: int
    ) -> tuple[bool, int, int]:
        """Check if request is within rate limit using Redis.

        Returns:
            Tuple of (allowed, remaining, reset_seconds)
        """
        redis_key = f"{self._key_prefix}{key}"
        now = time.time()
        window_start = now - window_seconds

        try:
            pipe = self._redis.pipeline()
            pipe.zremrangebyscore(redis_key, 0, window_start)
            pipe.zcard(redis_key)
            member = f"{now}:{uuid4().hex[:8]}"
            pipe.zadd(redis_key, {member: now})
            pipe.expire(redis_key, window_seconds + 1)

            results = await pipe.execute()
            current_count = results[1]

            if current_count >= max_requests:
                await self._redis.zrem(redis_key, member)
                oldest = await self._redis.zrange(redis_key, 0, 0, withscores=True)
                if oldest:
                    reset_seconds = int(oldest[0][1] + window_seconds - now)
                else:
                    reset_seconds = window_seconds
                return False, 0, max(1, reset_seconds)

            return True, max(0, max_requests - current_count - 1), window_seconds

        except Exception as e:
            # Fail open - allow request if Redis is unavailable
            logger.warning(f"Redis rate limit error: {e}, allowing request")
            return True, max_requests - 1, window_seconds


_rate_limiter: InMemoryRateLimiter | RedisRateLimiter | None = None


async def get_rate_limiter() -> InMemoryRateLimiter | RedisRateLimiter:
    """Get or create the rate limiter selected by ``rate_limit_backend``."""
    global _rate_limiter

    if _rate_limiter is not None:
        return _rate_limiter

    settings = get_settings()

    if settings.rate_limit_backend == "redis":
        from ..db import get_redis

        try:
            client = await get_redis()
            await client.ping()
            _rate_limiter = RedisRateLimiter(client)
            logger.info("Using Redis rate limiter")
        except Exception as e:
            logger.warning(f"Redis unavailable for rate limiting: {e}")
            _rate_limiter = InMemoryRateLimiter()
    else:
        _rate_limiter = InMemoryRateLimiter()
        logger.info("Using in-memory rate limiter")

    return _rate_limiter


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Sliding window rate limiting per client and endpoint category."""

    SKIP_PATHS = {
        "/health",
        "/api/v1/health",
        "/docs",
        "/redoc",
        "/openapi.json",
    }

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if (
            request.url.path in self.SKIP_PATHS
            or not request.url.path.startswith("/api/")
        ):
            return await call_next(request)

        client_id = get_client_identifier(request)
        category = get_rate_limit_category(request.url.path, request.method)
        max_requests, window_seconds = RATE_LIMITS[category]

        limiter = await get_rate_limiter()
        allowed, remaining, reset_seconds = await limiter.check_rate_limit(
            f"{client_id}:{category}", max_requests, window_seconds
        )

        if not allowed:
            logger.warning(
                f"Rate limit exceeded for {client_id} on {request.url.path}",
                extra={"client": client_id, "category": category, "event": "rate_limit_exceeded"},
            )
            # Exception handlers do not wrap middleware, so respond directly.
            return JSONResponse(
                status_code=429,
                content=ErrorResponse(
                    error=f"Rate limit exceeded. Retry after {reset_seconds} seconds.",
                    error_code="RATE_LIMIT_EXCEEDED",
                    request_id=getattr(request.state, "request_id", None),
                ).model_dump(),
                headers={"Retry-After": str(reset_seconds)},
            )

        response = await call_next(request)

        response.headers["X-RateLimit-Limit"] = str(max_requests)
        response.headers["X-RateLimit-Remaining"] = str(remaining)
        response.headers["X-RateLimit-Reset"] = str(reset_seconds)

        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Middleware to add security headers to responses."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        response = await call_next(request)

        response.headers["Content-Security-Policy"] = "; ".join(
            [
                "default-src 'self'",
                "script-src 'self' 'unsafe-inline' https://cdnjs.cloudflare.com",
                "style-src 'self' 'unsafe-inline'",
                "img-src 'self' data: https: blob:",
                "font-src 'self' data:",
                "connect-src 'self' https://*.supabase.co wss://*.supabase.co",
                "frame-ancestors 'none'",
                "base-uri 'self'",
                "form-action 'self'",
            ]
        )
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-XSS-Protection"] = "1; mode=block"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Permissions-Policy"] = (
            "geolocation=(), microphone=(), camera=(), payment=()"
        )

        # HSTS (only in production with HTTPS)
        if get_settings().is_production:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains; preload"
            )

        return response


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Assigns a request id and logs each API request."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid4())
        request.state.request_id = request_id

        started = time.perf_counter()
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id

        if request.url.path.startswith("/api/"):
            log_api_request(
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round((time.perf_counter() - started) * 1000, 1),
                user_id=getattr(request.state, "user_id", None),
                request_id=request_id,
            )

        return response


def setup_middleware(app) -> None:
    """Configure all middleware for the FastAPI application.

    Starlette runs the last added middleware first, so request ids are
    assigned before anything else sees the request.
    """
    from .audit import AuditMiddleware

    app.add_middleware(AuditMiddleware)
    app.add_middleware(RateLimitMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(RequestIdMiddleware)

    logger.info("API middleware configured")
