"""Rate limiting middleware — Redis-based sliding window.

Learn: Uses a per-minute window counter stored in Redis.
Each IP gets a counter key like "tripgate:rl:{ip}:{bucket}:{minute}".
Ceremony and recovery endpoints (register, login, passkeys, recovery)
get a stricter limit to slow down email guessing, code guessing and
challenge flooding.

Gracefully skips rate limiting if Redis is unavailable (e.g., in tests).
"""

import time

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from tripgate.redis_pool import get_redis

logger = structlog.get_logger()

# Every endpoint that starts a ceremony or guesses a code shares the strict bucket.
CEREMONY_PREFIXES = (
    "/api/v1/auth/login",
    "/api/v1/auth/register",
    "/api/v1/auth/passkeys",
    "/api/v1/auth/recovery",
)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Redis-based rate limiting per IP per minute."""

    def __init__(self, app, default_rpm: int = 100, auth_rpm: int = 10, clock=time.time):
        super().__init__(app)
        self.default_rpm = default_rpm
        self.auth_rpm = auth_rpm
        self._clock = clock

    async def dispatch(self, request: Request, call_next) -> Response:
        redis = get_redis()
        if redis is None:
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        is_auth = request.url.path.startswith(CEREMONY_PREFIXES)
        rpm = self.auth_rpm if is_auth else self.default_rpm

        # Window key: per IP, per bucket type, per minute
        window = int(self._clock() // 60)
        bucket = "auth" if is_auth else "api"
        key = f"tripgate:rl:{client_ip}:{bucket}:{window}"

        try:
            count = await redis.incr(key)
            if count == 1:
                await redis.expire(key, 120)  # 2-min TTL for safety
        except Exception as e:
            # Redis error — don't block the request
            logger.warning("rate_limit.redis_error", error=str(e))
            return await call_next(request)

        if count > rpm:
            logger.info("rate_limit.exceeded", ip=client_ip, bucket=bucket)
            return JSONResponse(
                status_code=429,
                content={"detail": "Rate limit exceeded. Try again later."},
                headers={"Retry-After": "60"},
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(rpm)
        response.headers["X-RateLimit-Remaining"] = str(max(0, rpm - count))
        return response
