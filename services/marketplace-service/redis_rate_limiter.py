"""Redis-backed rate limiter middleware."""
import hashlib
import logging
import time
from typing import Optional, Tuple
import redis
from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from auth import extract_bearer_token
from monitoring import rate_limit_exceeded_counter

logger = logging.getLogger(__name__)


class RedisRateLimiter(BaseHTTPMiddleware):
    """
    Sliding window rate limiting shared across service instances.

    Two tiers are checked for every request:
    - Per client IP (higher limit, several buyers may share a NAT)
    - Per bearer token (lower limit)

    Webhook deliveries come from a handful of gateway IPs, so they are
    exempt; their authenticity is established by signature instead.
    """

    exempt_paths = ("/health", "/payments/card/webhook")

    def __init__(
        self,
        app,
        redis_client: redis.Redis,
        requests_per_minute_ip: int = 600,
        requests_per_minute_user: int = 120,
        window_seconds: int = 60
    ):
        super().__init__(app)
        self.redis = redis_client
        self.requests_per_minute_ip = requests_per_minute_ip
        self.requests_per_minute_user = requests_per_minute_user
        self.window_seconds = window_seconds

    def _check_rate_limit(self, key: str, limit: int, window: int) -> Tuple[bool, int]:
        """
        Record a hit in a sorted set keyed by timestamp and count the window.

        Returns:
            Tuple of (is_allowed, current_count)
        """
        try:
            current_time = time.time()

            pipe = self.redis.pipeline()
            pipe.zremrangebyscore(key, 0, current_time - window)
            pipe.zcard(key)
            pipe.zadd(key, {f"{current_time:.6f}": current_time})
            pipe.expire(key, window + 1)
            results = pipe.execute()

            # Count before this request was added
            count = results[1]
            return count < limit, count + 1

        except redis.RedisError as e:
            logger.error("Redis rate limit error", extra={"key": key, "error": str(e)})
            return True, 0

    @staticmethod
    def _client_ip(request: Request) -> str:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
        return request.client.host if request.client else "unknown"

    @staticmethod
    def _token_key(request: Request) -> Optional[str]:
        token = extract_bearer_token(request.headers.get("authorization"))
        if not token:
            return None
        # Tokens are credentials; only a digest goes into Redis keys
        return hashlib.sha256(token.encode()).hexdigest()[:16]

    def _reject(self, limit_type: str, limit: int) -> JSONResponse:
        rate_limit_exceeded_counter.add(1, {"limit_type": limit_type})
        return JSONResponse(
            status_code=429,
            content={
                "error": f"Rate limit exceeded. Maximum {limit} requests per minute.",
                "code": "rate_limited"
            },
            headers={"Retry-After": str(self.window_seconds)}
        )

    async def dispatch(self, request: Request, call_next):
        if request.url.path in self.exempt_paths:
            return await call_next(request)

        client_ip = self._client_ip(request)
        ip_allowed, ip_count = self._check_rate_limit(
            f"rate:ip:{client_ip}",
            self.requests_per_minute_ip,
            self.window_seconds
        )
        if not ip_allowed:
            logger.warning(
                "Rate limit exceeded for IP",
                extra={"client_ip": client_ip, "count": ip_count, "limit": self.requests_per_minute_ip}
            )
            return self._reject("ip", self.requests_per_minute_ip)

        token_key = self._token_key(request)
        if token_key:
            user_allowed, user_count = self._check_rate_limit(
                f"rate:user:{token_key}",
                self.requests_per_minute_user,
                self.window_seconds
            )
            if not user_allowed:
                logger.warning(
                    "Rate limit exceeded for user",
                    extra={"token_key": token_key, "count": user_count, "limit": self.requests_per_minute_user}
                )
                return self._reject("user", self.requests_per_minute_user)

        return await call_next(request)
