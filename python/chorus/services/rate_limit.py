"""Rate limiting service using Redis.

Anonymous callers are limited per client IP with a sliding one-minute window.

Redis keys:
- chorus:rate:ip:{client_ip} - sorted set of request timestamps

Fail modes:
- Redis unavailable or erroring: fail open (request allowed, warning logged)
"""

import time
from uuid import uuid4

from chorus.errors import ApiError, ApiErrorCode
from chorus.logging import get_logger
from chorus.services.redact import safe_kv

logger = get_logger(__name__)

DEFAULT_IP_RPM_LIMIT = 10
RPM_WINDOW_SECONDS = 60


class RateLimiter:
    """Sliding-window request limiter backed by a sync Redis client."""

    def __init__(self, redis_client=None, ip_rpm_limit: int = DEFAULT_IP_RPM_LIMIT):
        """Initialize rate limiter.

        Args:
            redis_client: Redis client instance (sync). If None, limits are not enforced.
            ip_rpm_limit: Maximum requests per minute per client IP.
        """
        self._redis = redis_client
        self._ip_rpm_limit = ip_rpm_limit

    @property
    def redis_available(self) -> bool:
        if self._redis is None:
            return False
        try:
            self._redis.ping()
            return True
        except Exception:
            return False

    def check_ip_limit(self, client_ip: str) -> None:
        """Record a request from client_ip and enforce the per-minute limit.

        Raises:
            ApiError(E_RATE_LIMITED): If the limit is exceeded.
        """
        if not self.redis_available:
            logger.warning("rate_limit_redis_unavailable", check="ip_rpm")
            return

        try:
            key = f"chorus:rate:ip:{client_ip}"
            now_ts = time.time()
            window_start_ts = now_ts - RPM_WINDOW_SECONDS

            pipe = self._redis.pipeline()
            pipe.zremrangebyscore(key, 0, window_start_ts)
            pipe.zadd(key, {f"{now_ts}:{uuid4().hex}": now_ts})
            pipe.zcount(key, window_start_ts, now_ts)
            pipe.expire(key, RPM_WINDOW_SECONDS * 2)
            results = pipe.execute()
            count = results[2]

            if count > self._ip_rpm_limit:
                logger.warning("rate_limit.blocked", **safe_kv(limit_type="ip_rpm"))
                raise ApiError(
                    ApiErrorCode.E_RATE_LIMITED,
                    f"Rate limit exceeded: {self._ip_rpm_limit} requests per minute",
                )

        except ApiError:
            raise
        except Exception as e:
            logger.warning("rate_limit_check_failed", check="ip_rpm", error=str(e))


# Global rate limiter instance (initialized by app startup)
_rate_limiter: RateLimiter | None = None


def get_rate_limiter() -> RateLimiter:
    """Get the global rate limiter instance.

    Returns a no-op limiter if not initialized (for testing without Redis).
    """
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter(redis_client=None)
    return _rate_limiter


def set_rate_limiter(limiter: RateLimiter | None) -> None:
    """Set the global rate limiter instance (None resets to the no-op limiter)."""
    global _rate_limiter
    _rate_limiter = limiter
