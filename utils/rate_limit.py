"""Rate limiting utilities using throttled-py"""
import os
from datetime import timedelta
from throttled import Throttled, RateLimiterType, store, rate_limiter

from core.config import logger, CHECKOUT_RATE_LIMIT_PER_MIN

# Initialize storage - Redis for production, MemoryStore for development
try:
    redis_url = os.getenv("REDIS_URL", "").strip()
    if redis_url:
        storage = store.RedisStore(server=redis_url)
        logger.info("[rate_limit] Using Redis for rate limiting")
    else:
        storage = store.MemoryStore()
        logger.warning("[rate_limit] REDIS_URL not set - using in-memory storage (not suitable for production with multiple workers)")
except Exception as ex:
    storage = store.MemoryStore()
    logger.warning(f"[rate_limit] Redis connection failed, using in-memory storage: {ex}")

# Checkout limiter: transactions initialized per client IP per minute
checkout_throttle = Throttled(
    using=RateLimiterType.FIXED_WINDOW.value,
    quota=rate_limiter.per_duration(timedelta(minutes=1), limit=CHECKOUT_RATE_LIMIT_PER_MIN),
    store=storage,
)


def check_checkout_rate_limit(ip: str) -> tuple[bool, str]:
    """
    Check if a checkout request is allowed for this client IP.

    Returns:
        Tuple of (allowed: bool, error_message: str)
    """
    try:
        result = checkout_throttle.limit(f"checkout:{ip}", cost=1)
        if result.limited:
            return False, "Too many checkout attempts. Please wait a minute and try again."
        return True, ""
    except Exception as ex:
        logger.warning(f"[rate_limit] Checkout rate limit check failed: {ex}")
        # Fail open - a limiter outage must not block payments
        return True, ""
