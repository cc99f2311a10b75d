"""Rate limiting for public referral traffic using throttled-py"""
import os
from datetime import timedelta
from throttled import Throttled, RateLimiterType, store, rate_limiter

from core.config import logger, CLICK_RATE_LIMIT_PER_MINUTE

# Redis for production, MemoryStore for development and tests
_storage_type = "memory"
try:
    redis_url = os.getenv("REDIS_URL", "").strip()
    if redis_url:
        storage = store.RedisStore(server=redis_url)
        _storage_type = "redis"
        logger.info("[rate_limit] Using Redis for rate limiting")
    else:
        storage = store.MemoryStore()
        logger.warning("[rate_limit] REDIS_URL not set - using in-memory storage (not suitable for production with multiple workers)")
except Exception as ex:
    storage = store.MemoryStore()
    logger.warning(f"[rate_limit] Redis connection failed, using in-memory storage: {ex}")

# Referral link clicks: CLICK_RATE_LIMIT_PER_MINUTE per IP per minute
click_throttle = Throttled(
    using=RateLimiterType.FIXED_WINDOW.value,
    quota=rate_limiter.per_duration(timedelta(minutes=1), limit=max(1, CLICK_RATE_LIMIT_PER_MINUTE)),
    store=storage,
)

# Scheduler and operator endpoints: 30 requests per IP per minute
admin_throttle = Throttled(
    using=RateLimiterType.FIXED_WINDOW.value,
    quota=rate_limiter.per_duration(timedelta(minutes=1), limit=30),
    store=storage,
)


def allow_click(ip: str) -> bool:
    """
    Whether a click from `ip` should be recorded.

    A limited click is still redirected by the caller, it just isn't counted.
    Fails open when the limiter store is unavailable.
    """
    try:
        result = click_throttle.limit(f"click:{ip or 'unknown'}", cost=1)
        return not result.limited
    except Exception as ex:
        logger.warning(f"[rate_limit] Click rate limit check failed: {ex}")
        return True


def allow_admin(ip: str) -> bool:
    try:
        result = admin_throttle.limit(f"admin:{ip or 'unknown'}", cost=1)
        return not result.limited
    except Exception as ex:
        logger.warning(f"[rate_limit] Admin rate limit check failed: {ex}")
        return True
