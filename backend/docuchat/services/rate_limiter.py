"""Fixed-window rate limiting per caller and route."""
import math
import time
from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Request
from limits import RateLimitItemPerSecond
from limits.storage import MemoryStorage, Storage
from limits.strategies import FixedWindowRateLimiter

from docuchat.exceptions import RateLimitExceededError
from docuchat.utils.logger import logger
from docuchat.utils.metrics import RATE_LIMITED


@dataclass(frozen=True)
class RateLimitStatus:
    allowed: bool
    limit: int
    remaining: int
    reset_after: int


def client_identity(request: Request) -> str:
    """Authenticated user id, else the client IP (honouring X-Forwarded-For)."""
    user_id = request.headers.get("X-User-Id")
    if user_id:
        return f"user:{user_id.strip()}"

    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return f"ip:{forwarded.split(',')[0].strip()}"
    return f"ip:{request.client.host if request.client else 'unknown'}"


class RouteRateLimiter:
    """
    Counts requests per (identity, route) in fixed windows.

    The first request opens a window of ``window_seconds``; requests past
    the limit inside that window are rejected immediately. Counters live in
    process memory, so each server process enforces its own budget.
    """

    def __init__(self, storage: Optional[Storage] = None):
        self.storage = storage or MemoryStorage()
        self.strategy = FixedWindowRateLimiter(self.storage)

    def check(self, identity: str, route: str, limit: int, window_seconds: int) -> RateLimitStatus:
        item = RateLimitItemPerSecond(limit, window_seconds)
        allowed = self.strategy.hit(item, route, identity)
        stats = self.strategy.get_window_stats(item, route, identity)
        reset_after = max(1, math.ceil(stats.reset_time - time.time()))
        return RateLimitStatus(
            allowed=allowed,
            limit=limit,
            remaining=max(0, stats.remaining),
            reset_after=reset_after,
        )

    def reset(self) -> None:
        self.storage.reset()


def rate_limit(route: str, limit_setting: str, window_setting: str = "rate_limit_window_seconds") -> Callable:
    """
    Build a FastAPI dependency enforcing the limit named by ``limit_setting``.

    The dependency runs before the route body, so a rejected request does
    no work.
    """

    async def dependency(request: Request) -> RateLimitStatus:
        settings = request.app.state.settings
        limiter: RouteRateLimiter = request.app.state.rate_limiter
        identity = client_identity(request)

        status = limiter.check(
            identity,
            route,
            getattr(settings, limit_setting),
            getattr(settings, window_setting),
        )
        if not status.allowed:
            RATE_LIMITED.labels(route=route).inc()
            logger.warning(
                f"Rate limit exceeded on {route}",
                extra={"route": route, "identity": identity},
            )
            raise RateLimitExceededError(
                "Too many requests. Please slow down.",
                limit=status.limit,
                retry_after=status.reset_after,
            )
        return status

    return dependency
