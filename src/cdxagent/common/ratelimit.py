"""Per-client rate limiting for the agent routes."""

import math
import time
from collections.abc import Callable
from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from cdxagent.common.errors import ErrorCode, error_response
from cdxagent.common.http import client_address
from cdxagent.common.logging import get_logger

logger = get_logger(__name__)

IDLE_BUCKET_SECONDS = 300.0


@dataclass
class _Bucket:
    tokens: float
    updated_at: float


class RateLimiter:
    """Token bucket per client, refilled at ``requests_per_minute``.

    A client starts with ``burst_size`` tokens (one minute of requests by
    default) and spends one per request. Buckets idle for longer than
    ``IDLE_BUCKET_SECONDS`` are dropped.
    """

    def __init__(
        self,
        requests_per_minute: float = 60.0,
        burst_size: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._rate = requests_per_minute / 60.0
        self._capacity = burst_size or requests_per_minute
        self._clock = clock
        self._buckets: dict[str, _Bucket] = {}
        self._last_sweep = clock()

    @property
    def capacity(self) -> float:
        return self._capacity

    @property
    def tracked_clients(self) -> int:
        return len(self._buckets)

    def check(self, client_id: str) -> tuple[bool, float]:
        """
        Spend one token for ``client_id``.

        Returns:
            Tuple of (allowed, retry_after_seconds)
        """
        now = self._clock()
        self._sweep(now)

        bucket = self._buckets.get(client_id)
        if bucket is None:
            bucket = self._buckets[client_id] = _Bucket(self._capacity, now)
        else:
            elapsed = now - bucket.updated_at
            bucket.tokens = min(self._capacity, bucket.tokens + elapsed * self._rate)
            bucket.updated_at = now

        if bucket.tokens >= 1.0:
            bucket.tokens -= 1.0
            return True, 0.0
        return False, (1.0 - bucket.tokens) / self._rate

    def _sweep(self, now: float) -> None:
        if now - self._last_sweep < IDLE_BUCKET_SECONDS:
            return
        idle = [
            client_id
            for client_id, bucket in self._buckets.items()
            if now - bucket.updated_at > IDLE_BUCKET_SECONDS
        ]
        for client_id in idle:
            del self._buckets[client_id]
        self._last_sweep = now
        if idle:
            logger.debug("Dropped idle rate limit buckets", count=len(idle))


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Limit requests per remote address."""

    def __init__(
        self,
        app: ASGIApp,
        requests_per_minute: float = 60.0,
        burst_size: float | None = None,
        exclude_paths: list[str] | None = None,
    ) -> None:
        super().__init__(app)
        self._limiter = RateLimiter(
            requests_per_minute=requests_per_minute,
            burst_size=burst_size,
        )
        self._exclude_paths = set(exclude_paths or ["/metrics"])

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        if request.url.path in self._exclude_paths:
            return await call_next(request)

        client_id = f"ip:{client_address(request) or 'unknown'}"
        allowed, retry_after = self._limiter.check(client_id)

        if not allowed:
            retry_after_int = max(1, math.ceil(retry_after))
            logger.warning(
                "Rate limit exceeded",
                client_id=client_id,
                path=request.url.path,
                retry_after=retry_after_int,
            )
            response = error_response(
                ErrorCode.RATE_LIMITED,
                "Rate limit exceeded",
                429,
                details={"retry_after": retry_after_int},
            )
            response.headers["Retry-After"] = str(retry_after_int)
            return response

        return await call_next(request)
