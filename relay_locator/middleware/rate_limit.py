"""Per-client limit on probe-triggering requests, using an in-memory sliding window."""

import asyncio
import logging
import time
from typing import Dict, NamedTuple

from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from relay_locator.settings import settings

logger = logging.getLogger(__name__)

# Each of these opens outbound sockets; /api/closest may open over a hundred.
PROBING_PATH_PREFIXES = ("/api/closest", "/api/ping/")


class ProbeBudget(NamedTuple):
    """Probe requests seen from one client in the current window."""

    count: int
    window_start: float


class ProbeRateLimitMiddleware(BaseHTTPMiddleware):
    """
    Limits how often a single client can trigger outbound probing.

    Catalog reads are not limited. State lives in process memory, so the limit
    is per worker.
    """

    def __init__(self, app):
        super().__init__(app)
        self._budgets: Dict[str, ProbeBudget] = {}
        self._lock = asyncio.Lock()
        self._last_cleanup = time.time()

    @staticmethod
    def is_probing_path(path: str) -> bool:
        return path.startswith(PROBING_PATH_PREFIXES)

    def _get_client_ip(self, request: Request) -> str:
        """
        Extract client IP with X-Forwarded-For support for reverse proxies.

        X-Forwarded-For is only honoured when the peer is a trusted proxy.
        """
        client_host = request.client.host if request.client else "unknown"

        if client_host in settings.trusted_hosts:
            forwarded = request.headers.get("X-Forwarded-For")
            if forwarded:
                return forwarded.split(",")[0].strip()

        return client_host

    async def _consume(self, client_ip: str, now: float) -> ProbeBudget:
        async with self._lock:
            if now - self._last_cleanup > 300:
                self._cleanup_expired(now)
                self._last_cleanup = now

            budget = self._budgets.get(client_ip)
            if budget is None or now - budget.window_start > settings.rate_limit_period:
                budget = ProbeBudget(1, now)
            else:
                budget = ProbeBudget(budget.count + 1, budget.window_start)
            self._budgets[client_ip] = budget
            return budget

    async def dispatch(self, request: Request, call_next):
        if not settings.rate_limit_enabled or not self.is_probing_path(request.url.path):
            return await call_next(request)

        now = time.time()
        client_ip = self._get_client_ip(request)
        budget = await self._consume(client_ip, now)
        reset_at = str(int(budget.window_start + settings.rate_limit_period))

        if budget.count > settings.rate_limit_requests:
            retry_after = max(1, int(settings.rate_limit_period - (now - budget.window_start)))
            logger.warning(
                f"Probe rate limit exceeded for {client_ip} on {request.url.path} "
                f"({budget.count}/{settings.rate_limit_requests})"
            )
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={
                    "error": "Too Many Requests",
                    "message": f"Probe limit reached. Try again in {retry_after} seconds.",
                },
                headers={
                    "Retry-After": str(retry_after),
                    "X-RateLimit-Limit": str(settings.rate_limit_requests),
                    "X-RateLimit-Remaining": "0",
                    "X-RateLimit-Reset": reset_at,
                },
            )

        response = await call_next(request)

        response.headers["X-RateLimit-Limit"] = str(settings.rate_limit_requests)
        response.headers["X-RateLimit-Remaining"] = str(
            max(0, settings.rate_limit_requests - budget.count)
        )
        response.headers["X-RateLimit-Reset"] = reset_at
        return response

    def _cleanup_expired(self, now: float) -> None:
        """Drop budgets older than two windows. Caller holds the lock."""
        cutoff = now - settings.rate_limit_period * 2
        expired = [ip for ip, budget in self._budgets.items() if budget.window_start < cutoff]
        for ip in expired:
            del self._budgets[ip]
        if expired:
            logger.debug(f"Cleaned up {len(expired)} expired probe budgets")
