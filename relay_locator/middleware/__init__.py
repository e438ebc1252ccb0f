"""Custom middlewares for the relay locator API."""

from relay_locator.middleware.rate_limit import ProbeRateLimitMiddleware

__all__ = ["ProbeRateLimitMiddleware"]
