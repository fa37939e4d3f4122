"""API middleware for rate limiting."""

from api.middleware.rate_limiter import RateLimiter, node_expansion_limiter, pipeline_run_limiter

__all__ = ["RateLimiter", "node_expansion_limiter", "pipeline_run_limiter"]
