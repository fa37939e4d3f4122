"""
Simple in-memory rate limiter for API endpoints.

Sliding window per client. Starting a pipeline run costs several generation
calls, so runs and node expansions get their own limiters sized from settings.
"""

import time
from collections import defaultdict, deque
from typing import Deque, Dict

import structlog
from fastapi import HTTPException, Request, status

from libs.common.settings import get_settings

logger = structlog.get_logger(__name__)


class RateLimiter:
    """Sliding window rate limiter keyed by client."""

    def __init__(self, name: str, max_requests: int = 10, window_seconds: int = 60, enabled: bool = True):
        """
        Initialize rate limiter.

        Args:
            name: Label used in logs and error bodies
            max_requests: Maximum requests allowed in window
            window_seconds: Time window in seconds
            enabled: Whether rate limiting is enabled
        """
        self.name = name
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.enabled = enabled
        self._history: Dict[str, Deque[float]] = defaultdict(deque)

    @staticmethod
    def client_id(request: Request) -> str:
        forwarded_for = request.headers.get("x-forwarded-for")
        if forwarded_for:
            # First IP in the X-Forwarded-For chain is the caller
            return f"ip:{forwarded_for.split(',')[0].strip()}"
        return f"ip:{request.client.host if request.client else 'unknown'}"

    def reset(self) -> None:
        self._history.clear()

    async def check_rate_limit(self, request: Request) -> None:
        """
        Record the request, or reject it when the client is over its budget.

        Raises:
            HTTPException: 429 if rate limit exceeded
        """
        if not self.enabled:
            return

        client_id = self.client_id(request)
        now = time.time()
        window = self._history[client_id]
        while window and window[0] <= now - self.window_seconds:
            window.popleft()

        if len(window) >= self.max_requests:
            retry_after = int(self.window_seconds - (now - window[0])) + 1
            logger.warning(
                "Rate limit exceeded",
                limiter=self.name,
                client_id=client_id,
                current_count=len(window),
                max_requests=self.max_requests,
                window_seconds=self.window_seconds,
            )
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail={
                    "error_code": "RATE_LIMIT_EXCEEDED",
                    "message": f"Too many {self.name} requests. Maximum {self.max_requests} per {self.window_seconds} seconds.",
                    "retry_after_seconds": retry_after,
                },
                headers={"Retry-After": str(retry_after)},
            )

        window.append(now)


_settings = get_settings()

# Global rate limiter instances
pipeline_run_limiter = RateLimiter(
    "pipeline run",
    max_requests=_settings.run_rate_limit,
    window_seconds=_settings.run_rate_window_seconds,
)
node_expansion_limiter = RateLimiter("node expansion", max_requests=_settings.run_rate_limit * 3, window_seconds=_settings.run_rate_window_seconds)
