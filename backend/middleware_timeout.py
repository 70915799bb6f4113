"""
Request timeout middleware for the cache store.

Bounds how long a single request may hold a worker, so a stuck database
call surfaces as a 504 instead of an indefinitely hanging client.
"""
import asyncio
import logging
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from config import REQUEST_TIMEOUT_SECONDS

logger = logging.getLogger("constellations")


class TimeoutMiddleware(BaseHTTPMiddleware):
    """
    Returns 504 Gateway Timeout when a request exceeds `timeout_seconds`.
    """

    def __init__(self, app, timeout_seconds: float = REQUEST_TIMEOUT_SECONDS):
        super().__init__(app)
        self.timeout_seconds = timeout_seconds

    async def dispatch(self, request: Request, call_next):
        try:
            return await asyncio.wait_for(call_next(request), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(
                f"Request timeout: {request.method} {request.url.path} exceeded {self.timeout_seconds}s"
            )
            return JSONResponse(
                status_code=504,
                content={
                    "detail": "Gateway Timeout",
                    "timeout_seconds": self.timeout_seconds,
                },
            )
