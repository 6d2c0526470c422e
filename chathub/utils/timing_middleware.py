import time
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from ..core.log_config import logger

class TimingMiddleware(BaseHTTPMiddleware):
    """Logs each HTTP request with its status and latency, and reports the latency in a header."""

    async def dispatch(self, request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000

        response.headers["X-Process-Time-Ms"] = f"{elapsed_ms:.1f}"
        logger.info(f"{request.method} {request.url.path} -> {response.status_code} in {elapsed_ms:.1f}ms")
        return response
