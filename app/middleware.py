"""Request logging middleware."""
import logging
import time
import uuid
from typing import Awaitable, Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger("app.requests")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs start, end and duration of every request under a request id."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id
        start_time = time.perf_counter()

        logger.info("RID:%s START %s %s", request_id, request.method, request.url.path)
        try:
            response = await call_next(request)
        except Exception:
            duration = (time.perf_counter() - start_time) * 1000
            logger.error(
                "RID:%s FAILED %s %s Duration:%.2fms",
                request_id, request.method, request.url.path, duration,
                exc_info=True
            )
            raise

        duration = (time.perf_counter() - start_time) * 1000
        logger.info(
            "RID:%s END %s %s Status:%s Duration:%.2fms",
            request_id, request.method, request.url.path, response.status_code, duration
        )
        response.headers["X-Request-Id"] = request_id
        return response
