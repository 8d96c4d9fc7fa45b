import time
import logging
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from typing import Callable
from proctorhub.core.cache import cache

perf_logger = logging.getLogger("performance")


class PerformanceMiddleware(BaseHTTPMiddleware):
    """Times every request, tags it with an id and records slow ones"""

    def __init__(self, app, slow_request_threshold: float = 1.0):
        super().__init__(app)
        self.slow_request_threshold = slow_request_threshold
        self.request_count = 0
        self.total_response_time = 0.0

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()

        self.request_count += 1
        request_id = f"req_{self.request_count}_{int(start_time)}"
        request.state.request_id = request_id

        try:
            response = await call_next(request)
        except Exception as e:
            process_time = time.time() - start_time
            perf_logger.error(
                f"Request error: {request.method} {request.url.path} - "
                f"Error: {str(e)} - Time: {process_time:.3f}s"
            )
            raise

        process_time = time.time() - start_time
        self.total_response_time += process_time

        response.headers["X-Process-Time"] = str(process_time)
        response.headers["X-Request-ID"] = request_id

        if process_time > self.slow_request_threshold:
            perf_logger.warning(
                f"Slow request: {request.method} {request.url.path} "
                f"took {process_time:.3f}s (threshold: {self.slow_request_threshold}s)"
            )
            await self._store_slow_request({
                'request_id': request_id,
                'method': request.method,
                'path': request.url.path,
                'status_code': response.status_code,
                'response_time': round(process_time, 3),
                'timestamp': start_time,
            }, request)

        perf_logger.debug(
            f"{request.method} {request.url.path} - "
            f"{response.status_code} - {process_time:.3f}s"
        )

        avg_response_time = self.total_response_time / self.request_count
        response.headers["X-Avg-Response-Time"] = str(round(avg_response_time, 3))
        return response

    async def _store_slow_request(self, metrics: dict, request: Request):
        """Keep the last 100 slow requests in the cache for /metrics"""
        slow_request_data = {
            **metrics,
            'query_params': dict(request.query_params),
            'client_ip': request.client.host if request.client else 'unknown'
        }

        slow_requests = await cache.aget("slow_requests") or []
        slow_requests.append(slow_request_data)
        await cache.aset("slow_requests", slow_requests[-100:], ttl=86400)
