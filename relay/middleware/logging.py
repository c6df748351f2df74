"""
Logging middleware for request/response logging.

Logs all HTTP requests with timing and context, and feeds the HTTP request
metrics.
"""
import time
import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from relay.routes.metrics import track_request

logger = structlog.get_logger()


def _route_template(request: Request) -> str:
    # Label metrics by route pattern, not by the ids in the path
    route = request.scope.get("route")
    return getattr(route, "path", request.url.path)


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware to log all HTTP requests with timing and context.
    
    Adds: account_id, route, method, duration_ms, status to every log.
    """
    
    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        
        request_logger = logger.bind(
            route=request.url.path,
            method=request.method,
        )
        
        try:
            response = await call_next(request)
        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            request_logger.error(
                "request_failed",
                path=request.url.path,
                status_code=500,
                duration_ms=round(duration_ms, 2),
                error=str(e)
            )
            track_request(request.method, _route_template(request), 500, duration_ms / 1000)
            raise
        
        duration_ms = (time.time() - start_time) * 1000
        
        # Set by the auth dependency on management routes
        account_id = getattr(request.state, "account_id", None)
        
        request_logger.info(
            "request_completed",
            path=request.url.path,
            account_id=account_id,
            status_code=response.status_code,
            duration_ms=round(duration_ms, 2)
        )
        track_request(request.method, _route_template(request), response.status_code, duration_ms / 1000)
        
        return response
