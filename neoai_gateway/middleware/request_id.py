import logging
from time import perf_counter

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from neoai_gateway.core.errors import user_id_from_request
from neoai_gateway.core.ids import generate_id

logger = logging.getLogger("neoai.http")


class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("x-request-id") or generate_id("req")
        request.state.request_id = request_id
        started = perf_counter()
        logger.info(
            "request_started",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "user_agent": request.headers.get("user-agent", "")[:100],
            },
        )

        response = await call_next(request)

        latency_ms = round((perf_counter() - started) * 1000, 2)
        level = logging.INFO
        if response.status_code >= 500:
            level = logging.ERROR
        elif response.status_code >= 400:
            level = logging.WARNING
        logger.log(
            level,
            "request_completed",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "latency_ms": latency_ms,
                "user_id": user_id_from_request(request),
            },
        )
        response.headers["x-request-id"] = request_id
        return response
