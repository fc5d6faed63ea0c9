"""
Correlation ID Middleware

Tags each request with a correlation ID carried into logs and audit events.
"""

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from ...utils.logger import set_correlation_id
from ...utils.idgen import generate_correlation_id


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """
    Reuses an incoming X-Correlation-Id header or generates one,
    and echoes it on the response
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        correlation_id = (
            request.headers.get("X-Correlation-Id") or generate_correlation_id()
        )
        set_correlation_id(correlation_id)

        response = await call_next(request)
        response.headers["X-Correlation-Id"] = correlation_id
        return response
