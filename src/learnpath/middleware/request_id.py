"""Request context middleware: X-Request-Id propagation and log context."""

import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

REQUEST_ID_HEADER = "X-Request-Id"


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Give every request an id and bind it (plus the acting user) to structlog."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)
        if user_id := request.headers.get("X-User-Id"):
            structlog.contextvars.bind_contextvars(user_id=user_id)
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
