"""
RequestContext Middleware - Adds request tracking to all requests.

Every request gets a request_id that is:
- stored in request.state.request_id
- bound into the structlog context, so every log line emitted while the
  request is handled carries it
- returned to the caller in the X-Request-ID header

A caller-supplied X-Request-ID is reused so traces can span services.
"""

import uuid

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
MAX_REQUEST_ID_LENGTH = 64


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Attach a request id to request.state, logs and the response."""

    async def dispatch(self, request: Request, call_next):
        request_id = self._incoming_request_id(request) or str(uuid.uuid4())
        request.state.request_id = request_id

        with structlog.contextvars.bound_contextvars(request_id=request_id):
            logger.debug("Request started", method=request.method, path=request.url.path)
            response = await call_next(request)

        response.headers[REQUEST_ID_HEADER] = request_id
        return response

    @staticmethod
    def _incoming_request_id(request: Request) -> str | None:
        value = (request.headers.get(REQUEST_ID_HEADER) or "").strip()
        if not value or len(value) > MAX_REQUEST_ID_LENGTH:
            return None
        return value
