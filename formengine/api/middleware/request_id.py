"""
Request ID middleware.

Generates or extracts a request id and attaches it to the log context for
the duration of the request.
"""

from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from formengine.core.logging import LogContext


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Stores `X-Request-ID` (client-provided or generated) in request.state
    and echoes it on the response.
    """

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid4())
        request.state.request_id = request_id

        with LogContext(request_id=request_id):
            response = await call_next(request)

        response.headers["X-Request-ID"] = request_id
        return response
