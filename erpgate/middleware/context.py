"""
Request context middleware.

Gives every request a request_id (taken from X-Request-ID when it is safe,
generated otherwise) and binds it to structlog so log lines and captured
errors of one request can be found together.

Headers:
- X-Request-ID: Unique ID for this request (generated if not provided)
- X-User-ID: Acting user, recorded on audit rows and idempotency keys
"""

import re
from typing import Optional

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from erpgate.core.context import clear_context, generate_request_id, set_request_id, set_user_id

logger = structlog.get_logger(__name__)

# Request ID validation to prevent log injection attacks
MAX_ID_LENGTH = 64
SAFE_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_\-]+$")


def _validate_id(value: Optional[str]) -> Optional[str]:
    """Return the id if it is short and made of safe characters, else None."""
    if not value:
        return None
    if len(value) > MAX_ID_LENGTH:
        return None
    if not SAFE_ID_PATTERN.match(value):
        return None
    return value


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        structlog.contextvars.clear_contextvars()

        request_id = _validate_id(request.headers.get("X-Request-ID")) or generate_request_id()
        set_request_id(request_id)
        request.state.request_id = request_id

        user_id = _validate_id(request.headers.get("X-User-ID"))
        if user_id:
            set_user_id(user_id)

        structlog.contextvars.bind_contextvars(path=request.url.path, method=request.method)

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            # Clean up context to prevent leaking to next request
            clear_context()
