"""Request identity middleware using ContextVar.

The current user comes from the X-User-ID header and the OAuth session
from X-Session-ID (falling back to the user id). Both are stored in
ContextVars so routers and the OAuth flow read them without threading
the request through every call.
"""

from contextvars import ContextVar
from typing import Optional

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

_current_user: ContextVar[Optional[str]] = ContextVar("current_user", default=None)
_current_session: ContextVar[Optional[str]] = ContextVar("current_session", default=None)


def get_current_user() -> Optional[str]:
    return _current_user.get()


def get_session_id() -> Optional[str]:
    """Session key the OAuth CSRF value is stored under."""
    return _current_session.get() or _current_user.get()


class UserMiddleware(BaseHTTPMiddleware):
    """Bind user and session ids for the lifetime of one request."""

    async def dispatch(self, request: Request, call_next) -> Response:
        user_id = request.headers.get("X-User-ID") or None
        session_id = request.headers.get("X-Session-ID") or request.cookies.get("session_id")

        user_token = _current_user.set(user_id)
        session_token = _current_session.set(session_id)
        structlog.contextvars.bind_contextvars(user_id=user_id)
        try:
            return await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("user_id")
            _current_session.reset(session_token)
            _current_user.reset(user_token)
