from __future__ import annotations

from collections.abc import Callable
from contextvars import ContextVar

from starlette.background import BackgroundTask
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request


_pending_drains: ContextVar[list[str | None] | None] = ContextVar("pending_drains", default=None)


def defer_drain(organization_id: str | None) -> bool:
    """Queue a drain for after the current response; False when no request is in flight."""
    pending = _pending_drains.get()
    if pending is None:
        return False
    pending.append(organization_id)
    return True


class DeferredDrainMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, drain: Callable[[str | None], None]):  # type: ignore[no-untyped-def]
        super().__init__(app)
        self.drain = drain

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        pending: list[str | None] = []
        token = _pending_drains.set(pending)
        try:
            response = await call_next(request)
        finally:
            _pending_drains.reset(token)
        if pending:
            # one drain covers every request queued by this call
            response.background = BackgroundTask(self.drain, pending[0])
        return response
