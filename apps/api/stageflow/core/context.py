from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from stageflow.context import reset_organization_id, set_organization_id


@dataclass
class RequestContext:
    request_id: str
    correlation_id: str
    organization_id: str | None
    actor_id: str


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = getattr(request.state, "correlation_id", None)
        organization_id = request.headers.get("x-organization-id") or None
        request.state.context = RequestContext(
            request_id=correlation_id or "",
            correlation_id=correlation_id or "",
            organization_id=organization_id,
            actor_id=request.headers.get("x-actor-id") or "anonymous",
        )
        token = set_organization_id(organization_id)
        try:
            response = await call_next(request)
        finally:
            reset_organization_id(token)
        response.headers["x-request-id"] = request.state.context.request_id
        return response
