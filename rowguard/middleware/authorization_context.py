from __future__ import annotations

import inspect
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import replace

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.types import ASGIApp

from rowguard.context import reset_context, set_context
from rowguard.security.context import AuthorizationContext, RequestMeta
from rowguard.security.engine import AuthorizationEngine
from rowguard.security.errors import ResolverError


logger = logging.getLogger("rowguard.request")

IdentifyCallback = Callable[[Request], "AuthorizationContext | None | Awaitable[AuthorizationContext | None]"]


def _request_meta(request: Request) -> RequestMeta:
    request_id = (
        request.headers.get("x-request-id")
        or request.headers.get("x-correlation-id")
        or getattr(request.state, "correlation_id", None)
        or str(uuid.uuid4())
    )
    return RequestMeta(
        request_id=request_id,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


class AuthorizationContextMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp, *, engine: AuthorizationEngine, identify: IdentifyCallback) -> None:
        super().__init__(app)
        self.engine = engine
        self.identify = identify

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        identity = self.identify(request)
        if inspect.isawaitable(identity):
            identity = await identity
        request.state.authorization = None
        if identity is None:
            return await call_next(request)

        if identity.request_meta is None:
            identity = replace(identity, request_meta=_request_meta(request))

        try:
            ctx = await self.engine.resolve_context(identity)
        except ResolverError as exc:
            logger.error(
                "request.context_resolution_failed",
                extra={"resolver": exc.resolver, "error": str(exc)},
            )
            return JSONResponse(status_code=503, content=exc.to_dict())

        request.state.authorization = ctx
        span = trace.get_current_span()
        if span is not None and span.is_recording():
            span.set_attribute("enduser.id", str(ctx.user_id))
        token = set_context(ctx)
        try:
            response = await call_next(request)
        finally:
            reset_context(token)

        if ctx.request_id:
            response.headers["x-request-id"] = ctx.request_id
        return response
