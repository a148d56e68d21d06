from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from contextvars import ContextVar, Token
from typing import TYPE_CHECKING, Any, TypeVar

if TYPE_CHECKING:
    from rowguard.security.context import AuthorizationContext


T = TypeVar("T")

authorization_context_var: ContextVar[AuthorizationContext | None] = ContextVar("authorization_context", default=None)


def set_context(value: AuthorizationContext | None) -> Token[AuthorizationContext | None]:
    return authorization_context_var.set(value)


def reset_context(token: Token[AuthorizationContext | None]) -> None:
    authorization_context_var.reset(token)


def get_context_or_none() -> AuthorizationContext | None:
    return authorization_context_var.get()


def get_context() -> AuthorizationContext:
    from rowguard.security.errors import ContextMissingError

    ctx = authorization_context_var.get()
    if ctx is None:
        raise ContextMissingError()
    return ctx


def has_context() -> bool:
    return authorization_context_var.get() is not None


@contextmanager
def authorization_scope(ctx: AuthorizationContext) -> Iterator[AuthorizationContext]:
    """Bind ``ctx`` for the dynamic extent of the block and restore the previous binding on exit."""

    token = set_context(ctx)
    try:
        yield ctx
    finally:
        reset_context(token)


def run(ctx: AuthorizationContext, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    with authorization_scope(ctx):
        return fn(*args, **kwargs)


async def run_async(ctx: AuthorizationContext, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
    # Tasks spawned inside fn copy the current context, so they inherit the binding.
    with authorization_scope(ctx):
        return await fn(*args, **kwargs)


LOG_CONTEXT_KEYS = ("request_id", "user_id", "tenant_id")


def get_log_context() -> dict[str, str | None]:
    ctx = authorization_context_var.get()
    if ctx is None:
        return dict.fromkeys(LOG_CONTEXT_KEYS)
    tenant_id = None if ctx.tenant_id is None else str(ctx.tenant_id)
    return {"request_id": ctx.request_id, "user_id": str(ctx.user_id), "tenant_id": tenant_id}
