from __future__ import annotations

import asyncio
import copy
import inspect
import logging
import time
from bisect import insort
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from rowguard.core.config import Settings, get_settings
from rowguard.metrics import (
    observe_resolved_key_collision,
    observe_resolver,
    observe_resolver_cache_hit,
    observe_resolver_cache_miss,
)
from rowguard.otel import get_tracer
from rowguard.security.cache import CacheProvider, InMemoryCacheProvider
from rowguard.security.context import AuthorizationContext
from rowguard.security.errors import ResolverError, ResolverTimeoutError, SchemaError


logger = logging.getLogger("rowguard.resolvers")

ResolvedData = Mapping[str, Any]
ResolveFn = Callable[[AuthorizationContext], "Awaitable[ResolvedData] | ResolvedData"]
CacheKeyFn = Callable[[AuthorizationContext], "str | None"]

CACHE_KEY_PREFIX = "rls"
_RESERVED_KEYS = frozenset({"resolved_at", "cache_key"})


@dataclass(frozen=True, slots=True)
class ContextResolver:
    """A named unit that computes one slice of contextual authorization data.

    ``resolve`` receives the base context; its ``resolved`` map already holds the
    output of every resolver in earlier dependency levels. ``cache_key`` returning
    ``None`` disables caching for that call.
    """

    name: str
    resolve: ResolveFn
    depends_on: tuple[str, ...] = ()
    cache_key: CacheKeyFn | None = None
    cache_ttl: float | None = None
    priority: int = 0
    required: bool = True

    def __post_init__(self) -> None:
        object.__setattr__(self, "depends_on", tuple(self.depends_on))


def create_resolver(
    name: str,
    resolve: ResolveFn,
    *,
    depends_on: tuple[str, ...] | list[str] = (),
    cache_key: CacheKeyFn | None = None,
    cache_ttl: float | None = None,
    priority: int = 0,
    required: bool = True,
) -> ContextResolver:
    return ContextResolver(
        name=name,
        resolve=resolve,
        depends_on=tuple(depends_on),
        cache_key=cache_key,
        cache_ttl=cache_ttl,
        priority=priority,
        required=required,
    )


def resolver_cache_key(name: str, ctx: AuthorizationContext, *parts: object) -> str:
    """Build ``rls:<name>:<user>:<tenant>[:parts]``, the shape ``invalidate_cache`` expects."""

    tenant = ctx.tenant_id if ctx.tenant_id is not None else "-"
    return ":".join([CACHE_KEY_PREFIX, name, str(ctx.user_id), str(tenant), *(str(part) for part in parts)])


async def _call_resolver(resolver: ContextResolver, base: AuthorizationContext) -> Any:
    if inspect.iscoroutinefunction(resolver.resolve):
        return await resolver.resolve(base)
    # plain callables run on a worker thread so they stay under the timeout
    result = await asyncio.to_thread(resolver.resolve, base)
    if inspect.isawaitable(result):
        result = await result
    return result


def _consume_result(task: asyncio.Future[Any]) -> None:
    if not task.cancelled():
        task.exception()


class ResolverManager:
    """Runs registered resolvers in dependency order and merges their output.

    Resolvers are grouped into dependency levels; levels run one after another and
    the resolvers inside a level run concurrently unless ``parallel_resolution`` is
    off. Required resolver failures abort the resolution with ``ResolverError``;
    optional ones are logged and left out of the merged data.
    """

    def __init__(
        self,
        *,
        cache_provider: CacheProvider | None = None,
        default_cache_ttl: float | None = None,
        parallel_resolution: bool | None = None,
        resolver_timeout: float | None = None,
        strict_resolved_keys: bool | None = None,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._cache = cache_provider if cache_provider is not None else InMemoryCacheProvider(settings.cache_max_entries)
        self._default_cache_ttl = (
            default_cache_ttl if default_cache_ttl is not None else settings.resolver_cache_ttl_seconds
        )
        self._parallel = parallel_resolution if parallel_resolution is not None else settings.parallel_resolution
        self._timeout = resolver_timeout if resolver_timeout is not None else settings.resolver_timeout_seconds
        self._strict_keys = (
            strict_resolved_keys if strict_resolved_keys is not None else settings.strict_resolved_keys
        )
        self._resolvers: dict[str, ContextResolver] = {}
        self._sequence: dict[str, int] = {}
        self._counter = 0
        self._tracer = get_tracer("rowguard.resolvers")

    @property
    def cache_provider(self) -> CacheProvider:
        return self._cache

    def register(self, resolver: ContextResolver) -> None:
        if not resolver.name:
            raise SchemaError("Resolver name must be a non-empty string")
        if resolver.name in self._resolvers:
            raise SchemaError(f"Resolver '{resolver.name}' is already registered", {"resolver": resolver.name})
        if resolver.name in resolver.depends_on:
            raise SchemaError(f"Resolver '{resolver.name}' cannot depend on itself", {"resolver": resolver.name})
        if not callable(resolver.resolve):
            raise SchemaError(f"Resolver '{resolver.name}' has no callable resolve", {"resolver": resolver.name})

        self._resolvers[resolver.name] = resolver
        self._sequence[resolver.name] = self._counter
        self._counter += 1
        logger.debug("resolver.registered", extra={"resolver": resolver.name})

    def unregister(self, name: str) -> bool:
        removed = self._resolvers.pop(name, None)
        self._sequence.pop(name, None)
        if removed is not None:
            logger.debug("resolver.unregistered", extra={"resolver": name})
        return removed is not None

    def has_resolver(self, name: str) -> bool:
        return name in self._resolvers

    @property
    def resolver_names(self) -> list[str]:
        return list(self._resolvers)

    def resolution_order(self) -> list[ContextResolver]:
        """Topological order; ties between ready resolvers go to the higher priority."""

        self._check_cycles()

        pending: dict[str, int] = {}
        dependents: dict[str, list[str]] = {name: [] for name in self._resolvers}
        for name, resolver in self._resolvers.items():
            known = [dep for dep in dict.fromkeys(resolver.depends_on) if dep in self._resolvers]
            pending[name] = len(known)
            for dep in known:
                dependents[dep].append(name)

        ready: list[tuple[int, int, str]] = []
        for name, count in pending.items():
            if count == 0:
                insort(ready, self._ready_key(name))

        ordered: list[ContextResolver] = []
        while ready:
            _, _, name = ready.pop(0)
            ordered.append(self._resolvers[name])
            for dependent in dependents[name]:
                pending[dependent] -= 1
                if pending[dependent] == 0:
                    insort(ready, self._ready_key(dependent))
        return ordered

    def resolution_levels(self) -> list[list[ContextResolver]]:
        levels: list[list[ContextResolver]] = []
        depth: dict[str, int] = {}
        for resolver in self.resolution_order():
            deps = [dep for dep in resolver.depends_on if dep in self._resolvers]
            level = 1 + max(depth[dep] for dep in deps) if deps else 0
            depth[resolver.name] = level
            while len(levels) <= level:
                levels.append([])
            levels[level].append(resolver)
        return levels

    async def resolve(self, base: AuthorizationContext) -> AuthorizationContext:
        started = time.perf_counter()
        order = self.resolution_order()
        results: dict[str, dict[str, Any]] = {}

        with self._tracer.start_as_current_span("rowguard.resolve") as span:
            span.set_attribute("rowguard.user_id", str(base.user_id))
            span.set_attribute("rowguard.resolver_count", len(order))
            logger.debug(
                "resolver.resolution_started",
                extra={"resolvers": [resolver.name for resolver in order]},
            )

            if self._parallel:
                for index, level in enumerate(self.resolution_levels()):
                    level_base = self._partial_context(base, results, order)
                    outcomes = await asyncio.gather(
                        *(self._resolve_with_cache(resolver, level_base, level=index) for resolver in level),
                        return_exceptions=True,
                    )
                    failure = next((data for data in outcomes if isinstance(data, BaseException)), None)
                    if failure is not None:
                        raise failure
                    for resolver, data in zip(level, outcomes):
                        if data is not None:
                            results[resolver.name] = data
            else:
                for resolver in order:
                    data = await self._resolve_with_cache(resolver, self._partial_context(base, results, order))
                    if data is not None:
                        results[resolver.name] = data

        merged = self._merge(results, order, final=True)
        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        logger.info(
            "resolver.resolution_completed",
            extra={"count": len(results), "duration_ms": duration_ms},
        )
        return base.with_resolved(merged)

    async def resolve_one(self, name: str, base: AuthorizationContext) -> dict[str, Any] | None:
        resolver = self._resolvers.get(name)
        if resolver is None:
            logger.warning("resolver.not_found", extra={"resolver": name})
            return None
        return await self._resolve_with_cache(resolver, base)

    async def invalidate_cache(
        self,
        user_id: str,
        resolver_name: str | None = None,
        *,
        tenant_id: str | None = None,
    ) -> None:
        if resolver_name is not None:
            resolver = self._resolvers.get(resolver_name)
            if resolver is None or resolver.cache_key is None:
                return
            key = resolver.cache_key(AuthorizationContext(user_id=user_id, tenant_id=tenant_id))
            if key:
                await self._cache.delete(key)
                logger.debug("resolver.cache_invalidated", extra={"resolver": resolver_name, "cache_key": key})
            return

        delete_pattern = getattr(self._cache, "delete_pattern", None)
        if delete_pattern is None:
            logger.warning("resolver.cache_pattern_unsupported", extra={"key": str(user_id)})
            return
        await delete_pattern(f"{CACHE_KEY_PREFIX}:*:{user_id}:*")
        logger.debug("resolver.cache_invalidated", extra={"key": str(user_id)})

    async def clear_cache(self) -> None:
        clear = getattr(self._cache, "clear", None)
        if callable(clear):
            outcome = clear()
            if inspect.isawaitable(outcome):
                await outcome
        else:
            delete_pattern = getattr(self._cache, "delete_pattern", None)
            if delete_pattern is not None:
                await delete_pattern(f"{CACHE_KEY_PREFIX}:*")
        logger.info("resolver.cache_cleared")

    def _ready_key(self, name: str) -> tuple[int, int, str]:
        return (-self._resolvers[name].priority, self._sequence[name], name)

    def _check_cycles(self) -> None:
        visited: set[str] = set()
        visiting: list[str] = []

        def visit(name: str) -> None:
            if name in visited:
                return
            if name in visiting:
                cycle = visiting[visiting.index(name):] + [name]
                raise SchemaError(
                    f"Circular dependency detected in resolvers involving '{name}'",
                    {"resolver": name, "cycle": cycle},
                )
            resolver = self._resolvers.get(name)
            if resolver is None:
                return
            visiting.append(name)
            for dep in resolver.depends_on:
                if dep not in self._resolvers:
                    logger.debug("resolver.dependency_absent", extra={"resolver": name, "key": dep})
                visit(dep)
            visiting.pop()
            visited.add(name)

        for name in self._resolvers:
            visit(name)

    def _partial_context(
        self,
        base: AuthorizationContext,
        results: dict[str, dict[str, Any]],
        order: list[ContextResolver],
    ) -> AuthorizationContext:
        if not results:
            return base
        return base.with_resolved(self._merge(results, order, final=False))

    async def _resolve_with_cache(
        self,
        resolver: ContextResolver,
        base: AuthorizationContext,
        *,
        level: int = 0,
    ) -> dict[str, Any] | None:
        started = time.perf_counter()
        with self._tracer.start_as_current_span("rowguard.resolver") as span:
            span.set_attribute("rowguard.resolver", resolver.name)
            span.set_attribute("rowguard.level", level)
            try:
                cache_key = resolver.cache_key(base) if resolver.cache_key is not None else None
                if cache_key:
                    cached = await self._cache_get(cache_key)
                    if cached is not None:
                        observe_resolver_cache_hit(resolver.name)
                        span.set_attribute("rowguard.cache_hit", True)
                        logger.debug("resolver.cache_hit", extra={"resolver": resolver.name, "cache_key": cache_key})
                        return copy.deepcopy(dict(cached))
                    observe_resolver_cache_miss(resolver.name)

                data = await self._invoke(resolver, base)

                if cache_key:
                    ttl = resolver.cache_ttl if resolver.cache_ttl is not None else self._default_cache_ttl
                    await self._cache_set(cache_key, data, ttl)
            except Exception as exc:
                duration = time.perf_counter() - started
                observe_resolver(resolver.name, "failed", duration)
                span.record_exception(exc)
                logger.error(
                    "resolver.failed",
                    extra={
                        "resolver": resolver.name,
                        "error": str(exc),
                        "duration_ms": round(duration * 1000, 2),
                    },
                )
                if not resolver.required:
                    return None
                if isinstance(exc, ResolverError):
                    raise
                raise ResolverError(resolver.name, str(exc)) from exc

            duration = time.perf_counter() - started
            observe_resolver(resolver.name, "ok", duration)
            logger.debug(
                "resolver.resolved",
                extra={"resolver": resolver.name, "duration_ms": round(duration * 1000, 2)},
            )
            return data

    async def _invoke(self, resolver: ContextResolver, base: AuthorizationContext) -> dict[str, Any]:
        task = asyncio.ensure_future(_call_resolver(resolver, base))
        try:
            # shield: a timeout abandons the work instead of cancelling it
            result = await asyncio.wait_for(asyncio.shield(task), timeout=self._timeout)
        except asyncio.TimeoutError:
            task.add_done_callback(_consume_result)
            raise ResolverTimeoutError(resolver.name, f"timed out after {self._timeout}s") from None
        if not isinstance(result, Mapping):
            raise TypeError(f"resolver returned {type(result).__name__}, expected a mapping")
        return dict(result)

    async def _cache_get(self, key: str) -> Mapping[str, Any] | None:
        try:
            return await self._cache.get(key)
        except Exception as exc:
            logger.warning("resolver.cache_unavailable", extra={"cache_key": key, "error": str(exc)})
            return None

    async def _cache_set(self, key: str, value: Mapping[str, Any], ttl: float) -> None:
        try:
            await self._cache.set(key, copy.deepcopy(dict(value)), ttl)
        except Exception as exc:
            logger.warning("resolver.cache_unavailable", extra={"cache_key": key, "error": str(exc)})

    def _merge(
        self,
        results: dict[str, dict[str, Any]],
        order: list[ContextResolver],
        *,
        final: bool,
    ) -> dict[str, Any]:
        merged: dict[str, Any] = {"resolved_at": datetime.now(timezone.utc)}
        present = [resolver.name for resolver in order if resolver.name in results]
        for name in present:
            merged[name] = results[name]

        owners = {name: name for name in present}
        for name in present:
            for key, value in results[name].items():
                if key in _RESERVED_KEYS:
                    continue
                owner = owners.get(key)
                if owner == name:
                    # a payload key named after its own resolver takes that resolver's slot
                    merged[key] = value
                    continue
                if owner is not None:
                    if final:
                        self._report_collision(key, owner, name)
                    continue
                merged[key] = value
                owners[key] = name
        return merged

    def _report_collision(self, key: str, owner: str, resolver: str) -> None:
        observe_resolved_key_collision()
        logger.warning(
            "resolver.key_collision",
            extra={"key": key, "resolver": resolver, "resolvers": [owner, resolver]},
        )
        if self._strict_keys:
            raise ResolverError(resolver, f"key '{key}' is already provided by '{owner}'")
