from __future__ import annotations

import asyncio
import inspect
import json
import logging
import random
import sys
from collections import Counter, deque
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from threading import Lock
from typing import Any, Protocol, TextIO, runtime_checkable

from sqlalchemy.orm import Session, sessionmaker

from rowguard.context import get_context_or_none
from rowguard.core.config import get_settings
from rowguard.metrics import observe_audit_event, observe_audit_flush_failure
from rowguard.models.audit import AuditLogRecord
from rowguard.security.context import AuthorizationContext, Operation
from rowguard.security.errors import AuditError


logger = logging.getLogger("rowguard.audit")

ANONYMOUS_USER = "anonymous"


class AuditDecision(StrEnum):
    ALLOW = "allow"
    DENY = "deny"
    FILTER = "filter"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class AuditEvent:
    user_id: str
    operation: str
    table: str
    decision: AuditDecision
    timestamp: datetime = field(default_factory=_utcnow)
    tenant_id: str | None = None
    policy_name: str | None = None
    reason: str | None = None
    context: Mapping[str, Any] | None = None
    row_ids: tuple[Any, ...] = ()
    request_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    duration_ms: float | None = None
    query_hash: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "timestamp": self.timestamp.isoformat(),
            "user_id": self.user_id,
            "operation": str(self.operation),
            "table": self.table,
            "decision": str(self.decision),
        }
        optional = {
            "tenant_id": self.tenant_id,
            "policy_name": self.policy_name,
            "reason": self.reason,
            "context": dict(self.context) if self.context else None,
            "row_ids": list(self.row_ids) or None,
            "request_id": self.request_id,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "duration_ms": self.duration_ms,
            "query_hash": self.query_hash,
        }
        payload.update({key: value for key, value in optional.items() if value is not None})
        return payload


@runtime_checkable
class AuditAdapter(Protocol):
    """Destination for audit events.

    ``log_batch``, ``flush`` and ``close`` are optional and looked up by name.
    """

    async def log(self, event: AuditEvent) -> None:
        ...


@dataclass(frozen=True, slots=True)
class TableAuditConfig:
    enabled: bool = True
    log_allowed: bool | None = None
    log_denied: bool | None = None
    log_filters: bool | None = None
    include_context: tuple[str, ...] = ()
    exclude_context: tuple[str, ...] = ()
    filter: Callable[[AuditEvent], bool] | None = None


DEFAULT_TABLE_AUDIT = TableAuditConfig(log_allowed=False, log_denied=True, log_filters=False)


def _merge_table_config(defaults: TableAuditConfig, override: TableAuditConfig | None) -> TableAuditConfig:
    if override is None:
        return defaults

    def pick(name: str, fallback: Any) -> Any:
        value = getattr(override, name)
        if value is None:
            value = getattr(defaults, name)
        return fallback if value is None else value

    return TableAuditConfig(
        enabled=override.enabled,
        log_allowed=pick("log_allowed", False),
        log_denied=pick("log_denied", True),
        log_filters=pick("log_filters", False),
        include_context=tuple(override.include_context or defaults.include_context),
        exclude_context=tuple(override.exclude_context or defaults.exclude_context),
        filter=override.filter or defaults.filter,
    )


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class AuditLogger:
    """Best-effort, buffered delivery of policy decisions to an ``AuditAdapter``.

    Adapter failures are routed to ``on_error(error, events)`` and never reach
    the caller. The periodic flush task starts on the first logged event, once a
    running event loop is available.
    """

    def __init__(
        self,
        adapter: AuditAdapter,
        *,
        enabled: bool | None = None,
        defaults: TableAuditConfig | None = None,
        tables: Mapping[str, TableAuditConfig] | None = None,
        buffer_size: int | None = None,
        flush_interval: float | None = None,
        async_mode: bool | None = None,
        sample_rate: float | None = None,
        on_error: Callable[[AuditError, list[AuditEvent]], None] | None = None,
        rng: Callable[[], float] = random.random,
    ) -> None:
        settings = get_settings()
        self._adapter = adapter
        self._enabled = settings.audit_enabled if enabled is None else enabled
        self._defaults = defaults or DEFAULT_TABLE_AUDIT
        self._tables = dict(tables or {})
        self._buffer_size = settings.audit_buffer_size if buffer_size is None else buffer_size
        self._flush_interval = settings.audit_flush_interval_seconds if flush_interval is None else flush_interval
        self._async_mode = settings.audit_async if async_mode is None else async_mode
        self._sample_rate = settings.audit_sample_rate if sample_rate is None else sample_rate
        self._on_error = on_error
        self._rng = rng

        self._buffer: list[AuditEvent] = []
        self._lock = Lock()
        self._pending: set[asyncio.Task[None]] = set()
        self._flush_task: asyncio.Task[None] | None = None
        self._closing = False

    @property
    def adapter(self) -> AuditAdapter:
        return self._adapter

    @property
    def enabled(self) -> bool:
        return self._enabled

    def set_enabled(self, enabled: bool) -> None:
        self._enabled = enabled

    @property
    def buffer_size(self) -> int:
        """Number of events currently waiting in the buffer."""
        return len(self._buffer)

    def configure_table(self, table: str, config: TableAuditConfig) -> None:
        self._tables[table] = config

    async def log_decision(
        self,
        operation: Operation | str,
        table: str,
        decision: AuditDecision | str,
        policy_name: str | None = None,
        *,
        reason: str | None = None,
        row_ids: Iterable[Any] | None = None,
        context: Mapping[str, Any] | None = None,
        duration_ms: float | None = None,
        query_hash: str | None = None,
        ctx: AuthorizationContext | None = None,
    ) -> AuditEvent | None:
        if not self._enabled or self._closing:
            return None
        if not self._sampled():
            return None

        decision = AuditDecision(decision)
        table_config = _merge_table_config(self._defaults, self._tables.get(table))
        if not self._should_log(decision, table_config):
            return None

        ctx = ctx or get_context_or_none()
        event = self._build_event(
            operation, table, decision, policy_name, ctx, table_config,
            reason=reason, row_ids=row_ids, context=context, duration_ms=duration_ms, query_hash=query_hash,
        )

        if table_config.filter is not None and not table_config.filter(event):
            logger.debug("audit.event_filtered", extra={"table": table, "decision": str(decision)})
            return None

        observe_audit_event(decision)
        self._ensure_flush_task()
        await self._deliver(event)
        return event

    async def log_allow(
        self,
        operation: Operation | str,
        table: str,
        policy_name: str | None = None,
        **options: Any,
    ) -> AuditEvent | None:
        return await self.log_decision(operation, table, AuditDecision.ALLOW, policy_name, **options)

    async def log_deny(
        self,
        operation: Operation | str,
        table: str,
        policy_name: str | None = None,
        **options: Any,
    ) -> AuditEvent | None:
        return await self.log_decision(operation, table, AuditDecision.DENY, policy_name, **options)

    async def log_filter(
        self,
        table: str,
        policy_name: str | None = None,
        *,
        operation: Operation | str = Operation.READ,
        **options: Any,
    ) -> AuditEvent | None:
        return await self.log_decision(operation, table, AuditDecision.FILTER, policy_name, **options)

    async def flush(self) -> None:
        with self._lock:
            events, self._buffer = self._buffer, []
        if events:
            await self._send(events)

    async def close(self) -> None:
        self._closing = True
        if self._flush_task is not None:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            self._flush_task = None

        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

        await self.flush()
        for hook in ("flush", "close"):
            method = getattr(self._adapter, hook, None)
            if method is None:
                continue
            try:
                await _maybe_await(method())
            except Exception as exc:
                self._handle_error(exc, [])

    def _sampled(self) -> bool:
        if self._sample_rate <= 0:
            return False
        if self._sample_rate >= 1:
            return True
        return self._rng() < self._sample_rate

    @staticmethod
    def _should_log(decision: AuditDecision, config: TableAuditConfig) -> bool:
        if not config.enabled:
            return False
        if decision == AuditDecision.ALLOW:
            return bool(config.log_allowed)
        if decision == AuditDecision.DENY:
            return config.log_denied is not False
        return bool(config.log_filters)

    def _build_event(
        self,
        operation: Operation | str,
        table: str,
        decision: AuditDecision,
        policy_name: str | None,
        ctx: AuthorizationContext | None,
        config: TableAuditConfig,
        *,
        reason: str | None,
        row_ids: Iterable[Any] | None,
        context: Mapping[str, Any] | None,
        duration_ms: float | None,
        query_hash: str | None,
    ) -> AuditEvent:
        meta = ctx.request_meta if ctx is not None else None
        return AuditEvent(
            user_id=ctx.user_id if ctx is not None else ANONYMOUS_USER,
            operation=str(operation),
            table=table,
            decision=decision,
            tenant_id=ctx.tenant_id if ctx is not None else None,
            policy_name=policy_name or None,
            reason=reason or None,
            context=_event_context(ctx, config, context),
            row_ids=tuple(row_ids or ()),
            request_id=meta.request_id if meta is not None else None,
            ip_address=meta.ip_address if meta is not None else None,
            user_agent=meta.user_agent if meta is not None else None,
            duration_ms=duration_ms,
            query_hash=query_hash,
        )

    async def _deliver(self, event: AuditEvent) -> None:
        if self._async_mode and self._buffer_size > 0:
            with self._lock:
                self._buffer.append(event)
                full = len(self._buffer) >= self._buffer_size
            if full:
                await self.flush()
        elif self._async_mode:
            task = asyncio.get_running_loop().create_task(self._send([event]))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
        else:
            await self._send([event])

    async def _send(self, events: list[AuditEvent]) -> None:
        try:
            log_batch = getattr(self._adapter, "log_batch", None)
            if log_batch is not None:
                await _maybe_await(log_batch(events))
            else:
                for event in events:
                    await _maybe_await(self._adapter.log(event))
        except Exception as exc:
            self._handle_error(exc, events)

    def _handle_error(self, exc: Exception, events: list[AuditEvent]) -> None:
        observe_audit_flush_failure()
        logger.warning("audit.flush_failed", extra={"count": len(events), "error": str(exc)})
        if self._on_error is None:
            return
        error = AuditError(f"Audit adapter failed: {exc}")
        error.__cause__ = exc
        try:
            self._on_error(error, list(events))
        except Exception:
            logger.exception("audit.on_error_failed")

    def _ensure_flush_task(self) -> None:
        if self._flush_task is not None or self._flush_interval <= 0 or self._buffer_size <= 0:
            return
        self._flush_task = asyncio.get_running_loop().create_task(self._flush_periodically())

    async def _flush_periodically(self) -> None:
        while not self._closing:
            await asyncio.sleep(self._flush_interval)
            await self.flush()


def _event_context(
    ctx: AuthorizationContext | None,
    config: TableAuditConfig,
    extra: Mapping[str, Any] | None,
) -> dict[str, Any] | None:
    context: dict[str, Any] = {}
    if ctx is not None:
        if ctx.roles:
            context["roles"] = sorted(ctx.roles)
        if ctx.organization_ids:
            context["organization_ids"] = list(ctx.organization_ids)
        context.update(ctx.meta)
    if extra:
        context.update(extra)

    if config.include_context:
        context = {key: context[key] for key in config.include_context if key in context}
    for key in config.exclude_context:
        context.pop(key, None)
    return context or None


class ConsoleAuditAdapter:
    _SYMBOLS = {AuditDecision.ALLOW: "+", AuditDecision.DENY: "x", AuditDecision.FILTER: "~"}
    _COLORS = {AuditDecision.ALLOW: "\x1b[32m", AuditDecision.DENY: "\x1b[31m", AuditDecision.FILTER: "\x1b[33m"}

    def __init__(
        self,
        format: str = "text",
        *,
        colors: bool = True,
        include_timestamp: bool = True,
        stream: TextIO | None = None,
    ) -> None:
        if format not in {"text", "json"}:
            raise ValueError(f"Unsupported audit console format: {format}")
        self._format = format
        self._colors = colors
        self._include_timestamp = include_timestamp
        self._stream = stream

    async def log(self, event: AuditEvent) -> None:
        stream = self._stream or sys.stdout
        stream.write(self.render(event) + "\n")

    async def log_batch(self, events: Sequence[AuditEvent]) -> None:
        for event in events:
            await self.log(event)

    def render(self, event: AuditEvent) -> str:
        if self._format == "json":
            return json.dumps(event.to_dict(), default=str)

        prefix = self._SYMBOLS.get(event.decision, "?")
        if self._colors:
            prefix = f"{self._COLORS.get(event.decision, '')}{prefix}\x1b[0m"
        line = f"{prefix} RLS {str(event.decision).upper()}: {event.operation} on {event.table}"
        if self._include_timestamp:
            line = f"[{event.timestamp.isoformat()}] {line}"
        if event.policy_name:
            line += f" (policy: {event.policy_name})"
        if event.reason:
            line += f" - {event.reason}"
        return line + f" [user: {event.user_id}]"


@dataclass(frozen=True, slots=True)
class AuditQuery:
    user_id: str | None = None
    tenant_id: str | None = None
    table: str | None = None
    operation: str | None = None
    decision: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    request_id: str | None = None
    limit: int | None = None
    offset: int = 0

    def matches(self, event: AuditEvent) -> bool:
        checks = (
            (self.user_id, event.user_id),
            (self.tenant_id, event.tenant_id),
            (self.table, event.table),
            (self.operation, event.operation),
            (self.decision, event.decision),
            (self.request_id, event.request_id),
        )
        if any(expected is not None and expected != actual for expected, actual in checks):
            return False
        if self.start_time is not None and event.timestamp < self.start_time:
            return False
        return self.end_time is None or event.timestamp < self.end_time


@dataclass(slots=True)
class AuditStats:
    total_events: int
    by_decision: dict[str, int]
    by_operation: dict[str, int]
    by_table: dict[str, int]
    top_denied_users: list[tuple[str, int]]
    start: datetime | None
    end: datetime | None


class InMemoryAuditAdapter:
    """Keeps the most recent ``max_size`` events for assertions and local inspection."""

    def __init__(self, max_size: int = 10_000) -> None:
        self._events: deque[AuditEvent] = deque(maxlen=max_size)
        self._lock = Lock()

    async def log(self, event: AuditEvent) -> None:
        with self._lock:
            self._events.append(event)

    async def log_batch(self, events: Sequence[AuditEvent]) -> None:
        with self._lock:
            self._events.extend(events)

    @property
    def events(self) -> list[AuditEvent]:
        with self._lock:
            return list(self._events)

    @property
    def size(self) -> int:
        return len(self._events)

    def clear(self) -> None:
        with self._lock:
            self._events.clear()

    def query(self, params: AuditQuery | None = None, **filters: Any) -> list[AuditEvent]:
        params = params or AuditQuery(**filters)
        results = [event for event in self.events if params.matches(event)][params.offset :]
        if params.limit is not None:
            results = results[: params.limit]
        return results

    def stats(self, start_time: datetime | None = None, end_time: datetime | None = None) -> AuditStats:
        events = self.query(AuditQuery(start_time=start_time, end_time=end_time))
        by_decision = {decision.value: 0 for decision in AuditDecision}
        by_operation = {operation.value: 0 for operation in Operation}
        by_table: dict[str, int] = {}
        denied: Counter[str] = Counter()
        for event in events:
            by_decision[str(event.decision)] += 1
            by_operation[event.operation] = by_operation.get(event.operation, 0) + 1
            by_table[event.table] = by_table.get(event.table, 0) + 1
            if event.decision == AuditDecision.DENY:
                denied[event.user_id] += 1

        return AuditStats(
            total_events=len(events),
            by_decision=by_decision,
            by_operation=by_operation,
            by_table=by_table,
            top_denied_users=denied.most_common(10),
            start=events[0].timestamp if events else None,
            end=events[-1].timestamp if events else None,
        )


class SqlAlchemyAuditAdapter:
    """Persists events as ``AuditLogRecord`` rows, one transaction per batch."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    async def log(self, event: AuditEvent) -> None:
        await self.log_batch([event])

    async def log_batch(self, events: Sequence[AuditEvent]) -> None:
        await asyncio.to_thread(self._write, list(events))

    def _write(self, events: list[AuditEvent]) -> None:
        with self._session_factory() as session:
            session.add_all(
                AuditLogRecord(
                    occurred_at=event.timestamp,
                    user_id=event.user_id,
                    tenant_id=event.tenant_id,
                    operation=str(event.operation),
                    table_name=event.table,
                    decision=str(event.decision),
                    policy_name=event.policy_name,
                    reason=event.reason,
                    request_id=event.request_id,
                    ip_address=event.ip_address,
                    user_agent=event.user_agent,
                    query_hash=event.query_hash,
                    duration_ms=event.duration_ms,
                    event_context=dict(event.context or {}),
                    row_ids=[str(row_id) for row_id in event.row_ids],
                )
                for event in events
            )
            session.commit()
