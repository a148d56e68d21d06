from __future__ import annotations

import asyncio
import io
import json
from collections.abc import Generator

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from rowguard.context import authorization_scope
from rowguard.core.config import get_settings
from rowguard.core.database import Base
from rowguard.models.audit import AuditLogRecord
from rowguard.security.audit import (
    AuditDecision,
    AuditEvent,
    AuditLogger,
    AuditQuery,
    ConsoleAuditAdapter,
    InMemoryAuditAdapter,
    SqlAlchemyAuditAdapter,
    TableAuditConfig,
)
from rowguard.security.context import AuthorizationContext, RequestMeta
from rowguard.security.errors import AuditError


@pytest.fixture(autouse=True)
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


class FailingAdapter:
    async def log(self, event: AuditEvent) -> None:
        raise ConnectionError("audit store unreachable")


@pytest.mark.asyncio
async def test_buffer_flushes_when_full_and_on_close() -> None:
    adapter = InMemoryAuditAdapter()
    logger = AuditLogger(adapter, buffer_size=3, flush_interval=0, async_mode=True)

    await logger.log_deny("update", "posts", "p1")
    await logger.log_deny("update", "posts", "p2")
    assert adapter.size == 0
    assert logger.buffer_size == 2

    await logger.log_deny("update", "posts", "p3")
    assert [event.policy_name for event in adapter.events] == ["p1", "p2", "p3"]
    assert logger.buffer_size == 0

    await logger.log_deny("delete", "posts", "p4")
    await logger.close()
    assert [event.policy_name for event in adapter.events] == ["p1", "p2", "p3", "p4"]


@pytest.mark.asyncio
async def test_sample_rate_bounds() -> None:
    dropped = InMemoryAuditAdapter()
    none_logger = AuditLogger(dropped, sample_rate=0, buffer_size=0, async_mode=False)
    kept = InMemoryAuditAdapter()
    all_logger = AuditLogger(kept, sample_rate=1, buffer_size=0, async_mode=False, defaults=TableAuditConfig(
        log_allowed=True, log_denied=True, log_filters=True
    ))

    for logger in (none_logger, all_logger):
        await logger.log_allow("read", "posts")
        await logger.log_deny("read", "posts")
        await logger.log_filter("posts")

    assert dropped.size == 0
    assert [event.decision for event in kept.events] == [AuditDecision.ALLOW, AuditDecision.DENY, AuditDecision.FILTER]


@pytest.mark.asyncio
async def test_partial_sample_rate_uses_random_source() -> None:
    adapter = InMemoryAuditAdapter()
    draws = iter([0.1, 0.9, 0.49, 0.5])
    logger = AuditLogger(adapter, sample_rate=0.5, buffer_size=0, async_mode=False, rng=lambda: next(draws))

    for index in range(4):
        await logger.log_deny("read", "posts", f"p{index}")

    assert [event.policy_name for event in adapter.events] == ["p0", "p2"]


@pytest.mark.asyncio
async def test_table_configuration_controls_decisions_and_context() -> None:
    adapter = InMemoryAuditAdapter()
    logger = AuditLogger(
        adapter,
        buffer_size=0,
        async_mode=False,
        tables={
            "salaries": TableAuditConfig(log_allowed=True, include_context=("roles", "reason_code")),
            "noise": TableAuditConfig(enabled=False),
            "posts": TableAuditConfig(filter=lambda event: event.operation != "read"),
        },
    )
    ctx = AuthorizationContext(
        user_id="u1",
        tenant_id="t1",
        roles={"hr"},
        organization_ids=("o1",),
        request_meta=RequestMeta(request_id="req-1", ip_address="10.0.0.1", user_agent="pytest"),
    )

    with authorization_scope(ctx):
        await logger.log_allow("read", "salaries", "hr_read", context={"reason_code": "payroll", "extra": 1})
        await logger.log_allow("read", "posts", "public")
        await logger.log_deny("read", "posts", "hidden")
        await logger.log_deny("update", "posts", "locked")
        await logger.log_deny("read", "noise", "ignored")

    assert [event.policy_name for event in adapter.events] == ["hr_read", "locked"]
    salary_event = adapter.events[0]
    assert salary_event.user_id == "u1"
    assert salary_event.tenant_id == "t1"
    assert salary_event.request_id == "req-1"
    assert salary_event.ip_address == "10.0.0.1"
    assert salary_event.context == {"roles": ["hr"], "reason_code": "payroll"}


@pytest.mark.asyncio
async def test_adapter_errors_go_to_on_error_and_never_propagate() -> None:
    failures: list[tuple[AuditError, list[AuditEvent]]] = []
    logger = AuditLogger(
        FailingAdapter(),
        buffer_size=0,
        async_mode=False,
        on_error=lambda error, events: failures.append((error, events)),
    )

    event = await logger.log_deny("delete", "invoices", "immutable")

    assert event is not None
    assert len(failures) == 1
    error, events = failures[0]
    assert isinstance(error, AuditError)
    assert isinstance(error.__cause__, ConnectionError)
    assert events == [event]


@pytest.mark.asyncio
async def test_unbuffered_async_mode_delivers_in_background() -> None:
    adapter = InMemoryAuditAdapter()
    logger = AuditLogger(adapter, buffer_size=0, async_mode=True)

    await logger.log_deny("read", "posts", "bg")
    await logger.close()

    assert [event.policy_name for event in adapter.events] == ["bg"]


@pytest.mark.asyncio
async def test_interval_flush_delivers_buffered_events() -> None:
    adapter = InMemoryAuditAdapter()
    logger = AuditLogger(adapter, buffer_size=100, flush_interval=0.01)

    await logger.log_deny("read", "posts", "timer")
    for _ in range(50):
        if adapter.size:
            break
        await asyncio.sleep(0.01)

    assert adapter.size == 1
    await logger.close()


@pytest.mark.asyncio
async def test_disabled_logger_and_closed_logger_drop_events() -> None:
    adapter = InMemoryAuditAdapter()
    logger = AuditLogger(adapter, buffer_size=0, async_mode=False, enabled=False)

    assert await logger.log_deny("read", "posts") is None
    logger.set_enabled(True)
    assert logger.enabled is True
    await logger.log_deny("read", "posts")
    await logger.close()
    await logger.log_deny("read", "posts")

    assert adapter.size == 1


@pytest.mark.asyncio
async def test_in_memory_adapter_query_and_stats() -> None:
    adapter = InMemoryAuditAdapter(max_size=3)
    for user, decision in [("a", "deny"), ("b", "allow"), ("a", "deny"), ("c", "filter")]:
        await adapter.log(AuditEvent(user_id=user, operation="read", table="posts", decision=AuditDecision(decision)))

    assert adapter.size == 3
    assert [event.user_id for event in adapter.query(decision="deny")] == ["a"]
    assert len(adapter.query(AuditQuery(table="posts", limit=2, offset=1))) == 2

    stats = adapter.stats()
    assert stats.total_events == 3
    assert stats.by_decision == {"allow": 1, "deny": 1, "filter": 1}
    assert stats.by_table == {"posts": 3}
    assert stats.top_denied_users == [("a", 1)]

    adapter.clear()
    assert adapter.events == []


@pytest.mark.asyncio
async def test_console_adapter_formats() -> None:
    event = AuditEvent(
        user_id="u1",
        operation="update",
        table="posts",
        decision=AuditDecision.DENY,
        policy_name="owner",
        reason="not owner",
    )
    text_stream = io.StringIO()
    json_stream = io.StringIO()

    await ConsoleAuditAdapter(colors=False, include_timestamp=False, stream=text_stream).log(event)
    await ConsoleAuditAdapter("json", stream=json_stream).log_batch([event])

    assert text_stream.getvalue().strip() == "x RLS DENY: update on posts (policy: owner) - not owner [user: u1]"
    payload = json.loads(json_stream.getvalue())
    assert payload["decision"] == "deny"
    assert payload["policy_name"] == "owner"
    assert "tenant_id" not in payload


@pytest.mark.asyncio
async def test_sqlalchemy_adapter_persists_events() -> None:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    logger = AuditLogger(SqlAlchemyAuditAdapter(SessionLocal), buffer_size=2, flush_interval=0)

    ctx = AuthorizationContext(
        user_id="u9",
        request_meta=RequestMeta(request_id="req-9", ip_address="10.1.2.3", user_agent="curl/8"),
    )
    await logger.log_deny("update", "posts", "owner", reason="not owner", row_ids=[7], query_hash="q-abc", ctx=ctx)
    await logger.log_deny("delete", "posts", "owner")
    await logger.close()

    with Session(engine) as session:
        records = session.scalars(select(AuditLogRecord).order_by(AuditLogRecord.id)).all()

    assert [record.operation for record in records] == ["update", "delete"]
    assert records[0].user_id == "u9"
    assert records[0].request_id == "req-9"
    assert records[0].ip_address == "10.1.2.3"
    assert records[0].user_agent == "curl/8"
    assert records[0].query_hash == "q-abc"
    assert records[1].user_id == "anonymous"
    assert records[1].ip_address is None
    assert records[0].row_ids == ["7"]
    assert records[0].decision == "deny"
    Base.metadata.drop_all(bind=engine)
