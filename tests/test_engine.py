from __future__ import annotations

from collections.abc import Generator

import pytest
from sqlalchemy import column, select, table

from rowguard.core.config import get_settings
from rowguard.security.audit import AuditDecision, AuditLogger, InMemoryAuditAdapter, TableAuditConfig
from rowguard.security.context import AuthorizationContext
from rowguard.security.engine import AuthorizationEngine
from rowguard.security.errors import PolicyViolation
from rowguard.security.fls import TableFieldAccessConfig, owner_only, read_only
from rowguard.security.policies import tenant_isolation
from rowguard.security.query import SqlAlchemyQueryAdapter
from rowguard.security.rebac import (
    PolicyOutcome,
    TableRelationshipConfig,
    deny_relation,
    filter_relation,
    team_hierarchy_path,
)
from rowguard.security.resolvers import create_resolver
from rowguard.security.testing import (
    PolicyTester,
    assert_allowed,
    assert_denied,
    assert_filters_include,
    assert_policy_used,
    create_test_context,
)


@pytest.fixture(autouse=True)
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def adapter() -> InMemoryAuditAdapter:
    return InMemoryAuditAdapter()


@pytest.fixture()
def engine(adapter: InMemoryAuditAdapter) -> AuthorizationEngine:
    engine = AuthorizationEngine(
        audit_logger=AuditLogger(
            adapter,
            buffer_size=0,
            async_mode=False,
            defaults=TableAuditConfig(log_allowed=True, log_denied=True, log_filters=True),
        )
    )
    engine.register_resolver(create_resolver("teams", lambda ctx: {"team_ids": [f"team-{ctx.user_id}"]}))
    engine.register_relationship_table(
        "tasks",
        TableRelationshipConfig(
            relationships=(team_hierarchy_path("tasks"),),
            policies=(
                filter_relation(
                    "read",
                    "tasks_team_access",
                    lambda ctx: {"user_id": ctx.auth.user_id, "team_id": ctx.resolved["team_ids"]},
                    name="team_members",
                ),
                deny_relation("delete", "tasks_team_access", name="no_deletes"),
            ),
        ),
    )
    engine.register_field_access_table(
        "tasks",
        TableFieldAccessConfig(fields={"notes": owner_only("assignee_id"), "status": read_only()}),
    )
    return engine


@pytest.mark.asyncio
async def test_end_to_end_resolution_evaluation_and_audit(
    engine: AuthorizationEngine, adapter: InMemoryAuditAdapter
) -> None:
    ctx = await engine.resolve_context(AuthorizationContext(user_id="u1"))

    with engine.scope(ctx):
        read = await engine.evaluate("tasks", "read")
        delete = await engine.evaluate("tasks", "delete")
        unconfigured = await engine.evaluate("comments", "read")

    assert read.outcome == PolicyOutcome.FILTER
    assert read.filters[0].conditions["team_id"] == ["team-u1"]
    assert delete.outcome == PolicyOutcome.DENY
    assert unconfigured.outcome == PolicyOutcome.ABSTAIN
    assert [(event.decision, event.policy_name) for event in adapter.events] == [
        (AuditDecision.FILTER, "team_members"),
        (AuditDecision.DENY, "no_deletes"),
    ]
    assert all(event.user_id == "u1" for event in adapter.events)
    assert [policy.name for policy in engine.get_policies("tasks", "delete")] == ["no_deletes"]


@pytest.mark.asyncio
async def test_secure_query_applies_filters_and_raises_on_deny(engine: AuthorizationEngine) -> None:
    ctx = await engine.resolve_context(AuthorizationContext(user_id="u1"))
    tasks = table("tasks", column("id"), column("team_id"))

    query = await engine.secure_query(select(tasks.c.id), "tasks", adapter=SqlAlchemyQueryAdapter(), ctx=ctx)
    assert "EXISTS" in str(query)

    with pytest.raises(PolicyViolation):
        await engine.secure_query(select(tasks.c.id), "tasks", "delete", adapter=SqlAlchemyQueryAdapter(), ctx=ctx)


@pytest.mark.asyncio
async def test_masking_and_write_validation_are_audited(
    engine: AuthorizationEngine, adapter: InMemoryAuditAdapter
) -> None:
    ctx = create_test_context("u2")
    rows = [{"id": 1, "notes": "secret", "assignee_id": "u1"}, {"id": 2, "notes": "mine", "assignee_id": "u2"}]

    masked = await engine.mask_rows("tasks", rows, ctx=ctx)
    assert [row.data["notes"] for row in masked] == [None, "mine"]

    with pytest.raises(PolicyViolation):
        await engine.validate_write("tasks", {"status": "done"}, rows[1], ctx=ctx)

    writable = await engine.filter_writable_fields("tasks", {"status": "done", "notes": "x"}, rows[1], ctx=ctx)
    assert writable.data == {"notes": "x"}

    filter_event, deny_event = adapter.events
    assert filter_event.decision == AuditDecision.FILTER
    assert filter_event.row_ids == (1,)
    assert filter_event.context == {"masked_fields": ["notes"], "omitted_fields": []}
    assert deny_event.decision == AuditDecision.DENY
    assert deny_event.context == {"fields": ["status"]}
    await engine.close()


@pytest.mark.asyncio
async def test_policy_tester_helpers(engine: AuthorizationEngine) -> None:
    tester = PolicyTester(engine.relationships, engine.field_access)
    member = create_test_context("u3", resolved={"team_ids": ["t1"]})

    read = tester.evaluate("tasks", "read", member)
    assert_allowed(read)
    assert_policy_used(read, "team_members")
    assert_filters_include(read, {"user_id": "u3"})
    assert_denied(tester.evaluate("tasks", "delete", member))

    assert await tester.can_read("tasks", "notes", member, {"assignee_id": "u3"}) is True
    assert await tester.can_write("tasks", "status", member) is False
    assert [policy["name"] for policy in tester.list_policies("tasks")] == ["no_deletes", "team_members"]
    assert tester.tables == ["tasks"]


@pytest.mark.asyncio
async def test_log_helpers_without_audit_logger_are_noops() -> None:
    engine = AuthorizationEngine()

    assert await engine.log_allow("read", "tasks") is None
    assert await engine.log_deny("read", "tasks") is None
    assert await engine.log_filter("tasks") is None
    await engine.close()


@pytest.mark.asyncio
async def test_validate_mutation_audits_and_raises_on_rejected_payload(adapter: InMemoryAuditAdapter) -> None:
    engine = AuthorizationEngine(
        audit_logger=AuditLogger(
            adapter,
            buffer_size=0,
            async_mode=False,
            defaults=TableAuditConfig(log_denied=True),
        )
    )
    engine.register_relationship_table("documents", TableRelationshipConfig(policies=tuple(tenant_isolation())))
    ctx = create_test_context("u1", tenant_id="t1")

    allowed = await engine.validate_mutation("documents", "create", {"tenant_id": "t1"}, ctx=ctx)
    assert allowed.outcome == PolicyOutcome.ALLOW

    with pytest.raises(PolicyViolation) as exc_info:
        await engine.validate_mutation("documents", "create", {"tenant_id": "t2", "title": "x"}, ctx=ctx)

    assert exc_info.value.policy_name == "tenant_isolation_create"
    (event,) = adapter.events
    assert (event.decision, event.policy_name) == (AuditDecision.DENY, "tenant_isolation_create")
    assert event.context == {"fields": ["tenant_id", "title"]}
